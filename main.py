# ================================================================
# STREET PATROL LOG - Backend
# Sessions + Patrols + Reports
# ================================================================
# Run:  uvicorn main:app --reload
# ================================================================

import logging

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from app.auth import register_auth_routes
from app.config import get_config
from app.patrols import register_patrol_routes

# ================================================================
# LOGGING
# ================================================================

logging.basicConfig(
    level=getattr(logging, str(get_config("log_level", "INFO")).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("patrols.main")

# ================================================================
# FASTAPI APP
# ================================================================

app = FastAPI(title="Street Patrol Log")
app.add_middleware(SessionMiddleware, secret_key=get_config("session_secret"))

register_auth_routes(app)
register_patrol_routes(app)


@app.get("/api/ping")
async def ping():
    return {"ok": True, "service": "street-patrol-log"}


logger.info("Street Patrol Log ready (db=%s)", get_config("db_path"))

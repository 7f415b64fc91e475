# ============================================================================
# STREET PATROL LOG - Session Routes
# ============================================================================

import logging
import traceback
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.errors import PatrolError

from .models import Session, UserRepository, session_from_mapping

logger = logging.getLogger("auth.routes")


def get_session(request: Request) -> Optional[Session]:
    """The acting user for this request, or None."""
    return session_from_mapping(request.session)


def _start_session(request: Request, session: Session):
    request.session.clear()
    request.session["user_id"] = session.user_id
    request.session["email"] = session.email


async def _json_body(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def register_auth_routes(app: FastAPI, users: Optional[UserRepository] = None):
    """Register session endpoints."""

    users = users or UserRepository()
    users.init_schema()
    app.state.users = users

    @app.post("/api/session/register")
    async def api_session_register(request: Request):
        data = await _json_body(request)
        try:
            session = users.create(data.get("email", ""), data.get("password", ""))
        except PatrolError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        except Exception:
            logger.error("Registration failed:\n%s", traceback.format_exc())
            return JSONResponse({"ok": False, "error": "Failed to create account"}, status_code=500)
        _start_session(request, session)
        return {"ok": True, "user": session.to_dict()}

    @app.post("/api/session/login")
    async def api_session_login(request: Request):
        data = await _json_body(request)
        try:
            session = users.authenticate(data.get("email", ""), data.get("password", ""))
        except PatrolError as e:
            logger.info("Login rejected for %s", data.get("email"))
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        except Exception:
            logger.error("Login failed:\n%s", traceback.format_exc())
            return JSONResponse({"ok": False, "error": "Failed to log in"}, status_code=500)
        _start_session(request, session)
        logger.info("User %s logged in", session.user_id)
        return {"ok": True, "user": session.to_dict()}

    @app.post("/api/session/logout")
    async def api_session_logout(request: Request):
        request.session.clear()
        return {"ok": True}

    @app.get("/api/session/status")
    async def api_session_status(request: Request):
        session = get_session(request)
        if session is None:
            return {"logged_in": False}
        return {"logged_in": True, "user": session.to_dict()}

    @app.post("/api/session/password")
    async def api_session_password(request: Request):
        data = await _json_body(request)
        try:
            users.change_password(
                get_session(request),
                data.get("current_password", ""),
                data.get("new_password", ""),
                data.get("confirm_password", ""),
            )
        except PatrolError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        except Exception:
            logger.error("Password change failed:\n%s", traceback.format_exc())
            return JSONResponse({"ok": False, "error": "Failed to change password"}, status_code=500)
        return {"ok": True}

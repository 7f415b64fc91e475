# ============================================================================
# STREET PATROL LOG - Patrol, Report & Export Routes
# ============================================================================
# JSON API over the session controller, the report endpoints and the
# /ws/patrols invalidate feed. This is the operation boundary: PatrolError
# becomes {"ok": false, "error": ...} with its status, anything else is
# logged and returned as a generic 500.
# ============================================================================

import json
import logging
import traceback
from typing import Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from app.auth.models import session_from_mapping
from app.auth.routes import get_session
from app.config import get_config, get_local_now
from app.errors import PatrolError, ValidationError

from .aggregator import (
    aggregate,
    available_years,
    custom_period,
    patrol_duration,
    report_period,
    total_statistics,
)
from .controller import PatrolSessionController
from .formatter import notes_preview, render_report
from .models import parse_ts

logger = logging.getLogger("patrols.routes")


def _error(e: PatrolError) -> JSONResponse:
    return JSONResponse(e.to_dict(), status_code=e.status_code)


def _failure(action: str) -> JSONResponse:
    logger.error("%s failed:\n%s", action, traceback.format_exc())
    return JSONResponse({"ok": False, "error": f"Failed to {action}"}, status_code=500)


async def _json_body(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body")
    return data


def _history_item(patrol) -> dict:
    item = patrol.to_dict()
    item["duration"] = patrol_duration(patrol.start_time, patrol.end_time)
    item["notes_preview"] = notes_preview(patrol.notes, get_config("notes_preview_length", 300))
    return item


def _resolve_period(period: Optional[str], start: Optional[str], end: Optional[str]):
    if start or end:
        if not (start and end):
            raise ValidationError("Both start and end are required for a custom range")
        try:
            start_dt, end_dt = parse_ts(start), parse_ts(end)
        except ValueError:
            raise ValidationError("start and end must be ISO dates")
        if end_dt < start_dt:
            raise ValidationError("End date cannot be before start date")
        return custom_period(start_dt, end_dt)
    return report_period(period, get_local_now())


def register_patrol_routes(app: FastAPI, controller: Optional[PatrolSessionController] = None):
    """Register patrol, report and realtime endpoints."""

    controller = controller or PatrolSessionController()
    controller.repository.init_schema()
    app.state.patrol_controller = controller

    # =========================================================================
    # PATROLS
    # =========================================================================

    @app.post("/api/patrols")
    async def api_patrol_start(request: Request):
        try:
            data = await _json_body(request)
            patrol_id = controller.start(get_session(request), data)
            return {"ok": True, "id": patrol_id}
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("start patrol")

    @app.get("/api/patrols")
    async def api_patrol_history(request: Request):
        """Every patrol of the user, newest first, with history-page totals."""
        try:
            patrols = controller.list_patrols(get_session(request))
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("load patrol history")
        return {
            "ok": True,
            "patrols": [_history_item(p) for p in patrols],
            "totals": total_statistics(patrols),
            "count": len(patrols),
        }

    # Static path declared before /{patrol_id}
    @app.get("/api/patrols/active")
    async def api_patrol_active(request: Request):
        """Banner/badge feed, re-fetched on every invalidate signal."""
        try:
            patrols = controller.active_patrols(get_session(request))
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("load active patrols")
        return {
            "ok": True,
            "patrols": [
                {"id": p.id, "location": p.location, "start_time": p.to_dict()["start_time"]}
                for p in patrols
            ],
        }

    @app.get("/api/patrols/{patrol_id}")
    async def api_patrol_get(request: Request, patrol_id: str):
        try:
            patrol = controller.get(get_session(request), patrol_id)
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("load patrol")
        return {"ok": True, "patrol": _history_item(patrol)}

    @app.put("/api/patrols/{patrol_id}")
    async def api_patrol_update(request: Request, patrol_id: str):
        try:
            data = await _json_body(request)
            patrol = controller.update_details(get_session(request), patrol_id, data)
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("update patrol")
        return {"ok": True, "patrol": patrol.to_dict()}

    @app.post("/api/patrols/{patrol_id}/statistics")
    async def api_patrol_statistic(request: Request, patrol_id: str):
        try:
            data = await _json_body(request)
            try:
                delta = int(data.get("delta", 1))
            except (TypeError, ValueError):
                raise ValidationError("delta must be +1 or -1")
            patrol = controller.increment_statistic(
                get_session(request), patrol_id, data.get("key", ""), delta
            )
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("update statistics")
        return {"ok": True, "statistics": patrol.statistics}

    @app.post("/api/patrols/{patrol_id}/contacts")
    async def api_patrol_contact(request: Request, patrol_id: str):
        try:
            data = await _json_body(request)
            patrol = controller.add_contact(
                get_session(request),
                patrol_id,
                data.get("ethnicity"),
                data.get("gender"),
                data.get("age_band"),
            )
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("add contact")
        return {"ok": True, "contact_statistics": patrol.contact_statistics}

    @app.put("/api/patrols/{patrol_id}/notes")
    async def api_patrol_notes(request: Request, patrol_id: str):
        try:
            data = await _json_body(request)
            patrol = controller.save_notes(get_session(request), patrol_id, data.get("notes", ""))
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("save notes")
        return {"ok": True, "notes": patrol.notes}

    @app.post("/api/patrols/{patrol_id}/close")
    async def api_patrol_close(request: Request, patrol_id: str):
        try:
            patrol = controller.close(get_session(request), patrol_id)
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("close patrol")
        return {"ok": True, "patrol": patrol.to_dict()}

    # =========================================================================
    # REPORTS
    # =========================================================================

    @app.get("/api/reports")
    async def api_reports(
        request: Request,
        period: Optional[str] = Query(None),
        start: Optional[str] = Query(None),
        end: Optional[str] = Query(None),
    ):
        try:
            resolved = _resolve_period(period, start, end)
            patrols = controller.list_patrols(get_session(request))
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("build report")
        result = aggregate(patrols, resolved.date_range)
        return {"ok": True, "period": resolved.to_dict(), "report": result.to_dict()}

    @app.get("/api/reports/years")
    async def api_report_years(request: Request):
        try:
            patrols = controller.list_patrols(get_session(request))
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("load report years")
        return {"ok": True, "years": available_years(patrols, get_local_now())}

    @app.get("/api/reports/export")
    async def api_report_export(
        request: Request,
        fmt: str = Query("csv", alias="format"),
        period: Optional[str] = Query(None),
        start: Optional[str] = Query(None),
        end: Optional[str] = Query(None),
    ):
        try:
            resolved = _resolve_period(period, start, end)
            patrols = controller.list_patrols(get_session(request))
            result = aggregate(patrols, resolved.date_range)
            try:
                filename, content, media_type = render_report(
                    result, resolved.title, resolved.label, fmt
                )
            except ValueError as e:
                raise ValidationError(str(e))
        except PatrolError as e:
            return _error(e)
        except Exception:
            return _failure("export report")

        return Response(
            content=content,
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # =========================================================================
    # WEBSOCKET
    # =========================================================================

    @app.websocket("/ws/patrols")
    async def patrols_websocket(websocket: WebSocket):
        """Invalidate feed for the logged-in user's patrols."""
        session = session_from_mapping(websocket.session)
        if session is None:
            await websocket.close(code=4001)
            return

        notifier = controller.notifier
        await notifier.connect(websocket, session.user_id)
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    data = json.loads(text)
                except ValueError:
                    logger.debug("Ignoring non-JSON frame from %s", session.user_id)
                    continue
                if isinstance(data, dict):
                    await notifier.handle_client_message(websocket, data)
        except WebSocketDisconnect:
            pass
        finally:
            await notifier.disconnect(websocket)

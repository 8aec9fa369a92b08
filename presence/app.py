import logging
from typing import Any

from fastapi import FastAPI, Body
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import load_settings
from .errors import ConfigurationError, InvalidRequest, PresenceError
from .events import VisitorRequest
from .service import PresenceService
from .store import get_store

logger = logging.getLogger(__name__)

app = FastAPI(title="Visitor Presence API", version="0.1.0")

# the site front end polls from the browser
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

NOT_CONFIGURED = "Visitor tracking is not configured"


def get_service() -> PresenceService:
    # store clients are cached in presence.store; the service itself is stateless
    return PresenceService(get_store(load_settings()))


def _error(status: int, message: str, exc: Exception = None) -> JSONResponse:
    body = {"error": message}
    if exc is not None and load_settings().debug:
        body["details"] = str(exc)
    return JSONResponse(status_code=status, content=body)


def _failure(exc: Exception, message: str) -> JSONResponse:
    if isinstance(exc, ConfigurationError):
        logger.error("visitor tracking not configured: %s", exc)
        return _error(500, NOT_CONFIGURED, exc)
    logger.error("%s: %s", message, exc)
    return _error(500, message, exc)


@app.exception_handler(RequestValidationError)
async def _invalid_body(request, exc):
    return _error(400, "Request body must be a JSON object", exc)


def parse_visitor_request(payload: Any) -> VisitorRequest:
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    session_id = payload.get("sessionId")
    if not session_id or not isinstance(session_id, str):
        raise InvalidRequest("sessionId is required and must be a string")
    action = payload.get("action")
    if action not in ("register", "heartbeat", "count"):
        raise InvalidRequest(
            f"Invalid action: {action}. Must be 'register', 'heartbeat', or 'count'"
        )
    try:
        return VisitorRequest.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequest(str(e)) from e


@app.get("/health")
def health():
    store_ok = False
    try:
        store_ok = get_store(load_settings()).ping()
    except PresenceError:
        pass
    return {"ok": True, "service": "visitor-presence", "redis": store_ok}


@app.post("/visitors")
def track_visitor(payload: Any = Body(None)):
    """
    register | heartbeat refresh the tab's last activity; register also
    reports whether the tab is new and logs a join event for it.
    count returns the active-visitor count.
    """
    try:
        req = parse_visitor_request(payload)
    except InvalidRequest as e:
        return _error(400, str(e))

    try:
        svc = get_service()
        if req.action == "count":
            return {"count": svc.count()}
        if req.action == "register":
            result = svc.register(req.sessionId, include_count=req.includeCount)
        else:
            result = svc.heartbeat(req.sessionId, include_count=req.includeCount)
    except PresenceError as e:
        return _failure(e, "Failed to process visitor tracking request")

    body = {"success": True, "action": req.action, "isNewVisitor": result.is_new}
    if result.count is not None:
        body["count"] = result.count
    return body


@app.get("/visitors")
def visitor_count():
    try:
        return {"count": get_service().count()}
    except PresenceError as e:
        return _failure(e, "Failed to get visitor count")


@app.get("/visitors/events")
def visitor_events():
    """Join events from the last 60s, newest first, at most 10."""
    try:
        events = get_service().events()
    except PresenceError as e:
        return _failure(e, "Failed to get visitor events")
    return {"events": [ev.model_dump() for ev in events]}

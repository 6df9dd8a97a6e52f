from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from apps.api.core.config import get_settings
from apps.api.dependencies.auth import resolve_session_user
from apps.api.dependencies.errors import FORCE_SIGN_OUT_HEADER
from apps.api.helpdesk import ClientSession, HelpdeskError

from .notifications import NotificationResponse
from .tickets import AuditEntryResponse, CommentResponse, TicketResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

_SERIALIZERS: dict[str, type[BaseModel]] = {
    "tickets": TicketResponse,
    "notifications": NotificationResponse,
    "comments": CommentResponse,
    "history": AuditEntryResponse,
}


def serialize(collection: str, data: Any) -> list[dict[str, Any]]:
    model = _SERIALIZERS[collection]
    return [model.model_validate(item).model_dump(mode="json") for item in data]


FORCED_SIGN_OUT_CODE = 4403


def _close_code(exc: HTTPException) -> int:
    return 4000 + exc.status_code


@router.websocket("/events")
async def client_events(websocket: WebSocket, token: str | None = Query(default=None)) -> None:
    """Push refreshed collections to a signed-in client.

    Clients send ``{"action": "open_ticket", "ticket_id": ...}``,
    ``{"action": "close_ticket"}`` or ``{"action": "sign_out"}``; the server
    sends ``{"event": "refresh", "collection": ..., "data": [...]}`` frames.
    A deactivated account receives a ``signed_out`` frame and the socket is
    closed with code 4403.
    """

    await websocket.accept()
    app_state = websocket.app.state
    service = getattr(app_state, "helpdesk_service", None)
    feed = getattr(app_state, "change_feed", None)
    if service is None or feed is None:
        await websocket.close(code=1011, reason="Help-desk service is not configured")
        return

    settings = getattr(app_state, "settings", None) or get_settings()
    try:
        user = await resolve_session_user(token, service, settings)
    except HTTPException as exc:
        if exc.headers:
            await websocket.send_json({"event": "error", "detail": exc.detail, "headers": exc.headers})
        await websocket.close(code=_close_code(exc), reason=str(exc.detail))
        return

    async def push(collection: str, data: Any) -> None:
        await websocket.send_json({"event": "refresh", "collection": collection, "data": serialize(collection, data)})

    async def force_sign_out() -> None:
        await websocket.send_json(
            {
                "event": "signed_out",
                "detail": "Account is deactivated",
                "headers": {FORCE_SIGN_OUT_HEADER: "true"},
            }
        )
        await websocket.close(code=FORCED_SIGN_OUT_CODE, reason="Account is deactivated")

    session = ClientSession(
        user,
        service,
        feed,
        debounce_seconds=settings.sync_debounce_seconds,
        on_refresh=push,
        on_sign_out=force_sign_out,
        registry=getattr(app_state, "metrics_registry", None),
    )
    disconnected = False
    try:
        await session.start()
        await push("tickets", session.tickets)
        await push("notifications", session.notifications)
        while True:
            message = await websocket.receive_json()
            if not session.active:
                break
            action = message.get("action") if isinstance(message, dict) else None
            if action == "open_ticket":
                try:
                    await session.open_ticket(str(message.get("ticket_id")))
                except HelpdeskError as exc:
                    await websocket.send_json({"event": "error", "detail": str(exc)})
                    continue
                await push("comments", session.comments)
                await push("history", session.history)
            elif action == "close_ticket":
                session.close_ticket()
            elif action == "sign_out":
                break
            else:
                await websocket.send_json({"event": "error", "detail": f"Unknown action: {action!r}"})
    except WebSocketDisconnect:
        disconnected = True
        logger.debug("Client %s disconnected", user.id)
    finally:
        session.sign_out()
    if not disconnected and websocket.application_state is WebSocketState.CONNECTED:
        await websocket.close()

"""
Inbound realtime event dispatch.

Every frame a socket client sends is a JSON object with a `type` field. The
handler for that type runs against the chat service; success is acknowledged
to the sender with an `ack` event and any ChatDeskError becomes an `error`
event to the sender only.
"""
import json
import logging
import uuid
from typing import Any, Optional

from fastapi import WebSocket

from chatdesk.auth import verify_admin_token
from chatdesk.errors import ChatDeskError, Unauthorized, ValidationError
from chatdesk.realtime.hub import ADMIN_POOL, EVT_ACK, EVT_ERROR, admin_channel, guest_channel
from chatdesk.service import ChatService

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """Hub connection backed by a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex[:12]
        self.admin_id: Optional[str] = None

    async def send(self, event: str, data: dict[str, Any]) -> None:
        await self.websocket.send_json({"event": event, "data": data})


def _require(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{key}' is required")
    return value.strip()


def _require_admin(conn) -> str:
    if not getattr(conn, "admin_id", None):
        raise Unauthorized("Admin login required")
    return conn.admin_id


async def handle_join_room(service: ChatService, conn, data: dict[str, Any]) -> dict:
    session_id = _require(data, "session_id")
    service.hub.subscribe(conn, guest_channel(session_id))
    return {"session_id": session_id}


async def handle_leave_room(service: ChatService, conn, data: dict[str, Any]) -> dict:
    session_id = _require(data, "session_id")
    service.hub.unsubscribe(conn, guest_channel(session_id))
    return {"session_id": session_id}


async def handle_admin_login(service: ChatService, conn, data: dict[str, Any]) -> dict:
    verify_admin_token(data.get("token"))
    admin_id = _require(data, "admin_id")
    conn.admin_id = admin_id
    service.hub.subscribe(conn, ADMIN_POOL)
    service.hub.subscribe(conn, admin_channel(admin_id))
    logger.info(f"Admin {admin_id} logged in on {conn.connection_id}")
    return {"admin_id": admin_id}


async def handle_accept_chat(service: ChatService, conn, data: dict[str, Any]) -> dict:
    admin_id = _require_admin(conn)
    session_id = _require(data, "session_id")
    await service.accept(session_id, admin_id)
    return {"session_id": session_id}


async def handle_admin_message(service: ChatService, conn, data: dict[str, Any]) -> dict:
    admin_id = _require_admin(conn)
    session_id = _require(data, "session_id")
    delivered = await service.admin_message(
        session_id, admin_id, data.get("text", ""), data.get("sender_label") or "Admin",
    )
    return {"session_id": session_id, "delivered": delivered}


async def handle_manage_admin(service: ChatService, conn, data: dict[str, Any]) -> dict:
    _require_admin(conn)
    session_id = _require(data, "session_id")
    target = _require(data, "admin_id")
    action = _require(data, "action")
    await service.manage(session_id, target, action)
    return {"session_id": session_id, "admin_id": target, "action": action}


async def handle_user_message(service: ChatService, conn, data: dict[str, Any]) -> dict:
    session_id = _require(data, "session_id")
    await service.guest_message(session_id, data.get("text", ""))
    return {"session_id": session_id}


EVENTS_DISPATCH = {
    "join-room": handle_join_room,
    "leave-room": handle_leave_room,
    "admin-login": handle_admin_login,
    "accept-chat": handle_accept_chat,
    "admin-message": handle_admin_message,
    "manage-admin": handle_manage_admin,
    "user-message": handle_user_message,
}


async def dispatch_event(service: ChatService, conn, raw: str) -> None:
    try:
        frame = json.loads(raw)
    except ValueError:
        await service.hub.send_to(conn, EVT_ERROR, {"type": None, "reason": "Malformed frame"})
        return
    if not isinstance(frame, dict):
        await service.hub.send_to(conn, EVT_ERROR, {"type": None, "reason": "Malformed frame"})
        return

    event_type = frame.get("type")
    handler = EVENTS_DISPATCH.get(event_type)
    if handler is None:
        await service.hub.send_to(conn, EVT_ERROR, {"type": event_type, "reason": f"Unknown event type '{event_type}'"})
        return

    try:
        result = await handler(service, conn, frame)
    except ChatDeskError as e:
        logger.info(f"[{event_type}] rejected for {conn.connection_id}: {type(e).__name__}: {e}")
        await service.hub.send_to(conn, EVT_ERROR, {"type": event_type, "reason": str(e)})
        return
    await service.hub.send_to(conn, EVT_ACK, {"type": event_type, **result})

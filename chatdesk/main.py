"""
ChatDesk main entry point.

Starts a FastAPI HTTP server that:
  1. Accepts guest chat submissions and serves chat history at /api/chat
  2. Exposes admin-only chat management endpoints (X-Admin-Token header)
  3. Runs the realtime socket at /ws for guests and admins
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import aiosqlite
import uvicorn
from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from chatdesk import config
from chatdesk.assistant import AssistantClient
from chatdesk.auth import verify_admin_token
from chatdesk.db.database import close_db, get_db
from chatdesk.errors import ChatDeskError, PersistenceFailure, UpstreamUnavailable, ValidationError
from chatdesk.notify.email import EmailGateway
from chatdesk.notify.sms import SmsGateway
from chatdesk.realtime.dispatch import WebSocketConnection, dispatch_event
from chatdesk.service import ChatService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("chatdesk")


async def build_service(db: aiosqlite.Connection) -> ChatService:
    """Wire the chat service from configuration."""
    try:
        assistant = AssistantClient()
    except UpstreamUnavailable as e:
        logger.warning(f"Automated replies will use the fallback text: {e.reason}")
        assistant = None
    return ChatService(db, assistant=assistant, email=EmailGateway(), sms=SmsGateway())


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize DB and the chat service
    db = await get_db()
    app.state.service = await build_service(db)
    logger.info(f"ChatDesk running at http://{config.HOST}:{config.PORT}")
    yield
    # Shutdown: cancel timers, flush notifications, close DB
    await app.state.service.shutdown()
    await close_db()


app = FastAPI(
    title="ChatDesk",
    description="Guest chat with automated replies and human hand-off.",
    version=config.SERVICE_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(ChatDeskError)
async def chatdesk_error_handler(request: Request, exc: ChatDeskError):
    if isinstance(exc, PersistenceFailure):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=500, content={"error": "Server error, please try again later."})
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


def get_service(request: Request) -> ChatService:
    return request.app.state.service


def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    verify_admin_token(x_admin_token)


# ─────────────────────────────────────────────
# Guest chat API
# ─────────────────────────────────────────────

class ChatSubmission(BaseModel):
    name: str = ""
    email: str = ""
    message: str = ""


class ContactUpdate(BaseModel):
    old_email: str = Field(default="")
    new_email: str = Field(default="")


@app.post("/api/chat")
async def api_submit_chat(body: ChatSubmission, service: ChatService = Depends(get_service)):
    result = await service.submit(body.name, body.email, body.message)
    return result.to_dict()


@app.get("/api/chat/history")
async def api_chat_history(email: Optional[str] = None, service: ChatService = Depends(get_service)):
    if not email:
        raise ValidationError("Email is required")
    session = await service.history(email)
    return {"session_id": session.session_id, "messages": [m.to_dict() for m in session.messages]}


# ─────────────────────────────────────────────
# Admin API
# ─────────────────────────────────────────────

@app.get("/api/chat/all", dependencies=[Depends(require_admin)])
async def api_chat_all(service: ChatService = Depends(get_service)):
    return [s.to_dict() for s in await service.list_sessions()]


@app.put("/api/chat/contact", dependencies=[Depends(require_admin)])
async def api_chat_update_contact(body: ContactUpdate, service: ChatService = Depends(get_service)):
    await service.update_contact(body.old_email, body.new_email)
    return {"ok": True}


@app.delete("/api/chat/clear", dependencies=[Depends(require_admin)])
async def api_chat_clear(service: ChatService = Depends(get_service)):
    deleted = await service.clear_all()
    return {"ok": True, "deleted": deleted}


@app.get("/api/chat/presence", dependencies=[Depends(require_admin)])
async def api_chat_presence(service: ChatService = Depends(get_service)):
    return service.presence_snapshot()


# ─────────────────────────────────────────────
# Realtime socket
# ─────────────────────────────────────────────

@app.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    await websocket.accept()
    service: ChatService = websocket.app.state.service
    conn = WebSocketConnection(websocket)
    logger.debug(f"Socket connected: {conn.connection_id}")
    try:
        while True:
            raw = await websocket.receive_text()
            await dispatch_event(service, conn, raw)
    except WebSocketDisconnect:
        logger.debug(f"Socket disconnected: {conn.connection_id}")
    finally:
        service.hub.drop(conn)


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "chatdesk"}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("chatdesk.main:app", host=config.HOST, port=config.PORT, reload=True)

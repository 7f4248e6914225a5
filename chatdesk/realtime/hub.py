"""
Channel-scoped fan-out for realtime chat events.

Channels:
  session:<session_id>  guest channel (the guest plus any admin attached to it)
  admins                admin pool
  admin:<admin_id>      one specific admin

A connection is anything with an ``async send(event, data)`` method and a
``connection_id`` attribute. A connection that fails to receive is dropped
from every channel.
"""
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

ADMIN_POOL = "admins"

# Outbound event names
EVT_MESSAGE = "message"
EVT_HANDOFF_REQUEST = "chat-request"
EVT_HANDOFF_DUPLICATE = "chat-notification"
EVT_NEW_CHAT = "new-chat"
EVT_HUMAN_CONNECTED = "human-connected"
EVT_INACTIVITY_DISCONNECT = "inactivity-disconnect"
EVT_NO_STAFF = "no-admins"
EVT_MESSAGE_BLOCKED = "message-blocked"
EVT_ERROR = "error"
EVT_ACK = "ack"


def guest_channel(session_id: str) -> str:
    return f"session:{session_id}"


def admin_channel(admin_id: str) -> str:
    return f"admin:{admin_id}"


class Connection(Protocol):
    connection_id: str

    async def send(self, event: str, data: dict[str, Any]) -> None: ...


class Hub:
    """Manages channel membership for connected guests and admins."""

    def __init__(self) -> None:
        # channel -> connections subscribed to it
        self._channels: dict[str, set[Connection]] = {}

    def subscribe(self, conn: Connection, channel: str) -> None:
        self._channels.setdefault(channel, set()).add(conn)
        logger.debug(f"{conn.connection_id} joined {channel}")

    def unsubscribe(self, conn: Connection, channel: str) -> None:
        members = self._channels.get(channel)
        if members is None:
            return
        members.discard(conn)
        if not members:
            del self._channels[channel]

    def drop(self, conn: Connection) -> None:
        """Remove a connection from every channel (disconnect)."""
        for channel in list(self._channels):
            self.unsubscribe(conn, channel)

    def subscribers(self, channel: str) -> set[Connection]:
        return set(self._channels.get(channel, set()))

    def is_live(self, session_id: str) -> bool:
        """True while a guest (not an attached admin) listens on the session's channel."""
        return any(getattr(conn, "admin_id", None) is None for conn in self._channels.get(guest_channel(session_id), ()))

    def attach_admin(self, admin_id: str, session_id: str) -> int:
        """Subscribe every connection of `admin_id` to the session's guest channel."""
        conns = self.subscribers(admin_channel(admin_id))
        for conn in conns:
            self.subscribe(conn, guest_channel(session_id))
        return len(conns)

    def detach_admin(self, admin_id: str, session_id: str) -> None:
        for conn in self.subscribers(admin_channel(admin_id)):
            self.unsubscribe(conn, guest_channel(session_id))

    async def publish(self, channel: str, event: str, data: dict[str, Any]) -> int:
        """Deliver one event to every subscriber of `channel`. Returns the delivery count."""
        delivered = 0
        closed = []
        for conn in self.subscribers(channel):
            try:
                await conn.send(event, data)
                delivered += 1
            except Exception as e:
                # Connection closed or errored
                logger.debug(f"Dropping {conn.connection_id} after send failure: {type(e).__name__}: {e}")
                closed.append(conn)
        for conn in closed:
            self.drop(conn)
        logger.debug(f"{event} -> {channel}: {delivered} delivered")
        return delivered

    async def send_to(self, conn: Connection, event: str, data: dict[str, Any]) -> None:
        """Reply to a single connection (errors, acknowledgements)."""
        try:
            await conn.send(event, data)
        except Exception as e:
            logger.debug(f"Dropping {conn.connection_id} after send failure: {type(e).__name__}: {e}")
            self.drop(conn)

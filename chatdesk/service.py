"""
Chat service: the entry points for guest submissions and admin actions.

Each submission for a contact address runs under that address's lock, so the
session log is appended, persisted and fanned out in arrival order. Events are
published only after the session is saved; email/SMS notifications run as
background tasks whose failures are logged and never abort a transition.
"""
import asyncio
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Coroutine, Optional

import aiosqlite

from chatdesk.config import (
    ADMIN_EMAILS,
    ADMIN_PHONES,
    ASSISTANT_NAME,
    GRACE_WINDOW_SECONDS,
    HANDOFF_TRIGGER,
    INACTIVITY_TIMEOUT_SECONDS,
)
from chatdesk.db import crud
from chatdesk.db.models import SENDER_ADMIN, SENDER_ASSISTANT, SENDER_GUEST, ChatMessage, ChatSession
from chatdesk.errors import NotFound, PersistenceFailure, UpstreamUnavailable, ValidationError
from chatdesk.handoff import (
    ACK_TEXT,
    Attach,
    Detach,
    Effect,
    Emit,
    EnsureLead,
    HandoffCoordinator,
    HandoffState,
    Notify,
    message_payload,
)
from chatdesk.presence import PresenceRegistry
from chatdesk.realtime.hub import (
    ADMIN_POOL,
    EVT_MESSAGE,
    EVT_MESSAGE_BLOCKED,
    EVT_NEW_CHAT,
    Hub,
    admin_channel,
    guest_channel,
)
from chatdesk.responder import Disposition, automated_reply, select_disposition

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

SUPPRESSED_TEXT = "Message received, an admin is handling the chat."
MUTED_REASON = "You are muted in this chat; your message was not delivered."
NOT_STAFFING_REASON = "You are not staffing this chat; accept it before replying."


def validate_contact(address: Optional[str]) -> str:
    address = (address or "").strip().lower()
    if not _EMAIL_RE.match(address):
        raise ValidationError("Invalid email")
    return address


def validate_submission(name: Optional[str], contact_address: Optional[str], message: Optional[str]) -> tuple[str, str, str]:
    name = (name or "").strip()
    message = (message or "").strip()
    if not name:
        raise ValidationError("Name is required")
    if not message:
        raise ValidationError("Message is required")
    return name, validate_contact(contact_address), message


@dataclass
class SubmitResult:
    message: str
    awaiting_human: bool
    session_id: str
    disposition: Disposition

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "awaiting_human": self.awaiting_human,
            "session_id": self.session_id,
            "disposition": self.disposition.value,
        }


class ChatService:
    def __init__(
        self,
        db: aiosqlite.Connection,
        hub: Optional[Hub] = None,
        presence: Optional[PresenceRegistry] = None,
        assistant: Any = None,
        email: Any = None,
        sms: Any = None,
        admin_emails: Optional[list[str]] = None,
        admin_phones: Optional[list[str]] = None,
        trigger: str = HANDOFF_TRIGGER,
        inactivity_timeout: float = INACTIVITY_TIMEOUT_SECONDS,
        grace_window: float = GRACE_WINDOW_SECONDS,
        assistant_name: str = ASSISTANT_NAME,
    ):
        self.db = db
        self.hub = hub or Hub()
        self.presence = presence or PresenceRegistry()
        self.assistant = assistant
        self.email = email
        self.sms = sms
        self.admin_emails = ADMIN_EMAILS if admin_emails is None else admin_emails
        self.admin_phones = ADMIN_PHONES if admin_phones is None else admin_phones
        self.trigger = trigger
        self.assistant_name = assistant_name
        self.coordinator = HandoffCoordinator(
            self.presence,
            self.run_effects,
            inactivity_timeout=inactivity_timeout,
            grace_window=grace_window,
            trigger=trigger,
            assistant_name=assistant_name,
        )
        # contact address -> (lock, holders + waiters); dropped once nobody uses it
        self._session_locks: dict[str, tuple[asyncio.Lock, int]] = {}
        # One shared connection: keep store transactions from interleaving
        self._write_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    @asynccontextmanager
    async def _serialized(self, contact_address: str) -> AsyncIterator[None]:
        """Run the block under the contact address's lock, in arrival order."""
        lock, users = self._session_locks.get(contact_address, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._session_locks[contact_address] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._session_locks[contact_address]
            if users == 1:
                del self._session_locks[contact_address]
            else:
                self._session_locks[contact_address] = (lock, users - 1)

    async def _save(self, session: ChatSession) -> ChatSession:
        async with self._write_lock:
            return await crud.session_save(self.db, session)

    async def _ensure_lead(self, name: str, contact_address: str, note: str):
        async with self._write_lock:
            lead, created = await crud.lead_get_or_create(self.db, name, contact_address, message=note)
        return lead

    def _adopt_lead_id(self, session: ChatSession, lead_id: str) -> None:
        """Make the lead id the session's stable id, unless hand-off state lives under the current id."""
        if session.session_id != lead_id and self.coordinator.state(session.session_id) is not HandoffState.IDLE:
            logger.warning(f"Keeping session id {session.session_id} for {session.contact_address}: hand-off in progress")
            return
        session.session_id = lead_id

    # ─────────────────────────────────────────
    # Guest submission
    # ─────────────────────────────────────────

    async def submit(self, name: str, contact_address: str, message: str) -> SubmitResult:
        name, contact_address, message = validate_submission(name, contact_address, message)
        try:
            return await self._submit(name, contact_address, message)
        except PersistenceFailure as e:
            self.alert_operators("Error: Chat Message Save Failed",
                                 f"Failed to save chat message for {contact_address}. Error: {e}")
            raise

    async def _submit(self, name: str, contact_address: str, message: str) -> SubmitResult:
        async with self._serialized(contact_address):
            session = await crud.session_get(self.db, contact_address)
            if session is None:
                session = ChatSession(
                    session_id=str(int(time.time() * 1000)),
                    name=name,
                    contact_address=contact_address,
                )
                logger.info(f"New chat session for {contact_address}")

            guest_msg = session.append(ChatMessage(
                text=message, sender=SENDER_GUEST, sender_label=name, timestamp=_now(),
            ))
            disposition = select_disposition(message, session.session_id, self.presence, self.trigger)
            effects: list[Effect] = []
            transition = None

            if disposition is Disposition.HANDOFF_REQUESTED:
                lead = await self._ensure_lead(name, contact_address, "Requested to talk to a human")
                self._adopt_lead_id(session, lead.id)
                if self.presence.is_engaged(session.session_id):
                    effects.append(Emit(guest_channel(session.session_id), EVT_MESSAGE,
                                        message_payload(guest_msg, session.session_id)))
                transition = self.coordinator.request_handoff(session, message)
                effects.extend(transition.effects)
                reply = ACK_TEXT
            elif disposition is Disposition.SUPPRESS:
                effects.append(Emit(guest_channel(session.session_id), EVT_MESSAGE,
                                    message_payload(guest_msg, session.session_id)))
                reply = SUPPRESSED_TEXT
            else:
                lead = await self._ensure_lead(name, contact_address, message)
                self._adopt_lead_id(session, lead.id)
                reply = await automated_reply(self.assistant, message, self.trigger)
                bot_msg = session.append(ChatMessage(
                    text=reply, sender=SENDER_ASSISTANT, sender_label=self.assistant_name, timestamp=_now(),
                ))
                payload = message_payload(bot_msg, session.session_id)
                effects.append(Emit(guest_channel(session.session_id), EVT_MESSAGE, payload))
                effects.append(Emit(ADMIN_POOL, EVT_MESSAGE, payload))
                effects.append(Emit(ADMIN_POOL, EVT_NEW_CHAT, {
                    "session_id": session.session_id,
                    "name": session.name,
                    "contact_address": session.contact_address,
                }))

            await self._save(session)
            if transition is not None:
                self.coordinator.commit(transition)
            self.coordinator.record_activity(session.session_id)
            await self.run_effects(effects)

        state = self.coordinator.state(session.session_id)
        return SubmitResult(
            message=reply,
            awaiting_human=disposition is Disposition.HANDOFF_REQUESTED and state is not HandoffState.ENGAGED,
            session_id=session.session_id,
            disposition=disposition,
        )

    async def guest_message(self, session_id: str, text: str) -> ChatMessage:
        """Realtime guest message: persist, relay to the session channel, slide the idle timer."""
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message is required")
        session = await self._locate(session_id)
        async with self._serialized(session.contact_address):
            session = await self._reload(session)
            msg = session.append(ChatMessage(
                text=text, sender=SENDER_GUEST, sender_label=session.name, timestamp=_now(),
            ))
            await self._save(session)
            self.coordinator.record_activity(session_id)
            await self.hub.publish(guest_channel(session_id), EVT_MESSAGE, message_payload(msg, session_id))
        return msg

    # ─────────────────────────────────────────
    # Admin actions
    # ─────────────────────────────────────────

    async def accept(self, session_id: str, admin_id: str) -> None:
        await self._locate(session_id)
        await self.run_effects(self.coordinator.accept(session_id, admin_id))

    async def admin_message(self, session_id: str, admin_id: str, text: str, sender_label: str = "Admin") -> bool:
        """Relay an admin reply to the guest.

        Only admins seated in the session's roster may post. A muted or unseated
        admin gets a `message-blocked` notice and the call returns False.
        """
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message is required")
        roster = self.presence.admins(session_id)
        if admin_id not in roster:
            reason = NOT_STAFFING_REASON
        elif roster[admin_id]:
            reason = MUTED_REASON
        else:
            reason = None
        if reason is not None:
            logger.info(f"Blocked message from admin {admin_id} in session {session_id}: {reason}")
            await self.hub.publish(admin_channel(admin_id), EVT_MESSAGE_BLOCKED,
                                   {"session_id": session_id, "reason": reason})
            return False

        session = await self._locate(session_id)
        async with self._serialized(session.contact_address):
            session = await self._reload(session)
            msg = session.append(ChatMessage(
                text=text, sender=SENDER_ADMIN, sender_label=sender_label or "Admin", timestamp=_now(),
            ))
            await self._save(session)
            self.coordinator.record_activity(session_id)
            await self.hub.publish(guest_channel(session_id), EVT_MESSAGE, message_payload(msg, session_id))
        return True

    async def manage(self, session_id: str, admin_id: str, action: str) -> None:
        await self.run_effects(self.coordinator.manage(session_id, admin_id, action))

    async def history(self, contact_address: str) -> ChatSession:
        contact_address = validate_contact(contact_address)
        try:
            session = await crud.session_get(self.db, contact_address)
        except PersistenceFailure as e:
            self.alert_operators("Error: Chat History Retrieval Failed",
                                 f"Failed to retrieve chat history for {contact_address}. Error: {e}")
            raise
        if session is None:
            raise NotFound(f"No chat history found for {contact_address}")
        return session

    async def list_sessions(self) -> list[ChatSession]:
        return await crud.session_list(self.db)

    async def update_contact(self, old_address: str, new_address: str) -> None:
        old_address, new_address = validate_contact(old_address), validate_contact(new_address)
        async with self._serialized(old_address), self._write_lock:
            updated = await crud.session_update_contact(self.db, old_address, new_address)
        if not updated:
            raise NotFound(f"Chat session not found for {old_address}")

    async def clear_all(self) -> int:
        async with self._write_lock:
            deleted = await crud.session_clear_all(self.db)
        self.coordinator.reset()
        return deleted

    def presence_snapshot(self) -> dict:
        """Engaged and awaiting sessions, plus whether each guest is connected right now."""
        snapshot = self.presence.snapshot()
        sessions = list(snapshot["engaged"]) + snapshot["awaiting"]
        snapshot["live"] = {sid: self.hub.is_live(sid) for sid in sessions}
        return snapshot

    async def _locate(self, session_id: str) -> ChatSession:
        session = await crud.session_get_by_id(self.db, session_id)
        if session is None:
            raise NotFound(f"Chat session {session_id} not found")
        return session

    async def _reload(self, session: ChatSession) -> ChatSession:
        fresh = await crud.session_get(self.db, session.contact_address)
        if fresh is None:
            raise NotFound(f"Chat session {session.session_id} not found")
        return fresh

    # ─────────────────────────────────────────
    # Effects
    # ─────────────────────────────────────────

    async def run_effects(self, effects: list[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, Emit):
                await self.hub.publish(effect.channel, effect.event, effect.data)
            elif isinstance(effect, Attach):
                self.hub.attach_admin(effect.admin_id, effect.session_id)
            elif isinstance(effect, Detach):
                self.hub.detach_admin(effect.admin_id, effect.session_id)
            elif isinstance(effect, Notify):
                self._spawn(self.notify(effect))
            elif isinstance(effect, EnsureLead):
                try:
                    await self._ensure_lead(effect.name, effect.contact_address, effect.note)
                except PersistenceFailure as e:
                    logger.error(f"Could not ensure lead for {effect.contact_address}: {e}")

    async def notify(self, effect: Notify) -> bool:
        """Send one outbound notification. Failures are logged and reported as False."""
        try:
            if effect.medium == "email":
                if self.email is None:
                    raise UpstreamUnavailable("email", "gateway not configured")
                await self.email.send(self.admin_emails, effect.subject, effect.body)
            elif effect.medium == "sms":
                if self.sms is None:
                    raise UpstreamUnavailable("sms", "gateway not configured")
                await self.sms.send(self.admin_phones, effect.body)
            else:
                logger.error(f"Unknown notification medium '{effect.medium}'")
                return False
        except UpstreamUnavailable as e:
            logger.error(f"{effect.medium} notification failed ({effect.subject}): {e.reason}")
            return False
        return True

    def alert_operators(self, subject: str, body: str) -> None:
        """Best-effort operator email; never raises."""
        self._spawn(self.notify(Notify(medium="email", subject=subject, body=body)))

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background notification crashed: {task.exception()!r}")

    async def drain(self) -> None:
        """Wait for all in-flight notifications to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        self.coordinator.reset()
        await self.drain()
        for client in (self.assistant, self.sms):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def _now() -> datetime:
    return datetime.now(timezone.utc)

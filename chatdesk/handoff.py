"""
Hand-off state machine.

Per session:  IDLE -> AWAITING_HUMAN -> ENGAGED -> IDLE

Transitions never perform I/O. Each returns the effects it implies (events to
fan out, notifications to send, leads to ensure, channel attachments) and the
caller executes them. Request transitions are two-phase: `request_handoff`
plans the change and mutates the in-memory session, and `commit` applies the
presence change once the caller has durably saved that session.

Timer expiries run in their own tasks and hand their effects to the
`on_effects` callback supplied at construction.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from chatdesk.config import ASSISTANT_NAME, GRACE_WINDOW_SECONDS, HANDOFF_TRIGGER, INACTIVITY_TIMEOUT_SECONDS
from chatdesk.db.models import SENDER_ASSISTANT, ChatMessage, ChatSession
from chatdesk.errors import NotFound, ValidationError
from chatdesk.presence import PresenceRegistry
from chatdesk.realtime.hub import (
    ADMIN_POOL,
    EVT_HANDOFF_DUPLICATE,
    EVT_HANDOFF_REQUEST,
    EVT_HUMAN_CONNECTED,
    EVT_INACTIVITY_DISCONNECT,
    EVT_MESSAGE,
    EVT_NO_STAFF,
    guest_channel,
)

logger = logging.getLogger(__name__)

ACK_TEXT = "Your request has been sent to a human agent. Please wait for a response."
HUMAN_CONNECTED_TEXT = "A human agent has joined the chat!"
NO_STAFF_TEXT = (
    "Sorry, it looks like our team is currently unavailable. "
    "We have your contact details and will follow up with you soon!"
)


def inactivity_text(trigger: str) -> str:
    return f"You've been disconnected due to inactivity. Type '{trigger}' to reconnect."


class HandoffState(str, Enum):
    IDLE = "idle"
    AWAITING_HUMAN = "awaiting_human"
    ENGAGED = "engaged"


class AdminAction(str, Enum):
    MUTE = "mute"
    UNMUTE = "unmute"
    REMOVE = "remove"


# ─────────────────────────────────────────────
# Effects
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class Emit:
    channel: str
    event: str
    data: dict


@dataclass(frozen=True)
class Notify:
    medium: str          # email | sms
    subject: str
    body: str


@dataclass(frozen=True)
class EnsureLead:
    name: str
    contact_address: str
    note: str


@dataclass(frozen=True)
class Attach:
    session_id: str
    admin_id: str


@dataclass(frozen=True)
class Detach:
    session_id: str
    admin_id: str


Effect = Union[Emit, Notify, EnsureLead, Attach, Detach]
EffectRunner = Callable[[list[Effect]], Awaitable[Any]]


@dataclass
class Transition:
    session_id: str
    effects: list[Effect] = field(default_factory=list)
    next_state: Optional[HandoffState] = None
    name: str = ""
    contact_address: str = ""


def message_payload(message: ChatMessage, session_id: str) -> dict:
    return {"session_id": session_id, **message.to_dict()}


# ─────────────────────────────────────────────
# Coordinator
# ─────────────────────────────────────────────

class HandoffCoordinator:
    def __init__(
        self,
        presence: PresenceRegistry,
        on_effects: EffectRunner,
        inactivity_timeout: float = INACTIVITY_TIMEOUT_SECONDS,
        grace_window: float = GRACE_WINDOW_SECONDS,
        trigger: str = HANDOFF_TRIGGER,
        assistant_name: str = ASSISTANT_NAME,
    ):
        self.presence = presence
        self.on_effects = on_effects
        self.inactivity_timeout = inactivity_timeout
        self.grace_window = grace_window
        self.trigger = trigger
        self.assistant_name = assistant_name

    def state(self, session_id: str) -> HandoffState:
        if self.presence.is_engaged(session_id):
            return HandoffState.ENGAGED
        if self.presence.is_awaiting(session_id):
            return HandoffState.AWAITING_HUMAN
        return HandoffState.IDLE

    # ── Guest asks for a human ─────────────────

    def request_handoff(self, session: ChatSession, message: str) -> Transition:
        """
        Plan IDLE -> AWAITING_HUMAN, or a repeat request while already escalated.

        Appends the acknowledgement to `session` and updates its notified flag.
        Outbound email/SMS are planned only once per distinct request.
        """
        sid = session.session_id
        current = self.state(sid)
        transition = Transition(session_id=sid, name=session.name, contact_address=session.contact_address)

        if current is HandoffState.IDLE:
            # A new, distinct request
            session.notified_handoff = False
            transition.next_state = HandoffState.AWAITING_HUMAN

        if not session.notified_handoff:
            transition.effects.append(Notify(
                medium="email",
                subject="Chat Request: Guest Wants to Speak with a Human",
                body=(f"Guest {session.name} ({session.contact_address}) has requested to speak "
                      f"with a human.\nSession: {sid}\nMessage: {message}"),
            ))
            transition.effects.append(Notify(
                medium="sms",
                subject="Chat Request",
                body=f"Chat Request\nGuest: {session.name} ({session.contact_address})\nMessage: {message}\nSession: {sid}",
            ))
            session.notified_handoff = True
            transition.effects.append(Emit(ADMIN_POOL, EVT_HANDOFF_REQUEST, {
                "session_id": sid,
                "name": session.name,
                "contact_address": session.contact_address,
                "message": message,
            }))
            logger.info(f"Hand-off requested for session {sid} (state={current.value})")
        else:
            transition.effects.append(Emit(ADMIN_POOL, EVT_HANDOFF_DUPLICATE, {
                "session_id": sid,
                "name": session.name,
                "contact_address": session.contact_address,
            }))
            logger.info(f"Repeat hand-off request for session {sid} (state={current.value}), not re-notifying")

        ack = session.append(ChatMessage(
            text=ACK_TEXT,
            sender=SENDER_ASSISTANT,
            sender_label=self.assistant_name,
            timestamp=datetime.now(timezone.utc),
        ))
        transition.effects.append(Emit(guest_channel(sid), EVT_MESSAGE, message_payload(ack, sid)))
        return transition

    def commit(self, transition: Transition) -> None:
        """Apply the presence change of a planned transition (after the session is saved)."""
        if transition.next_state is HandoffState.AWAITING_HUMAN and self.state(transition.session_id) is HandoffState.IDLE:
            timer = self._schedule(self.grace_window, self._grace_expired, transition.session_id)
            self.presence.mark_awaiting(
                transition.session_id, timer,
                name=transition.name, contact_address=transition.contact_address,
            )

    # ── Admin side ─────────────────────────────

    def accept(self, session_id: str, admin_id: str) -> list[Effect]:
        """AWAITING_HUMAN (or IDLE) -> ENGAGED; a second admin joining restarts the idle timer."""
        previous = self.state(session_id)
        self.presence.engage(session_id, self._schedule(self.inactivity_timeout, self._inactivity_expired, session_id))
        self.presence.add_admin(session_id, admin_id)
        logger.info(f"Admin {admin_id} accepted session {session_id} (was {previous.value})")
        # Emitted before attaching so only the guest side sees it
        return [
            Emit(guest_channel(session_id), EVT_HUMAN_CONNECTED, {"message": HUMAN_CONNECTED_TEXT}),
            Attach(session_id, admin_id),
        ]

    def record_activity(self, session_id: str) -> bool:
        """Slide the inactivity window for an engaged session. Returns False when not engaged."""
        if not self.presence.is_engaged(session_id):
            return False
        self.presence.set_inactivity_timer(
            session_id, self._schedule(self.inactivity_timeout, self._inactivity_expired, session_id)
        )
        return True

    def manage(self, session_id: str, admin_id: str, action: str) -> list[Effect]:
        """Mute, unmute or remove an admin. Leaves the session's top-level state unchanged."""
        try:
            act = AdminAction(action)
        except ValueError:
            raise ValidationError(f"Unknown admin action '{action}'") from None

        if act is AdminAction.REMOVE:
            if not self.presence.remove_admin(session_id, admin_id):
                raise NotFound(f"Admin {admin_id} is not in session {session_id}")
            logger.info(f"Admin {admin_id} removed from session {session_id}")
            return [Detach(session_id, admin_id)]

        if not self.presence.set_muted(session_id, admin_id, act is AdminAction.MUTE):
            raise NotFound(f"Admin {admin_id} is not in session {session_id}")
        logger.info(f"Admin {admin_id} {act.value}d in session {session_id}")
        return []

    # ── Timers ─────────────────────────────────

    def _schedule(self, delay: float, callback: Callable[[str], Awaitable[None]], session_id: str) -> asyncio.Task:
        async def _fire() -> None:
            await asyncio.sleep(delay)
            try:
                await callback(session_id)
            except Exception:
                logger.exception(f"Timer callback {callback.__name__} failed for session {session_id}")

        return asyncio.create_task(_fire(), name=f"{callback.__name__}:{session_id}")

    async def _grace_expired(self, session_id: str) -> None:
        # Observe the state now, not when the timer was scheduled.
        if self.state(session_id) is not HandoffState.AWAITING_HUMAN:
            return
        pending = self.presence.clear_awaiting(session_id)
        logger.info(f"No admin accepted session {session_id} within {self.grace_window}s, falling back")
        await self.on_effects([
            Emit(guest_channel(session_id), EVT_NO_STAFF, {"message": NO_STAFF_TEXT}),
            EnsureLead(pending.name, pending.contact_address, "Chat hand-off request missed"),
            Notify(
                medium="email",
                subject="Missed Chat Request: No Admin Available",
                body=(f"Guest {pending.name} ({pending.contact_address}) asked for a human but no admin "
                      f"accepted within {int(self.grace_window)} seconds.\nSession: {session_id}"),
            ),
        ])

    async def _inactivity_expired(self, session_id: str) -> None:
        if self.state(session_id) is not HandoffState.ENGAGED:
            return
        admins = self.presence.release(session_id)
        logger.info(f"Session {session_id} released after {self.inactivity_timeout}s of inactivity")
        await self.on_effects(
            [Detach(session_id, admin_id) for admin_id in admins]
            + [Emit(guest_channel(session_id), EVT_INACTIVITY_DISCONNECT, {"message": inactivity_text(self.trigger)})]
        )

    def reset(self) -> None:
        self.presence.reset()

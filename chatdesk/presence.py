"""
Presence registry: which chat sessions are awaiting a human, which are
human-engaged, and which admins staff each engaged session.

State lives only in process memory and is lost on restart. Each instance is
independent so tests can build an isolated registry per case. Access is
single-threaded (one asyncio loop); timers are any object with ``cancel()``,
normally the asyncio.Task that sleeps until expiry.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class AdminSeat:
    muted: bool = False


@dataclass
class ActiveChat:
    """A session staffed by a human; `timer` is the pending inactivity expiry."""
    timer: Any


@dataclass
class PendingRequest:
    """A hand-off request no admin has accepted yet; `timer` is the grace-window check."""
    timer: Any
    name: str = ""
    contact_address: str = ""


def _cancel(timer: Any) -> None:
    if timer is None:
        return
    try:
        current = asyncio.current_task()
    except RuntimeError:
        # No running loop
        current = None
    # A timer releasing its own session must not cancel itself mid-callback.
    if timer is current:
        return
    timer.cancel()


class PresenceRegistry:
    def __init__(self) -> None:
        self._active: dict[str, ActiveChat] = {}
        self._pending: dict[str, PendingRequest] = {}
        self._rosters: dict[str, dict[str, AdminSeat]] = {}

    # ── Hand-off requests ──────────────────────

    def is_awaiting(self, session_id: str) -> bool:
        return session_id in self._pending

    def mark_awaiting(self, session_id: str, timer: Any, name: str = "", contact_address: str = "") -> None:
        """Record a pending request, replacing (and cancelling) any earlier grace timer."""
        previous = self._pending.pop(session_id, None)
        if previous is not None:
            _cancel(previous.timer)
        self._pending[session_id] = PendingRequest(timer=timer, name=name, contact_address=contact_address)

    def clear_awaiting(self, session_id: str) -> Optional[PendingRequest]:
        pending = self._pending.pop(session_id, None)
        if pending is not None:
            _cancel(pending.timer)
        return pending

    # ── Engagement ─────────────────────────────

    def is_engaged(self, session_id: str) -> bool:
        return session_id in self._active

    def engage(self, session_id: str, timer: Any) -> None:
        """Mark a session human-engaged with a fresh inactivity timer."""
        self.clear_awaiting(session_id)
        self.set_inactivity_timer(session_id, timer)

    def set_inactivity_timer(self, session_id: str, timer: Any) -> None:
        """Install `timer` as the session's only inactivity timer, cancelling the prior one."""
        current = self._active.get(session_id)
        if current is not None:
            _cancel(current.timer)
            current.timer = timer
        else:
            self._active[session_id] = ActiveChat(timer=timer)

    def release(self, session_id: str) -> list[str]:
        """End engagement: cancel timers, drop the entry and its roster. Returns the removed admin ids."""
        self.clear_awaiting(session_id)
        active = self._active.pop(session_id, None)
        if active is not None:
            _cancel(active.timer)
        roster = self._rosters.pop(session_id, {})
        return list(roster)

    # ── Admin roster ───────────────────────────

    def add_admin(self, session_id: str, admin_id: str) -> None:
        """Seat an admin unmuted. An admin already seated keeps their mute flag."""
        self._rosters.setdefault(session_id, {}).setdefault(admin_id, AdminSeat(muted=False))

    def remove_admin(self, session_id: str, admin_id: str) -> bool:
        roster = self._rosters.get(session_id)
        if roster is None or admin_id not in roster:
            return False
        del roster[admin_id]
        if not roster:
            del self._rosters[session_id]
        return True

    def set_muted(self, session_id: str, admin_id: str, muted: bool) -> bool:
        seat = self._rosters.get(session_id, {}).get(admin_id)
        if seat is None:
            return False
        seat.muted = muted
        return True

    def is_muted(self, session_id: str, admin_id: str) -> bool:
        seat = self._rosters.get(session_id, {}).get(admin_id)
        return seat is not None and seat.muted

    def admins(self, session_id: str) -> dict[str, bool]:
        """Snapshot of admin_id -> muted for one session."""
        return {aid: seat.muted for aid, seat in self._rosters.get(session_id, {}).items()}

    def snapshot(self) -> dict:
        return {
            "engaged": {sid: self.admins(sid) for sid in self._active},
            "awaiting": list(self._pending),
        }

    def reset(self) -> None:
        """Drop all state and cancel every timer."""
        for sid in set(self._active) | set(self._pending):
            self.release(sid)
        self._rosters.clear()
        logger.info("Presence registry reset.")

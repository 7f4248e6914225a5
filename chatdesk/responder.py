"""
Responder selection: decide how an inbound guest message is answered.

The hand-off trigger always wins. Otherwise a human-engaged session
suppresses the automated path, and everything else goes to the assistant.
"""
import logging
from enum import Enum
from typing import Optional, Protocol

from chatdesk.config import HANDOFF_TRIGGER
from chatdesk.errors import UpstreamUnavailable
from chatdesk.presence import PresenceRegistry

logger = logging.getLogger(__name__)


class Disposition(str, Enum):
    SUPPRESS = "suppress"
    HANDOFF_REQUESTED = "handoff_requested"
    AUTOMATED_REPLY = "automated_reply"


class Assistant(Protocol):
    async def reply(self, text: str) -> str: ...


def fallback_reply(trigger: str = HANDOFF_TRIGGER) -> str:
    return (
        "I'm sorry, I'm having trouble processing your request right now. "
        f"Please try again later or type '{trigger}' to reach a member of our team."
    )


def wants_human(text: str, trigger: str = HANDOFF_TRIGGER) -> bool:
    return trigger.lower() in text.lower()


def select_disposition(
    text: str,
    session_id: str,
    presence: PresenceRegistry,
    trigger: str = HANDOFF_TRIGGER,
) -> Disposition:
    if wants_human(text, trigger):
        return Disposition.HANDOFF_REQUESTED
    if presence.is_engaged(session_id):
        return Disposition.SUPPRESS
    return Disposition.AUTOMATED_REPLY


async def automated_reply(
    assistant: Optional[Assistant],
    text: str,
    trigger: str = HANDOFF_TRIGGER,
) -> str:
    """Ask the assistant for a reply; degrade to the fixed fallback on any upstream failure."""
    if assistant is None:
        logger.warning("Assistant not configured, using fallback reply")
        return fallback_reply(trigger)
    try:
        return await assistant.reply(text)
    except UpstreamUnavailable as e:
        logger.warning(f"Assistant unavailable, using fallback reply: {e.reason}")
        return fallback_reply(trigger)

"""
Data models (dataclasses) for ChatDesk.
These are plain Python objects used across the store, service, and API layers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


SENDER_GUEST = "guest"
SENDER_ASSISTANT = "assistant"
SENDER_ADMIN = "admin"


@dataclass(frozen=True)
class ChatMessage:
    text: str
    sender: str          # guest | assistant | admin
    sender_label: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "sender": self.sender,
            "sender_label": self.sender_label,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ChatSession:
    """
    One guest conversation, keyed by contact address.

    `session_id` starts as a timestamp token and is replaced by the Lead id
    once the guest becomes a tracked contact. `messages` is append-only;
    `persisted_count` is how many of them the store already holds.
    """
    session_id: str
    name: str
    contact_address: str
    messages: list[ChatMessage] = field(default_factory=list)
    notified_handoff: bool = False
    id: Optional[int] = None               # store row id, None until first save
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    persisted_count: int = field(default=0, repr=False)

    def append(self, message: ChatMessage) -> ChatMessage:
        self.messages.append(message)
        return message

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "name": self.name,
            "contact_address": self.contact_address,
            "notified_handoff": self.notified_handoff,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class Lead:
    id: str
    name: str
    email: str
    source: str          # Contact Form | Quote Request | Chat Widget
    date: str            # YYYY-MM-DD
    status: str          # New | Contacted | Qualified | Converted
    message: Optional[str]
    created_at: datetime

"""
Shared fixtures for ChatDesk tests.

Configuration is read at import time, so the environment is set before any
chatdesk module is imported. Every test gets its own in-memory database and
its own hub/presence state; gateways and the assistant are recording fakes.
"""
import os

os.environ["CHATDESK_DB"] = ":memory:"
os.environ["CHATDESK_ADMIN_TOKEN"] = "test-admin-token"

import aiosqlite
import pytest
import pytest_asyncio

from chatdesk.db.database import init_schema
from chatdesk.errors import UpstreamUnavailable
from chatdesk.service import ChatService

ADMIN_TOKEN = "test-admin-token"
TRIGGER = "speak to admin"
# Short timers keep scenario tests fast; they are well apart so ordering is stable.
GRACE_WINDOW = 0.2
INACTIVITY_TIMEOUT = 0.3


class RecordingConnection:
    """Hub connection that records every event it receives."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.admin_id = None
        self.events: list[tuple[str, dict]] = []

    async def send(self, event: str, data: dict) -> None:
        self.events.append((event, data))

    def named(self, event: str) -> list[dict]:
        return [data for name, data in self.events if name == event]


class BrokenConnection(RecordingConnection):
    async def send(self, event: str, data: dict) -> None:
        raise ConnectionResetError("socket closed")


class RecordingEmail:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[dict] = []

    async def send(self, recipients, subject: str, body: str) -> int:
        if self.fail:
            raise UpstreamUnavailable("email", "smtp down")
        self.sent.append({"to": list(recipients), "subject": subject, "body": body})
        return len(self.sent[-1]["to"])


class RecordingSms:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[dict] = []

    async def send(self, numbers, body: str) -> int:
        if self.fail:
            raise UpstreamUnavailable("sms", "twilio down")
        self.sent.append({"to": list(numbers), "body": body})
        return len(self.sent[-1]["to"])


class FakeAssistant:
    def __init__(self, answer: str = "Our vest bags come 1000 to a case.", fail: bool = False):
        self.answer = answer
        self.fail = fail
        self.prompts: list[str] = []

    async def reply(self, text: str) -> str:
        self.prompts.append(text)
        if self.fail:
            raise UpstreamUnavailable("assistant", "rate limited")
        return self.answer


@pytest_asyncio.fixture
async def db():
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await init_schema(conn)
    yield conn
    await conn.close()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def sms():
    return RecordingSms()


@pytest.fixture
def assistant():
    return FakeAssistant()


@pytest_asyncio.fixture
async def service(db, email, sms, assistant):
    svc = ChatService(
        db,
        assistant=assistant,
        email=email,
        sms=sms,
        admin_emails=["ops@example.com"],
        admin_phones=["+15550001111"],
        trigger=TRIGGER,
        inactivity_timeout=INACTIVITY_TIMEOUT,
        grace_window=GRACE_WINDOW,
    )
    yield svc
    await svc.shutdown()

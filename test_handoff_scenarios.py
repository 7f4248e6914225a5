"""
End-to-end hand-off scenarios through ChatService with fake gateways.

Timers are shortened in conftest (GRACE_WINDOW, INACTIVITY_TIMEOUT); sleeps
below are expressed relative to them.
"""
import asyncio

import pytest

from chatdesk.errors import NotFound, PersistenceFailure, ValidationError
from chatdesk.handoff import ACK_TEXT, HUMAN_CONNECTED_TEXT, NO_STAFF_TEXT, HandoffState
from chatdesk.realtime.hub import ADMIN_POOL, admin_channel, guest_channel
from chatdesk.responder import Disposition, fallback_reply
from chatdesk.service import MUTED_REASON, NOT_STAFFING_REASON, SUPPRESSED_TEXT, ChatService
from conftest import (
    GRACE_WINDOW,
    INACTIVITY_TIMEOUT,
    TRIGGER,
    FakeAssistant,
    RecordingConnection,
    RecordingEmail,
    RecordingSms,
)

NAME = "Ann"
EMAIL = "ann@example.com"


def _admin(service: ChatService, admin_id: str = "alice") -> RecordingConnection:
    conn = RecordingConnection(f"conn-{admin_id}")
    conn.admin_id = admin_id
    service.hub.subscribe(conn, ADMIN_POOL)
    service.hub.subscribe(conn, admin_channel(admin_id))
    return conn


async def _open_chat(service: ChatService) -> tuple[str, RecordingConnection]:
    """First contact plus a guest socket joined to the session channel."""
    result = await service.submit(NAME, EMAIL, "Hello, do you sell compostable cups?")
    guest = RecordingConnection("guest")
    service.hub.subscribe(guest, guest_channel(result.session_id))
    return result.session_id, guest


# ─────────────────────────────────────────────
# Automated replies
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_first_message_gets_automated_reply_and_mirrors_to_admins(service, assistant):
    admin = _admin(service)
    result = await service.submit(NAME, EMAIL, "What sizes of vest bags do you have?")

    assert result.disposition is Disposition.AUTOMATED_REPLY
    assert result.message == assistant.answer
    assert result.awaiting_human is False
    assert assistant.prompts == ["What sizes of vest bags do you have?"]
    assert admin.named("message")[0]["text"] == assistant.answer
    assert admin.named("new-chat")[0]["contact_address"] == EMAIL

    session = await service.history(EMAIL)
    assert [m.sender for m in session.messages] == ["guest", "assistant"]
    assert session.session_id == result.session_id


@pytest.mark.asyncio
async def test_assistant_failure_falls_back_to_canned_reply(service, assistant):
    assistant.fail = True
    result = await service.submit(NAME, EMAIL, "Any discounts?")
    assert result.disposition is Disposition.AUTOMATED_REPLY
    assert result.message == fallback_reply(TRIGGER)


@pytest.mark.asyncio
async def test_submission_validation(service):
    with pytest.raises(ValidationError):
        await service.submit("", EMAIL, "hi")
    with pytest.raises(ValidationError):
        await service.submit(NAME, "not-an-email", "hi")
    with pytest.raises(ValidationError):
        await service.submit(NAME, EMAIL, "   ")
    assert await service.list_sessions() == []


@pytest.mark.asyncio
async def test_concurrent_submissions_for_one_contact_keep_one_ordered_log(service):
    await asyncio.gather(
        service.submit(NAME, EMAIL, "first"),
        service.submit(NAME, EMAIL, "second"),
    )
    session = await service.history(EMAIL)
    assert [m.sender for m in session.messages] == ["guest", "assistant", "guest", "assistant"]
    assert {session.messages[0].text, session.messages[2].text} == {"first", "second"}
    assert len(await service.list_sessions()) == 1


# ─────────────────────────────────────────────
# Hand-off request and acceptance
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_handoff_request_notifies_admins_once(service, email, sms, assistant):
    sid, guest = await _open_chat(service)
    admin = _admin(service)
    prompts_before = list(assistant.prompts)

    result = await service.submit(NAME, EMAIL, "Can I SPEAK TO ADMIN please")
    assert result.disposition is Disposition.HANDOFF_REQUESTED
    assert result.awaiting_human is True
    assert result.message == ACK_TEXT
    assert assistant.prompts == prompts_before
    assert service.coordinator.state(sid) is HandoffState.AWAITING_HUMAN
    assert admin.named("chat-request")[0]["session_id"] == sid
    assert guest.named("message")[-1]["text"] == ACK_TEXT
    assert guest.named("chat-request") == []

    # Repeat while still awaiting: admins see a notice, no new email/SMS
    await service.submit(NAME, EMAIL, TRIGGER)
    await service.drain()
    assert len(admin.named("chat-request")) == 1
    assert len(admin.named("chat-notification")) == 1
    assert len(email.sent) == 1
    assert email.sent[0]["to"] == ["ops@example.com"]
    assert len(sms.sent) == 1
    assert sms.sent[0]["to"] == ["+15550001111"]

    session = await service.history(EMAIL)
    assert session.notified_handoff is True
    assert [m.text for m in session.messages].count(ACK_TEXT) == 2


@pytest.mark.asyncio
async def test_accept_engages_and_suppresses_automated_replies(service, assistant):
    sid, guest = await _open_chat(service)
    await service.submit(NAME, EMAIL, TRIGGER)
    admin = _admin(service)

    await service.accept(sid, "alice")
    assert service.coordinator.state(sid) is HandoffState.ENGAGED
    assert guest.named("human-connected") == [{"message": HUMAN_CONNECTED_TEXT}]
    assert admin.named("human-connected") == []

    prompts_before = list(assistant.prompts)
    result = await service.submit(NAME, EMAIL, "Thanks for joining")
    assert result.disposition is Disposition.SUPPRESS
    assert result.message == SUPPRESSED_TEXT
    assert assistant.prompts == prompts_before
    assert admin.named("message")[-1]["text"] == "Thanks for joining"

    # The grace timer was cancelled by the acceptance
    await asyncio.sleep(GRACE_WINDOW + 0.05)
    assert guest.named("no-admins") == []


@pytest.mark.asyncio
async def test_admin_and_guest_messages_relay_both_ways(service):
    sid, guest = await _open_chat(service)
    admin = _admin(service)
    await service.accept(sid, "alice")

    assert await service.admin_message(sid, "alice", "Hi Ann, how can I help?", sender_label="Alice") is True
    await service.guest_message(sid, "I need 5000 cups")

    assert guest.named("message")[-2]["text"] == "Hi Ann, how can I help?"
    assert guest.named("message")[-2]["sender_label"] == "Alice"
    assert admin.named("message")[-1]["text"] == "I need 5000 cups"
    session = await service.history(EMAIL)
    assert [m.sender for m in session.messages][-2:] == ["admin", "guest"]


@pytest.mark.asyncio
async def test_accept_unknown_session(service):
    with pytest.raises(NotFound):
        await service.accept("no-such-session", "alice")


# ─────────────────────────────────────────────
# Timers
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_grace_window_expiry_falls_back_and_rearms(service, email, sms):
    sid, guest = await _open_chat(service)
    await service.submit(NAME, EMAIL, TRIGGER)

    await asyncio.sleep(GRACE_WINDOW + 0.15)
    await service.drain()
    assert guest.named("no-admins") == [{"message": NO_STAFF_TEXT}]
    assert service.coordinator.state(sid) is HandoffState.IDLE
    subjects = [m["subject"] for m in email.sent]
    assert any(s.startswith("Missed Chat Request") for s in subjects)

    # A later request is a new, distinct one and notifies again
    await service.submit(NAME, EMAIL, TRIGGER)
    await service.drain()
    assert len(sms.sent) == 2
    assert service.coordinator.state(sid) is HandoffState.AWAITING_HUMAN


@pytest.mark.asyncio
async def test_inactivity_releases_session_once(service):
    sid, guest = await _open_chat(service)
    admin = _admin(service)
    await service.accept(sid, "alice")

    await asyncio.sleep(INACTIVITY_TIMEOUT + 0.15)
    assert len(guest.named("inactivity-disconnect")) == 1
    assert TRIGGER in guest.named("inactivity-disconnect")[0]["message"]
    assert admin.named("inactivity-disconnect") == []
    assert service.coordinator.state(sid) is HandoffState.IDLE

    # Admin is detached: guest traffic no longer reaches it
    await service.guest_message(sid, "hello?")
    assert all(m["text"] != "hello?" for m in admin.named("message"))

    # Back to automated replies
    result = await service.submit(NAME, EMAIL, "Anyone there?")
    assert result.disposition is Disposition.AUTOMATED_REPLY


@pytest.mark.asyncio
async def test_activity_replaces_the_inactivity_timer(service):
    sid, guest = await _open_chat(service)
    _admin(service)
    await service.accept(sid, "alice")

    await asyncio.sleep(INACTIVITY_TIMEOUT * 0.66)
    await service.admin_message(sid, "alice", "Still here")
    await asyncio.sleep(INACTIVITY_TIMEOUT * 0.66)
    assert guest.named("inactivity-disconnect") == []
    assert service.coordinator.state(sid) is HandoffState.ENGAGED

    await asyncio.sleep(INACTIVITY_TIMEOUT * 0.5)
    assert len(guest.named("inactivity-disconnect")) == 1


# ─────────────────────────────────────────────
# Admin roster management
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_muted_admin_is_blocked(service):
    sid, guest = await _open_chat(service)
    alice = _admin(service, "alice")
    await service.accept(sid, "alice")
    before = len(guest.named("message"))

    await service.manage(sid, "alice", "mute")
    assert await service.admin_message(sid, "alice", "you should not see this") is False
    assert len(guest.named("message")) == before
    assert alice.named("message-blocked")[0]["session_id"] == sid
    assert service.coordinator.state(sid) is HandoffState.ENGAGED

    await service.manage(sid, "alice", "unmute")
    assert await service.admin_message(sid, "alice", "back again") is True
    assert guest.named("message")[-1]["text"] == "back again"


@pytest.mark.asyncio
async def test_remove_admin_detaches_it(service):
    sid, guest = await _open_chat(service)
    alice = _admin(service, "alice")
    _admin(service, "bob")
    await service.accept(sid, "alice")
    await service.accept(sid, "bob")

    await service.manage(sid, "alice", "remove")
    await service.guest_message(sid, "who is here?")
    assert all(m["text"] != "who is here?" for m in alice.named("message"))
    assert service.presence.admins(sid) == {"bob": False}
    assert service.coordinator.state(sid) is HandoffState.ENGAGED


@pytest.mark.asyncio
async def test_manage_rejects_unknown_admin_and_action(service):
    sid, _ = await _open_chat(service)
    await service.accept(sid, "alice")
    with pytest.raises(NotFound):
        await service.manage(sid, "mallory", "mute")
    with pytest.raises(ValidationError):
        await service.manage(sid, "alice", "promote")


# ─────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_gateway_failures_do_not_abort_handoff(db):
    service = ChatService(
        db,
        assistant=FakeAssistant(),
        email=RecordingEmail(fail=True),
        sms=RecordingSms(fail=True),
        admin_emails=["ops@example.com"],
        admin_phones=["+15550001111"],
        trigger=TRIGGER,
        inactivity_timeout=INACTIVITY_TIMEOUT,
        grace_window=GRACE_WINDOW,
    )
    try:
        admin = _admin(service)
        result = await service.submit(NAME, EMAIL, TRIGGER)
        await service.drain()
        assert result.awaiting_human is True
        assert len(admin.named("chat-request")) == 1
        assert service.coordinator.state(result.session_id) is HandoffState.AWAITING_HUMAN
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_persistence_failure_alerts_operators_and_emits_nothing(service, db, email):
    admin = _admin(service)
    await db.execute("DROP TABLE chat_messages")
    await db.commit()

    with pytest.raises(PersistenceFailure):
        await service.submit(NAME, EMAIL, "hello")
    await service.drain()

    assert admin.events == []
    assert [m["subject"] for m in email.sent] == ["Error: Chat Message Save Failed"]


@pytest.mark.asyncio
async def test_history_unknown_contact(service):
    with pytest.raises(NotFound):
        await service.history("nobody@example.com")


# ─────────────────────────────────────────────
# Notification idempotence across states
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_automated_reply_leaves_handoff_unnotified(service, email, sms):
    await service.submit(NAME, EMAIL, "hello")
    await service.drain()
    session = await service.history(EMAIL)
    assert session.notified_handoff is False
    assert email.sent == []
    assert sms.sent == []


@pytest.mark.asyncio
async def test_repeat_trigger_while_engaged_does_not_renotify(service, email, sms):
    sid, guest = await _open_chat(service)
    admin = _admin(service)
    await service.submit(NAME, EMAIL, TRIGGER)
    await service.accept(sid, "alice")

    result = await service.submit(NAME, EMAIL, TRIGGER)
    await service.drain()
    assert result.session_id == sid
    assert result.awaiting_human is False
    assert service.coordinator.state(sid) is HandoffState.ENGAGED
    assert len(admin.named("chat-notification")) == 1
    assert len(email.sent) == 1
    assert len(sms.sent) == 1


@pytest.mark.asyncio
async def test_accept_just_before_grace_deadline(service, email):
    sid, guest = await _open_chat(service)
    await service.submit(NAME, EMAIL, TRIGGER)

    await asyncio.sleep(GRACE_WINDOW * 0.9)
    await service.accept(sid, "alice")
    await asyncio.sleep(GRACE_WINDOW * 0.5)
    await service.drain()

    assert guest.named("no-admins") == []
    assert not any(m["subject"].startswith("Missed Chat Request") for m in email.sent)
    assert service.coordinator.state(sid) is HandoffState.ENGAGED


@pytest.mark.asyncio
async def test_contact_rekey_keeps_session_and_notification_state(service, email, sms):
    sid, guest = await _open_chat(service)
    await service.submit(NAME, EMAIL, TRIGGER)
    await service.accept(sid, "alice")

    await service.update_contact(EMAIL, "ann@new.example.com")
    result = await service.submit(NAME, "ann@new.example.com", TRIGGER)
    await service.drain()

    assert result.session_id == sid
    assert service.coordinator.state(sid) is HandoffState.ENGAGED
    assert len(email.sent) == 1
    assert len(sms.sent) == 1


# ─────────────────────────────────────────────
# Roster enforcement
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reaccept_does_not_clear_mute(service):
    sid, guest = await _open_chat(service)
    alice = _admin(service, "alice")
    _admin(service, "bob")
    await service.accept(sid, "alice")
    await service.accept(sid, "bob")
    await service.manage(sid, "alice", "mute")

    await service.accept(sid, "alice")
    assert await service.admin_message(sid, "alice", "sneaking back in") is False
    assert alice.named("message-blocked")[-1]["reason"] == MUTED_REASON
    assert service.presence.admins(sid) == {"alice": True, "bob": False}
    assert all(m["text"] != "sneaking back in" for m in guest.named("message"))


@pytest.mark.asyncio
async def test_removed_admin_cannot_post(service):
    sid, guest = await _open_chat(service)
    alice = _admin(service, "alice")
    _admin(service, "bob")
    await service.accept(sid, "alice")
    await service.accept(sid, "bob")
    await service.manage(sid, "alice", "remove")

    assert await service.admin_message(sid, "alice", "still here") is False
    assert alice.named("message-blocked")[-1]["reason"] == NOT_STAFFING_REASON
    assert all(m["text"] != "still here" for m in guest.named("message"))
    session = await service.history(EMAIL)
    assert all(m.text != "still here" for m in session.messages)


@pytest.mark.asyncio
async def test_admin_who_never_accepted_cannot_post(service):
    sid, guest = await _open_chat(service)
    mallory = _admin(service, "mallory")
    assert await service.admin_message(sid, "mallory", "hi") is False
    assert mallory.named("message-blocked")[0]["session_id"] == sid
    assert all(m["text"] != "hi" for m in guest.named("message"))


# ─────────────────────────────────────────────
# Housekeeping
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_contact_locks_are_released_when_idle(service):
    await asyncio.gather(
        service.submit(NAME, EMAIL, "first"),
        service.submit(NAME, EMAIL, "second"),
        service.submit("Bo", "bo@example.com", "hello"),
    )
    await service.update_contact("bo@example.com", "bo@new.example.com")
    assert service._session_locks == {}


@pytest.mark.asyncio
async def test_presence_snapshot_reports_live_guests(service):
    sid, guest = await _open_chat(service)
    await service.submit(NAME, EMAIL, TRIGGER)
    assert service.presence_snapshot()["live"] == {sid: True}
    service.hub.drop(guest)
    assert service.presence_snapshot()["live"] == {sid: False}

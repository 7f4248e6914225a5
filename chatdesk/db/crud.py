"""
CRUD operations for ChatDesk.
All functions are async and receive the aiosqlite connection from the caller.
Any sqlite error is rolled back and surfaced as PersistenceFailure.
"""
import uuid
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from chatdesk.db.models import ChatMessage, ChatSession, Lead
from chatdesk.errors import PersistenceFailure, ValidationError

logger = logging.getLogger(__name__)

LEAD_SOURCE_CHAT = "Chat Widget"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def normalize_contact(address: str) -> str:
    return address.strip().lower()


async def _rollback_quietly(db: aiosqlite.Connection) -> None:
    try:
        await db.rollback()
    except sqlite3.Error as e:
        logger.error(f"Rollback failed: {e}")


# ─────────────────────────────────────────────
# Chat sessions
# ─────────────────────────────────────────────

async def session_get(db: aiosqlite.Connection, contact_address: str) -> Optional[ChatSession]:
    """Load the session for a contact address, with its full ordered message log."""
    try:
        async with db.execute(
            "SELECT * FROM chat_sessions WHERE contact_address = ?",
            (normalize_contact(contact_address),),
        ) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        return await _row_to_session(db, row)
    except sqlite3.Error as e:
        raise PersistenceFailure("session_get", e) from e


async def session_get_by_id(db: aiosqlite.Connection, session_id: str) -> Optional[ChatSession]:
    try:
        async with db.execute(
            "SELECT * FROM chat_sessions WHERE session_id = ? ORDER BY id DESC LIMIT 1",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        return await _row_to_session(db, row)
    except sqlite3.Error as e:
        raise PersistenceFailure("session_get_by_id", e) from e


async def session_list(db: aiosqlite.Connection) -> list[ChatSession]:
    try:
        async with db.execute("SELECT * FROM chat_sessions ORDER BY updated_at DESC") as cur:
            rows = await cur.fetchall()
        return [await _row_to_session(db, r) for r in rows]
    except sqlite3.Error as e:
        raise PersistenceFailure("session_list", e) from e


async def session_save(db: aiosqlite.Connection, session: ChatSession) -> ChatSession:
    """
    Upsert the session row and insert the messages appended since the last save.

    Runs as one transaction: either the header and every new message land,
    or nothing does and PersistenceFailure is raised.
    """
    now = _now()
    new_messages = session.messages[session.persisted_count:]
    try:
        if session.id is None:
            async with db.execute(
                "INSERT INTO chat_sessions (session_id, name, contact_address, notified_handoff, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (session.session_id, session.name, normalize_contact(session.contact_address),
                 int(session.notified_handoff), now, now),
            ) as cur:
                row_id = cur.lastrowid
        else:
            row_id = session.id
            await db.execute(
                "UPDATE chat_sessions SET session_id = ?, name = ?, contact_address = ?, "
                "notified_handoff = ?, updated_at = ? WHERE id = ?",
                (session.session_id, session.name, normalize_contact(session.contact_address),
                 int(session.notified_handoff), now, row_id),
            )
        await db.executemany(
            "INSERT INTO chat_messages (chat_id, seq, text, sender, sender_label, timestamp) VALUES (?, ?, ?, ?, ?, ?)",
            [
                (row_id, session.persisted_count + i + 1, m.text, m.sender, m.sender_label, m.timestamp.isoformat())
                for i, m in enumerate(new_messages)
            ],
        )
        await db.commit()
    except sqlite3.Error as e:
        await _rollback_quietly(db)
        logger.error(f"Failed to save chat session {session.session_id}: {type(e).__name__}: {e}")
        raise PersistenceFailure("session_save", e) from e

    if session.id is None:
        session.id = row_id
        session.created_at = _parse_dt(now)
    session.updated_at = _parse_dt(now)
    session.persisted_count = len(session.messages)
    logger.debug(f"Chat session saved: {session.session_id} (+{len(new_messages)} messages)")
    return session


async def session_update_contact(db: aiosqlite.Connection, old_address: str, new_address: str) -> bool:
    """
    Re-key a session to a new contact address. Returns False if the old address is unknown.

    The lead behind the session follows it in the same transaction, unless the
    new address already has a lead of its own.
    """
    old, new = normalize_contact(old_address), normalize_contact(new_address)
    try:
        async with db.execute(
            "UPDATE chat_sessions SET contact_address = ?, updated_at = ? WHERE contact_address = ?",
            (new, _now(), old),
        ) as cur:
            updated = cur.rowcount
        if updated:
            await db.execute(
                "UPDATE leads SET email = ? WHERE email = ? "
                "AND NOT EXISTS (SELECT 1 FROM leads WHERE email = ?)",
                (new, old, new),
            )
        await db.commit()
    except sqlite3.IntegrityError as e:
        await _rollback_quietly(db)
        raise ValidationError(f"A chat session already exists for {new_address}") from e
    except sqlite3.Error as e:
        await _rollback_quietly(db)
        raise PersistenceFailure("session_update_contact", e) from e
    return updated > 0


async def session_clear_all(db: aiosqlite.Connection) -> int:
    """Delete every chat session and message. Returns the number of sessions removed."""
    try:
        await db.execute("DELETE FROM chat_messages")
        async with db.execute("DELETE FROM chat_sessions") as cur:
            deleted = cur.rowcount
        await db.commit()
    except sqlite3.Error as e:
        await _rollback_quietly(db)
        raise PersistenceFailure("session_clear_all", e) from e
    logger.info(f"Cleared {deleted} chat sessions.")
    return deleted


async def _row_to_session(db: aiosqlite.Connection, row: aiosqlite.Row) -> ChatSession:
    async with db.execute(
        "SELECT * FROM chat_messages WHERE chat_id = ? ORDER BY seq ASC", (row["id"],)
    ) as cur:
        msg_rows = await cur.fetchall()
    messages = [
        ChatMessage(
            text=m["text"],
            sender=m["sender"],
            sender_label=m["sender_label"],
            timestamp=_parse_dt(m["timestamp"]),
        )
        for m in msg_rows
    ]
    return ChatSession(
        id=row["id"],
        session_id=row["session_id"],
        name=row["name"],
        contact_address=row["contact_address"],
        messages=messages,
        notified_handoff=bool(row["notified_handoff"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        persisted_count=len(messages),
    )


# ─────────────────────────────────────────────
# Leads
# ─────────────────────────────────────────────

async def lead_find_by_email(db: aiosqlite.Connection, email: str) -> Optional[Lead]:
    try:
        async with db.execute("SELECT * FROM leads WHERE email = ?", (normalize_contact(email),)) as cur:
            row = await cur.fetchone()
    except sqlite3.Error as e:
        raise PersistenceFailure("lead_find_by_email", e) from e
    return _row_to_lead(row) if row else None


async def lead_get_or_create(
    db: aiosqlite.Connection,
    name: str,
    email: str,
    message: Optional[str] = None,
    source: str = LEAD_SOURCE_CHAT,
) -> tuple[Lead, bool]:
    """
    Return (lead, created). Looks the lead up by email first; the unique index
    on email turns a concurrent create into a lookup of the winner's row.
    """
    existing = await lead_find_by_email(db, email)
    if existing is not None:
        return existing, False

    lid = uuid.uuid4().hex
    now = _now()
    email = normalize_contact(email)
    try:
        await db.execute(
            "INSERT INTO leads (id, name, email, source, date, status, message, created_at) "
            "VALUES (?, ?, ?, ?, ?, 'New', ?, ?)",
            (lid, name, email, source, now[:10], message, now),
        )
        await db.commit()
    except sqlite3.IntegrityError as e:
        await _rollback_quietly(db)
        logger.info(f"Lead for '{email}' creation raced (UNIQUE constraint), fetching existing: {e}")
        existing = await lead_find_by_email(db, email)
        if existing is not None:
            return existing, False
        raise PersistenceFailure("lead_get_or_create", e) from e
    except sqlite3.Error as e:
        await _rollback_quietly(db)
        raise PersistenceFailure("lead_get_or_create", e) from e

    logger.info(f"Lead created: {lid} for {email} via {source}")
    return Lead(id=lid, name=name, email=email, source=source, date=now[:10],
                status="New", message=message, created_at=_parse_dt(now)), True


def _row_to_lead(row: aiosqlite.Row) -> Lead:
    return Lead(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        source=row["source"],
        date=row["date"],
        status=row["status"],
        message=row["message"],
        created_at=_parse_dt(row["created_at"]),
    )

"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from chatdesk import config

logger = logging.getLogger(__name__)

# Module-level shared connection (single connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                path = config.DB_PATH
                if path != ":memory:":
                    Path(path).parent.mkdir(parents=True, exist_ok=True)
                _db = await open_db(path)
                logger.info(f"Database initialized at {path}")
    return _db


async def open_db(path: str) -> aiosqlite.Connection:
    """Open a new connection with the pragmas and schema the store expects."""
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    # WAL mode: allows concurrent reads while writing
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await init_schema(db)
    return db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Chat session: one per guest contact address
        -- session_id is mutable (timestamp token, later the Lead id)
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS chat_sessions (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id       TEXT NOT NULL,
            name             TEXT NOT NULL,
            contact_address  TEXT NOT NULL UNIQUE,
            notified_handoff INTEGER NOT NULL DEFAULT 0,
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_chat_sessions_session_id
            ON chat_sessions(session_id);

        -- ----------------------------------------------------------------
        -- Chat message: append-only log, seq is 1-based per session
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS chat_messages (
            chat_id      INTEGER NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
            seq          INTEGER NOT NULL,
            text         TEXT NOT NULL,
            sender       TEXT NOT NULL,
            sender_label TEXT NOT NULL DEFAULT '',
            timestamp    TEXT NOT NULL,
            PRIMARY KEY (chat_id, seq)
        );

        -- ----------------------------------------------------------------
        -- Lead: tracked contact, one per email
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS leads (
            id          TEXT PRIMARY KEY,
            name        TEXT NOT NULL,
            email       TEXT NOT NULL,
            source      TEXT NOT NULL,
            date        TEXT NOT NULL,
            status      TEXT NOT NULL DEFAULT 'New',
            message     TEXT,
            created_at  TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_leads_email ON leads(email);
    """)
    await db.commit()
    logger.info("Schema initialized.")

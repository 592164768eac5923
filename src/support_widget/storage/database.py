"""SQLite database connection manager with schema migration."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from support_widget.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS communities (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00','now'))
);

CREATE TABLE IF NOT EXISTS members (
    id              TEXT PRIMARY KEY,
    community_id    TEXT NOT NULL REFERENCES communities(id),
    email           TEXT NOT NULL,
    name            TEXT NOT NULL DEFAULT '',
    UNIQUE (community_id, email)
);

CREATE TABLE IF NOT EXISTS conversations (
    id                   TEXT PRIMARY KEY,
    community_id         TEXT NOT NULL,
    status               TEXT NOT NULL DEFAULT 'open' CHECK(status IN ('open','claimed','closed')),
    claimed_by           TEXT,
    created_at           TEXT NOT NULL,
    client_token         TEXT,
    member_id            TEXT,
    client_last_seen_at  TEXT,
    agent_last_seen_at   TEXT
);

CREATE INDEX IF NOT EXISTS idx_conversations_token
    ON conversations(client_token);

-- Lifecycle only moves forward: open -> claimed -> closed (or open -> closed).
CREATE TRIGGER IF NOT EXISTS trg_conversation_status_forward
BEFORE UPDATE OF status ON conversations
WHEN (old.status = 'closed' AND new.status != 'closed')
  OR (old.status = 'claimed' AND new.status = 'open')
BEGIN
    SELECT RAISE(ABORT, 'conversation status cannot move backward');
END;

CREATE TABLE IF NOT EXISTS messages (
    id               TEXT PRIMARY KEY,
    conversation_id  TEXT NOT NULL REFERENCES conversations(id),
    sender_type      TEXT NOT NULL CHECK(sender_type IN ('client','agent')),
    kind             TEXT NOT NULL DEFAULT 'text' CHECK(kind IN ('text','image')),
    text             TEXT NOT NULL DEFAULT '',
    image_url        TEXT,
    image_path       TEXT,
    created_at       TEXT NOT NULL,
    client_token     TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, created_at);

CREATE TABLE IF NOT EXISTS providers (
    id                  TEXT PRIMARY KEY,
    name                TEXT NOT NULL,
    type                TEXT NOT NULL CHECK(type IN ('ecommerce','service','other')),
    category            TEXT NOT NULL DEFAULT '',
    description         TEXT NOT NULL DEFAULT '',
    cashback_percent    REAL NOT NULL DEFAULT 0 CHECK(cashback_percent >= 0),
    revenue_share_text  TEXT NOT NULL DEFAULT '',
    link                TEXT NOT NULL DEFAULT '',
    logo_url            TEXT,
    is_active           INTEGER NOT NULL DEFAULT 1,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS auth_users (
    id              TEXT PRIMARY KEY,
    email           TEXT NOT NULL UNIQUE,
    password_hash   TEXT NOT NULL,
    display_name    TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00','now'))
);

CREATE TABLE IF NOT EXISTS auth_sessions (
    access_token    TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL REFERENCES auth_users(id) ON DELETE CASCADE,
    created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00','now'))
);

CREATE TABLE IF NOT EXISTS support_users (
    user_id         TEXT PRIMARY KEY REFERENCES auth_users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS admin_users (
    user_id         TEXT PRIMARY KEY REFERENCES auth_users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS error_logs (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    source           TEXT NOT NULL,
    environment      TEXT,
    error_code       TEXT,
    error_message    TEXT NOT NULL,
    error_stack      TEXT,
    route            TEXT,
    method           TEXT,
    table_name       TEXT,
    function_name    TEXT,
    user_id          TEXT,
    client_token     TEXT,
    session_id       TEXT,
    request_payload  TEXT,
    extra_context    TEXT,
    created_at       TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00','now'))
);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        if self._db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def table_columns(self, table: str) -> list[str]:
        cursor = await self.conn.execute(f"PRAGMA table_info({table})")
        rows = await cursor.fetchall()
        return [row["name"] for row in rows]

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")

"""
Lightweight SQLite DB for the conversation log, passages, search audit, usage and documents.

Creates data/chat.db (relative to project root) unless CHAT_DB_PATH is absolute.
Each call opens its own connection, so callers may run store functions in worker
threads via asyncio.to_thread.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from refchat.core.config import CHAT_DB_PATH

logger = logging.getLogger(__name__)

# Project root
_ROOT = Path(__file__).resolve().parent.parent.parent

_SCHEMA = """
CREATE TABLE IF NOT EXISTS chat_sessions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    next_reference_id INTEGER NOT NULL DEFAULT 1,
    active_document_ids TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chat_sessions_owner ON chat_sessions (owner_id);

CREATE TABLE IF NOT EXISTS chat_messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL REFERENCES chat_sessions (id),
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    content TEXT NOT NULL,
    summary TEXT,
    citations TEXT NOT NULL DEFAULT '[]',
    recovered INTEGER NOT NULL DEFAULT 0,
    partial INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chat_messages_session ON chat_messages (session_id, created_at, seq);

CREATE TABLE IF NOT EXISTS extracted_passages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES chat_sessions (id),
    message_id TEXT NOT NULL REFERENCES chat_messages (id),
    document_id TEXT NOT NULL,
    document_name TEXT NOT NULL,
    text TEXT NOT NULL,
    reference_number INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (session_id, reference_number)
);
CREATE INDEX IF NOT EXISTS idx_extracted_passages_message ON extracted_passages (message_id);

CREATE TABLE IF NOT EXISTS raw_search_hits (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    query TEXT NOT NULL,
    scope_document_id TEXT,
    document_id TEXT NOT NULL,
    document_name TEXT NOT NULL,
    chunk_text TEXT NOT NULL,
    rank INTEGER NOT NULL,
    score REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_records (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    starts_at TEXT NOT NULL,
    ends_at TEXT NOT NULL,
    messages_used INTEGER NOT NULL DEFAULT 0,
    message_limit INTEGER
);
CREATE INDEX IF NOT EXISTS idx_usage_records_owner ON usage_records (owner_id);

CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    structure_description TEXT NOT NULL DEFAULT '',
    content_digest TEXT NOT NULL DEFAULT '',
    probe_questions TEXT NOT NULL DEFAULT '[]'
);
"""


def resolve_db_path(path: str | Path | None = None) -> Path:
    """Absolute path for the DB file; relative paths are taken from the project root."""
    p = Path(path if path is not None else CHAT_DB_PATH)
    return p if p.is_absolute() else _ROOT / p


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


def get_conn(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # isolation_level=None: transactions are opened explicitly with BEGIN.
    conn = sqlite3.connect(str(db_path), timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: Path) -> None:
    """Create tables if they do not exist."""
    conn = get_conn(db_path)
    try:
        conn.executescript(_SCHEMA)
    finally:
        conn.close()
    logger.info("[chat_db] initialized path=%s", db_path)


@contextmanager
def transaction(db_path: Path) -> Iterator[sqlite3.Connection]:
    """
    BEGIN IMMEDIATE ... COMMIT on a fresh connection; ROLLBACK on any exception.

    IMMEDIATE takes the write lock up front, so read-modify-write sequences
    (reference-number allocation) are serialized across connections.
    """
    conn = get_conn(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def reader(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = get_conn(db_path)
    try:
        yield conn
    finally:
        conn.close()

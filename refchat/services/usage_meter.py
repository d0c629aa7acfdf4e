"""
Usage meter: per-owner message counters for the current usage window.

increment_message_count() never opens its own transaction; it must be called with
the connection of a transaction the caller already holds, so the counter and the
assistant message it pays for commit or roll back together.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path

from refchat.core.chat_db import from_db_time, init_db, reader, resolve_db_path, to_db_time, transaction, utcnow
from refchat.core.errors import QuotaExceededError
from refchat.core.models import UsageRecord

logger = logging.getLogger(__name__)


def _row_to_record(row: sqlite3.Row) -> UsageRecord:
    return UsageRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        starts_at=from_db_time(row["starts_at"]),
        ends_at=from_db_time(row["ends_at"]),
        messages_used=row["messages_used"],
        message_limit=row["message_limit"],
    )


class UsageMeter:
    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = resolve_db_path(db_path)
        init_db(self.db_path)

    def create_record(
        self,
        owner_id: str,
        message_limit: int | None = None,
        starts_at: datetime | None = None,
        days: int = 30,
    ) -> UsageRecord:
        """Open a usage window for an owner. Used by seeding and tests; billing owns this in production."""
        start = starts_at or utcnow()
        record = UsageRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            starts_at=start,
            ends_at=start + timedelta(days=days),
            messages_used=0,
            message_limit=message_limit,
        )
        with transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO usage_records (id, owner_id, starts_at, ends_at, messages_used, message_limit) "
                "VALUES (?, ?, ?, ?, 0, ?)",
                (record.id, owner_id, to_db_time(record.starts_at), to_db_time(record.ends_at), message_limit),
            )
        logger.info("[usage_meter:create_record] owner_id=%s record_id=%s limit=%s", owner_id, record.id, message_limit)
        return record

    def active_record(self, owner_id: str, now: datetime | None = None) -> UsageRecord | None:
        """Return the usage window covering `now`, newest first; None when the owner is unmetered."""
        at = to_db_time(now or utcnow())
        with reader(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM usage_records WHERE owner_id = ? AND starts_at <= ? AND ends_at > ? "
                "ORDER BY starts_at DESC LIMIT 1",
                (owner_id, at, at),
            ).fetchone()
        return _row_to_record(row) if row else None

    def get_record(self, usage_record_id: str) -> UsageRecord | None:
        with reader(self.db_path) as conn:
            row = conn.execute("SELECT * FROM usage_records WHERE id = ?", (usage_record_id,)).fetchone()
        return _row_to_record(row) if row else None

    @staticmethod
    def has_quota(record: UsageRecord | None) -> bool:
        if record is None or record.message_limit is None:
            return True
        return record.messages_used < record.message_limit

    @staticmethod
    def increment_message_count(conn: sqlite3.Connection, usage_record_id: str) -> None:
        """
        Add one message to the record inside the caller's open transaction.

        The limit is re-checked by the UPDATE itself, so concurrent turns that all passed
        the earlier quota check cannot push messages_used past message_limit.
        Raises QuotaExceededError when the window is full.
        """
        if not conn.in_transaction:
            raise RuntimeError("increment_message_count requires an active transaction")
        cur = conn.execute(
            "UPDATE usage_records SET messages_used = messages_used + 1 "
            "WHERE id = ? AND (message_limit IS NULL OR messages_used < message_limit)",
            (usage_record_id,),
        )
        if cur.rowcount != 1:
            if conn.execute("SELECT 1 FROM usage_records WHERE id = ?", (usage_record_id,)).fetchone() is None:
                raise sqlite3.IntegrityError(f"usage record not found: {usage_record_id}")
            logger.info("[usage_meter:increment_message_count] record_id=%s limit reached", usage_record_id)
            raise QuotaExceededError()
        logger.info("[usage_meter:increment_message_count] record_id=%s", usage_record_id)

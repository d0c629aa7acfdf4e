"""
Durable conversation store: sessions, messages, extracted passages and the raw search audit.

Keyed by session_id; every lookup is scoped by session (and by owner where a caller
supplies one). Methods are synchronous and open their own connection; async code
calls them through asyncio.to_thread.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path

from refchat.core.chat_db import from_db_time, init_db, reader, resolve_db_path, to_db_time, transaction, utcnow
from refchat.core.errors import PersistenceFailure, SessionNotFoundError
from refchat.core.models import (
    Citation,
    ConversationSession,
    ExtractedPassage,
    Message,
    MessageRole,
    PassageCandidate,
    SearchHit,
)
from refchat.services.usage_meter import UsageMeter

logger = logging.getLogger(__name__)


def _row_to_session(row: sqlite3.Row) -> ConversationSession:
    return ConversationSession(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"] or "",
        next_reference_id=row["next_reference_id"],
        active_document_ids=tuple(json.loads(row["active_document_ids"] or "[]")),
        created_at=from_db_time(row["created_at"]),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    citations = tuple(Citation.from_dict(c) for c in json.loads(row["citations"] or "[]"))
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        created_at=from_db_time(row["created_at"]),
        summary=row["summary"],
        citations=citations,
        recovered=bool(row["recovered"]),
        partial=bool(row["partial"]),
    )


def _row_to_passage(row: sqlite3.Row) -> ExtractedPassage:
    return ExtractedPassage(
        id=row["id"],
        session_id=row["session_id"],
        message_id=row["message_id"],
        document_id=row["document_id"],
        document_name=row["document_name"],
        text=row["text"],
        reference_number=row["reference_number"],
        created_at=from_db_time(row["created_at"]),
    )


class ConversationStore:
    def __init__(self, db_path: str | Path | None = None, usage_meter: UsageMeter | None = None) -> None:
        self.db_path = resolve_db_path(db_path)
        init_db(self.db_path)
        self.usage_meter = usage_meter or UsageMeter(self.db_path)

    # --- Sessions ---

    def create_session(self, owner_id: str, document_ids: list[str] | None = None, title: str = "") -> ConversationSession:
        session = ConversationSession(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=title,
            next_reference_id=1,
            active_document_ids=tuple(document_ids or ()),
            created_at=utcnow(),
        )
        with transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO chat_sessions (id, owner_id, title, next_reference_id, active_document_ids, created_at) "
                "VALUES (?, ?, ?, 1, ?, ?)",
                (session.id, owner_id, title, json.dumps(list(session.active_document_ids)), to_db_time(session.created_at)),
            )
        logger.info("[conversation_store:create_session] owner_id=%s session_id=%s", owner_id, session.id)
        return session

    def get_session(self, session_id: str, owner_id: str | None = None) -> ConversationSession:
        """Return the session; raises SessionNotFoundError if missing or owned by someone else."""
        with reader(self.db_path) as conn:
            row = conn.execute("SELECT * FROM chat_sessions WHERE id = ?", (session_id,)).fetchone()
        if row is None or (owner_id is not None and row["owner_id"] != owner_id):
            raise SessionNotFoundError(session_id)
        return _row_to_session(row)

    def list_sessions(self, owner_id: str) -> list[ConversationSession]:
        """Owner's sessions, newest first."""
        with reader(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM chat_sessions WHERE owner_id = ? ORDER BY created_at DESC, rowid DESC",
                (owner_id,),
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def list_session_ids(self) -> list[str]:
        with reader(self.db_path) as conn:
            rows = conn.execute("SELECT id FROM chat_sessions ORDER BY created_at ASC, rowid ASC").fetchall()
        return [r["id"] for r in rows]

    def set_active_documents(self, session_id: str, document_ids: list[str]) -> None:
        with transaction(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE chat_sessions SET active_document_ids = ? WHERE id = ?",
                (json.dumps(list(dict.fromkeys(document_ids))), session_id),
            )
            if cur.rowcount != 1:
                raise SessionNotFoundError(session_id)
        logger.info("[conversation_store:set_active_documents] session_id=%s documents=%d", session_id, len(document_ids))

    def set_title(self, session_id: str, title: str) -> None:
        with transaction(self.db_path) as conn:
            conn.execute("UPDATE chat_sessions SET title = ? WHERE id = ?", (title, session_id))

    # --- Messages ---

    def add_user_message(self, session_id: str, content: str, message_id: str | None = None) -> Message:
        """Persist the user turn on its own; committed before any generation starts."""
        message = Message(
            id=message_id or str(uuid.uuid4()),
            session_id=session_id,
            role=MessageRole.USER,
            content=content,
            created_at=utcnow(),
        )
        try:
            with transaction(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO chat_messages (id, session_id, role, content, created_at) VALUES (?, ?, 'user', ?, ?)",
                    (message.id, session_id, content, to_db_time(message.created_at)),
                )
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Failed to save user message: {e}") from e
        logger.info("[conversation_store:add_user_message] session_id=%s message_id=%s content_len=%d",
                    session_id, message.id, len(content))
        return message

    @staticmethod
    def _insert_assistant(conn: sqlite3.Connection, message: Message) -> None:
        conn.execute(
            "INSERT INTO chat_messages (id, session_id, role, content, citations, recovered, partial, created_at) "
            "VALUES (?, ?, 'assistant', ?, ?, ?, ?, ?)",
            (
                message.id,
                message.session_id,
                message.content,
                json.dumps([c.to_dict() for c in message.citations]),
                int(message.recovered),
                int(message.partial),
                to_db_time(message.created_at),
            ),
        )

    def save_assistant_message(
        self,
        session_id: str,
        content: str,
        citations: list[Citation] | tuple[Citation, ...] = (),
        usage_record_id: str | None = None,
        created_at: datetime | None = None,
        recovered: bool = False,
        partial: bool = False,
    ) -> Message:
        """
        Insert the assistant turn and bill it in one transaction.

        When usage_record_id is given, the usage counter is incremented with the same
        connection; a failure in either step rolls back both and raises PersistenceFailure
        (QuotaExceededError when the usage window filled up in the meantime).
        """
        message = Message(
            id=str(uuid.uuid4()),
            session_id=session_id,
            role=MessageRole.ASSISTANT,
            content=content,
            created_at=created_at or utcnow(),
            citations=tuple(citations),
            recovered=recovered,
            partial=partial,
        )
        try:
            with transaction(self.db_path) as conn:
                self._insert_assistant(conn, message)
                if usage_record_id:
                    self.usage_meter.increment_message_count(conn, usage_record_id)
        except (sqlite3.Error, RuntimeError) as e:
            logger.error("[conversation_store:save_assistant_message] rolled back session_id=%s: %s", session_id, e)
            raise PersistenceFailure(f"Failed to save assistant message: {e}") from e
        logger.info(
            "[conversation_store:save_assistant_message] session_id=%s message_id=%s citations=%d recovered=%s partial=%s billed=%s",
            session_id, message.id, len(message.citations), recovered, partial, bool(usage_record_id),
        )
        return message

    def save_recovered_answer(
        self,
        orphan: Message,
        content: str,
        citations: list[Citation] | tuple[Citation, ...],
        created_at: datetime,
    ) -> Message | None:
        """
        Answer an orphaned user message with an unbilled, recovered assistant message.

        Whether the orphan is still unanswered is checked inside the write transaction;
        if an assistant message already follows it, nothing is written and None is returned.
        """
        message = Message(
            id=str(uuid.uuid4()),
            session_id=orphan.session_id,
            role=MessageRole.ASSISTANT,
            content=content,
            created_at=created_at,
            citations=tuple(citations),
            recovered=True,
        )
        try:
            with transaction(self.db_path) as conn:
                following = conn.execute(
                    "SELECT m.role FROM chat_messages m JOIN chat_messages o ON o.session_id = m.session_id "
                    "WHERE o.id = ? AND (m.created_at > o.created_at OR (m.created_at = o.created_at AND m.seq > o.seq)) "
                    "ORDER BY m.created_at ASC, m.seq ASC LIMIT 1",
                    (orphan.id,),
                ).fetchone()
                if following is not None and following["role"] == "assistant":
                    logger.info("[conversation_store:save_recovered_answer] orphan=%s already answered", orphan.id)
                    return None
                self._insert_assistant(conn, message)
        except sqlite3.Error as e:
            logger.error("[conversation_store:save_recovered_answer] rolled back session_id=%s: %s", orphan.session_id, e)
            raise PersistenceFailure(f"Failed to save recovered answer: {e}") from e
        logger.info("[conversation_store:save_recovered_answer] session_id=%s orphan=%s message_id=%s citations=%d",
                    orphan.session_id, orphan.id, message.id, len(message.citations))
        return message

    def list_messages(self, session_id: str) -> list[Message]:
        """Messages in conversation order (created_at, then insertion order)."""
        with reader(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY created_at ASC, seq ASC",
                (session_id,),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def set_summary(self, message_id: str, summary: str) -> None:
        with transaction(self.db_path) as conn:
            conn.execute("UPDATE chat_messages SET summary = ? WHERE id = ?", (summary, message_id))
        logger.info("[conversation_store:set_summary] message_id=%s summary_len=%d", message_id, len(summary))

    # --- Passages ---

    def add_passages(
        self,
        session_id: str,
        message_id: str,
        candidates: list[PassageCandidate],
    ) -> list[ExtractedPassage]:
        """
        Number and persist passages for a user message.

        The block of reference numbers is reserved from chat_sessions.next_reference_id
        inside the same write transaction as the inserts, so concurrent callers never
        receive the same number and numbers are never reused.
        """
        if not candidates:
            return []
        now = utcnow()
        try:
            with transaction(self.db_path) as conn:
                row = conn.execute(
                    "SELECT next_reference_id FROM chat_sessions WHERE id = ?", (session_id,)
                ).fetchone()
                if row is None:
                    raise SessionNotFoundError(session_id)
                first = row["next_reference_id"]
                conn.execute(
                    "UPDATE chat_sessions SET next_reference_id = ? WHERE id = ?",
                    (first + len(candidates), session_id),
                )
                passages = []
                for offset, c in enumerate(candidates):
                    passage = ExtractedPassage(
                        id=str(uuid.uuid4()),
                        session_id=session_id,
                        message_id=message_id,
                        document_id=c.document_id,
                        document_name=c.document_name,
                        text=c.text,
                        reference_number=first + offset,
                        created_at=now,
                    )
                    conn.execute(
                        "INSERT INTO extracted_passages "
                        "(id, session_id, message_id, document_id, document_name, text, reference_number, created_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            passage.id,
                            session_id,
                            message_id,
                            passage.document_id,
                            passage.document_name,
                            passage.text,
                            passage.reference_number,
                            to_db_time(now),
                        ),
                    )
                    passages.append(passage)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Failed to save extracted passages: {e}") from e
        logger.info("[conversation_store:add_passages] session_id=%s message_id=%s refs=%s",
                    session_id, message_id, [p.reference_number for p in passages])
        return passages

    def passages_for_message(self, session_id: str, message_id: str) -> list[ExtractedPassage]:
        with reader(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM extracted_passages WHERE session_id = ? AND message_id = ? ORDER BY reference_number ASC",
                (session_id, message_id),
            ).fetchall()
        return [_row_to_passage(r) for r in rows]

    def passages_for_session(self, session_id: str) -> list[ExtractedPassage]:
        with reader(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM extracted_passages WHERE session_id = ? ORDER BY reference_number ASC",
                (session_id,),
            ).fetchall()
        return [_row_to_passage(r) for r in rows]

    def passages_by_reference(self, session_id: str, reference_numbers: list[int]) -> dict[int, ExtractedPassage]:
        """Resolve reference numbers within one session only."""
        if not reference_numbers:
            return {}
        placeholders = ", ".join("?" for _ in reference_numbers)
        with reader(self.db_path) as conn:
            rows = conn.execute(
                "SELECT p.* FROM extracted_passages p "
                "JOIN chat_messages m ON m.id = p.message_id AND m.session_id = p.session_id AND m.role = 'user' "
                f"WHERE p.session_id = ? AND p.reference_number IN ({placeholders})",
                (session_id, *reference_numbers),
            ).fetchall()
        return {r["reference_number"]: _row_to_passage(r) for r in rows}

    # --- Raw search audit ---

    def record_raw_hits(
        self,
        session_id: str,
        message_id: str,
        owner_id: str,
        query: str,
        hits: list[SearchHit],
        scope_document_id: str | None = None,
    ) -> None:
        """Append hits verbatim. Never updated or deleted."""
        if not hits:
            return
        now = to_db_time(utcnow())
        with transaction(self.db_path) as conn:
            conn.executemany(
                "INSERT INTO raw_search_hits "
                "(id, session_id, message_id, owner_id, query, scope_document_id, document_id, document_name, "
                "chunk_text, rank, score, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        str(uuid.uuid4()),
                        session_id,
                        message_id,
                        owner_id,
                        query,
                        scope_document_id,
                        h.document_id,
                        h.document_name,
                        h.chunk_text,
                        rank,
                        h.score,
                        now,
                    )
                    for rank, h in enumerate(hits)
                ],
            )

    def count_raw_hits(self, message_id: str) -> int:
        with reader(self.db_path) as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM raw_search_hits WHERE message_id = ?", (message_id,)).fetchone()
        return row["n"]

"""
Document collaborator: read-only structure, digest and probe questions per document.

Rows are written by the ingestion pipeline (or scripts/seed_chat_db.py); the chat
pipeline only reads them.
"""

import json
import logging
from pathlib import Path

from refchat.core.chat_db import init_db, reader, resolve_db_path, transaction
from refchat.core.models import Document

logger = logging.getLogger(__name__)


class DocumentRepository:
    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = resolve_db_path(db_path)
        init_db(self.db_path)

    def get_documents(self, owner_id: str, document_ids: list[str] | tuple[str, ...]) -> list[Document]:
        """Return the owner's documents among document_ids, in the order requested. Unknown ids are skipped."""
        if not document_ids:
            return []
        placeholders = ", ".join("?" for _ in document_ids)
        with reader(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM documents WHERE owner_id = ? AND id IN ({placeholders})",
                (owner_id, *document_ids),
            ).fetchall()
        by_id = {}
        for row in rows:
            try:
                probes = tuple(q for q in json.loads(row["probe_questions"] or "[]") if isinstance(q, str) and q.strip())
            except json.JSONDecodeError:
                logger.warning("[documents:get_documents] bad probe_questions JSON for document_id=%s", row["id"])
                probes = ()
            by_id[row["id"]] = Document(
                id=row["id"],
                owner_id=row["owner_id"],
                name=row["name"],
                structure_description=row["structure_description"] or "",
                content_digest=row["content_digest"] or "",
                probe_questions=probes,
            )
        missing = [d for d in document_ids if d not in by_id]
        if missing:
            logger.info("[documents:get_documents] owner_id=%s skipped unknown ids=%s", owner_id, missing)
        return [by_id[d] for d in document_ids if d in by_id]

    def upsert_document(self, document: Document) -> None:
        """Write a document row. Ingestion-side helper, used by seeding and tests."""
        with transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO documents (id, owner_id, name, structure_description, content_digest, probe_questions) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (id) DO UPDATE SET owner_id = excluded.owner_id, name = excluded.name, "
                "structure_description = excluded.structure_description, "
                "content_digest = excluded.content_digest, probe_questions = excluded.probe_questions",
                (
                    document.id,
                    document.owner_id,
                    document.name,
                    document.structure_description,
                    document.content_digest,
                    json.dumps(list(document.probe_questions)),
                ),
            )
        logger.info("[documents:upsert_document] document_id=%s name=%r", document.id, document.name)

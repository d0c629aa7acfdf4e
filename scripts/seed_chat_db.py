#!/usr/bin/env python3
"""
Seed the chat SQLite DB for demos or tests.

Creates data/chat.db (if missing), registers demo documents with their structure
descriptions and probe questions, and opens a usage window for the demo owner.
Use --reset to delete the database file first.

Run from project root:

    python scripts/seed_chat_db.py
    python scripts/seed_chat_db.py --reset --limit 50

Document ids must match the document_id field of the chunks in Milvus.
"""

import argparse
import sys
from pathlib import Path

# Project root on path so "refchat" resolves
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from refchat.core.chat_db import init_db, resolve_db_path
from refchat.core.models import Document
from refchat.services.documents import DocumentRepository
from refchat.services.usage_meter import UsageMeter

DEMO_OWNER = "demo-owner"

SEED_DOCUMENTS = [
    Document(
        id="leave-policy",
        owner_id=DEMO_OWNER,
        name="AgentX_Leave_Policy_Full.txt",
        structure_description="Company leave policy: one section per leave type, each with eligibility, duration and how to apply.",
        content_digest="Annual, sick, maternity, paternity and emergency leave rules for full-time employees.",
        probe_questions=(
            "How many days of annual leave do employees get?",
            "What is the paternity leave policy?",
            "How do employees apply for emergency leave?",
        ),
    ),
    Document(
        id="iphone-17-sample",
        owner_id=DEMO_OWNER,
        name="iphone_17_sample.pdf",
        structure_description="Product brief: overview, specification table, pricing and availability.",
        content_digest="Display, camera, battery and chip specifications with launch pricing.",
        probe_questions=(
            "What are the camera specifications?",
            "How much does the base model cost?",
        ),
    ),
]


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed chat DB for demos/tests.")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete the existing database file before seeding.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Message limit for the demo usage window (default: unlimited).",
    )
    args = parser.parse_args()

    db_path = resolve_db_path()
    if args.reset and db_path.exists():
        db_path.unlink()
        print(f"Removed {db_path}.")
    init_db(db_path)

    repo = DocumentRepository(db_path)
    for doc in SEED_DOCUMENTS:
        repo.upsert_document(doc)
        print(f"  added document: {doc.id} ({doc.name})")

    meter = UsageMeter(db_path)
    if meter.active_record(DEMO_OWNER) is None:
        record = meter.create_record(DEMO_OWNER, message_limit=args.limit)
        print(f"  opened usage window {record.id} until {record.ends_at.isoformat()}")

    print(f"Done. Seeded {len(SEED_DOCUMENTS)} documents for owner {DEMO_OWNER!r}.")


if __name__ == "__main__":
    main()

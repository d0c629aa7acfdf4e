"""
Shared fixtures: a temporary SQLite store and in-memory fakes for the LLM and vector search.

No test talks to OpenAI, Hugging Face or Milvus.
"""

import asyncio
import json

import pytest

from refchat.agent.llm import LLMClient
from refchat.core.models import Document, SearchHit
from refchat.services.conversation_store import ConversationStore
from refchat.services.documents import DocumentRepository
from refchat.services.usage_meter import UsageMeter

# Substrings that identify each system prompt.
PLANNER = "decompose"
PROBE = "prepare search questions"
SNIPPET = "select evidence"
SUMMARY = "conversation summarizer"
TITLE = "session name generator"
RECOVERY = "regenerated after an interruption"


class FakeLLM(LLMClient):
    """
    Scripted LLM. `replies` maps a system-prompt key to a string, an exception, or a
    callable(messages) returning either. complete() returns "" for unmatched prompts.
    """

    name = "fake"

    def __init__(self, replies=None, chunks=(), stream_error=None, enabled=True):
        self.replies = dict(replies or {})
        self.chunks = list(chunks)
        self.stream_error = stream_error
        self.enabled = enabled
        self.calls: list[tuple[str, list]] = []
        self.stream_calls: list[tuple[str, list]] = []
        self.stream_closed = False

    def _reply_for(self, system: str, messages):
        for key in (RECOVERY, PLANNER, PROBE, SNIPPET, SUMMARY, TITLE):
            if key in system and key in self.replies:
                reply = self.replies[key]
                return reply(messages) if callable(reply) else reply
        return ""

    def calls_for(self, key: str) -> list[tuple[str, list]]:
        return [c for c in self.calls if key in c[0]]

    async def complete(self, system, messages, max_tokens=512, temperature=0.2, fast=False) -> str:
        self.calls.append((system, messages))
        await asyncio.sleep(0)
        reply = self._reply_for(system, messages)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def stream(self, system, messages, max_tokens=2048, temperature=0.2):
        self.stream_calls.append((system, messages))
        try:
            for chunk in self.chunks:
                await asyncio.sleep(0)
                yield chunk
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True


class FakeSearch:
    """Vector search returning canned hits per (query, document_id); records every call."""

    name = "fake"
    enabled = True

    def __init__(self, hits=None, default=None, errors=None):
        self.hits = dict(hits or {})
        self.default = default
        self.errors = dict(errors or {})
        self.calls: list[tuple[str, str, str | None]] = []

    async def search(self, owner_id, query, top_k, document_id=None):
        self.calls.append((owner_id, query, document_id))
        await asyncio.sleep(0)
        for key in ((query, document_id), query):
            if key in self.errors:
                raise self.errors[key]
        for key in ((query, document_id), query):
            if key in self.hits:
                return list(self.hits[key])[:top_k]
        if callable(self.default):
            return self.default(query, document_id)[:top_k]
        return []


def hit(document_id: str, text: str, name: str | None = None, score: float = 0.9) -> SearchHit:
    return SearchHit(document_id=document_id, document_name=name or f"{document_id}.pdf", chunk_text=text, score=score)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "chat.db"


@pytest.fixture
def meter(db_path) -> UsageMeter:
    return UsageMeter(db_path)


@pytest.fixture
def store(db_path, meter) -> ConversationStore:
    return ConversationStore(db_path, usage_meter=meter)


@pytest.fixture
def documents(db_path) -> DocumentRepository:
    return DocumentRepository(db_path)


@pytest.fixture
def owner_id() -> str:
    return "owner-1"


@pytest.fixture
def session(store, owner_id):
    return store.create_session(owner_id)


def add_document(repo: DocumentRepository, doc_id: str, owner_id: str, probes=(), name=None) -> Document:
    doc = Document(
        id=doc_id,
        owner_id=owner_id,
        name=name or f"{doc_id}.pdf",
        structure_description=f"Structure of {doc_id}",
        content_digest=f"Digest of {doc_id}",
        probe_questions=tuple(probes),
    )
    repo.upsert_document(doc)
    return doc


def echo_first_chunk(messages) -> str:
    """Snippet reply quoting the whole of chunk 1 from an extraction prompt."""
    content = messages[0]["content"]
    body = content.split("):\n", 1)[1].split("\n\nChunk ", 1)[0]
    return json.dumps({"chunk": 1, "text": body})

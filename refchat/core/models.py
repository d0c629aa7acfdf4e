"""
Domain records for conversations, passages and the external collaborators.

Relationships are by id only: a Message knows its session_id, a passage knows its
session_id and message_id. Nothing embeds its owner, so the store can hand out
plain immutable values.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Citation:
    """A resolved inline reference: per-session reference number plus display text."""

    reference_id: str
    display_text: str
    document_id: str = ""

    def to_dict(self) -> dict:
        return {
            "reference_id": self.reference_id,
            "display_text": self.display_text,
            "document_id": self.document_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Citation":
        return cls(
            reference_id=str(data.get("reference_id", "")),
            display_text=data.get("display_text", ""),
            document_id=data.get("document_id", ""),
        )


@dataclass(frozen=True)
class ExtractedPassage:
    id: str
    session_id: str
    message_id: str
    document_id: str
    document_name: str
    text: str
    reference_number: int
    created_at: datetime


@dataclass(frozen=True)
class Message:
    id: str
    session_id: str
    role: MessageRole
    content: str
    created_at: datetime
    summary: str | None = None
    citations: tuple[Citation, ...] = ()
    recovered: bool = False
    partial: bool = False


@dataclass(frozen=True)
class ConversationSession:
    id: str
    owner_id: str
    title: str
    next_reference_id: int
    active_document_ids: tuple[str, ...]
    created_at: datetime


@dataclass(frozen=True)
class PassageCandidate:
    """A snippet picked by the extractor, not yet numbered or persisted."""

    document_id: str
    document_name: str
    text: str


@dataclass(frozen=True)
class SearchHit:
    """One ranked hit from the vector-search service."""

    document_id: str
    document_name: str
    chunk_text: str
    score: float = 0.0


@dataclass(frozen=True)
class Document:
    """Read-only view of an ingested document (structure, digest, probe questions)."""

    id: str
    owner_id: str
    name: str
    structure_description: str = ""
    content_digest: str = ""
    probe_questions: tuple[str, ...] = ()


@dataclass(frozen=True)
class UsageRecord:
    id: str
    owner_id: str
    starts_at: datetime
    ends_at: datetime
    messages_used: int
    message_limit: int | None = None


@dataclass(frozen=True)
class QueryPlan:
    specific: tuple[str, ...] = ()
    generic: tuple[str, ...] = ()

    @property
    def all_queries(self) -> tuple[str, ...]:
        return self.specific + self.generic


@dataclass(frozen=True)
class TurnContext:
    """Identity of one exchange, fixed once the user message is persisted."""

    owner_id: str
    session_id: str
    user_message_id: str
    question: str
    active_document_ids: tuple[str, ...] = ()
    history: tuple[Message, ...] = field(default_factory=tuple)
    usage_record_id: str | None = None

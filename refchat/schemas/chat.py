"""Schemas for the chat endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field

from refchat.core.models import ConversationSession, Message
from refchat.services.integrity import IntegrityReport


class CreateSessionRequest(BaseModel):
    """Request body for POST /chat/sessions."""

    document_ids: list[str] = Field(default_factory=list, description="Documents the session answers from.")
    title: str = Field("", description="Optional title; generated from the first message when empty.")


class SetDocumentsRequest(BaseModel):
    document_ids: list[str] = Field(default_factory=list, description="Replaces the session's active documents.")


class MessageRequest(BaseModel):
    """Request body for POST /chat/sessions/{id}/messages/stream. Emptiness is checked by the service."""

    message: str = Field(..., description="User message.")


class SessionResponse(BaseModel):
    id: str
    title: str
    active_document_ids: list[str]
    created_at: datetime

    @classmethod
    def from_session(cls, session: ConversationSession) -> "SessionResponse":
        return cls(
            id=session.id,
            title=session.title,
            active_document_ids=list(session.active_document_ids),
            created_at=session.created_at,
        )


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]


class CitationResponse(BaseModel):
    reference_id: str
    display_text: str
    document_id: str = ""


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str
    created_at: datetime
    citations: list[CitationResponse] = Field(default_factory=list)
    recovered: bool = False
    partial: bool = False

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            role=message.role.value,
            content=message.content,
            created_at=message.created_at,
            citations=[CitationResponse(**c.to_dict()) for c in message.citations],
            recovered=message.recovered,
            partial=message.partial,
        )


class HistoryResponse(BaseModel):
    """Response for GET /chat/sessions/{id}/history, oldest message first."""

    session: SessionResponse
    messages: list[MessageResponse]


class IntegrityResponse(BaseModel):
    session_id: str
    orphans: list[str] = Field(default_factory=list, description="User messages found without an answer.")
    recovered: list[str] = Field(default_factory=list, description="Ids of the recovery answers written.")
    violations: list[str] = Field(default_factory=list, description="Ordering problems reported but not repaired.")

    @classmethod
    def from_report(cls, report: IntegrityReport) -> "IntegrityResponse":
        return cls(
            session_id=report.session_id,
            orphans=list(report.orphans),
            recovered=list(report.recovered),
            violations=list(report.violations),
        )

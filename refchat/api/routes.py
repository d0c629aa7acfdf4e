"""
API route aggregator: register endpoints; no logic, only delegation to handlers.
"""

import logging

from fastapi import APIRouter, Depends, Header
from fastapi.responses import StreamingResponse

from refchat.api.handlers import handle_history, handle_integrity, handle_message_stream, handle_set_documents
from refchat.schemas.chat import (
    CreateSessionRequest,
    HistoryResponse,
    IntegrityResponse,
    MessageRequest,
    SessionListResponse,
    SessionResponse,
    SetDocumentsRequest,
)
from refchat.services.chat_service import ChatService, get_chat_service

logger = logging.getLogger(__name__)
router = APIRouter()


def owner_id_header(x_owner_id: str = Header(..., min_length=1, description="Id of the calling owner.")) -> str:
    return x_owner_id.strip()


# --- System ---

@router.get("/", tags=["system"])
def root():
    return {"status": "Reference chat backend running"}


@router.get("/health", tags=["system"])
def health():
    return {"ok": True}


# --- Sessions ---

@router.post("/chat/sessions", response_model=SessionResponse, tags=["chat"], summary="Create a chat session")
async def create_session(
    body: CreateSessionRequest,
    owner_id: str = Depends(owner_id_header),
    service: ChatService = Depends(get_chat_service),
) -> SessionResponse:
    logger.info("[api:create_session] IN  owner_id=%s documents=%d", owner_id, len(body.document_ids))
    session = await service.create_session(owner_id, body.document_ids, body.title)
    return SessionResponse.from_session(session)


@router.get("/chat/sessions", response_model=SessionListResponse, tags=["chat"], summary="List sessions, newest first")
async def list_sessions(
    owner_id: str = Depends(owner_id_header),
    service: ChatService = Depends(get_chat_service),
) -> SessionListResponse:
    sessions = await service.list_sessions(owner_id)
    return SessionListResponse(sessions=[SessionResponse.from_session(s) for s in sessions])


@router.get(
    "/chat/sessions/{session_id}/history",
    response_model=HistoryResponse,
    tags=["chat"],
    summary="Messages of a session in conversation order",
    description="404 when the session does not exist or belongs to another owner.",
)
async def get_history(
    session_id: str,
    owner_id: str = Depends(owner_id_header),
    service: ChatService = Depends(get_chat_service),
) -> HistoryResponse:
    return await handle_history(service, owner_id, session_id)


@router.put("/chat/sessions/{session_id}/documents", response_model=SessionResponse, tags=["chat"])
async def set_documents(
    session_id: str,
    body: SetDocumentsRequest,
    owner_id: str = Depends(owner_id_header),
    service: ChatService = Depends(get_chat_service),
) -> SessionResponse:
    return await handle_set_documents(service, owner_id, session_id, body.document_ids)


# --- Exchange ---

@router.post(
    "/chat/sessions/{session_id}/messages/stream",
    tags=["chat"],
    summary="Send a message and stream the answer",
    description=(
        "Plain text stream. The user message id arrives first as [USER_MESSAGE_ID]id[/USER_MESSAGE_ID], "
        "then answer chunks, then [ASSISTANT_MESSAGE_ID]id[/ASSISTANT_MESSAGE_ID]. "
        "Failures during the exchange arrive as [ERROR]{json}[/ERROR]."
    ),
)
async def post_message_stream(
    session_id: str,
    body: MessageRequest,
    owner_id: str = Depends(owner_id_header),
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    logger.info("[api:post_message_stream] IN  session_id=%s message_len=%d", session_id, len(body.message))
    return await handle_message_stream(service, owner_id, session_id, body.message)


@router.post(
    "/chat/sessions/{session_id}/integrity",
    response_model=IntegrityResponse,
    tags=["chat"],
    summary="Recover unanswered messages in a session",
)
async def check_integrity(
    session_id: str,
    owner_id: str = Depends(owner_id_header),
    service: ChatService = Depends(get_chat_service),
) -> IntegrityResponse:
    return await handle_integrity(service, owner_id, session_id)

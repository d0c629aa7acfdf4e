"""
API handlers: call the chat service and map its errors to HTTP.

Responsibility: Bridge HTTP types and services. Marshalling and exception-to-HTTP mapping.
Lives in the API layer so services stay free of FastAPI/HTTP types.
"""

import logging

from fastapi import HTTPException
from fastapi.responses import StreamingResponse

from refchat.core.errors import (
    EmptyUserInputError,
    PersistenceFailure,
    QuotaExceededError,
    SessionNotFoundError,
)
from refchat.schemas.chat import HistoryResponse, IntegrityResponse, MessageResponse, SessionResponse
from refchat.services.chat_service import ChatService

logger = logging.getLogger(__name__)


def _not_found(e: SessionNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Session not found: {e.session_id}")


async def handle_history(service: ChatService, owner_id: str, session_id: str) -> HistoryResponse:
    try:
        history = await service.get_history(owner_id, session_id)
    except SessionNotFoundError as e:
        raise _not_found(e) from e
    return HistoryResponse(
        session=SessionResponse.from_session(history.session),
        messages=[MessageResponse.from_message(m) for m in history.messages],
    )


async def handle_set_documents(
    service: ChatService, owner_id: str, session_id: str, document_ids: list[str]
) -> SessionResponse:
    try:
        session = await service.set_documents(owner_id, session_id, document_ids)
    except SessionNotFoundError as e:
        raise _not_found(e) from e
    return SessionResponse.from_session(session)


async def handle_integrity(service: ChatService, owner_id: str, session_id: str) -> IntegrityResponse:
    try:
        report = await service.check_integrity(owner_id, session_id)
    except SessionNotFoundError as e:
        raise _not_found(e) from e
    except Exception as e:
        logger.exception("Integrity check failed")
        raise HTTPException(status_code=500, detail=str(e)) from e
    return IntegrityResponse.from_report(report)


async def handle_message_stream(service: ChatService, owner_id: str, session_id: str, text: str) -> StreamingResponse:
    """
    Persist the user message, then hand the rest of the exchange to a text stream.
    Failures before the stream starts map to 400/404/429/500; later ones arrive in-stream as [ERROR].
    """
    try:
        turn = await service.begin_turn(owner_id, session_id, text)
    except EmptyUserInputError as e:
        raise HTTPException(status_code=400, detail=e.message) from e
    except SessionNotFoundError as e:
        raise _not_found(e) from e
    except QuotaExceededError as e:
        raise HTTPException(status_code=429, detail=e.message) from e
    except PersistenceFailure as e:
        raise HTTPException(status_code=500, detail=e.message) from e
    return StreamingResponse(
        service.stream_turn(turn),
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )

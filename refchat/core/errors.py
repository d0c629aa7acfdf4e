"""
Application errors for clean API and stream error handling.

Every failure that reaches a boundary (HTTP handler, answer stream, integrity
pass) goes through normalize_error(), which turns any exception into a tagged
ChatError. Callers match on ChatError.kind instead of probing exception attributes.
"""

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum

import httpx
import openai

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    AUTH_FAILURE = "auth_failure"
    QUOTA_EXCEEDED = "quota_exceeded"
    PERSISTENCE_FAILURE = "persistence_failure"
    MALFORMED_CITATION = "malformed_citation"
    EMPTY_USER_INPUT = "empty_user_input"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ChatError:
    """A failure reduced to a tag and a message that is safe to show the user."""

    kind: ErrorKind
    message: str

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class ServiceUnavailableError(Exception):
    """Raised when a required service (e.g. vector store, embeddings API) is unavailable or misconfigured."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class QuotaExceededError(Exception):
    """Raised when the owner's usage record has no messages left."""

    def __init__(self, message: str = "Message quota exhausted for the current usage period.") -> None:
        self.message = message
        super().__init__(message)


class PersistenceFailure(Exception):
    """Raised when a store transaction fails. Fatal to the current turn."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class EmptyUserInputError(ValueError):
    """Raised before any retrieval or generation when the user message is blank."""

    def __init__(self, message: str = "Message must not be empty.") -> None:
        self.message = message
        super().__init__(message)


class SessionNotFoundError(LookupError):
    """Raised when a session does not exist or belongs to another owner."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.message = "Chat session not found"
        super().__init__(f"Chat session not found: {session_id}")


def _upstream_message(prefix: str, exc: BaseException) -> str:
    detail = str(exc).strip()
    return f"{prefix}: {detail}" if detail else prefix


def normalize_error(exc: BaseException) -> ChatError:
    """Map any exception to a ChatError. Unknown exceptions become UPSTREAM_UNAVAILABLE."""
    if isinstance(exc, EmptyUserInputError):
        return ChatError(ErrorKind.EMPTY_USER_INPUT, exc.message)
    if isinstance(exc, SessionNotFoundError):
        return ChatError(ErrorKind.NOT_FOUND, exc.message)
    if isinstance(exc, QuotaExceededError):
        return ChatError(ErrorKind.QUOTA_EXCEEDED, exc.message)
    if isinstance(exc, PersistenceFailure):
        return ChatError(ErrorKind.PERSISTENCE_FAILURE, exc.message)
    if isinstance(exc, sqlite3.Error):
        return ChatError(ErrorKind.PERSISTENCE_FAILURE, _upstream_message("Database error", exc))
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ChatError(ErrorKind.AUTH_FAILURE, "The AI service rejected our credentials.")
    if isinstance(exc, openai.RateLimitError):
        if getattr(exc, "code", None) == "insufficient_quota":
            return ChatError(ErrorKind.QUOTA_EXCEEDED, "The AI service quota is exhausted.")
        return ChatError(ErrorKind.UPSTREAM_UNAVAILABLE, "The AI service is rate limiting requests.")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return ChatError(ErrorKind.AUTH_FAILURE, "The AI service rejected our credentials.")
        if status == 402:
            return ChatError(ErrorKind.QUOTA_EXCEEDED, "The AI service quota is exhausted.")
        return ChatError(ErrorKind.UPSTREAM_UNAVAILABLE, f"The AI service returned HTTP {status}.")
    if isinstance(exc, ServiceUnavailableError):
        return ChatError(ErrorKind.UPSTREAM_UNAVAILABLE, exc.message)
    if isinstance(exc, (openai.APIError, httpx.HTTPError)):
        return ChatError(ErrorKind.UPSTREAM_UNAVAILABLE, _upstream_message("AI service error", exc))
    message = str(exc).strip() or exc.__class__.__name__
    logger.debug("[errors:normalize_error] unmapped %s: %s", exc.__class__.__name__, message)
    return ChatError(ErrorKind.UPSTREAM_UNAVAILABLE, f"Sorry, I encountered an error: {message}")

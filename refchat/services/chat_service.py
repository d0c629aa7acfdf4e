"""
Chat service: one exchange end to end, plus session management.

Responsibility: persist the user message and surface its id before any generation,
check quota, run the plan → retrieve graph, stream the answer, resolve citations and
persist the assistant message together with its usage increment. Output is a plain
text stream with bracketed control fragments for message ids and errors.
"""

import asyncio
import json
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from functools import lru_cache
from typing import AsyncIterator

from refchat.agent.graph import build_graph, run_turn_pipeline
from refchat.agent.llm import LLMClient, get_llm_client
from refchat.agent.prompts import ANSWER_SYSTEM_PROMPT
from refchat.core.errors import (
    ChatError,
    EmptyUserInputError,
    ErrorKind,
    PersistenceFailure,
    QuotaExceededError,
    normalize_error,
)
from refchat.core.models import ConversationSession, Message, TurnContext, UsageRecord
from refchat.services.answer_stream import AnswerStream, StreamState, build_generation_messages
from refchat.services.citations import resolve_citations
from refchat.services.conversation_store import ConversationStore
from refchat.services.documents import DocumentRepository
from refchat.services.integrity import IntegrityManager, IntegrityReport, group_passages
from refchat.services.retrieval_service import RetrievalOrchestrator
from refchat.services.summarizer import Summarizer
from refchat.services.usage_meter import UsageMeter
from refchat.services.vector_store import VectorSearch, get_vector_search

logger = logging.getLogger(__name__)


def user_message_fragment(message_id: str) -> str:
    return f"[USER_MESSAGE_ID]{message_id}[/USER_MESSAGE_ID]"


def assistant_message_fragment(message_id: str) -> str:
    return f"[ASSISTANT_MESSAGE_ID]{message_id}[/ASSISTANT_MESSAGE_ID]"


def error_fragment(error: ChatError) -> str:
    return f"[ERROR]{json.dumps(error.to_dict())}[/ERROR]"


@dataclass(frozen=True)
class SessionHistory:
    session: ConversationSession
    messages: tuple[Message, ...]


class ChatService:
    def __init__(
        self,
        store: ConversationStore,
        documents: DocumentRepository,
        llm: LLMClient,
        search: VectorSearch,
    ) -> None:
        self.store = store
        self.documents = documents
        self.llm = llm
        self.usage_meter: UsageMeter = store.usage_meter
        self.retrieval = RetrievalOrchestrator(store, documents, search, llm)
        self.graph = build_graph(llm, self.retrieval)
        self.summarizer = Summarizer(store, llm)
        self._inflight: set[str] = set()
        self._reserved: dict[str, int] = {}
        self.integrity = IntegrityManager(store, llm, inflight=lambda: set(self._inflight))

    # --- Sessions ---

    async def create_session(self, owner_id: str, document_ids: list[str] | None = None, title: str = "") -> ConversationSession:
        return await asyncio.to_thread(self.store.create_session, owner_id, document_ids, title)

    async def list_sessions(self, owner_id: str) -> list[ConversationSession]:
        return await asyncio.to_thread(self.store.list_sessions, owner_id)

    async def get_history(self, owner_id: str, session_id: str) -> SessionHistory:
        session = await asyncio.to_thread(self.store.get_session, session_id, owner_id)
        messages = await asyncio.to_thread(self.store.list_messages, session_id)
        return SessionHistory(session=session, messages=tuple(messages))

    async def set_documents(self, owner_id: str, session_id: str, document_ids: list[str]) -> ConversationSession:
        await asyncio.to_thread(self.store.get_session, session_id, owner_id)
        await asyncio.to_thread(self.store.set_active_documents, session_id, document_ids)
        return await asyncio.to_thread(self.store.get_session, session_id, owner_id)

    async def check_integrity(self, owner_id: str, session_id: str) -> IntegrityReport:
        await asyncio.to_thread(self.store.get_session, session_id, owner_id)
        return await self.integrity.check_session(session_id)

    # --- Exchange ---

    def _reserve_quota(self, usage: UsageRecord) -> bool:
        """Count a turn against its usage window until it settles; False when the window is full."""
        pending = self._reserved.get(usage.id, 0)
        if usage.message_limit is not None and usage.messages_used + pending >= usage.message_limit:
            return False
        self._reserved[usage.id] = pending + 1
        return True

    def _release_quota(self, usage_record_id: str | None) -> None:
        if usage_record_id is None:
            return
        pending = self._reserved.get(usage_record_id, 0) - 1
        if pending > 0:
            self._reserved[usage_record_id] = pending
        else:
            self._reserved.pop(usage_record_id, None)

    async def begin_turn(self, owner_id: str, session_id: str, text: str) -> TurnContext:
        """
        Validate, check quota and persist the user message. Raises EmptyUserInputError,
        SessionNotFoundError, QuotaExceededError or PersistenceFailure before anything
        is streamed.
        """
        question = (text or "").strip()
        if not question:
            raise EmptyUserInputError()
        session = await asyncio.to_thread(self.store.get_session, session_id, owner_id)
        usage = await asyncio.to_thread(self.usage_meter.active_record, owner_id)
        if usage is not None and not self._reserve_quota(usage):
            logger.info("[chat_service:begin_turn] owner_id=%s quota exhausted (%d used, %d pending, limit %s)",
                        owner_id, usage.messages_used, self._reserved.get(usage.id, 0), usage.message_limit)
            raise QuotaExceededError()
        usage_record_id = usage.id if usage else None

        # In flight before the row is visible, so an integrity pass never takes a live turn for an orphan.
        message_id = str(uuid.uuid4())
        self._inflight.add(message_id)
        try:
            history = await asyncio.to_thread(self.store.list_messages, session_id)
            message = await asyncio.to_thread(self.store.add_user_message, session_id, question, message_id)
        except BaseException:
            self._inflight.discard(message_id)
            self._release_quota(usage_record_id)
            raise
        logger.info("[chat_service:begin_turn] session_id=%s user_message_id=%s history_len=%d",
                    session_id, message.id, len(history))
        return TurnContext(
            owner_id=owner_id,
            session_id=session_id,
            user_message_id=message.id,
            question=question,
            active_document_ids=session.active_document_ids,
            history=tuple(history),
            usage_record_id=usage_record_id,
        )

    def _save_partial(self, turn: TurnContext, answer: AnswerStream) -> None:
        text = answer.text
        try:
            citations = resolve_citations(self.store, turn.session_id, text)
            self.store.save_assistant_message(
                turn.session_id,
                text,
                citations,
                turn.usage_record_id,
                partial=answer.state is not StreamState.COMPLETED,
            )
        except (PersistenceFailure, QuotaExceededError) as e:
            logger.error("[chat_service:stream_turn] partial answer lost session_id=%s: %s", turn.session_id, e.message)

    async def _persist_partial(
        self,
        turn: TurnContext,
        answer: AnswerStream | None,
        saving: asyncio.Future | None,
    ) -> None:
        """Keep whatever was streamed before the caller went away."""
        if saving is not None:
            # The save was already running; let it finish rather than write a second answer.
            await asyncio.wait({saving})
            if saving.exception() is not None:
                logger.error("[chat_service:stream_turn] answer lost session_id=%s: %s",
                             turn.session_id, saving.exception())
            return
        if answer is None or not answer.text:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Finalized outside a running loop: nothing can be awaited.
            self._save_partial(turn, answer)
            return
        await asyncio.to_thread(self._save_partial, turn, answer)

    async def stream_turn(self, turn: TurnContext) -> AsyncIterator[str]:
        """Yield the text stream for a turn begun with begin_turn()."""
        answer: AnswerStream | None = None
        saving: asyncio.Future | None = None
        try:
            yield user_message_fragment(turn.user_message_id)

            state = await run_turn_pipeline(self.graph, turn)
            passages = state.get("passages") or ()
            earlier = await asyncio.to_thread(self.store.passages_for_session, turn.session_id)
            messages = build_generation_messages(turn.history, group_passages(earlier), turn.question, passages)

            answer = AnswerStream(self.llm)
            async with aclosing(answer.run(ANSWER_SYSTEM_PROMPT, messages)) as chunks:
                async for chunk in chunks:
                    yield chunk

            failed = answer.state is StreamState.FAILED
            if failed and not answer.text:
                yield error_fragment(answer.failure)
                return

            citations = await asyncio.to_thread(resolve_citations, self.store, turn.session_id, answer.text)
            saving = asyncio.ensure_future(
                asyncio.to_thread(
                    self.store.save_assistant_message,
                    turn.session_id,
                    answer.text,
                    citations,
                    turn.usage_record_id,
                    partial=failed,
                )
            )
            saved = await asyncio.shield(saving)
            yield assistant_message_fragment(saved.id)
            if failed:
                yield error_fragment(answer.failure)
                return
        except (GeneratorExit, asyncio.CancelledError):
            logger.info("[chat_service:stream_turn] caller disconnected session_id=%s chunks=%d",
                        turn.session_id, answer.chunk_count if answer else 0)
            await self._persist_partial(turn, answer, saving)
            raise
        except Exception as e:
            error = normalize_error(e)
            if error.kind is ErrorKind.PERSISTENCE_FAILURE:
                logger.error("[chat_service:stream_turn] session_id=%s answer not persisted: %s", turn.session_id, e)
            elif error.kind is ErrorKind.QUOTA_EXCEEDED:
                logger.info("[chat_service:stream_turn] session_id=%s answer refused: %s", turn.session_id, error.message)
            else:
                logger.exception("[chat_service:stream_turn] session_id=%s turn failed", turn.session_id)
            yield error_fragment(error)
            return
        finally:
            self._inflight.discard(turn.user_message_id)
            self._release_quota(turn.usage_record_id)

        await self._after_exchange(turn)

    async def _after_exchange(self, turn: TurnContext) -> None:
        if not turn.history:
            try:
                session = await asyncio.to_thread(self.store.get_session, turn.session_id)
                if not session.title:
                    title = await self.summarizer.generate_title(turn.question)
                    await asyncio.to_thread(self.store.set_title, turn.session_id, title)
                    logger.info("[chat_service:after_exchange] session_id=%s title=%r", turn.session_id, title)
            except Exception as e:
                logger.warning("[chat_service:after_exchange] title failed session_id=%s: %s", turn.session_id, e)
        await self.summarizer.maybe_summarize(turn.session_id)

    async def stream_message(self, owner_id: str, session_id: str, text: str) -> AsyncIterator[str]:
        """begin_turn + stream_turn in one generator."""
        turn = await self.begin_turn(owner_id, session_id, text)
        async with aclosing(self.stream_turn(turn)) as fragments:
            async for fragment in fragments:
                yield fragment


@lru_cache(maxsize=1)
def get_chat_service() -> ChatService:
    """Process-wide service wired from config."""
    store = ConversationStore()
    return ChatService(store, DocumentRepository(store.db_path), get_llm_client(), get_vector_search())

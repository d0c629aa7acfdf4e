"""
Conversation integrity: find user messages left without an answer and recover them.

An orphan is a user message whose next message is another user message, or which
ends the conversation while no turn for it is in flight. Recovery appends a best-effort
assistant message flagged `recovered` right after the orphan; the orphan itself is
never rewritten or deleted, and recovered answers are not billed. Other alternation
problems (an assistant message first, two assistant messages in a row) are reported only.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Iterable

from refchat.agent.llm import LLMClient
from refchat.agent.prompts import RECOVERY_FALLBACK_ANSWER, RECOVERY_SYSTEM_PROMPT
from refchat.core.config import ANSWER_MAX_TOKENS
from refchat.core.models import ExtractedPassage, Message, MessageRole
from refchat.services.answer_stream import build_generation_messages
from refchat.services.citations import resolve_citations
from refchat.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

RECOVERY_OFFSET = timedelta(microseconds=1)


@dataclass(frozen=True)
class IntegrityScan:
    orphans: tuple[Message, ...]
    violations: tuple[str, ...]


@dataclass(frozen=True)
class IntegrityReport:
    session_id: str
    orphans: tuple[str, ...] = ()
    recovered: tuple[str, ...] = ()
    violations: tuple[str, ...] = ()

    @property
    def healthy(self) -> bool:
        return not self.orphans and not self.violations


def find_orphans(messages: list[Message], inflight: Iterable[str] = ()) -> IntegrityScan:
    """Scan an ordered message list for unanswered user messages and alternation violations."""
    skip = set(inflight)
    orphans: list[Message] = []
    violations: list[str] = []
    for i, m in enumerate(messages):
        nxt = messages[i + 1] if i + 1 < len(messages) else None
        if m.role is MessageRole.USER:
            if m.id in skip:
                continue
            if nxt is None or nxt.role is MessageRole.USER:
                orphans.append(m)
        elif i == 0:
            violations.append(f"assistant message {m.id} opens the conversation")
        elif messages[i - 1].role is MessageRole.ASSISTANT:
            violations.append(f"assistant message {m.id} follows assistant message {messages[i - 1].id}")
    return IntegrityScan(orphans=tuple(orphans), violations=tuple(violations))


def group_passages(passages: list[ExtractedPassage]) -> dict[str, list[ExtractedPassage]]:
    grouped: dict[str, list[ExtractedPassage]] = {}
    for p in passages:
        grouped.setdefault(p.message_id, []).append(p)
    return grouped


class IntegrityManager:
    def __init__(
        self,
        store: ConversationStore,
        llm: LLMClient,
        inflight: Callable[[], Iterable[str]] | None = None,
    ) -> None:
        self.store = store
        self.llm = llm
        self._inflight = inflight or (lambda: ())
        self._locks: dict[str, asyncio.Lock] = {}

    async def _recovery_answer(
        self,
        orphan: Message,
        history: list[Message],
        by_message: dict[str, list[ExtractedPassage]],
    ) -> str:
        if not self.llm.enabled:
            return RECOVERY_FALLBACK_ANSWER
        messages = build_generation_messages(history, by_message, orphan.content, by_message.get(orphan.id, []))
        try:
            text = await self.llm.complete(RECOVERY_SYSTEM_PROMPT, messages, max_tokens=ANSWER_MAX_TOKENS)
        except Exception as e:
            logger.warning("[integrity:recover] generation failed message_id=%s: %s", orphan.id, e)
            return RECOVERY_FALLBACK_ANSWER
        return (text or "").strip() or RECOVERY_FALLBACK_ANSWER

    async def check_session(self, session_id: str) -> IntegrityReport:
        """Recover every orphan in the session. Running it again on a healthy session does nothing."""
        # One pass per session at a time; the scan below always sees the previous pass's writes.
        async with self._locks.setdefault(session_id, asyncio.Lock()):
            return await self._check_session(session_id)

    async def _check_session(self, session_id: str) -> IntegrityReport:
        messages = await asyncio.to_thread(self.store.list_messages, session_id)
        scan = find_orphans(messages, self._inflight())
        for v in scan.violations:
            logger.warning("[integrity:check_session] session_id=%s %s", session_id, v)
        if not scan.orphans:
            return IntegrityReport(session_id=session_id, violations=scan.violations)

        logger.info("[integrity:check_session] IN  session_id=%s orphans=%d", session_id, len(scan.orphans))
        passages = await asyncio.to_thread(self.store.passages_for_session, session_id)
        by_message = group_passages(passages)
        index = {m.id: i for i, m in enumerate(messages)}
        recovered = []
        for orphan in scan.orphans:
            history = messages[: index[orphan.id]]
            answer = await self._recovery_answer(orphan, history, by_message)
            citations = await asyncio.to_thread(resolve_citations, self.store, session_id, answer)
            saved = await asyncio.to_thread(
                self.store.save_recovered_answer,
                orphan,
                answer,
                citations,
                orphan.created_at + RECOVERY_OFFSET,
            )
            if saved is None:
                continue
            recovered.append(saved.id)
            logger.info("[integrity:check_session] recovered orphan=%s with message_id=%s citations=%d",
                        orphan.id, saved.id, len(citations))
        return IntegrityReport(
            session_id=session_id,
            orphans=tuple(o.id for o in scan.orphans),
            recovered=tuple(recovered),
            violations=scan.violations,
        )

    async def check_all(self) -> list[IntegrityReport]:
        """Check every session; a failure in one session is logged and does not stop the rest."""
        session_ids = await asyncio.to_thread(self.store.list_session_ids)
        logger.info("[integrity:check_all] IN  sessions=%d", len(session_ids))
        reports = []
        for session_id in session_ids:
            try:
                reports.append(await self.check_session(session_id))
            except Exception:
                logger.exception("[integrity:check_all] session_id=%s check failed", session_id)
        logger.info("[integrity:check_all] OUT recovered=%d", sum(len(r.recovered) for r in reports))
        return reports

"""
Retrieval: plan-driven fan-out search, snippet extraction and passage numbering.

Responsibility: For each active document and planned sub-query, pick the search
questions (specific sub-queries directly; generic ones through the document's probe
questions), run searches in fixed-width batches, persist raw hits, reduce each hit
set to one verbatim snippet and persist it as a numbered passage.

A failure in one search unit or one document's probe decision only removes that
unit's passages; retrieval for the rest of the turn continues.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from refchat.agent.llm import LLMClient, parse_json_object
from refchat.agent.prompts import PROBE_DECISION_SYSTEM_PROMPT
from refchat.core.config import PROBE_QUESTIONS_PER_DOCUMENT, RETRIEVAL_CONCURRENCY, SEARCH_TOP_K
from refchat.core.models import Document, ExtractedPassage, PassageCandidate, QueryPlan, TurnContext
from refchat.services.conversation_store import ConversationStore
from refchat.services.documents import DocumentRepository
from refchat.services.snippet_extractor import extract_snippet
from refchat.services.vector_store import VectorSearch

logger = logging.getLogger(__name__)


@dataclass
class RetrievalStats:
    decision_calls: int = 0
    synthesized_questions: int = 0
    search_calls: int = 0
    raw_hits: int = 0
    failed_units: int = 0


@dataclass(frozen=True)
class SearchUnit:
    """One search call: the question to search and extract for, and its optional document scope."""

    query: str
    document: Document | None = None

    @property
    def document_id(self) -> str | None:
        return self.document.id if self.document else None


@dataclass(frozen=True)
class RetrievalResult:
    passages: tuple[ExtractedPassage, ...]
    stats: RetrievalStats


def _format_probe_prompt(document: Document, generic_queries: tuple[str, ...]) -> str:
    probes = "\n".join(f"- {q}" for q in document.probe_questions) or "(none)"
    asks = "\n".join(f"- {q}" for q in generic_queries)
    return (
        f"Document: {document.name}\n\n"
        f"Structural description:\n{document.structure_description or '(none)'}\n\n"
        f"Content digest:\n{document.content_digest or '(none)'}\n\n"
        f"Existing probe questions:\n{probes}\n\n"
        f"User's broad questions:\n{asks}"
    )


class RetrievalOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        documents: DocumentRepository,
        search: VectorSearch,
        llm: LLMClient,
        top_k: int = SEARCH_TOP_K,
        concurrency: int = RETRIEVAL_CONCURRENCY,
        probe_limit: int = PROBE_QUESTIONS_PER_DOCUMENT,
    ) -> None:
        self.store = store
        self.documents = documents
        self.search = search
        self.llm = llm
        self.top_k = top_k
        self.concurrency = max(1, concurrency)
        self.probe_limit = probe_limit

    async def _in_batches(self, factories: list[Callable[[], Awaitable]]) -> list:
        """Run coroutine factories `concurrency` at a time, preserving input order in the result."""
        results: list = []
        for i in range(0, len(factories), self.concurrency):
            batch = factories[i : i + self.concurrency]
            results.extend(await asyncio.gather(*(f() for f in batch)))
        return results

    async def probe_questions(
        self,
        document: Document,
        generic_queries: tuple[str, ...],
        stats: RetrievalStats,
    ) -> list[str]:
        """
        One decision call per document: keep the existing probe questions if they are
        sufficient for the user's broad questions, otherwise synthesize new ones.
        """
        stats.decision_calls += 1
        existing = list(document.probe_questions)
        system = PROBE_DECISION_SYSTEM_PROMPT.format(limit=self.probe_limit)
        try:
            raw = await self.llm.complete(
                system,
                [{"role": "user", "content": _format_probe_prompt(document, generic_queries)}],
                max_tokens=400,
                fast=True,
            )
        except Exception as e:
            stats.failed_units += 1
            logger.warning("[retrieval:probe_questions] decision failed document_id=%s: %s", document.id, e)
            return []

        data = parse_json_object(raw)
        if data is None:
            # Disabled or unparsable: search with what we already have.
            logger.info("[retrieval:probe_questions] no decision for document_id=%s; using existing probes", document.id)
            return existing or list(generic_queries)
        if data.get("sufficient") is True and existing:
            logger.info("[retrieval:probe_questions] document_id=%s existing probes sufficient (%d)", document.id, len(existing))
            return existing

        questions = data.get("questions") if isinstance(data.get("questions"), list) else []
        new = []
        for q in questions:
            if isinstance(q, str) and q.strip() and q.strip() not in new:
                new.append(q.strip())
        new = new[: self.probe_limit]
        stats.synthesized_questions += len(new)
        logger.info("[retrieval:probe_questions] document_id=%s synthesized=%d", document.id, len(new))
        return new or existing or list(generic_queries)

    async def _run_unit(
        self,
        turn: TurnContext,
        unit: SearchUnit,
        seen: set[tuple[str, str]],
        stats: RetrievalStats,
    ) -> ExtractedPassage | None:
        key = None
        try:
            stats.search_calls += 1
            hits = await self.search.search(turn.owner_id, unit.query, self.top_k, document_id=unit.document_id)
            stats.raw_hits += len(hits)
            await asyncio.to_thread(
                self.store.record_raw_hits,
                turn.session_id,
                turn.user_message_id,
                turn.owner_id,
                unit.query,
                hits,
                unit.document_id,
            )
            snippet = await extract_snippet(self.llm, hits, unit.query)
            if snippet.is_empty:
                return None
            key = (snippet.document_id, snippet.text)
            # Check and claim with no suspension point in between.
            if key in seen:
                logger.info("[retrieval:_run_unit] duplicate passage from document_id=%s dropped", snippet.document_id)
                return None
            seen.add(key)
            passages = await asyncio.to_thread(
                self.store.add_passages,
                turn.session_id,
                turn.user_message_id,
                [PassageCandidate(snippet.document_id, snippet.document_name, snippet.text)],
            )
            return passages[0]
        except Exception as e:
            if key is not None:
                seen.discard(key)
            stats.failed_units += 1
            logger.warning("[retrieval:_run_unit] unit failed query=%r document_id=%s: %s", unit.query, unit.document_id, e)
            return None

    async def build_units(self, turn: TurnContext, plan: QueryPlan, stats: RetrievalStats) -> list[SearchUnit]:
        units: list[SearchUnit] = []
        if not turn.active_document_ids:
            units = [SearchUnit(q) for q in plan.all_queries]
        else:
            # Selected ids that do not resolve for this owner yield nothing; the scope is never widened.
            documents = await asyncio.to_thread(self.documents.get_documents, turn.owner_id, turn.active_document_ids)
            if not documents:
                logger.warning("[retrieval:build_units] session_id=%s none of the active documents resolved: %s",
                               turn.session_id, list(turn.active_document_ids))
            for q in plan.specific:
                units.extend(SearchUnit(q, doc) for doc in documents)
            if plan.generic and documents:
                probe_sets = await self._in_batches(
                    [lambda doc=doc: self.probe_questions(doc, plan.generic, stats) for doc in documents]
                )
                for doc, questions in zip(documents, probe_sets):
                    units.extend(SearchUnit(q, doc) for q in questions)
        unique: dict[tuple[str, str | None], SearchUnit] = {}
        for u in units:
            unique.setdefault((u.query, u.document_id), u)
        return list(unique.values())

    async def retrieve(self, turn: TurnContext, plan: QueryPlan) -> RetrievalResult:
        """Return the turn's numbered passages (ordered by reference number) and call statistics."""
        logger.info("[retrieval:retrieve] IN  session_id=%s specific=%d generic=%d documents=%d",
                    turn.session_id, len(plan.specific), len(plan.generic), len(turn.active_document_ids))
        stats = RetrievalStats()
        units = await self.build_units(turn, plan, stats)
        seen: set[tuple[str, str]] = set()
        results = await self._in_batches([lambda u=u: self._run_unit(turn, u, seen, stats) for u in units])
        passages = sorted((p for p in results if p is not None), key=lambda p: p.reference_number)
        logger.info("[retrieval:retrieve] OUT units=%d passages=%d refs=%s stats=%s",
                    len(units), len(passages), [p.reference_number for p in passages], stats)
        return RetrievalResult(passages=tuple(passages), stats=stats)

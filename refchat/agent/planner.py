"""
Query planner: split one user message into specific and generic sub-queries.

Never raises. Any failure, or a plan with nothing in either list, falls back to the
original question as a single generic sub-query.
"""

import logging

from refchat.agent.llm import LLMClient, parse_json_object
from refchat.agent.prompts import PLANNER_SYSTEM_PROMPT
from refchat.core.config import PLANNER_HISTORY_TURNS, PLANNER_MAX_TOKENS
from refchat.core.models import Message, QueryPlan

logger = logging.getLogger(__name__)


def _format_history(history: list[Message] | tuple[Message, ...], max_messages: int = PLANNER_HISTORY_TURNS) -> str:
    """Format last N messages for inclusion in prompts."""
    if not history:
        return ""
    recent = history[-max_messages:]
    lines = []
    for m in recent:
        content = (m.content or "").strip()
        if not content:
            continue
        label = "User" if m.role.value == "user" else "Assistant"
        lines.append(f"{label}: {content[:600]}")
    if not lines:
        return ""
    return "Recent conversation:\n" + "\n".join(lines) + "\n\n"


def _clean_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        q = " ".join(item.split())
        if q and q not in out:
            out.append(q)
    return out


def fallback_plan(question: str) -> QueryPlan:
    return QueryPlan(specific=(), generic=(question.strip(),))


async def plan_queries(
    llm: LLMClient,
    question: str,
    history: list[Message] | tuple[Message, ...] = (),
) -> QueryPlan:
    """Decompose `question` into disjoint specific/generic sub-queries."""
    logger.info("[planner:plan_queries] IN  question=%r history_len=%d", question, len(history))
    prompt = f"{_format_history(history)}Current message: {question}"
    try:
        raw = await llm.complete(
            PLANNER_SYSTEM_PROMPT,
            [{"role": "user", "content": prompt}],
            max_tokens=PLANNER_MAX_TOKENS,
            fast=True,
        )
    except Exception as e:
        logger.warning("[planner:plan_queries] classification failed (%s); using fallback plan", e)
        return fallback_plan(question)

    data = parse_json_object(raw)
    if data is None:
        logger.info("[planner:plan_queries] unparsable reply %r; using fallback plan", (raw or "")[:200])
        return fallback_plan(question)

    specific = _clean_list(data.get("specific"))
    generic = [q for q in _clean_list(data.get("generic")) if q not in specific]
    if not specific and not generic:
        logger.info("[planner:plan_queries] empty plan; using fallback plan")
        return fallback_plan(question)

    plan = QueryPlan(specific=tuple(specific), generic=tuple(generic))
    logger.info("[planner:plan_queries] OUT specific=%s generic=%s", plan.specific, plan.generic)
    return plan

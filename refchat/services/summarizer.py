"""
Conversation upkeep: periodic block summaries and session titles.

Summaries: after every N completed exchanges the most recent block of N exchanges is
condensed and attached to the assistant message that closes the block. All summaries
are later replayed to the generator in place of the summarized message bodies.
"""

import asyncio
import logging
from datetime import datetime

from refchat.agent.llm import LLMClient
from refchat.agent.prompts import SESSION_TITLE_SYSTEM_PROMPT, SUMMARY_SYSTEM_PROMPT
from refchat.core.config import SESSION_TITLE_MAX_CHARS, SUMMARY_EVERY_EXCHANGES
from refchat.core.models import Message, MessageRole
from refchat.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)


def completed_exchanges(messages: list[Message]) -> int:
    """Number of user messages directly followed by an assistant message."""
    count = 0
    for prev, cur in zip(messages, messages[1:]):
        if prev.role is MessageRole.USER and cur.role is MessageRole.ASSISTANT:
            count += 1
    return count


def summary_block(messages: list[Message], every: int) -> list[Message] | None:
    """
    The block to summarize if the last message closes the N-th, 2N-th, ... exchange
    and is not summarized yet; otherwise None.
    """
    if every <= 0 or not messages or messages[-1].role is not MessageRole.ASSISTANT:
        return None
    if messages[-1].summary:
        return None
    exchanges = completed_exchanges(messages)
    if exchanges == 0 or exchanges % every != 0:
        return None
    last_summarized = max((i for i, m in enumerate(messages) if m.summary), default=-1)
    return messages[last_summarized + 1 :]


def _format_block(block: list[Message]) -> str:
    lines = []
    for m in block:
        label = "User" if m.role is MessageRole.USER else "Assistant"
        lines.append(f"{label}: {m.content}")
    return "\n\n".join(lines)


class Summarizer:
    def __init__(self, store: ConversationStore, llm: LLMClient, every: int = SUMMARY_EVERY_EXCHANGES) -> None:
        self.store = store
        self.llm = llm
        self.every = every

    async def maybe_summarize(self, session_id: str) -> str | None:
        """Summarize the closing block if the cadence is due. Failures are logged, never raised."""
        messages = await asyncio.to_thread(self.store.list_messages, session_id)
        block = summary_block(messages, self.every)
        if not block:
            return None
        closing = block[-1]
        logger.info("[summarizer:maybe_summarize] session_id=%s block=%d closing=%s", session_id, len(block), closing.id)
        try:
            summary = await self.llm.complete(
                SUMMARY_SYSTEM_PROMPT,
                [{"role": "user", "content": _format_block(block)}],
                max_tokens=400,
                fast=True,
            )
        except Exception as e:
            logger.warning("[summarizer:maybe_summarize] summary call failed session_id=%s: %s", session_id, e)
            return None
        summary = (summary or "").strip()
        if not summary:
            return None
        try:
            await asyncio.to_thread(self.store.set_summary, closing.id, summary)
        except Exception as e:
            logger.warning("[summarizer:maybe_summarize] could not store summary session_id=%s: %s", session_id, e)
            return None
        return summary

    async def generate_title(self, first_message: str, today: datetime | None = None) -> str:
        """Short title for a new session; falls back to "Chat <date>"."""
        fallback = f"Chat {(today or datetime.now()).strftime('%Y-%m-%d')}"
        try:
            name = await self.llm.complete(
                SESSION_TITLE_SYSTEM_PROMPT.format(max_chars=SESSION_TITLE_MAX_CHARS),
                [{"role": "user", "content": first_message}],
                max_tokens=30,
                fast=True,
            )
        except Exception as e:
            logger.warning("[summarizer:generate_title] failed: %s", e)
            return fallback
        name = (name or "").strip().strip('"').strip()
        return name[:SESSION_TITLE_MAX_CHARS].strip() or fallback

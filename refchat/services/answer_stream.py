"""
Streaming answer generation with an accumulator.

Each upstream chunk is appended to the accumulator and handed to the caller
immediately, in upstream order, without merging. Upstream errors end the stream
with a structured failure instead of raising into the caller mid-stream.
"""

import logging
from enum import Enum
from typing import Any, AsyncIterator

from refchat.agent.llm import LLMClient
from refchat.agent.prompts import CONVERSATION_SUMMARY_PREAMBLE, format_user_turn
from refchat.core.config import ANSWER_MAX_TOKENS, ANSWER_TEMPERATURE
from refchat.core.errors import ChatError, normalize_error
from refchat.core.models import ExtractedPassage, Message, MessageRole

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    NOT_STARTED = "not_started"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class AnswerStream:
    def __init__(self, llm: LLMClient, max_tokens: int = ANSWER_MAX_TOKENS, temperature: float = ANSWER_TEMPERATURE) -> None:
        self.llm = llm
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.state = StreamState.NOT_STARTED
        self.failure: ChatError | None = None
        self.chunk_count = 0
        self._parts: list[str] = []
        self._upstream: Any = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    async def run(self, system: str, messages: list[dict[str, Any]]) -> AsyncIterator[str]:
        if self.state is not StreamState.NOT_STARTED:
            raise RuntimeError(f"AnswerStream already used (state={self.state.value})")
        self.state = StreamState.STREAMING
        logger.info("[answer_stream:run] IN  messages=%d client=%s", len(messages), self.llm.name)
        try:
            self._upstream = self.llm.stream(system, messages, max_tokens=self.max_tokens, temperature=self.temperature)
            async for chunk in self._upstream:
                if not chunk:
                    continue
                self._parts.append(chunk)
                self.chunk_count += 1
                yield chunk
        except Exception as e:
            self.failure = normalize_error(e)
            self.state = StreamState.FAILED
            logger.warning("[answer_stream:run] FAILED after chunks=%d kind=%s: %s",
                           self.chunk_count, self.failure.kind.value, e)
            return
        finally:
            await self._close_upstream()
        self.state = StreamState.COMPLETED
        logger.info("[answer_stream:run] OUT chunks=%d text_len=%d", self.chunk_count, len(self.text))

    async def _close_upstream(self) -> None:
        upstream, self._upstream = self._upstream, None
        aclose = getattr(upstream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug("[answer_stream] upstream close raised: %s", e)


def build_generation_messages(
    history: list[Message] | tuple[Message, ...],
    passages_by_message: dict[str, list[ExtractedPassage]],
    question: str,
    passages: list[ExtractedPassage] | tuple[ExtractedPassage, ...],
) -> list[dict[str, str]]:
    """
    Message list for the generator: accumulated summaries as compact history, then
    every message after the last summarized one in full (user turns with their own
    passages), then the current question with this turn's passages.
    """
    summaries = [m.summary for m in history if m.summary]
    last_summarized = max((i for i, m in enumerate(history) if m.summary), default=-1)
    tail = history[last_summarized + 1 :]

    out: list[dict[str, str]] = []
    if summaries:
        out.append({"role": "user", "content": CONVERSATION_SUMMARY_PREAMBLE + "\n\n" + "\n\n".join(summaries)})
        out.append({"role": "assistant", "content": "Understood."})
    for m in tail:
        if m.role is MessageRole.USER:
            out.append({"role": "user", "content": format_user_turn(m.content, passages_by_message.get(m.id, []))})
        else:
            out.append({"role": "assistant", "content": m.content})
    out.append({"role": "user", "content": format_user_turn(question, passages)})
    return out

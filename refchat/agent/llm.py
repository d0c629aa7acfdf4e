"""
Text-generation capability: OpenAI (primary) or Hugging Face router (fallback).

Built once per process by get_llm_client(). When no credentials are configured a
DisabledLLMClient is returned; it satisfies the same interface (empty completions,
a single "unavailable" stream chunk), so callers never branch on a missing client.
complete() and stream() raise on upstream errors; callers decide how to degrade.
"""

import json
import logging
import re
from functools import lru_cache
from typing import Any, AsyncIterator

import httpx
from openai import AsyncOpenAI

from refchat.core.config import (
    ANSWER_TEMPERATURE,
    HF_API_KEY,
    HF_CHAT_URL,
    HF_LLM_MODEL,
    LLM_API_TIMEOUT,
    OPENAI_API_KEY,
    OPENAI_FAST_MODEL,
    OPENAI_LLM_MODEL,
)

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "AI service is currently unavailable"


def _with_system(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    if system:
        out.append({"role": "system", "content": system})
    out.extend(messages)
    return out


class LLMClient:
    """Interface for chat-style generation. Messages are {"role": "user"|"assistant", "content": str}."""

    name = "base"
    enabled = True

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        max_tokens: int = 512,
        temperature: float = ANSWER_TEMPERATURE,
        fast: bool = False,
    ) -> str:
        raise NotImplementedError

    def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        max_tokens: int = 2048,
        temperature: float = ANSWER_TEMPERATURE,
    ) -> AsyncIterator[str]:
        raise NotImplementedError


class OpenAIClient(LLMClient):
    name = "openai"

    def __init__(self, api_key: str, model: str = OPENAI_LLM_MODEL, fast_model: str = OPENAI_FAST_MODEL) -> None:
        self.model = model
        self.fast_model = fast_model
        self._client = AsyncOpenAI(api_key=api_key, timeout=LLM_API_TIMEOUT)

    async def complete(self, system, messages, max_tokens=512, temperature=ANSWER_TEMPERATURE, fast=False) -> str:
        model = self.fast_model if fast else self.model
        logger.info("[llm:openai] IN  model=%s messages=%d max_tokens=%d", model, len(messages), max_tokens)
        response = await self._client.chat.completions.create(
            model=model,
            messages=_with_system(system, messages),
            max_tokens=max_tokens,
            temperature=temperature,
        )
        msg = response.choices[0].message if response.choices else None
        out = (getattr(msg, "content", None) or "").strip()
        logger.info("[llm:openai] OUT response_len=%d", len(out))
        return out

    async def stream(self, system, messages, max_tokens=2048, temperature=ANSWER_TEMPERATURE):
        logger.info("[llm:openai:stream] IN  model=%s messages=%d", self.model, len(messages))
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=_with_system(system, messages),
            max_tokens=max_tokens,
            temperature=temperature,
            stream=True,
        )
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if getattr(delta, "content", None):
                    yield delta.content
        finally:
            await response.close()


class HFRouterClient(LLMClient):
    """Hugging Face router chat completions (OpenAI-compatible wire format)."""

    name = "hf"

    def __init__(self, api_key: str, model: str = HF_LLM_MODEL, url: str = HF_CHAT_URL) -> None:
        self.model = model
        self.url = url
        self._headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    def _payload(self, system, messages, max_tokens, temperature, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": _with_system(system, messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": stream,
        }

    async def complete(self, system, messages, max_tokens=512, temperature=ANSWER_TEMPERATURE, fast=False) -> str:
        logger.info("[llm:hf] IN  model=%s messages=%d max_tokens=%d", self.model, len(messages), max_tokens)
        async with httpx.AsyncClient(timeout=LLM_API_TIMEOUT) as client:
            response = await client.post(
                self.url,
                json=self._payload(system, messages, max_tokens, temperature, stream=False),
                headers=self._headers,
            )
        response.raise_for_status()
        data = response.json()
        choices = data.get("choices") or []
        if choices and isinstance(choices[0], dict):
            out = ((choices[0].get("message") or {}).get("content") or "").strip()
            logger.info("[llm:hf] OUT response_len=%d", len(out))
            return out
        return ""

    async def stream(self, system, messages, max_tokens=2048, temperature=ANSWER_TEMPERATURE):
        logger.info("[llm:hf:stream] IN  model=%s messages=%d", self.model, len(messages))
        payload = self._payload(system, messages, max_tokens, temperature, stream=True)
        async with httpx.AsyncClient(timeout=LLM_API_TIMEOUT) as client:
            async with client.stream("POST", self.url, json=payload, headers=self._headers) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning("[llm:hf:stream] skipping undecodable event %r", data[:120])
                        continue
                    choices = event.get("choices") or []
                    if not choices:
                        continue
                    content = (choices[0].get("delta") or {}).get("content")
                    if content:
                        yield content


class FallbackLLMClient(LLMClient):
    """Primary client with a fallback for complete(); streaming always uses the primary."""

    def __init__(self, primary: LLMClient, fallback: LLMClient) -> None:
        self.primary = primary
        self.fallback = fallback
        self.name = f"{primary.name}+{fallback.name}"

    async def complete(self, system, messages, max_tokens=512, temperature=ANSWER_TEMPERATURE, fast=False) -> str:
        try:
            out = await self.primary.complete(system, messages, max_tokens, temperature, fast)
        except Exception as e:
            logger.warning("[llm] %s failed (%s); falling back to %s", self.primary.name, e, self.fallback.name)
            return await self.fallback.complete(system, messages, max_tokens, temperature, fast)
        if out:
            return out
        logger.info("[llm] %s returned empty; falling back to %s", self.primary.name, self.fallback.name)
        return await self.fallback.complete(system, messages, max_tokens, temperature, fast)

    def stream(self, system, messages, max_tokens=2048, temperature=ANSWER_TEMPERATURE):
        return self.primary.stream(system, messages, max_tokens, temperature)


class DisabledLLMClient(LLMClient):
    name = "disabled"
    enabled = False

    async def complete(self, system, messages, max_tokens=512, temperature=ANSWER_TEMPERATURE, fast=False) -> str:
        return ""

    async def stream(self, system, messages, max_tokens=2048, temperature=ANSWER_TEMPERATURE):
        yield UNAVAILABLE_MESSAGE


@lru_cache(maxsize=1)
def get_llm_client() -> LLMClient:
    """Build the process-wide generation client from config."""
    if OPENAI_API_KEY:
        client: LLMClient = OpenAIClient(OPENAI_API_KEY)
        if HF_API_KEY:
            client = FallbackLLMClient(client, HFRouterClient(HF_API_KEY))
    elif HF_API_KEY:
        client = HFRouterClient(HF_API_KEY)
    else:
        logger.warning("[llm] no OPENAI_API_KEY or HF_API_KEY; AI features run in DISABLED mode")
        client = DisabledLLMClient()
    logger.info("[llm] generation client=%s", client.name)
    return client


_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_object(text: str) -> dict[str, Any] | None:
    """Parse the first JSON object in an LLM reply (tolerates code fences and leading prose)."""
    if not text:
        return None
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        value = json.loads(cleaned)
        return value if isinstance(value, dict) else None
    except json.JSONDecodeError:
        pass
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        value = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None

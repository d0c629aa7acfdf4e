"""
Vector search client: Milvus Cloud similarity search over document chunks, embeddings via HF Inference API.

Responsibility: Embed a query with all-MiniLM-L6-v2, search Milvus filtered by owner
(and by document when scoped), return ranked SearchHits. Chunks are written by the
ingestion pipeline; this module only reads.
"""

import asyncio
import json
import logging
from functools import lru_cache
from typing import Any

import httpx

from refchat.core.config import (
    COLLECTION_NAME,
    EMBED_API_TIMEOUT,
    HF_API_KEY,
    HF_EMBED_MODEL,
    MILVUS_TOKEN,
    MILVUS_URI,
    SEARCH_API_TIMEOUT,
)
from refchat.core.errors import ServiceUnavailableError
from refchat.core.models import SearchHit

logger = logging.getLogger(__name__)

HF_API_URL_ROUTER = (
    "https://router.huggingface.co/hf-inference/models/"
    f"{HF_EMBED_MODEL}/pipeline/feature-extraction"
)
OUTPUT_FIELDS = ["chunk_text", "document_id", "document_name", "owner_id"]


async def embed_query(text: str) -> list[float]:
    """
    Embed one query using Hugging Face Inference API (all-MiniLM-L6-v2).

    Returns a 384-dim vector normalized for cosine similarity.
    """
    if not HF_API_KEY:
        raise ServiceUnavailableError("HF_API_KEY must be set in .env to embed search queries")
    headers = {"Authorization": f"Bearer {HF_API_KEY}", "Content-Type": "application/json"}
    payload = {"inputs": [text], "options": {"wait_for_model": True}}
    async with httpx.AsyncClient(timeout=EMBED_API_TIMEOUT) as client:
        response = await client.post(HF_API_URL_ROUTER, json=payload, headers=headers)
    if response.status_code == 503:
        raise ServiceUnavailableError(f"HF model is loading. Retry later. {response.text[:200]}")
    response.raise_for_status()
    result = response.json()
    vec = result[0] if isinstance(result, list) and result and isinstance(result[0], list) else result
    if not isinstance(vec, list) or not vec:
        raise ServiceUnavailableError("HF embeddings returned an unexpected payload")
    norm = sum(x * x for x in vec) ** 0.5 or 1.0
    return [x / norm for x in vec]


def _quote(value: str) -> str:
    # Milvus boolean expressions accept JSON-style double-quoted strings.
    return json.dumps(value)


def build_filter(owner_id: str, document_id: str | None = None) -> str:
    expr = f"owner_id == {_quote(owner_id)}"
    if document_id:
        expr += f" and document_id == {_quote(document_id)}"
    return expr


class VectorSearch:
    """Interface for the similarity-search service."""

    name = "base"
    enabled = True

    async def search(
        self,
        owner_id: str,
        query: str,
        top_k: int,
        document_id: str | None = None,
    ) -> list[SearchHit]:
        raise NotImplementedError


class MilvusSearch(VectorSearch):
    name = "milvus"

    def __init__(self, uri: str = MILVUS_URI, token: str = MILVUS_TOKEN, collection: str = COLLECTION_NAME) -> None:
        self.uri = uri
        self.token = token
        self.collection = collection
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from pymilvus import MilvusClient

            self._client = MilvusClient(uri=self.uri, token=self.token)
            logger.info("Milvus connection established")
        return self._client

    def _search_sync(self, vector: list[float], top_k: int, expr: str) -> list[Any]:
        results = self._get_client().search(
            collection_name=self.collection,
            data=[vector],
            limit=top_k,
            filter=expr,
            output_fields=OUTPUT_FIELDS,
            timeout=SEARCH_API_TIMEOUT,
        )
        return results[0] if results else []

    async def search(self, owner_id, query, top_k, document_id=None) -> list[SearchHit]:
        logger.info("[vector_store:search] IN  owner_id=%s query=%r top_k=%d document_id=%s",
                    owner_id, query, top_k, document_id)
        if not query or not query.strip():
            return []
        vector = await embed_query(query.strip())
        raw_hits = await asyncio.to_thread(self._search_sync, vector, top_k, build_filter(owner_id, document_id))
        hits = []
        for h in raw_hits:
            # Milvus returns dict with "distance", "id", and "entity" (output_fields)
            e = h.get("entity") or h
            hits.append(SearchHit(
                document_id=str(e.get("document_id", "")),
                document_name=e.get("document_name", ""),
                chunk_text=e.get("chunk_text", ""),
                score=float(h.get("distance", h.get("score", 0.0))),
            ))
        logger.info("[vector_store:search] OUT hits=%d documents=%s", len(hits), [h.document_id for h in hits])
        return hits


class DisabledSearch(VectorSearch):
    name = "disabled"
    enabled = False

    async def search(self, owner_id, query, top_k, document_id=None) -> list[SearchHit]:
        return []


@lru_cache(maxsize=1)
def get_vector_search() -> VectorSearch:
    """Build the process-wide search client from config."""
    if MILVUS_URI and MILVUS_TOKEN and HF_API_KEY:
        return MilvusSearch()
    logger.warning("[vector_store] MILVUS_URI, MILVUS_TOKEN and HF_API_KEY are required; search runs in DISABLED mode")
    return DisabledSearch()

"""Similarity stores for previously accepted items.

Two adapters implement the same ``similarity_search`` contract:
- an in-memory store with deterministic hash embeddings and cosine
  similarity, seeded from the accepted-items table, and
- an HTTP client for an OpenSearch-style k-NN index.

Neither adapter is a hard dependency of generation: the context retriever
swallows their failures and continues with an empty exemplar list.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import requests

from engines.caching import EmbeddingCache

logger = logging.getLogger(__name__)


class EmbeddingBackend(Protocol):
    """Simple protocol implemented by embedding backends."""

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError("EmbeddingBackend implementations must define embed().")


class SimilarityStore(Protocol):
    def similarity_search(
        self,
        query_text: str,
        filters: Mapping[str, Any],
        k: int,
        *,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError("SimilarityStore implementations must define similarity_search().")


class HashEmbeddingBackend:
    """Deterministic fallback embedding using hashed token frequencies."""

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = max(8, dimensions)

    def _tokenize(self, text: str) -> List[str]:
        return [token for token in text.lower().split() if token]

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in self._tokenize(text):
            bucket = int(hashlib.sha256(token.encode("utf-8")).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        norm = math.sqrt(sum(value * value for value in vector))
        if norm:
            vector = [value / norm for value in vector]
        return vector


@dataclass
class StoredItem:
    id: str
    text: str
    answer: Any
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: List[float] = field(default_factory=list)


def embedding_text(text: str, metadata: Mapping[str, Any]) -> str:
    """Text embedded for an item: its labels followed by the question."""

    labels = [
        str(metadata.get("topic") or ""),
        f"grade {metadata['grade']}" if metadata.get("grade") is not None else "",
        str(metadata.get("difficulty") or ""),
    ]
    return " ".join(part for part in labels + [text] if part)


def _matches(metadata: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    for key, expected in filters.items():
        if expected is None:
            continue
        if str(metadata.get(key)) != str(expected):
            return False
    return True


class InMemorySimilarityStore:
    """Cosine-similarity search over items held in memory."""

    def __init__(
        self,
        backend: Optional[EmbeddingBackend] = None,
        *,
        cache: Optional[EmbeddingCache] = None,
    ) -> None:
        self.backend = backend or HashEmbeddingBackend()
        self._cache = cache if cache is not None else EmbeddingCache()
        self._items: Dict[str, StoredItem] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _embed(self, text: str) -> List[float]:
        cached = self._cache.get(text)
        if cached is not None:
            return cached
        vector = self.backend.embed(text)
        self._cache.add(text, vector)
        return vector

    def add(self, item_id: str, text: str, answer: Any, metadata: Optional[Mapping[str, Any]] = None) -> None:
        meta = dict(metadata or {})
        stored = StoredItem(
            id=str(item_id),
            text=text,
            answer=answer,
            metadata=meta,
            embedding=self.backend.embed(embedding_text(text, meta)),
        )
        with self._lock:
            self._items[stored.id] = stored

    def add_rows(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Seed from ``db.list_items`` rows; returns the number added."""

        added = 0
        for row in rows:
            self.add(
                str(row["id"]),
                str(row["question_text"]),
                row.get("answer"),
                {
                    "grade": row.get("grade_level"),
                    "topic": row.get("category"),
                    "difficulty": row.get("difficulty"),
                },
            )
            added += 1
        return added

    def similarity_search(
        self,
        query_text: str,
        filters: Mapping[str, Any],
        k: int,
        *,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        query_vector = self._embed(query_text)
        with self._lock:
            candidates = [item for item in self._items.values() if _matches(item.metadata, filters)]
        scored = []
        for item in candidates:
            similarity = max(0.0, min(1.0, _cosine_similarity(query_vector, item.embedding)))
            scored.append((similarity, item))
        scored.sort(key=lambda pair: (-pair[0], pair[1].id))
        return [
            {
                "text": item.text,
                "answer": item.answer,
                "score": round(score, 6),
                "difficulty": item.metadata.get("difficulty"),
                "category": item.metadata.get("topic"),
            }
            for score, item in scored[: max(0, int(k))]
        ]


class HttpSimilarityStore:
    """k-NN search against an OpenSearch-style ``/{index}/_search`` endpoint."""

    def __init__(
        self,
        base_url: str,
        index: str,
        *,
        backend: Optional[EmbeddingBackend] = None,
        timeout: float = 5.0,
        vector_field: str = "embedding",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.index = index
        self.backend = backend or HashEmbeddingBackend()
        self.timeout = timeout
        self.vector_field = vector_field

    def build_query(self, query_text: str, filters: Mapping[str, Any], k: int) -> Dict[str, Any]:
        vector = self.backend.embed(query_text)
        term_filters = [
            {"term": {key: value}} for key, value in sorted(filters.items()) if value is not None
        ]
        return {
            "size": k,
            "_source": ["text", "answer", "difficulty", "topic"],
            "query": {
                "bool": {
                    "must": [{"knn": {self.vector_field: {"vector": vector, "k": k}}}],
                    "filter": term_filters,
                }
            },
        }

    def similarity_search(
        self,
        query_text: str,
        filters: Mapping[str, Any],
        k: int,
        *,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        endpoint = f"{self.base_url}/{self.index}/_search"
        budget = self.timeout if timeout is None else min(self.timeout, timeout)
        response = requests.post(endpoint, json=self.build_query(query_text, filters, k), timeout=budget)
        if response.status_code == 404:
            logger.info("Similarity index %s not found; treating as empty", self.index)
            return []
        response.raise_for_status()
        payload = response.json()
        hits: Sequence[Any] = ((payload or {}).get("hits") or {}).get("hits") or []
        results: List[Dict[str, Any]] = []
        for hit in hits:
            if not isinstance(hit, dict):
                continue
            source = hit.get("_source") or {}
            text = source.get("text")
            if not isinstance(text, str) or not text.strip():
                continue
            try:
                score = float(hit.get("_score") or 0.0)
            except (TypeError, ValueError):
                score = 0.0
            results.append(
                {
                    "text": text,
                    "answer": source.get("answer"),
                    "score": max(0.0, min(1.0, score)),
                    "difficulty": source.get("difficulty"),
                    "category": source.get("topic"),
                }
            )
        return results


def _cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if not vec_a or not vec_b:
        return 0.0
    # Ensure equal length by truncation/extension with zeros.
    length = min(len(vec_a), len(vec_b))
    a = vec_a[:length]
    b = vec_b[:length]
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def store_from_env() -> SimilarityStore:
    """HTTP store when ``SIMILARITY_URL`` is set, otherwise an in-memory store."""

    url = os.getenv("SIMILARITY_URL", "").strip()
    if not url:
        return InMemorySimilarityStore()
    return HttpSimilarityStore(url, os.getenv("SIMILARITY_INDEX") or "accepted-items")


__all__ = [
    "EmbeddingBackend",
    "HashEmbeddingBackend",
    "HttpSimilarityStore",
    "InMemorySimilarityStore",
    "SimilarityStore",
    "StoredItem",
    "embedding_text",
    "store_from_env",
]

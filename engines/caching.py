"""Thread-safe LRU cache for query embeddings."""

import hashlib
from collections import OrderedDict
from threading import Lock
from typing import List, Optional


class EmbeddingCache:
    """Thread-safe LRU cache for embeddings with size limit."""

    def __init__(self, max_size: int = 5000):
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._max_size = max(1, max_size)
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def add(self, text: str, embedding: List[float]) -> None:
        """Add an embedding to the cache with LRU eviction."""
        key = self._make_key(text)
        with self._lock:
            self._cache[key] = list(embedding)
            self._cache.move_to_end(key)
            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)

    def get(self, text: str) -> Optional[List[float]]:
        """Retrieve an embedding from the cache, updating access order."""
        key = self._make_key(text)
        with self._lock:
            embedding = self._cache.get(key)
            if embedding is None:
                self.misses += 1
                return None
            self.hits += 1
            self._cache.move_to_end(key)
            return list(embedding)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @staticmethod
    def _make_key(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

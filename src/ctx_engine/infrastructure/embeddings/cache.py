import hashlib
import threading
from collections import OrderedDict

from pydantic import BaseModel


class CacheStats(BaseModel):
    size: int
    max_size: int
    hits: int
    misses: int


class EmbeddingCache:
    """
    Bounded FIFO cache of normalized vectors keyed by (mode, text).
    Safe to share between the indexing worker and request threads.
    """

    def __init__(self, max_size: int = 1000) -> None:
        if max_size < 1:
            raise ValueError("Cache size must be at least 1.")
        self.max_size = max_size
        self._entries: OrderedDict[str, list[float]] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def make_key(text: str, mode: str) -> str:
        return hashlib.sha256(f"{mode}:{text.strip()}".encode()).hexdigest()

    def get(self, text: str, mode: str) -> list[float] | None:
        key = self.make_key(text, mode)
        with self._lock:
            vector = self._entries.get(key)
            if vector is None:
                self._misses += 1
            else:
                self._hits += 1
            return vector

    def put(self, text: str, mode: str, vector: list[float]) -> None:
        key = self.make_key(text, mode)
        with self._lock:
            if key in self._entries:
                self._entries[key] = vector
                return
            # Oldest insertion is evicted first
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = vector

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries), max_size=self.max_size, hits=self._hits, misses=self._misses
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

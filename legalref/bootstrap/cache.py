import hashlib
import re
import time
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import structlog

from .embeddings import EmbeddingVector, InputType

logger = structlog.get_logger()

_whitespace_regex = re.compile(r"\s+")


@dataclass
class CachedEmbedding:
    embedding: EmbeddingVector
    tokens: int
    expires_at: float


@dataclass
class CacheStats:
    hits: int
    misses: int
    size: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups > 0 else 0.0


def cache_key(text: str, input_type: InputType) -> str:
    """``emb:<input_type>:<sha256 hex of the case-folded, collapsed text>``"""
    normalized = _whitespace_regex.sub(" ", text.strip().casefold())
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return f"emb:{input_type}:{digest}"


class EmbeddingCache:
    """
    In-process LRU cache of embeddings with a fixed time-to-live per entry.

    Texts that differ only in case or whitespace share an entry. Both the
    size bound and the TTL exist to bound memory; a miss is always safe.

    Args:
        max_entries: Entries beyond this count evict the least recently used.
        ttl: Seconds an entry stays valid after it was set.
        clock: Monotonic time source, in seconds.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.ttl = ttl
        self._clock = clock
        self._store: OrderedDict[str, CachedEmbedding] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _lookup(self, key: str) -> CachedEmbedding | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._store[key]
            return None
        self._store.move_to_end(key)
        return entry

    def get(self, text: str, input_type: InputType) -> CachedEmbedding | None:
        entry = self._lookup(cache_key(text, input_type))
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def get_many(
        self, texts: Sequence[str], input_type: InputType
    ) -> dict[int, CachedEmbedding]:
        """Returns the hits only, keyed by their index in ``texts``."""
        found: dict[int, CachedEmbedding] = {}
        for i, text in enumerate(texts):
            entry = self.get(text, input_type)
            if entry is not None:
                found[i] = entry
        return found

    def set(
        self,
        text: str,
        input_type: InputType,
        embedding: EmbeddingVector,
        tokens: int,
    ) -> None:
        key = cache_key(text, input_type)
        self._store[key] = CachedEmbedding(
            embedding=embedding,
            tokens=tokens,
            expires_at=self._clock() + self.ttl,
        )
        self._store.move_to_end(key)
        while len(self._store) > self.max_entries:
            self._store.popitem(last=False)

    def stats(self) -> CacheStats:
        return CacheStats(hits=self.hits, misses=self.misses, size=len(self._store))

    def clear(self) -> None:
        self._store.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._store)

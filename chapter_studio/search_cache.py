"""In-memory cache for music and sound-effect search results."""

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional


def normalize_query(keywords: Iterable[str]) -> str:
    """Build a stable cache key from search keywords.

    Args:
        keywords: Search terms in any case or order.

    Returns:
        Lower-cased, de-duplicated, sorted terms joined by spaces.
    """
    terms = {term.strip().lower() for keyword in keywords for term in keyword.split()}
    return " ".join(sorted(term for term in terms if term))


@dataclass
class _Entry:
    value: Any
    stored_at: float


class SearchCache:
    """Search results keyed by normalized query with TTL and size bounds.

    Entries older than ``ttl_seconds`` are dropped on read. When the cache is
    full the least recently used entry is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            ttl_seconds: Time-to-live for an entry.
            max_entries: Maximum number of entries kept.
            clock: Monotonic time source, injectable for tests.
        """
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, namespace: str, keywords: Iterable[str]) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        key = f"{namespace}:{normalize_query(keywords)}"
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if self._clock() - entry.stored_at > self._ttl:
            del self._entries[key]
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, namespace: str, keywords: Iterable[str], value: Any) -> None:
        key = f"{namespace}:{normalize_query(keywords)}"
        self._entries[key] = _Entry(value=value, stored_at=self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now - entry.stored_at > self._ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

"""Short-TTL cache of successful scrape results.

Keyed by (username, date key) so a dashboard refreshing the same date does
not log into the LMS again within the TTL. Only results are cached, never
credentials or session cookies. Expired entries are treated as absent and
evicted as they are touched (cachetools.TTLCache semantics).
"""

import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from cachetools import TTLCache

from src.lms_scraper.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    inserted_at: float


class ResultCache(Generic[T]):
    """TTL cache of scrape results keyed by (username, date key)."""

    def __init__(
        self,
        ttl: float = 300.0,
        maxsize: int = 100,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._timer = timer
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)

    def get(self, username: str, date_key: str) -> T | None:
        entry = self.get_entry(username, date_key)
        return entry.value if entry is not None else None

    def get_entry(self, username: str, date_key: str) -> CacheEntry[T] | None:
        entry = self._entries.get((username, date_key))
        if entry is not None:
            log.info(
                "cache_hit",
                username=username,
                key=date_key,
                age_seconds=round(self._timer() - entry.inserted_at, 1),
            )
        return entry

    def set(self, username: str, date_key: str, value: T) -> None:
        self._entries[(username, date_key)] = CacheEntry(value, self._timer())
        # Opportunistic sweep keeps memory bounded between lookups
        self._entries.expire()

    def invalidate(self, username: str) -> int:
        """Drop every cached result for a user."""
        keys = [key for key in list(self._entries.keys()) if key[0] == username]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)

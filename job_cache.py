"""Process-local, per-user job cache with a fixed TTL.

Entries live only in this process; a second instance keeps its own cache.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from job_normalizer import matches_query
from schemas import JobQuery, JobRecord

logger = structlog.get_logger(__name__)

CacheKey = Tuple[int, int, int]  # (user_id, page, page_size)


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


@dataclass
class CachedBatch:
    jobs: List[JobRecord]
    total: int
    fetched_at: float
    age_seconds: float = 0.0


@dataclass
class _Entry:
    jobs: List[JobRecord] = field(default_factory=list)
    total: int = 0
    fetched_at: float = 0.0


class JobCache:
    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, _Entry] = {}

    @staticmethod
    def key(user_id: int, page: int = 1, page_size: int = 50) -> CacheKey:
        return (user_id, page, page_size)

    def _view(self, entry: _Entry, query: Optional[JobQuery]) -> CachedBatch:
        jobs = [job for job in entry.jobs if matches_query(job, query)]
        return CachedBatch(
            jobs=jobs,
            total=entry.total,
            fetched_at=entry.fetched_at,
            age_seconds=self._clock() - entry.fetched_at,
        )

    def get(self, key: CacheKey, query: Optional[JobQuery] = None):
        """Fresh entry filtered by ``query``, or ``MISS`` once the TTL has elapsed."""
        entry = self._entries.get(key)
        if entry is None:
            return MISS
        if self._clock() - entry.fetched_at >= self.ttl_seconds:
            return MISS
        return self._view(entry, query)

    def get_stale(self, key: CacheKey, query: Optional[JobQuery] = None):
        """Like ``get`` but ignores the TTL; used while the upstream is failing."""
        entry = self._entries.get(key)
        if entry is None or not entry.jobs:
            return MISS
        return self._view(entry, query)

    def put(self, key: CacheKey, jobs: List[JobRecord], total: Optional[int] = None) -> None:
        self._entries[key] = _Entry(
            jobs=list(jobs),
            total=len(jobs) if total is None else total,
            fetched_at=self._clock(),
        )
        logger.debug("Job cache updated", user_id=key[0], page=key[1], jobs=len(jobs))

    def invalidate(self, user_id: Optional[int] = None) -> int:
        """Drop one user's entries, or everything when ``user_id`` is None."""
        if user_id is None:
            dropped = len(self._entries)
            self._entries.clear()
        else:
            keys = [key for key in self._entries if key[0] == user_id]
            for key in keys:
                del self._entries[key]
            dropped = len(keys)
        logger.info("Job cache invalidated", user_id=user_id, entries=dropped)
        return dropped

"""TTL + LRU cache of discovered project states.

Entries are keyed by project id. Least-recently-used ordering comes from
a process-wide monotonic access counter so eviction depends only on call
order; wall-clock access time is consulted only when two sequences tie.

A background task purges expired entries on a fixed interval. Its
lifecycle is explicit (``start()`` / ``stop()``); nothing runs until a
caller starts it.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import CacheConfig
from .models import ProjectState, ResourceKind

logger = logging.getLogger(__name__)

# Shared by every cache instance in the process
_access_counter = itertools.count(1)
_counter_lock = threading.Lock()


def _next_sequence() -> int:
    with _counter_lock:
        return next(_access_counter)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class CacheEntry:
    """A cached project state with access metadata."""

    state: ProjectState
    cached_at: datetime
    expires_at: datetime
    accessed_at: datetime
    hit_count: int = 0
    last_access_seq: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class CacheStats:
    """Point-in-time snapshot of cache counters."""

    size: int = 0
    hits: int = 0
    misses: int = 0
    evicts: int = 0
    expires: int = 0
    last_cleanup: datetime | None = None
    max_entries: int = 0
    default_ttl_seconds: float = 0.0
    hit_rate: float = field(init=False, default=0.0)

    def __post_init__(self) -> None:
        total = self.hits + self.misses
        self.hit_rate = self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": self.hit_rate,
            "evicts": self.evicts,
            "expires": self.expires,
            "lastCleanup": self.last_cleanup.isoformat() if self.last_cleanup else None,
            "maxEntries": self.max_entries,
            "defaultTTLSeconds": self.default_ttl_seconds,
        }


class StateCache:
    """In-memory project state cache.

    All public methods are safe to call from multiple threads and from
    coroutines; the lock is never held across I/O.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

        self._hits = 0
        self._misses = 0
        self._evicts = 0
        self._expires = 0
        self._last_cleanup: datetime | None = None

        self._shutdown_event: asyncio.Event | None = None
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> CacheConfig:
        return self._config

    def get(self, project_id: str) -> tuple[ProjectState | None, bool]:
        """Look up a project state.

        Returns:
            Tuple of (state, hit). Expired entries are evicted and reported
            as a miss.
        """
        with self._lock:
            entry = self._entries.get(project_id)
            if entry is None:
                self._misses += 1
                return None, False

            now = self._clock()
            if entry.is_expired(now):
                del self._entries[project_id]
                self._expires += 1
                self._misses += 1
                return None, False

            entry.accessed_at = now
            entry.last_access_seq = _next_sequence()
            entry.hit_count += 1
            self._hits += 1
            return entry.state, True

    def set(self, project_id: str, state: ProjectState, ttl_seconds: float = 0) -> None:
        """Store a project state.

        Args:
            project_id: Cache key.
            state: Discovered state.
            ttl_seconds: Entry lifetime; 0 uses the configured default.
        """
        if ttl_seconds <= 0:
            ttl_seconds = self._config.default_ttl_seconds

        with self._lock:
            if project_id not in self._entries and len(self._entries) >= self._config.max_entries:
                self._evict_lru()

            now = self._clock()
            self._entries[project_id] = CacheEntry(
                state=state,
                cached_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
                accessed_at=now,
                last_access_seq=_next_sequence(),
            )

    def delete(self, project_id: str) -> None:
        with self._lock:
            if self._entries.pop(project_id, None) is not None:
                self._evicts += 1

    def clear(self) -> None:
        with self._lock:
            self._evicts += len(self._entries)
            self._entries.clear()

    def invalidate_by_resource_kind(self, kind: ResourceKind) -> int:
        """Drop every cached state that contains at least one resource of ``kind``.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            doomed = [
                project_id
                for project_id, entry in self._entries.items()
                if entry.state.by_kind(kind)
            ]
            for project_id in doomed:
                del self._entries[project_id]
                self._evicts += 1
            return len(doomed)

    def invalidate_by_resource(self, project_id: str, kind: ResourceKind, name: str) -> bool:
        """Drop the project's cached state if it contains the named resource."""
        with self._lock:
            entry = self._entries.get(project_id)
            if entry is None or entry.state.find(kind, name) is None:
                return False
            del self._entries[project_id]
            self._evicts += 1
            return True

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                evicts=self._evicts,
                expires=self._expires,
                last_cleanup=self._last_cleanup,
                max_entries=self._config.max_entries,
                default_ttl_seconds=self._config.default_ttl_seconds,
            )

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def cleanup_expired(self) -> int:
        """Purge expired entries.

        Returns:
            Number of entries purged.
        """
        with self._lock:
            now = self._clock()
            expired = [pid for pid, entry in self._entries.items() if entry.is_expired(now)]
            for project_id in expired:
                del self._entries[project_id]
                self._expires += 1
            self._last_cleanup = now

        if expired:
            logger.debug(
                "Purged expired cache entries",
                extra={"purged": len(expired), "remaining": len(self._entries)},
            )
        return len(expired)

    def _evict_lru(self) -> None:
        # Caller holds the lock
        if not self._entries:
            return
        victim = min(
            self._entries.items(),
            key=lambda item: (item[1].last_access_seq, item[1].accessed_at),
        )[0]
        del self._entries[victim]
        self._evicts += 1
        logger.debug("Evicted LRU cache entry", extra={"project_id": victim})

    # ------------------------------------------------------------------
    # Background cleanup lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic cleanup task on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._shutdown_event = asyncio.Event()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(self._shutdown_event))

    async def stop(self) -> None:
        """Stop the cleanup task and wait for it to exit."""
        if self._cleanup_task is None or self._shutdown_event is None:
            return
        self._shutdown_event.set()
        await self._cleanup_task
        self._cleanup_task = None

    @property
    def running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def _cleanup_loop(self, shutdown: asyncio.Event) -> None:
        while not shutdown.is_set():
            try:
                await asyncio.wait_for(
                    shutdown.wait(),
                    timeout=self._config.cleanup_interval_seconds,
                )
            except TimeoutError:
                self.cleanup_expired()

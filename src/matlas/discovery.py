"""Live state discovery for a project.

Discovery fans out one ``list`` call per resource kind against the
registered resource services. Calls are bounded by a semaphore and each
call first takes a token from a shared rate limiter so that a large
project cannot burst past the control plane's request quota.

Partial failures do not abort the fan-out: every per-kind error is
collected and raised together as a ``DiscoveryError`` that still carries
whatever state was discovered.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from .cache import StateCache
from .config import DiscoveryConfig
from .errors import DiscoveryError, is_not_found
from .fingerprint import state_fingerprint
from .models import (
    STATE_FIELDS,
    ClusterManifest,
    DatabaseUserManifest,
    Manifest,
    NetworkAccessManifest,
    ProjectManifest,
    ProjectState,
    ResourceKind,
)
from .services import ServiceRegistry, traits_for

logger = logging.getLogger(__name__)


@runtime_checkable
class StateDiscovery(Protocol):
    """Interface the engine uses to read live project state."""

    async def discover_project(self, project_id: str) -> ProjectState:
        ...

    async def discover_clusters(self, project_id: str) -> list[ClusterManifest]:
        ...

    async def discover_database_users(self, project_id: str) -> list[DatabaseUserManifest]:
        ...

    async def discover_network_access(self, project_id: str) -> list[NetworkAccessManifest]:
        ...

    async def discover_project_settings(self, project_id: str) -> ProjectManifest | None:
        ...


class RateLimiter:
    """Token bucket shared by every discovery call.

    Args:
        rate: Tokens added per second.
        burst: Bucket capacity; defaults to one second worth of tokens.
    """

    def __init__(
        self,
        rate: float,
        burst: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._rate = rate
        self._sleep = sleep
        self._capacity = float(burst if burst is not None else max(1, int(rate)))
        self._tokens = self._capacity
        self._clock = clock
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._updated = now

    async def acquire(self) -> None:
        """Wait until a token is available and take it."""
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) / self._rate
            # Lock is not held while waiting
            await self._sleep(wait)


class ServiceStateDiscovery:
    """Discovers project state through the registered resource services."""

    def __init__(
        self,
        services: ServiceRegistry,
        config: DiscoveryConfig | None = None,
    ) -> None:
        self._services = services
        self._config = config or DiscoveryConfig()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_calls)
        self._limiter = RateLimiter(self._config.requests_per_second)

    async def _list(self, project_id: str, kind: ResourceKind) -> list[Manifest]:
        async with self._semaphore:
            await self._limiter.acquire()
            return await self._services.get(kind).list(project_id)

    async def discover_kind(self, project_id: str, kind: ResourceKind) -> list[Manifest]:
        """List every live resource of one kind."""
        return await self._list(project_id, kind)

    async def discover_clusters(self, project_id: str) -> list[ClusterManifest]:
        return await self._list(project_id, ResourceKind.CLUSTER)  # type: ignore[return-value]

    async def discover_database_users(self, project_id: str) -> list[DatabaseUserManifest]:
        return await self._list(project_id, ResourceKind.DATABASE_USER)  # type: ignore[return-value]

    async def discover_network_access(self, project_id: str) -> list[NetworkAccessManifest]:
        return await self._list(project_id, ResourceKind.NETWORK_ACCESS)  # type: ignore[return-value]

    async def discover_project_settings(self, project_id: str) -> ProjectManifest | None:
        if not self._services.has(ResourceKind.PROJECT):
            return None
        async with self._semaphore:
            await self._limiter.acquire()
            try:
                project = await self._services.get(ResourceKind.PROJECT).get(project_id, project_id)
            except Exception as e:
                if is_not_found(e):
                    return None
                raise
        if not isinstance(project, ProjectManifest):
            raise TypeError(f"project handler returned {type(project).__name__}")
        return project

    def _discoverable_kinds(self) -> list[ResourceKind]:
        return [
            kind
            for kind in STATE_FIELDS
            if self._services.has(kind) and not traits_for(kind).analysis_only
        ]

    async def discover_project(self, project_id: str) -> ProjectState:
        """Discover the full live state of a project.

        Project settings are read first; every other kind is listed
        concurrently.

        Raises:
            DiscoveryError: If any per-kind call failed. ``state`` on the
                error holds the partial result.
        """
        started = time.monotonic()
        errors: list[Exception] = []
        state = ProjectState()

        try:
            state.project = await self.discover_project_settings(project_id)
        except Exception as e:
            errors.append(e)

        kinds = self._discoverable_kinds()
        results = await asyncio.gather(
            *(self._list(project_id, kind) for kind in kinds),
            return_exceptions=True,
        )
        for kind, result in zip(kinds, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "Discovery failed for resource kind",
                    extra={"project_id": project_id, "kind": kind.value, "error": str(result)},
                )
                errors.append(result)
                continue
            state.by_kind(kind).extend(result)

        state.discovered_at = datetime.now(UTC)
        state.fingerprint = state_fingerprint(state)

        logger.info(
            "Discovered project state",
            extra={
                "project_id": project_id,
                "resources": state.resource_count(),
                "errors": len(errors),
                "duration_seconds": round(time.monotonic() - started, 3),
            },
        )

        if errors:
            raise DiscoveryError(project_id, errors, state)
        return state


class CachedStateDiscovery:
    """Discovery wrapper that consults the state cache first."""

    def __init__(self, discovery: StateDiscovery, cache: StateCache) -> None:
        self._discovery = discovery
        self._cache = cache

    @property
    def cache(self) -> StateCache:
        return self._cache

    async def discover_project(self, project_id: str) -> ProjectState:
        state, hit = self._cache.get(project_id)
        if hit and state is not None:
            logger.debug("State cache hit", extra={"project_id": project_id})
            return state

        state = await self._discovery.discover_project(project_id)
        self._cache.set(project_id, state)
        return state

    def invalidate(self, project_id: str) -> None:
        """Force the next discovery of a project to hit the backend."""
        self._cache.delete(project_id)

    async def discover_clusters(self, project_id: str) -> list[ClusterManifest]:
        return await self._discovery.discover_clusters(project_id)

    async def discover_database_users(self, project_id: str) -> list[DatabaseUserManifest]:
        return await self._discovery.discover_database_users(project_id)

    async def discover_network_access(self, project_id: str) -> list[NetworkAccessManifest]:
        return await self._discovery.discover_network_access(project_id)

    async def discover_project_settings(self, project_id: str) -> ProjectManifest | None:
        return await self._discovery.discover_project_settings(project_id)


class SnapshotStateDiscovery:
    """Discovery over a fixed, previously captured project state."""

    def __init__(self, states: dict[str, ProjectState]) -> None:
        self._states = states

    def _state(self, project_id: str) -> ProjectState:
        state = self._states.get(project_id)
        if state is None:
            raise DiscoveryError(project_id, [LookupError(f"no snapshot for project {project_id}")])
        if not state.fingerprint:
            state.fingerprint = state_fingerprint(state)
        return state

    async def discover_project(self, project_id: str) -> ProjectState:
        return self._state(project_id)

    async def discover_clusters(self, project_id: str) -> list[ClusterManifest]:
        return list(self._state(project_id).clusters)

    async def discover_database_users(self, project_id: str) -> list[DatabaseUserManifest]:
        return list(self._state(project_id).database_users)

    async def discover_network_access(self, project_id: str) -> list[NetworkAccessManifest]:
        return list(self._state(project_id).network_access)

    async def discover_project_settings(self, project_id: str) -> ProjectManifest | None:
        return self._state(project_id).project

"""Tests for live state discovery."""

from __future__ import annotations

import pytest
from atlas_mock import MockAtlasContext, cluster, database_user, network_access, project

from matlas.cache import StateCache
from matlas.config import DiscoveryConfig
from matlas.discovery import (
    CachedStateDiscovery,
    RateLimiter,
    ServiceStateDiscovery,
    SnapshotStateDiscovery,
    StateDiscovery,
)
from matlas.errors import DiscoveryError, UnauthorizedError
from matlas.fingerprint import state_fingerprint
from matlas.models import ProjectState, ResourceKind

FAST = DiscoveryConfig(requests_per_second=1000)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestServiceStateDiscovery:
    """Tests for service-backed discovery."""

    @pytest.mark.asyncio
    async def test_discovers_every_kind(self) -> None:
        """Test project settings and child resources are discovered."""
        ctx = MockAtlasContext()
        ctx.seed(project("proj1"), cluster("c1"), database_user("u1"), network_access("office"))

        state = await ServiceStateDiscovery(ctx.registry, FAST).discover_project("proj1")

        assert state.project is not None
        assert state.project.name == "proj1"
        assert [c.name for c in state.clusters] == ["c1"]
        assert [u.name for u in state.database_users] == ["u1"]
        assert [n.name for n in state.network_access] == ["office"]
        assert state.fingerprint == state_fingerprint(state)

    @pytest.mark.asyncio
    async def test_analysis_kinds_not_listed(self) -> None:
        """Test read-only analysis kinds are never listed."""
        ctx = MockAtlasContext()

        await ServiceStateDiscovery(ctx.registry, FAST).discover_project("proj1")

        listed = {call.kind for call in ctx.state.calls_for("list")}
        assert ResourceKind.CLUSTER in listed
        assert ResourceKind.SEARCH_METRICS not in listed
        assert ResourceKind.PROJECT not in listed

    @pytest.mark.asyncio
    async def test_missing_project_is_none(self) -> None:
        """Test a project without settings discovers as None."""
        ctx = MockAtlasContext()

        state = await ServiceStateDiscovery(ctx.registry, FAST).discover_project("proj1")

        assert state.project is None
        assert state.resource_count() == 0

    @pytest.mark.asyncio
    async def test_unregistered_kinds_skipped(self) -> None:
        """Test only kinds with a registered service are discovered."""
        ctx = MockAtlasContext(kinds=(ResourceKind.CLUSTER,))
        ctx.seed(cluster("c1"))

        state = await ServiceStateDiscovery(ctx.registry, FAST).discover_project("proj1")

        assert [c.name for c in state.clusters] == ["c1"]
        assert state.project is None
        assert {call.kind for call in ctx.calls} == {ResourceKind.CLUSTER}

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_state(self) -> None:
        """Test a failing kind raises with the rest of the state attached."""
        ctx = MockAtlasContext()
        ctx.seed(cluster("c1"), database_user("u1"))
        ctx.fail_next(ResourceKind.DATABASE_USER, "list", UnauthorizedError())

        with pytest.raises(DiscoveryError) as exc_info:
            await ServiceStateDiscovery(ctx.registry, FAST).discover_project("proj1")

        err = exc_info.value
        assert err.project_id == "proj1"
        assert len(err.errors) == 1
        assert isinstance(err.state, ProjectState)
        assert [c.name for c in err.state.clusters] == ["c1"]
        assert err.state.database_users == []

    @pytest.mark.asyncio
    async def test_per_kind_helpers(self) -> None:
        """Test single-kind discovery helpers."""
        ctx = MockAtlasContext()
        ctx.seed(cluster("c1"), database_user("u1"), network_access("office"), project("proj1"))
        discovery = ServiceStateDiscovery(ctx.registry, FAST)

        assert [c.name for c in await discovery.discover_clusters("proj1")] == ["c1"]
        assert [u.name for u in await discovery.discover_database_users("proj1")] == ["u1"]
        assert [n.name for n in await discovery.discover_network_access("proj1")] == ["office"]
        settings = await discovery.discover_project_settings("proj1")
        assert settings is not None
        assert isinstance(discovery, StateDiscovery)


class TestCachedStateDiscovery:
    """Tests for the caching wrapper."""

    @pytest.mark.asyncio
    async def test_second_discovery_hits_cache(self) -> None:
        """Test a cached project is not re-listed."""
        ctx = MockAtlasContext()
        ctx.seed(cluster("c1"))
        cached = CachedStateDiscovery(ServiceStateDiscovery(ctx.registry, FAST), StateCache())

        first = await cached.discover_project("proj1")
        calls_after_first = len(ctx.calls)
        second = await cached.discover_project("proj1")

        assert second is first
        assert len(ctx.calls) == calls_after_first
        assert cached.cache.stats().hits == 1

    @pytest.mark.asyncio
    async def test_invalidate_forces_rediscovery(self) -> None:
        """Test invalidation sends the next call to the backend."""
        ctx = MockAtlasContext()
        cached = CachedStateDiscovery(ServiceStateDiscovery(ctx.registry, FAST), StateCache())

        await cached.discover_project("proj1")
        ctx.seed(cluster("c1"))
        cached.invalidate("proj1")

        state = await cached.discover_project("proj1")

        assert [c.name for c in state.clusters] == ["c1"]


class TestSnapshotStateDiscovery:
    """Tests for snapshot-backed discovery."""

    @pytest.mark.asyncio
    async def test_returns_snapshot(self) -> None:
        """Test snapshots are returned with a fingerprint."""
        state = ProjectState.from_manifests([cluster("c1"), project("proj1")])
        discovery = SnapshotStateDiscovery({"proj1": state})

        discovered = await discovery.discover_project("proj1")

        assert discovered.fingerprint == state_fingerprint(state)
        assert [c.name for c in await discovery.discover_clusters("proj1")] == ["c1"]
        assert await discovery.discover_database_users("proj1") == []
        assert await discovery.discover_network_access("proj1") == []
        assert await discovery.discover_project_settings("proj1") is state.project

    @pytest.mark.asyncio
    async def test_missing_snapshot(self) -> None:
        """Test unknown projects raise a discovery error."""
        with pytest.raises(DiscoveryError, match="no snapshot for project other"):
            await SnapshotStateDiscovery({}).discover_project("other")


class TestRateLimiter:
    """Tests for the token bucket."""

    @pytest.mark.asyncio
    async def test_burst_then_refill(self) -> None:
        """Test tokens are spent immediately up to the burst size."""
        clock = FakeClock()
        limiter = RateLimiter(rate=2, burst=2, clock=clock)

        await limiter.acquire()
        await limiter.acquire()
        assert limiter._tokens == 0  # noqa: SLF001

        clock.now = 1.0
        await limiter.acquire()
        assert limiter._tokens == pytest.approx(1.0)  # noqa: SLF001

    @pytest.mark.asyncio
    async def test_waits_without_holding_lock(self) -> None:
        """Test an empty bucket waits for one token outside the lock."""
        clock = FakeClock()
        waits: list[tuple[float, bool]] = []

        async def sleep(seconds: float) -> None:
            waits.append((seconds, limiter._lock.locked()))  # noqa: SLF001
            clock.now += seconds

        limiter = RateLimiter(rate=4, burst=1, clock=clock, sleep=sleep)
        await limiter.acquire()
        await limiter.acquire()

        assert waits == [(pytest.approx(0.25), False)]
        assert limiter._tokens == pytest.approx(0.0)  # noqa: SLF001

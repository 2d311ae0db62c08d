"""Tests for the project state cache."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from atlas_mock import cluster, database_user

from matlas.cache import StateCache
from matlas.config import CacheConfig, ConfigurationError
from matlas.models import Manifest, ProjectState, ResourceKind


class FakeClock:
    """Manually advanced clock."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _state(*manifests: Manifest) -> ProjectState:
    return ProjectState.from_manifests(manifests)


class TestGetSet:
    """Tests for basic cache reads and writes."""

    def test_miss_then_hit(self) -> None:
        """Test a stored state is returned as a hit."""
        cache = StateCache()
        state = _state(cluster("c1"))

        assert cache.get("A") == (None, False)
        cache.set("A", state)

        cached, hit = cache.get("A")
        assert hit is True
        assert cached is state

        stats = cache.stats()
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.hit_rate == 0.5

    def test_overwrite_does_not_evict(self) -> None:
        """Test replacing an existing key never evicts another entry."""
        cache = StateCache(CacheConfig(max_entries=1))
        cache.set("A", _state())
        cache.set("A", _state(cluster("c1")))

        assert cache.keys() == ["A"]
        assert cache.stats().evicts == 0

    def test_delete_and_clear(self) -> None:
        """Test removal counts as eviction."""
        cache = StateCache()
        cache.set("A", _state())
        cache.set("B", _state())
        cache.set("C", _state())

        cache.delete("A")
        cache.delete("missing")
        assert sorted(cache.keys()) == ["B", "C"]

        cache.clear()
        assert cache.keys() == []
        assert cache.stats().evicts == 3


class TestEviction:
    """Tests for least-recently-used eviction."""

    def test_recently_read_entry_survives(self) -> None:
        """Test the least recently accessed entry is evicted at capacity."""
        cache = StateCache(CacheConfig(max_entries=2, default_ttl_seconds=3600))

        cache.set("A", _state())
        cache.set("B", _state())
        cache.get("A")
        cache.set("C", _state())

        assert set(cache.keys()) == {"A", "C"}
        assert cache.stats().evicts == 1

    def test_insertion_order_without_reads(self) -> None:
        """Test the oldest insert is evicted when nothing was read."""
        cache = StateCache(CacheConfig(max_entries=2))

        cache.set("A", _state())
        cache.set("B", _state())
        cache.set("C", _state())

        assert set(cache.keys()) == {"B", "C"}


class TestExpiry:
    """Tests for TTL expiry."""

    def test_expired_entry_is_a_miss(self) -> None:
        """Test reads past the TTL miss and drop the entry."""
        clock = FakeClock()
        cache = StateCache(CacheConfig(default_ttl_seconds=60), clock)
        cache.set("A", _state())

        clock.advance(59)
        assert cache.get("A")[1] is True

        clock.advance(2)
        assert cache.get("A") == (None, False)
        assert cache.keys() == []
        assert cache.stats().expires == 1

    def test_per_entry_ttl(self) -> None:
        """Test an explicit TTL overrides the default."""
        clock = FakeClock()
        cache = StateCache(CacheConfig(default_ttl_seconds=3600), clock)
        cache.set("short", _state(), ttl_seconds=10)
        cache.set("long", _state())

        clock.advance(11)

        assert cache.cleanup_expired() == 1
        assert cache.keys() == ["long"]
        stats = cache.stats()
        assert stats.expires == 1
        assert stats.last_cleanup == clock.now


class TestInvalidation:
    """Tests for resource-based invalidation."""

    def test_invalidate_by_kind(self) -> None:
        """Test only states holding the kind are dropped."""
        cache = StateCache()
        cache.set("A", _state(cluster("c1")))
        cache.set("B", _state(database_user("u1")))

        assert cache.invalidate_by_resource_kind(ResourceKind.CLUSTER) == 1
        assert cache.keys() == ["B"]

    def test_invalidate_by_resource(self) -> None:
        """Test a named resource invalidates only its own project."""
        cache = StateCache()
        cache.set("A", _state(cluster("c1")))
        cache.set("B", _state(cluster("c1")))

        assert cache.invalidate_by_resource("A", ResourceKind.CLUSTER, "c2") is False
        assert cache.invalidate_by_resource("A", ResourceKind.CLUSTER, "c1") is True
        assert cache.keys() == ["B"]


class TestLifecycle:
    """Tests for the background cleanup task."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        """Test the cleanup task runs until stopped."""
        cache = StateCache(CacheConfig(cleanup_interval_seconds=0.01))
        assert cache.running is False

        cache.start()
        assert cache.running is True
        await asyncio.sleep(0.05)
        await cache.stop()

        assert cache.running is False
        assert cache.stats().last_cleanup is not None

    @pytest.mark.asyncio
    async def test_stop_without_start(self) -> None:
        """Test stopping an idle cache is a no-op."""
        await StateCache().stop()


class TestConfig:
    """Tests for cache configuration validation."""

    def test_rejects_zero_capacity(self) -> None:
        """Test capacity must be positive."""
        with pytest.raises(ConfigurationError, match="max_entries"):
            CacheConfig(max_entries=0)

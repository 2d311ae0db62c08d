"""Tests for content fingerprints."""

from __future__ import annotations

import hashlib
from enum import Enum

from atlas_mock import cluster

from matlas.fingerprint import (
    FingerprintEngine,
    canonical_json,
    compute_fingerprint,
    drop_path,
    state_fingerprint,
    to_plain,
)
from matlas.models import ProjectState, ResourceKind


class Color(Enum):
    RED = "red"


class TestCanonicalJson:
    """Tests for the canonical serialization."""

    def test_sorted_compact(self) -> None:
        """Test keys are sorted at every level without whitespace."""
        assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'

    def test_key_order_does_not_matter(self) -> None:
        """Test mapping iteration order never changes the fingerprint."""
        assert compute_fingerprint({"a": 1, "b": 2}) == compute_fingerprint({"b": 2, "a": 1})

    def test_fingerprint_is_sha256_hex(self) -> None:
        """Test the fingerprint is the hex digest of the canonical form."""
        expected = hashlib.sha256(b'{"a":1}').hexdigest()
        assert compute_fingerprint({"a": 1}) == expected

    def test_plain_conversion(self) -> None:
        """Test enums, sets and models are converted to JSON values."""
        assert to_plain(Color.RED) == "red"
        assert to_plain({3, 1, 2}) == [1, 2, 3]
        document = to_plain(cluster("c1"))
        assert document["spec"]["instanceSize"] == "M10"


class TestFingerprintEngine:
    """Tests for masked fingerprints."""

    def test_ignored_fields_removed_at_any_depth(self) -> None:
        """Test volatile fields do not affect the fingerprint."""
        engine = FingerprintEngine()
        assert engine.compute({"spec": {"size": 1, "updatedAt": "x"}}) == engine.compute({"spec": {"size": 1}})

    def test_include_fields_selects_paths(self) -> None:
        """Test only included paths are hashed when configured."""
        engine = FingerprintEngine(include_fields=("spec.instanceSize",))

        assert engine.compute(cluster("c1")) == engine.compute(cluster("other", region="EU_WEST_1"))
        assert engine.compute(cluster("c1")) != engine.compute(cluster("c1", instance_size="M20"))

    def test_kind_masks(self) -> None:
        """Test per-kind masks drop paths only for that kind."""
        engine = FingerprintEngine(kind_masks={ResourceKind.CLUSTER: ("metadata.labels",)})
        labelled = cluster("c1", labels={"env": "prod"})

        assert engine.compute(labelled, ResourceKind.CLUSTER) == engine.compute(cluster("c1"), ResourceKind.CLUSTER)
        assert engine.compute(labelled) != engine.compute(cluster("c1"))

    def test_drop_path_missing_is_noop(self) -> None:
        """Test dropping an absent path leaves the document unchanged."""
        document = {"a": {"b": 1}}
        drop_path(document, "a.c.d")
        drop_path(document, "a.b")
        assert document == {"a": {}}


class TestStateFingerprint:
    """Tests for project state fingerprints."""

    def test_ignores_discovery_timestamp(self) -> None:
        """Test states differing only in discovery metadata match."""
        first = ProjectState.from_manifests([cluster("c1")])
        second = ProjectState.from_manifests([cluster("c1")])
        second.fingerprint = "stale"

        assert state_fingerprint(first) == state_fingerprint(second)
        assert state_fingerprint(first) != state_fingerprint(ProjectState())

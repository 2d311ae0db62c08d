"""Tests for manifest and snapshot loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from matlas.errors import ManifestLoadError, ManifestValidationError
from matlas.manifest_loader import (
    expand_paths,
    load_manifests,
    load_project_state,
    load_state_snapshot,
    parse_documents,
    read_documents,
    validate_manifests,
)
from matlas.models import ResourceKind

CLUSTER_YAML = """\
apiVersion: matlas.mongodb.com/v1
kind: Cluster
metadata:
  name: c1
spec:
  provider: AWS
  region: US_EAST_1
  instanceSize: M10
"""

USER_YAML = """\
apiVersion: matlas.mongodb.com/v1
kind: DatabaseUser
metadata:
  name: u1
  dependsOn: [c1]
spec:
  username: u1
  roles:
    - roleName: read
      databaseName: app
"""


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


class TestReadDocuments:
    """Tests for raw file reading."""

    def test_multi_document_file(self, tmp_path: Path) -> None:
        """Test every YAML document is returned and empty ones dropped."""
        path = _write(tmp_path / "all.yaml", CLUSTER_YAML + "---\n---\n" + USER_YAML)

        documents = read_documents(path)

        assert [doc["kind"] for doc in documents] == ["Cluster", "DatabaseUser"]

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file raises ManifestLoadError."""
        with pytest.raises(ManifestLoadError, match="not found"):
            read_documents(tmp_path / "nope.yaml")

    def test_size_limit(self, tmp_path: Path) -> None:
        """Test oversized files are rejected before parsing."""
        path = _write(tmp_path / "big.yaml", CLUSTER_YAML)

        with pytest.raises(ManifestLoadError, match="exceeds maximum size of 10 bytes"):
            read_documents(path, max_size=10)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test malformed YAML raises ManifestLoadError."""
        path = _write(tmp_path / "bad.yaml", "kind: [unclosed\n")

        with pytest.raises(ManifestLoadError, match="Invalid YAML"):
            read_documents(path)


class TestExpandPaths:
    """Tests for directory expansion."""

    def test_directories_list_manifest_files(self, tmp_path: Path) -> None:
        """Test directories expand to sorted manifest files only."""
        _write(tmp_path / "b.yaml", CLUSTER_YAML)
        _write(tmp_path / "a.yml", USER_YAML)
        _write(tmp_path / "notes.txt", "ignore me")
        extra = tmp_path / "extra.json"

        files = expand_paths([tmp_path, extra])

        assert [p.name for p in files] == ["a.yml", "b.yaml", "extra.json"]


class TestParseDocuments:
    """Tests for document validation."""

    def test_errors_are_collected(self) -> None:
        """Test invalid documents are reported with their location."""
        documents = [
            {"kind": "Cluster", "metadata": {"name": "c1"}, "spec": {"provider": "AWS"}},
            "not a mapping",
            {"metadata": {"name": "x"}},
        ]

        manifests, errors = parse_documents(documents, Path("m.yaml"))

        assert manifests == []
        assert any(e.startswith("m.yaml[0]: spec.region") for e in errors)
        assert "m.yaml[1]: manifest must be a mapping" in errors
        assert "m.yaml[2]: Manifest is missing 'kind'" in errors

    def test_apply_document_is_flattened(self) -> None:
        """Test ApplyDocument wrappers contribute their resources."""
        wrapper = {
            "kind": "ApplyDocument",
            "resources": [
                {"kind": "Project", "metadata": {"name": "proj1"}, "spec": {"name": "proj1"}},
                {"kind": "Alert", "metadata": {"name": "a1"}},
            ],
        }

        manifests, errors = parse_documents([wrapper], Path("apply.yaml"))

        assert [m.kind for m in manifests] == [ResourceKind.PROJECT]
        assert len(errors) == 1
        assert errors[0].startswith("apply.yaml[0].resources[1]: spec")


class TestValidateManifests:
    """Tests for cross-manifest checks."""

    def test_duplicates_and_unknown_dependencies(self) -> None:
        """Test duplicate names and dangling dependsOn are reported."""
        cluster_doc = {
            "kind": "Cluster",
            "metadata": {"name": "c1"},
            "spec": {"provider": "AWS", "region": "US_EAST_1", "instanceSize": "M10"},
        }
        user_doc = {
            "kind": "DatabaseUser",
            "metadata": {"name": "u1", "dependsOn": ["c9"]},
            "spec": {"username": "u1", "roles": [{"roleName": "read", "databaseName": "app"}]},
        }
        manifests, _ = parse_documents([cluster_doc, cluster_doc, user_doc], Path("m.yaml"))

        errors = validate_manifests(manifests)

        assert errors == [
            "duplicate resource Cluster/c1",
            "DatabaseUser/u1 depends on unknown resource 'c9'",
        ]


class TestLoadManifests:
    """Tests for the full loading pipeline."""

    def test_loads_directory(self, tmp_path: Path) -> None:
        """Test a directory of valid manifests loads into a state."""
        _write(tmp_path / "cluster.yaml", CLUSTER_YAML)
        _write(tmp_path / "user.yaml", USER_YAML)

        state = load_project_state([tmp_path])

        assert [c.name for c in state.clusters] == ["c1"]
        assert [u.name for u in state.database_users] == ["u1"]

    def test_errors_across_files(self, tmp_path: Path) -> None:
        """Test every invalid file contributes to one validation error."""
        _write(tmp_path / "user.yaml", USER_YAML)
        _write(tmp_path / "broken.yaml", "kind: Cluster\nmetadata:\n  name: c2\n")

        with pytest.raises(ManifestValidationError) as exc_info:
            load_manifests([tmp_path])

        errors = exc_info.value.errors
        assert any("broken.yaml[0]" in e for e in errors)
        assert "DatabaseUser/u1 depends on unknown resource 'c1'" in errors


class TestLoadStateSnapshot:
    """Tests for current-state snapshots."""

    def test_manifest_snapshot(self, tmp_path: Path) -> None:
        """Test a manifest file is accepted as a snapshot."""
        path = _write(tmp_path / "state.yaml", CLUSTER_YAML)

        state = load_state_snapshot(path)

        assert [c.name for c in state.clusters] == ["c1"]

    def test_serialized_state_snapshot(self, tmp_path: Path) -> None:
        """Test a serialized ProjectState is accepted as a snapshot."""
        path = _write(
            tmp_path / "state.json",
            '{"clusters": [{"kind": "Cluster", "metadata": {"name": "c1"},'
            ' "spec": {"provider": "GCP", "region": "EU", "instanceSize": "M30"}}]}',
        )

        state = load_state_snapshot(path)

        assert state.clusters[0].spec.provider == "GCP"

    def test_invalid_snapshot(self, tmp_path: Path) -> None:
        """Test invalid snapshots raise ManifestLoadError."""
        path = _write(tmp_path / "state.yaml", "clusters:\n  - kind: Cluster\n")

        with pytest.raises(ManifestLoadError, match="Invalid state snapshot"):
            load_state_snapshot(path)

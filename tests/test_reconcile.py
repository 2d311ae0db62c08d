"""Tests for drift detection and reconciliation."""

from __future__ import annotations

import asyncio

import pytest
from atlas_mock import cluster, database_user

from matlas.config import ReconcileRule, ReconciliationConfig
from matlas.diff import ChangeType, FieldChange
from matlas.discovery import SnapshotStateDiscovery
from matlas.errors import DiscoveryError
from matlas.idempotency import IdempotencyManager
from matlas.models import Manifest, OperationType, ProjectState, ResourceKind
from matlas.reconcile import (
    Complexity,
    DriftSeverity,
    DriftType,
    FieldDrift,
    ReconcileAction,
    ReconcileError,
    ReconciliationManager,
    classify_field,
    drift_complexity,
    field_severity,
)


def _manager(
    live: list[Manifest],
    config: ReconciliationConfig | None = None,
    idempotency: IdempotencyManager | None = None,
) -> ReconciliationManager:
    discovery = SnapshotStateDiscovery({"proj1": ProjectState.from_manifests(live)})
    return ReconciliationManager(discovery, config, idempotency)


def _desired(*manifests: Manifest) -> ProjectState:
    return ProjectState.from_manifests(manifests)


class TestClassification:
    """Tests for path and drift classification helpers."""

    def test_metadata_paths_are_metadata(self) -> None:
        """Test metadata paths classify as metadata even with other markers."""
        assert classify_field("metadata.labels.env") == DriftType.METADATA
        assert classify_field("metadata.annotations.security-team") == DriftType.METADATA

    def test_spec_paths(self) -> None:
        """Test spec paths classify by marker."""
        assert classify_field("spec.roles[0].roleName") == DriftType.SECURITY
        assert classify_field("spec.cidr") == DriftType.NETWORK
        assert classify_field("spec.instanceSize") == DriftType.SCALE
        assert classify_field("spec.mongoDBVersion") == DriftType.CONFIGURATION

    def test_field_severity(self) -> None:
        """Test secret paths are critical and labels are low."""
        assert field_severity("spec.password") == DriftSeverity.CRITICAL
        assert field_severity("spec.roles[0].roleName") == DriftSeverity.HIGH
        assert field_severity("metadata.labels.env") == DriftSeverity.LOW
        assert field_severity("spec.backupEnabled") == DriftSeverity.MEDIUM

    def test_complexity(self) -> None:
        """Test complexity by drift type and severity."""
        assert drift_complexity(DriftType.METADATA, DriftSeverity.CRITICAL) == Complexity.SIMPLE
        assert drift_complexity(DriftType.CONFIGURATION, DriftSeverity.MEDIUM) == Complexity.MODERATE
        assert drift_complexity(DriftType.NETWORK, DriftSeverity.HIGH) == Complexity.COMPLEX
        assert drift_complexity(DriftType.SCALE, DriftSeverity.HIGH) == Complexity.MODERATE
        assert drift_complexity(DriftType.DELETED, DriftSeverity.LOW) == Complexity.DANGER
        assert drift_complexity(DriftType.SECURITY, DriftSeverity.LOW) == Complexity.COMPLEX

    def test_secret_values_masked(self) -> None:
        """Test field drifts never render secret values."""
        drift = FieldDrift("spec.password", "new", "old", DriftType.SECURITY, DriftSeverity.CRITICAL)
        rendered = drift.to_dict()
        assert rendered["desiredValue"] == "***"
        assert rendered["actualValue"] == "***"


class TestDetectDrift:
    """Tests for drift detection."""

    @pytest.mark.asyncio
    async def test_no_drift(self) -> None:
        """Test identical states report no drift."""
        manager = _manager([cluster("c1")])

        result = await manager.detect_drift("proj1", _desired(cluster("c1")))

        assert result.drifts == []
        assert result.drift_percentage == 0.0
        assert result.total_resources == 1

    @pytest.mark.asyncio
    async def test_metadata_drift_is_auto_fixable(self) -> None:
        """Test a label change is low severity simple metadata drift."""
        manager = _manager([cluster("c1", labels={"env": "staging"})])

        result = await manager.detect_drift("proj1", _desired(cluster("c1", labels={"env": "prod"})))

        assert len(result.drifts) == 1
        drift = result.drifts[0]
        assert drift.resource_kind == ResourceKind.CLUSTER
        assert drift.operation_type == OperationType.UPDATE
        assert drift.drift_type == DriftType.METADATA
        assert drift.severity.rank <= DriftSeverity.LOW.rank
        assert drift.complexity == Complexity.SIMPLE
        assert drift.auto_fix is True
        assert drift.differences[0].path == "metadata.labels.env"
        assert drift.differences[0].desired_value == "prod"
        assert drift.differences[0].actual_value == "staging"
        assert drift.fingerprint
        assert result.drift_percentage == 100.0
        assert result.summary.auto_fixable == 1
        assert result.recommendations[0].action == ReconcileAction.AUTOFIX

    @pytest.mark.asyncio
    async def test_missing_resource_is_deleted_drift(self) -> None:
        """Test a desired resource absent from live state is deleted drift."""
        manager = _manager([])

        result = await manager.detect_drift("proj1", _desired(cluster("c1")))

        drift = result.drifts[0]
        assert drift.drift_type == DriftType.DELETED
        assert drift.complexity == Complexity.DANGER
        assert drift.auto_fix is False

    @pytest.mark.asyncio
    async def test_unexpected_resource_is_created_drift(self) -> None:
        """Test a live resource absent from desired state is created drift."""
        manager = _manager([cluster("c1"), cluster("stray")])

        result = await manager.detect_drift("proj1", _desired(cluster("c1")))

        assert [d.drift_type for d in result.drifts] == [DriftType.CREATED]
        assert result.drifts[0].resource_name == "stray"

    @pytest.mark.asyncio
    async def test_disabled_detection_raises(self) -> None:
        """Test detection refuses to run when disabled."""
        manager = _manager([], ReconciliationConfig(enable_drift_detection=False))

        with pytest.raises(ReconcileError):
            await manager.detect_drift("proj1", _desired(cluster("c1")))

    @pytest.mark.asyncio
    async def test_missing_snapshot_raises_discovery_error(self) -> None:
        """Test discovery failures propagate."""
        manager = _manager([])

        with pytest.raises(DiscoveryError):
            await manager.detect_drift("other", _desired(cluster("c1")))


class TestReconcile:
    """Tests for applying reconcile actions."""

    @pytest.mark.asyncio
    async def test_metadata_drift_auto_fixed(self) -> None:
        """Test metadata drift is auto-fixed with a checkpoint."""
        idempotency = IdempotencyManager()
        manager = _manager([cluster("c1", labels={"env": "staging"})], idempotency=idempotency)
        drift_result = await manager.detect_drift("proj1", _desired(cluster("c1", labels={"env": "prod"})))

        result = await manager.reconcile(drift_result)

        assert len(result.auto_fixed) == 1
        fixed = result.auto_fixed[0]
        assert fixed.success is True
        assert fixed.changes == [FieldChange("metadata.labels.env", "staging", "prod", ChangeType.MODIFY)]
        checkpoint = idempotency.get_latest_checkpoint("c1")
        assert checkpoint is not None
        assert checkpoint.stage == "autofix"
        assert result.remaining_drift == 0
        assert result.drift_reduced == 100.0
        assert result.success is True

    @pytest.mark.asyncio
    async def test_removed_label_fixed_as_removal(self) -> None:
        """Test an out-of-band label is auto-fixed as a removal."""
        manager = _manager([cluster("c1", labels={"team": "data", "env": "x"})])
        drift_result = await manager.detect_drift("proj1", _desired(cluster("c1", labels={"team": "data"})))

        difference = drift_result.drifts[0].differences[0]
        assert difference.change_type == ChangeType.REMOVE
        assert difference.to_dict()["changeType"] == "remove"

        result = await manager.reconcile(drift_result)

        assert len(result.auto_fixed) == 1
        assert result.auto_fixed[0].changes == [
            FieldChange("metadata.labels.env", "x", None, ChangeType.REMOVE)
        ]

    @pytest.mark.asyncio
    async def test_security_drift_needs_approval(self) -> None:
        """Test role drift is held for approval."""
        manager = _manager([database_user("u1", roles=[("read", "db1")])])
        desired = _desired(database_user("u1", roles=[("readWrite", "db1")]))
        drift_result = await manager.detect_drift("proj1", desired)

        drift = drift_result.drifts[0]
        assert drift.drift_type == DriftType.SECURITY
        assert drift.severity == DriftSeverity.HIGH
        assert drift.auto_fix is False

        result = await manager.reconcile(drift_result)

        assert [r.resource_id for r in result.pending_approval] == ["u1"]
        assert result.pending_approval[0].error == "approval required"
        assert result.auto_fixed == []

    @pytest.mark.asyncio
    async def test_approval_applies_fix(self) -> None:
        """Test an explicit approval turns pending drift into an autofix."""
        manager = _manager([database_user("u1", roles=[("read", "db1")])])
        desired = _desired(database_user("u1", roles=[("readWrite", "db1")]))
        drift_result = await manager.detect_drift("proj1", desired)

        result = await manager.reconcile(drift_result, {"u1": True})

        assert [r.resource_id for r in result.auto_fixed] == ["u1"]

    @pytest.mark.asyncio
    async def test_decline_skips(self) -> None:
        """Test an explicit decline ignores the drift."""
        manager = _manager([database_user("u1", roles=[("read", "db1")])])
        desired = _desired(database_user("u1", roles=[("readWrite", "db1")]))
        drift_result = await manager.detect_drift("proj1", desired)

        result = await manager.reconcile(drift_result, {"u1": False})

        assert [r.action for r in result.skipped] == [ReconcileAction.IGNORE]
        assert "ignoring drift in u1" in result.warnings

    @pytest.mark.asyncio
    async def test_deleted_resource_needs_manual(self) -> None:
        """Test deleted drift is never auto-fixed."""
        manager = _manager([])
        drift_result = await manager.detect_drift("proj1", _desired(cluster("c1")))

        result = await manager.reconcile(drift_result)

        assert [r.resource_id for r in result.manual_required] == ["c1"]
        assert result.remaining_drift == 1

    @pytest.mark.asyncio
    async def test_auto_reconciliation_disabled_warns(self) -> None:
        """Test simple drift is only reported when auto reconciliation is off."""
        config = ReconciliationConfig(enable_auto_reconciliation=False)
        manager = _manager([cluster("c1", labels={"env": "staging"})], config)
        drift_result = await manager.detect_drift("proj1", _desired(cluster("c1", labels={"env": "prod"})))

        result = await manager.reconcile(drift_result)

        assert result.auto_fixed == []
        assert len(result.warned) == 1

    @pytest.mark.asyncio
    async def test_autofix_rule_downgraded_for_complex_drift(self) -> None:
        """Test an autofix rule is turned into a prompt for complex drift."""
        rule = ReconcileRule(name="fix-everything", action="autofix", max_complexity="danger")
        config = ReconciliationConfig(rules=(rule,))
        manager = _manager([database_user("u1", roles=[("read", "db1")])], config)
        desired = _desired(database_user("u1", roles=[("readWrite", "db1")]))
        drift_result = await manager.detect_drift("proj1", desired)

        recommendation = manager.recommend(drift_result.drifts[0])

        assert recommendation.action == ReconcileAction.PROMPT
        assert recommendation.requires_approval is True

    def test_rule_matching_respects_filters(self) -> None:
        """Test disabled rules and kind filters do not match."""
        manager = _manager([])
        drift = manager.analyze_operation(
            manager._diff.diff(  # noqa: SLF001
                _desired(cluster("c1", labels={"env": "prod"})),
                _desired(cluster("c1", labels={"env": "staging"})),
            ).operations[0]
        )

        disabled = ReconcileRule(name="off", action="autofix", max_complexity="simple", enabled=False)
        users_only = ReconcileRule(
            name="users",
            action="autofix",
            max_complexity="simple",
            resource_kinds=(ResourceKind.DATABASE_USER,),
        )
        assert manager.rule_matches(disabled, drift) is False
        assert manager.rule_matches(users_only, drift) is False
        assert manager.matching_rule(drift) is not None


class TestSchedule:
    """Tests for scheduled reconciliation."""

    @pytest.mark.asyncio
    async def test_schedule_disabled_raises(self) -> None:
        """Test the schedule refuses to start when disabled."""
        manager = _manager([])

        with pytest.raises(ReconcileError):
            await manager.schedule_reconciliation("proj1", _desired())

    @pytest.mark.asyncio
    async def test_shutdown_stops_schedule(self) -> None:
        """Test shutdown ends the schedule loop."""
        config = ReconciliationConfig(enable_scheduled_reconcile=True, drift_check_interval_seconds=1)
        manager = _manager([], config)

        task = asyncio.create_task(manager.schedule_reconciliation("proj1", _desired()))
        await asyncio.sleep(0)
        manager.shutdown()

        await asyncio.wait_for(task, timeout=2)
        assert task.done()

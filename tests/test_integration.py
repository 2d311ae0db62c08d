"""Integration tests for the apply and drift flow.

These tests use MockAtlasContext to run manifests from disk through
discovery, planning, execution and drift detection without an Atlas
control plane.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from atlas_mock import MockAtlasContext, cluster, fast_executor_config

from matlas.config import DiscoveryConfig, EngineConfig
from matlas.discovery import ServiceStateDiscovery
from matlas.enhanced_executor import EnhancedExecutor
from matlas.manifest_loader import load_project_state
from matlas.models import ProjectState, ResourceKind
from matlas.plan import PlanStatus, build_plan
from matlas.reconcile import DriftType, ReconciliationManager

MANIFESTS = """\
apiVersion: matlas.mongodb.com/v1
kind: ApplyDocument
resources:
  - kind: Cluster
    metadata:
      name: c1
      labels:
        env: prod
    spec:
      provider: AWS
      region: US_EAST_1
      instanceSize: M10
  - kind: DatabaseUser
    metadata:
      name: u1
    spec:
      username: u1
      password: s3cret-pass
      roles:
        - roleName: read
          databaseName: db1
  - kind: NetworkAccess
    metadata:
      name: office
    spec:
      cidr: 10.0.0.0/24
"""


class TestApplyIntegration:
    """End-to-end apply against the in-memory backend."""

    @pytest.fixture
    def desired(self, tmp_path: Path) -> ProjectState:
        path = tmp_path / "project.yaml"
        path.write_text(MANIFESTS, encoding="utf-8")
        return load_project_state([path])

    @pytest.fixture
    def ctx(self) -> MockAtlasContext:
        return MockAtlasContext()

    def _discovery(self, ctx: MockAtlasContext) -> ServiceStateDiscovery:
        return ServiceStateDiscovery(ctx.registry, DiscoveryConfig(requests_per_second=1000))

    @pytest.mark.asyncio
    async def test_apply_then_converged(self, ctx: MockAtlasContext, desired: ProjectState) -> None:
        """Test an applied project re-plans with no changes."""
        executor = EnhancedExecutor.from_config(ctx.handlers, EngineConfig(executor=fast_executor_config()))

        current = await self._discovery(ctx).discover_project("proj1")
        plan, _ = build_plan(desired, current, "proj1")
        result = await executor.execute(plan)

        assert result.status == PlanStatus.COMPLETED
        assert result.summary.completed == 3
        assert ctx.exists(ResourceKind.CLUSTER, "c1")
        assert ctx.exists(ResourceKind.DATABASE_USER, "admin/u1")
        assert ctx.exists(ResourceKind.NETWORK_ACCESS, "10.0.0.0/24")

        current = await self._discovery(ctx).discover_project("proj1")
        replan, _ = build_plan(desired, current, "proj1")

        assert replan.has_changes() is False

    @pytest.mark.asyncio
    async def test_drift_after_out_of_band_change(self, ctx: MockAtlasContext, desired: ProjectState) -> None:
        """Test a label changed outside the engine is detected and auto-fixed."""
        executor = EnhancedExecutor.from_config(ctx.handlers, EngineConfig(executor=fast_executor_config()))
        plan, _ = build_plan(desired, ProjectState(), "proj1")
        await executor.execute(plan)

        ctx.seed(cluster("c1", labels={"env": "staging"}))
        manager = ReconciliationManager(self._discovery(ctx), idempotency=executor.idempotency)

        drift = await manager.detect_drift("proj1", desired)
        outcome = await manager.reconcile(drift)

        assert [(d.resource_name, d.drift_type) for d in drift.drifts] == [("c1", DriftType.METADATA)]
        assert [item.resource_id for item in outcome.auto_fixed] == ["c1"]
        assert outcome.remaining_drift == 0

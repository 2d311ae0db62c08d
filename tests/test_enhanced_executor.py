"""Tests for the idempotent executor with checkpoints and recovery."""

from __future__ import annotations

import pytest
from atlas_mock import (
    MockAtlasContext,
    cluster,
    database_user,
    fast_executor_config,
)

from matlas.config import EngineConfig, IdempotencyConfig, RecoveryConfig
from matlas.enhanced_executor import (
    NOTE_ALREADY_APPLIED,
    STAGE_POST_EXECUTION,
    STAGE_POST_EXECUTION_FAILED,
    STAGE_PRE_EXECUTION,
    EnhancedExecutionResult,
    EnhancedExecutor,
)
from matlas.errors import DependencyFailedError, OwnershipError, TransientError
from matlas.idempotency import IdempotencyManager
from matlas.models import Manifest, OperationType, ProjectState, ResourceKind
from matlas.plan import OperationStatus, Plan, PlannedOperation, PlanStatus, build_plan
from matlas.recovery import RecoveryManager, RecoveryStrategy


def _op(plan: Plan, kind: ResourceKind, name: str) -> PlannedOperation:
    for op in plan.operations:
        if op.resource_kind == kind and op.resource_name == name:
            return op
    raise AssertionError(f"no operation for {kind.value}/{name}")


def _desired(*manifests: Manifest) -> ProjectState:
    return ProjectState.from_manifests(manifests)


def _executor(
    ctx: MockAtlasContext,
    idempotency: IdempotencyManager | None = None,
    recovery_config: RecoveryConfig | None = None,
    **kwargs: bool,
) -> EnhancedExecutor:
    idempotency = idempotency or IdempotencyManager()
    recovery = RecoveryManager(ctx.handlers, idempotency, recovery_config)
    return EnhancedExecutor(
        ctx.handlers,
        idempotency,
        recovery=recovery,
        config=fast_executor_config(),
        **kwargs,
    )


class TestIdempotentReplay:
    """Tests for re-applying an already converged desired state."""

    @pytest.mark.asyncio
    async def test_rerun_skips_every_operation(self) -> None:
        """Test a second apply of the same state makes no backend mutations."""
        ctx = MockAtlasContext()
        executor = _executor(ctx)
        desired = _desired(cluster("c1"), database_user("u1"))

        first_plan, _ = build_plan(desired, ProjectState(), "proj1")
        first = await executor.execute(first_plan)
        assert first.status == PlanStatus.COMPLETED
        mutations = ctx.state.mutation_count

        current = await ctx.discovery().discover_project("proj1")
        second_plan, diff = build_plan(desired, current, "proj1")
        assert diff.summary.no_change == 2
        assert all(op.type == OperationType.NO_CHANGE for op in second_plan.operations)

        second = await executor.execute(second_plan)

        assert second.summary.total == 2
        assert second.summary.completed == 2
        assert second.summary.failed == 0
        assert second.summary.skipped == 2
        assert ctx.state.mutation_count == mutations

    @pytest.mark.asyncio
    async def test_same_plan_executed_twice(self) -> None:
        """Test re-executing a completed plan skips it without touching the backend."""
        ctx = MockAtlasContext()
        executor = _executor(ctx)
        plan, _ = build_plan(_desired(cluster("c1")), ProjectState(), "proj1")

        first = await executor.execute(plan)
        assert first.status == PlanStatus.COMPLETED
        mutations = list(ctx.mutations)

        second = await executor.execute(plan)

        assert second.status == PlanStatus.COMPLETED
        assert second.summary.skipped == 1
        assert second.summary.failed == 0
        assert ctx.mutations == mutations == [("create", ResourceKind.CLUSTER, "c1")]
        assert ctx.exists(ResourceKind.CLUSTER, "c1")

        state = executor.idempotency.get_operation_state(plan.operations[0].id)
        assert state is not None
        assert state.status == OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_third_apply_still_skips(self) -> None:
        """Test a skip recorded by one replay still counts as applied for the next."""
        ctx = MockAtlasContext()
        executor = _executor(ctx)
        desired = _desired(cluster("c1"))

        first_plan, _ = build_plan(desired, ProjectState(), "proj1")
        await executor.execute(first_plan)
        for _ in range(2):
            replay, _ = build_plan(desired, desired, "proj1")
            result = await executor.execute(replay)
            op_result = result.operation_results[replay.operations[0].id]
            assert op_result.status == OperationStatus.SKIPPED
            assert op_result.metadata["duplicateOf"] == first_plan.operations[0].id

    @pytest.mark.asyncio
    async def test_skipped_result_names_original_operation(self) -> None:
        """Test a skipped operation points at the operation that applied it."""
        ctx = MockAtlasContext()
        executor = _executor(ctx)
        desired = _desired(cluster("c1"))

        first_plan, _ = build_plan(desired, ProjectState(), "proj1")
        await executor.execute(first_plan)
        second_plan, _ = build_plan(desired, desired, "proj1")
        second = await executor.execute(second_plan)

        op_result = second.operation_results[second_plan.operations[0].id]
        assert op_result.status == OperationStatus.SKIPPED
        assert op_result.metadata["note"] == NOTE_ALREADY_APPLIED
        assert op_result.metadata["duplicateOf"] == first_plan.operations[0].id

        state = executor.idempotency.get_operation_state(second_plan.operations[0].id)
        assert state is not None
        assert state.status == OperationStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_changed_content_is_not_skipped(self) -> None:
        """Test an update with new content runs even after an earlier create."""
        ctx = MockAtlasContext()
        executor = _executor(ctx)

        first_plan, _ = build_plan(_desired(cluster("c1")), ProjectState(), "proj1")
        await executor.execute(first_plan)
        current = await ctx.discovery().discover_project("proj1")
        second_plan, _ = build_plan(_desired(cluster("c1", instance_size="M20")), current, "proj1")

        second = await executor.execute(second_plan)

        assert second.summary.skipped == 0
        assert ("update", ResourceKind.CLUSTER, "c1") in ctx.mutations

    @pytest.mark.asyncio
    async def test_skipping_can_be_disabled(self) -> None:
        """Test NoChange operations complete normally when skipping is off."""
        ctx = MockAtlasContext()
        executor = _executor(ctx, skip_idempotent_operations=False)
        desired = _desired(cluster("c1"))

        first_plan, _ = build_plan(desired, ProjectState(), "proj1")
        await executor.execute(first_plan)
        second_plan, _ = build_plan(desired, desired, "proj1")
        second = await executor.execute(second_plan)

        assert second.summary.skipped == 0
        assert second.summary.completed == 1


class TestCheckpointsAndOwnership:
    """Tests for state, checkpoints and leases around each operation."""

    @pytest.mark.asyncio
    async def test_pre_and_post_checkpoints_written(self) -> None:
        """Test each operation gets pre- and post-execution checkpoints."""
        ctx = MockAtlasContext()
        executor = _executor(ctx)
        plan, _ = build_plan(_desired(cluster("c1")), ProjectState(), "proj1")

        await executor.execute(plan)

        op = plan.operations[0]
        checkpoints = executor.idempotency.list_checkpoints(op.id)
        assert [c.stage for c in checkpoints] == [STAGE_PRE_EXECUTION, STAGE_POST_EXECUTION]
        assert checkpoints[0].data["projectID"] == "proj1"
        assert checkpoints[0].data["operation_type"] == "Create"
        assert checkpoints[0].resource_state is None
        assert checkpoints[1].data["success"] is True
        assert checkpoints[1].plan_id == plan.id

    @pytest.mark.asyncio
    async def test_update_checkpoint_carries_prior_state(self) -> None:
        """Test the pre-execution checkpoint of an update stores the live resource."""
        ctx = MockAtlasContext()
        ctx.seed(cluster("c1"))
        executor = _executor(ctx)
        plan, _ = build_plan(_desired(cluster("c1", instance_size="M20")), _desired(cluster("c1")), "proj1")

        await executor.execute(plan)

        checkpoint = executor.idempotency.find_checkpoint_with_state(plan.operations[0].id)
        assert checkpoint is not None
        assert checkpoint.resource_state is not None
        assert checkpoint.resource_state["spec"]["instanceSize"] == "M10"

    @pytest.mark.asyncio
    async def test_operation_state_completed_with_retry_count(self) -> None:
        """Test operation state settles with the retry count in metadata."""
        ctx = MockAtlasContext()
        ctx.fail_next(ResourceKind.CLUSTER, "create", TransientError(), times=1)
        executor = _executor(ctx)
        plan, _ = build_plan(_desired(cluster("c1")), ProjectState(), "proj1")

        await executor.execute(plan)

        state = executor.idempotency.get_operation_state(plan.operations[0].id)
        assert state is not None
        assert state.status == OperationStatus.COMPLETED
        assert state.metadata["retryCount"] == 1
        assert state.project_id == "proj1"

    @pytest.mark.asyncio
    async def test_ownership_released_after_execution(self) -> None:
        """Test leases are released once an operation finishes."""
        ctx = MockAtlasContext()
        executor = _executor(ctx)
        plan, _ = build_plan(_desired(cluster("c1")), ProjectState(), "proj1")

        await executor.execute(plan)

        assert executor.idempotency.get_resource_ownership(ResourceKind.CLUSTER, "c1") is None

    @pytest.mark.asyncio
    async def test_resource_owned_by_other_plan_fails(self) -> None:
        """Test an operation fails without dispatch when another plan owns the resource."""
        ctx = MockAtlasContext()
        idempotency = IdempotencyManager()
        idempotency.acquire_resource_ownership(ResourceKind.CLUSTER, "c1", "plan-other", "op-x")
        executor = _executor(ctx, idempotency, RecoveryConfig(enabled=False))
        plan, _ = build_plan(_desired(cluster("c1")), ProjectState(), "proj1")

        result = await executor.execute(plan)

        op_result = result.operation_results[plan.operations[0].id]
        assert op_result.status == OperationStatus.FAILED
        assert isinstance(op_result.exception, OwnershipError)
        assert ctx.mutations == []

    @pytest.mark.asyncio
    async def test_checkpoints_can_be_disabled(self) -> None:
        """Test no checkpoints are written when disabled."""
        ctx = MockAtlasContext()
        executor = _executor(ctx, create_checkpoints=False)
        plan, _ = build_plan(_desired(cluster("c1")), ProjectState(), "proj1")

        await executor.execute(plan)

        assert executor.idempotency.list_checkpoints(plan.operations[0].id) == []


class TestRecoveryAfterFailure:
    """Tests for recovery of failed operations after a plan runs."""

    @pytest.mark.asyncio
    async def test_failed_create_rolled_back(self) -> None:
        """Test a persistently failing create is rolled back with a delete."""
        ctx = MockAtlasContext()
        ctx.seed(cluster("c1"), database_user("u1"))
        ctx.fail_next(ResourceKind.CLUSTER, "create", TransientError(), times=100)
        executor = _executor(ctx)
        desired = _desired(cluster("c1"), cluster("c2"), database_user("u1"))
        current = await ctx.discovery().discover_project("proj1")
        plan, _ = build_plan(desired, current, "proj1")

        result = await executor.execute(plan)

        c2_op = _op(plan, ResourceKind.CLUSTER, "c2")
        assert result.status == PlanStatus.FAILED
        assert plan.status == PlanStatus.FAILED
        assert isinstance(result, EnhancedExecutionResult)

        recovery = result.recoveries[c2_op.id]
        assert recovery.strategy == RecoveryStrategy.ROLLBACK
        assert recovery.rollback_performed is True
        assert "c2" in recovery.resources_cleaned
        assert ("delete", ResourceKind.CLUSTER, "c2") in ctx.mutations

        op_result = result.operation_results[c2_op.id]
        assert op_result.status == OperationStatus.FAILED
        assert op_result.metadata["rollbackPerformed"] is True

        post = executor.idempotency.get_latest_checkpoint(c2_op.id)
        assert post is not None
        assert post.stage == STAGE_POST_EXECUTION_FAILED

    @pytest.mark.asyncio
    async def test_dependency_failures_not_recovered(self) -> None:
        """Test operations that were never attempted get no recovery of their own."""
        ctx = MockAtlasContext()
        ctx.fail_next(ResourceKind.CLUSTER, "create", TransientError(), times=100)
        executor = _executor(ctx)
        plan, _ = build_plan(_desired(cluster("c1"), database_user("u1")), ProjectState(), "proj1")

        result = await executor.execute(plan)

        assert isinstance(result, EnhancedExecutionResult)
        user_op = _op(plan, ResourceKind.DATABASE_USER, "u1")
        assert isinstance(result.operation_results[user_op.id].exception, DependencyFailedError)
        assert user_op.id not in result.recoveries
        assert _op(plan, ResourceKind.CLUSTER, "c1").id in result.recoveries

    @pytest.mark.asyncio
    async def test_successful_retry_upgrades_operation(self) -> None:
        """Test a recovered update turns the plan result into completed."""
        ctx = MockAtlasContext()
        ctx.seed(cluster("c1"))
        # Three executor attempts fail; the recovery re-dispatch succeeds
        ctx.fail_next(ResourceKind.CLUSTER, "update", TransientError(), times=3)
        executor = _executor(ctx)
        plan, _ = build_plan(_desired(cluster("c1", instance_size="M20")), _desired(cluster("c1")), "proj1")

        result = await executor.execute(plan)

        op = plan.operations[0]
        assert isinstance(result, EnhancedExecutionResult)
        assert result.recoveries[op.id].strategy == RecoveryStrategy.RETRY
        assert result.recoveries[op.id].redispatched is True
        assert result.operation_results[op.id].status == OperationStatus.COMPLETED
        assert result.operation_results[op.id].metadata["recovered"] is True
        assert result.summary.failed == 0
        assert result.status == PlanStatus.COMPLETED

        state = executor.idempotency.get_operation_state(op.id)
        assert state is not None
        assert state.status == OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_without_recovery_manager_failures_stand(self) -> None:
        """Test no recovery is attempted when none is configured."""
        ctx = MockAtlasContext()
        ctx.fail_next(ResourceKind.CLUSTER, "create", TransientError(), times=100)
        executor = EnhancedExecutor(ctx.handlers, IdempotencyManager(), config=fast_executor_config())
        plan, _ = build_plan(_desired(cluster("c1")), ProjectState(), "proj1")

        result = await executor.execute(plan)

        assert isinstance(result, EnhancedExecutionResult)
        assert result.recoveries == {}
        assert ("delete", ResourceKind.CLUSTER, "c1") not in ctx.mutations


class TestFromConfig:
    """Tests for wiring an executor from engine configuration."""

    @pytest.mark.asyncio
    async def test_from_config_executes_plan(self) -> None:
        """Test an executor built from EngineConfig applies a plan."""
        ctx = MockAtlasContext()
        config = EngineConfig(executor=fast_executor_config(), idempotency=IdempotencyConfig())
        executor = EnhancedExecutor.from_config(ctx.handlers, config)
        plan, _ = build_plan(_desired(cluster("c1")), ProjectState(), "proj1")

        result = await executor.execute(plan)

        assert result.status == PlanStatus.COMPLETED
        assert executor.idempotency.get_operation_state(plan.operations[0].id) is not None
        assert "recoveries" in result.to_dict()

"""Executor with idempotency checks, checkpoints and post-failure recovery.

Before dispatch each operation is checked against the idempotency
records: if an operation on the same resource already completed with
the same fingerprint, it is skipped without a backend call. Otherwise
its state is recorded, an ownership lease is taken and a pre-execution
checkpoint carrying the current resource state is written. After
dispatch the state is settled, a post-execution checkpoint is written
and the lease is released.

Once the plan has run, every failed operation goes through recovery. A
successful re-dispatch upgrades the operation to completed; rollback and
cleanup leave it failed but are reported alongside the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .config import EngineConfig, ExecutorConfig
from .errors import DependencyFailedError, OwnershipError
from .executor import ExecutionResult, Executor, OperationResult, _utcnow
from .idempotency import IdempotencyManager, OperationState
from .models import OperationType, ResourceKind
from .plan import OperationStatus, Plan, PlannedOperation, PlanStatus
from .progress import ProgressTracker
from .recovery import RecoveryManager, RecoveryResult, RecoveryStrategy
from .retry import RetryManager
from .services import HandlerBundle

logger = logging.getLogger(__name__)

NOTE_ALREADY_APPLIED = "skipped: already applied"

STAGE_PRE_EXECUTION = "pre-execution"
STAGE_POST_EXECUTION = "post-execution"
STAGE_POST_EXECUTION_FAILED = "post-execution-failed"

# Statuses proving an earlier operation left the resource in its desired state
APPLIED_STATUSES = frozenset({OperationStatus.COMPLETED, OperationStatus.SKIPPED})


@dataclass
class EnhancedExecutionResult(ExecutionResult):
    recoveries: dict[str, RecoveryResult] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["recoveries"] = {k: v.to_dict() for k, v in self.recoveries.items()}
        return data


class EnhancedExecutor(Executor):
    """Executor that consults and maintains idempotency state."""

    def __init__(
        self,
        handlers: dict[ResourceKind, HandlerBundle],
        idempotency: IdempotencyManager,
        recovery: RecoveryManager | None = None,
        config: ExecutorConfig | None = None,
        retry_manager: RetryManager | None = None,
        progress: ProgressTracker | None = None,
        enable_idempotency_checks: bool = True,
        create_checkpoints: bool = True,
        skip_idempotent_operations: bool = True,
    ) -> None:
        super().__init__(handlers, config, retry_manager, progress)
        self._idempotency = idempotency
        self._recovery = recovery
        self._idempotency_checks = enable_idempotency_checks
        self._create_checkpoints = create_checkpoints
        self._skip_idempotent = skip_idempotent_operations
        self._plan_id: str | None = None

    @classmethod
    def from_config(
        cls,
        handlers: dict[ResourceKind, HandlerBundle],
        config: EngineConfig,
        idempotency: IdempotencyManager | None = None,
    ) -> EnhancedExecutor:
        """Wire an executor and its collaborators from engine configuration."""
        idempotency = idempotency or IdempotencyManager(config.idempotency)
        recovery = RecoveryManager(handlers, idempotency, config.recovery)
        return cls(
            handlers,
            idempotency,
            recovery=recovery,
            config=config.executor,
            progress=ProgressTracker(config.progress),
            enable_idempotency_checks=config.enable_idempotency_checks,
            create_checkpoints=config.create_checkpoints,
            skip_idempotent_operations=config.skip_idempotent_operations,
        )

    @property
    def idempotency(self) -> IdempotencyManager:
        return self._idempotency

    def _new_result(self, plan: Plan) -> ExecutionResult:
        return EnhancedExecutionResult(plan_id=plan.id)

    async def execute(self, plan: Plan) -> ExecutionResult:
        self._plan_id = plan.id
        result = await super().execute(plan)
        if self._recovery is not None and result.status != PlanStatus.CANCELLED:
            await self._recover_failures(self._recovery, plan, result)
        return result

    # ------------------------------------------------------------------
    # Single operation
    # ------------------------------------------------------------------

    async def execute_operation(
        self,
        op: PlannedOperation,
        project_id: str | None = None,
    ) -> OperationResult:
        project = project_id or self._project_id or self._spec_project(op)
        plan_id = self._plan_id or "adhoc"
        fingerprint = self._idempotency.operation_fingerprint(op)

        if self._skip_idempotent:
            duplicate = self._applied_duplicate(op, fingerprint)
            if duplicate is not None:
                return self._skip(op, plan_id, project, fingerprint, duplicate)

        if not self._idempotency_checks:
            return await super().execute_operation(op, project)

        self._idempotency.create_operation_state(
            op.id, plan_id, op, fingerprint=fingerprint, project_id=project
        )
        try:
            self._idempotency.acquire_resource_ownership(
                op.resource_kind, op.resource_name, plan_id, op.id
            )
        except OwnershipError as e:
            logger.error(
                "Resource is owned by another plan",
                extra={"operation_id": op.id, "resource_name": op.resource_name, "error": str(e)},
            )
            self._idempotency.update_operation_state(op.id, OperationStatus.FAILED, error=e)
            op.status = OperationStatus.FAILED
            self._progress.update_operation(op.id, OperationStatus.FAILED, e)
            return OperationResult(
                operation_id=op.id,
                status=OperationStatus.FAILED,
                completed_at=_utcnow(),
                error=str(e),
                exception=e,
            )

        self._checkpoint(
            op,
            plan_id,
            STAGE_PRE_EXECUTION,
            {
                "operation_type": op.type.value,
                "resource_type": op.resource_kind.value,
                "resource_name": op.resource_name,
                "projectID": project,
                "stage": STAGE_PRE_EXECUTION,
            },
            resource_state=op.current.to_document() if op.current is not None else None,
        )
        self._idempotency.update_operation_state(op.id, OperationStatus.RUNNING)

        try:
            op_result = await super().execute_operation(op, project)
        finally:
            self._release(op, plan_id)

        success = op_result.status != OperationStatus.FAILED
        self._idempotency.update_operation_state(
            op.id,
            op_result.status,
            error=op_result.error,
            metadata={"retryCount": op_result.retry_count},
        )
        self._checkpoint(
            op,
            plan_id,
            STAGE_POST_EXECUTION if success else STAGE_POST_EXECUTION_FAILED,
            {
                "success": success,
                "resource_id": op_result.metadata.get("resourceId", op.resource_name),
                "error": op_result.error,
            },
        )
        return op_result

    def _applied_duplicate(self, op: PlannedOperation, fingerprint: str) -> OperationState | None:
        if not fingerprint:
            return None
        # Re-running the same plan: the operation's own record proves it was applied
        own = self._idempotency.get_operation_state(op.id)
        if own is not None and self._idempotency.is_operation_idempotent(op.id, fingerprint):
            return own
        duplicate = self._idempotency.find_duplicate_operation(op, exclude_id=op.id)
        if duplicate is None or duplicate.status not in APPLIED_STATUSES:
            return None
        if duplicate.fingerprint != fingerprint:
            return None
        # A Delete or Update after an earlier Create of the same content is real work
        if op.type != OperationType.NO_CHANGE and duplicate.operation_type != op.type:
            return None
        return duplicate

    def _skip(
        self,
        op: PlannedOperation,
        plan_id: str,
        project_id: str,
        fingerprint: str,
        duplicate: OperationState,
    ) -> OperationResult:
        original = duplicate.metadata.get("duplicateOf", duplicate.id)
        logger.info(
            "Skipping operation already applied",
            extra={"operation_id": op.id, "duplicate_of": original, "resource_name": op.resource_name},
        )
        if self._idempotency_checks and duplicate.id != op.id:
            self._idempotency.create_operation_state(
                op.id, plan_id, op, fingerprint=fingerprint, project_id=project_id
            )
            self._idempotency.update_operation_state(
                op.id, OperationStatus.SKIPPED, metadata={"duplicateOf": original}
            )
        op.status = OperationStatus.SKIPPED
        self._progress.update_operation(op.id, OperationStatus.SKIPPED)
        return OperationResult(
            operation_id=op.id,
            status=OperationStatus.SKIPPED,
            completed_at=_utcnow(),
            metadata={"note": NOTE_ALREADY_APPLIED, "duplicateOf": original},
        )

    def _checkpoint(
        self,
        op: PlannedOperation,
        plan_id: str,
        stage: str,
        data: dict[str, Any],
        resource_state: dict[str, Any] | None = None,
    ) -> None:
        if not self._create_checkpoints:
            return
        try:
            self._idempotency.create_checkpoint(op.id, plan_id, stage, data, resource_state)
        except Exception as e:
            logger.warning(
                "Failed to create checkpoint",
                extra={"operation_id": op.id, "stage": stage, "error": str(e)},
            )

    def _release(self, op: PlannedOperation, plan_id: str) -> None:
        try:
            self._idempotency.release_resource_ownership(op.resource_kind, op.resource_name, plan_id)
        except OwnershipError as e:
            logger.warning(
                "Failed to release resource ownership",
                extra={"operation_id": op.id, "error": str(e)},
            )

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def _recover_failures(
        self, manager: RecoveryManager, plan: Plan, result: ExecutionResult
    ) -> None:
        failed = [
            (plan.get_operation(op_id), op_result)
            for op_id, op_result in result.operation_results.items()
            if op_result.status == OperationStatus.FAILED
        ]
        for op, op_result in failed:
            if op is None or isinstance(op_result.exception, DependencyFailedError):
                # Never attempted; its parent's recovery decides what happens
                continue
            error = op_result.exception or Exception(op_result.error or "operation failed")
            recovery = await manager.recover_from_failure(op, error, project_id=plan.project_id)
            if isinstance(result, EnhancedExecutionResult):
                result.recoveries[op.id] = recovery

            if recovery.success and recovery.strategy == RecoveryStrategy.RETRY:
                upgraded = OperationResult(
                    operation_id=op.id,
                    status=OperationStatus.COMPLETED,
                    started_at=op_result.started_at,
                    completed_at=_utcnow(),
                    retry_count=op_result.retry_count,
                    metadata={**op_result.metadata, "recovered": True, "recoveryStrategy": recovery.strategy.value},
                )
                result.record(upgraded)
                op.status = OperationStatus.COMPLETED
                self._progress.update_operation(op.id, OperationStatus.COMPLETED)
                if self._idempotency.get_operation_state(op.id) is not None:
                    self._idempotency.update_operation_state(
                        op.id, OperationStatus.COMPLETED, metadata={"recovered": True}
                    )
            else:
                op_result.metadata["recoveryStrategy"] = recovery.strategy.value
                if recovery.rollback_performed:
                    op_result.metadata["rollbackPerformed"] = True

        if (
            result.status == PlanStatus.FAILED
            and result.summary.failed == 0
            and result.summary.completed == result.summary.total
        ):
            result.status = PlanStatus.COMPLETED
            plan.status = PlanStatus.COMPLETED
            logger.info("All failed operations recovered", extra={"plan_id": plan.id})

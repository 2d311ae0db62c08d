"""Stage-by-stage plan execution.

The executor walks a plan's stages in order. Inside a stage, operations
whose type is parallel-safe run concurrently under a semaphore; the rest
run one at a time afterwards. A stage always finishes before the next
one starts.

ERROR POLICY:
- Transient errors are retried by the retry manager within budget
- Not-found on Delete completes the operation ("already deleted")
- Conflict on Create completes the operation when preserving existing
  resources ("preserved")
- Unauthorized, validation and missing-service errors are fatal, as is
  any non-conflict failure of a critical-risk operation: the current
  stage drains and later stages are not run
- Other failures are recorded and execution continues; operations that
  depend on a failed operation fail without being attempted
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import ExecutorConfig
from .diff import RiskLevel
from .errors import (
    DependencyFailedError,
    ExecutionCancelled,
    ServiceUnavailableError,
    UnsupportedOperationError,
    classify_failure,
    is_conflict,
    is_not_found,
    is_transient,
    is_unauthorized,
    is_validation,
)
from .models import Manifest, OperationType, ResourceKind
from .plan import OperationStatus, Plan, PlannedOperation, PlanStatus
from .progress import ExecutorProgress, ProgressTracker
from .retry import RetryManager
from .services import HandlerBundle

logger = logging.getLogger(__name__)

NOTE_ALREADY_DELETED = "already deleted"
NOTE_PRESERVED = "preserved existing resource"
NOTE_NO_CHANGE = "no changes"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ExecutionError:
    """Structured record of one failed operation."""

    operation_id: str
    message: str
    error_type: str
    timestamp: datetime = field(default_factory=_utcnow)
    recoverable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "operationId": self.operation_id,
            "message": self.message,
            "errorType": self.error_type,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
        }


@dataclass
class OperationResult:
    """Outcome of executing one operation."""

    operation_id: str
    status: OperationStatus
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    error: str | None = None
    retry_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    exception: BaseException | None = field(default=None, repr=False, compare=False)

    @property
    def success(self) -> bool:
        return self.status in (OperationStatus.COMPLETED, OperationStatus.SKIPPED)

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "operationId": self.operation_id,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "retryCount": self.retry_count,
            "metadata": dict(self.metadata),
        }


@dataclass
class ExecutionSummary:
    """Operation counts for one execution.

    Skipped operations are successful no-ops and count as completed too.
    """

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "retried": self.retried,
        }


@dataclass
class ExecutionResult:
    """Everything an execution produced."""

    plan_id: str
    status: PlanStatus = PlanStatus.EXECUTING
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    operation_results: dict[str, OperationResult] = field(default_factory=dict)
    errors: list[ExecutionError] = field(default_factory=list)
    summary: ExecutionSummary = field(default_factory=ExecutionSummary)

    @property
    def success(self) -> bool:
        return self.status == PlanStatus.COMPLETED

    def record(self, result: OperationResult) -> None:
        """Add an operation outcome and update the summary."""
        previous = self.operation_results.get(result.operation_id)
        if previous is not None:
            self._uncount(previous)
        self.operation_results[result.operation_id] = result
        self._count(result)

    def _count(self, result: OperationResult) -> None:
        if result.status == OperationStatus.COMPLETED:
            self.summary.completed += 1
        elif result.status == OperationStatus.SKIPPED:
            self.summary.completed += 1
            self.summary.skipped += 1
        elif result.status == OperationStatus.FAILED:
            self.summary.failed += 1
        if result.retry_count > 0:
            self.summary.retried += 1

    def _uncount(self, result: OperationResult) -> None:
        if result.status == OperationStatus.COMPLETED:
            self.summary.completed -= 1
        elif result.status == OperationStatus.SKIPPED:
            self.summary.completed -= 1
            self.summary.skipped -= 1
        elif result.status == OperationStatus.FAILED:
            self.summary.failed -= 1
        if result.retry_count > 0:
            self.summary.retried -= 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "planId": self.plan_id,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "summary": self.summary.to_dict(),
            "errors": [e.to_dict() for e in self.errors],
            "operations": {k: v.to_dict() for k, v in self.operation_results.items()},
        }


class Executor:
    """Executes plans against the resource handlers."""

    def __init__(
        self,
        handlers: dict[ResourceKind, HandlerBundle],
        config: ExecutorConfig | None = None,
        retry_manager: RetryManager | None = None,
        progress: ProgressTracker | None = None,
    ) -> None:
        self._handlers = handlers
        self._config = config or ExecutorConfig()
        self._retry = retry_manager or RetryManager(
            self._config.retry, preserve_existing=self._config.preserve_existing
        )
        self._progress = progress or ProgressTracker()
        self._cancelled = False
        self._project_id: str | None = None
        self._failed_ops: set[str] = set()

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    @property
    def retry_manager(self) -> RetryManager:
        return self._retry

    @property
    def progress(self) -> ProgressTracker:
        return self._progress

    def cancel(self) -> None:
        """Stop before the next stage; running operations finish."""
        logger.info("Execution cancel requested")
        self._cancelled = True

    def get_progress(self) -> ExecutorProgress:
        return self._progress.snapshot()

    # ------------------------------------------------------------------
    # Plan execution
    # ------------------------------------------------------------------

    async def execute(self, plan: Plan) -> ExecutionResult:
        """Execute every stage of a plan.

        The plan's status, completion time and last error are updated in
        place.
        """
        result = self._new_result(plan)
        result.summary.total = len(plan.operations)
        self._cancelled = False
        self._project_id = plan.project_id
        self._failed_ops = set()
        plan.status = PlanStatus.EXECUTING

        self._progress.initialize(plan.id, plan.operations)
        self._progress.start()
        logger.info(
            "Executing plan",
            extra={
                "plan_id": plan.id,
                "project_id": plan.project_id,
                "operations": len(plan.operations),
                "stages": plan.max_stage + 1,
            },
        )

        fatal: BaseException | None = None
        try:
            for stage in range(plan.max_stage + 1):
                if self._cancelled:
                    fatal = ExecutionCancelled("execution cancelled")
                    break
                self._progress.set_stage(stage)
                fatal = await self._execute_stage(plan.operations_in_stage(stage), result)
                if fatal is not None:
                    logger.error(
                        "Stopping execution after fatal error",
                        extra={"plan_id": plan.id, "stage": stage, "error": str(fatal)},
                    )
                    break
        except asyncio.CancelledError:
            self._finalize(plan, result, ExecutionCancelled("execution context cancelled"))
            await self._progress.stop()
            raise

        self._finalize(plan, result, fatal)
        await self._progress.stop()
        return result

    def _new_result(self, plan: Plan) -> ExecutionResult:
        return ExecutionResult(plan_id=plan.id)

    def _finalize(self, plan: Plan, result: ExecutionResult, fatal: BaseException | None) -> None:
        if isinstance(fatal, ExecutionCancelled):
            result.status = PlanStatus.CANCELLED
            result.errors.append(
                ExecutionError(
                    operation_id="",
                    message=str(fatal),
                    error_type="cancelled",
                    recoverable=False,
                )
            )
        elif fatal is not None or result.summary.failed > 0:
            result.status = PlanStatus.FAILED
        else:
            result.status = PlanStatus.COMPLETED

        result.completed_at = _utcnow()
        plan.status = result.status
        plan.completed_at = result.completed_at
        if result.errors:
            plan.last_error = result.errors[-1].message

        self._progress.finish(f"plan {plan.id} {result.status.value}")
        logger.info(
            "Plan execution finished",
            extra={"plan_id": plan.id, "status": result.status.value, **result.summary.to_dict()},
        )

    async def _execute_stage(
        self,
        operations: list[PlannedOperation],
        result: ExecutionResult,
    ) -> BaseException | None:
        parallel_safe = self._config.parallel_safe_operations
        parallel = [op for op in operations if op.type in parallel_safe]
        sequential = [op for op in operations if op.type not in parallel_safe]

        first_error: BaseException | None = None
        if parallel:
            semaphore = asyncio.Semaphore(self._config.max_concurrent_operations)

            async def worker(op: PlannedOperation) -> BaseException | None:
                async with semaphore:
                    return await self._run(op, result)

            # Every worker is drained even after a fatal error
            outcomes = await asyncio.gather(*(worker(op) for op in parallel))
            first_error = next((e for e in outcomes if e is not None), None)
            if first_error is not None:
                return first_error

        for op in sequential:
            if self._cancelled:
                return ExecutionCancelled("execution cancelled")
            error = await self._run(op, result)
            if error is not None:
                return error
        return None

    async def _run(self, op: PlannedOperation, result: ExecutionResult) -> BaseException | None:
        """Execute one operation inside a plan; returns a fatal error, if any."""
        failed_deps = [dep for dep in op.depends_on if dep in self._failed_ops]
        if failed_deps:
            dependency_error = DependencyFailedError(op.id, failed_deps)
            op_result = OperationResult(
                operation_id=op.id,
                status=OperationStatus.FAILED,
                completed_at=_utcnow(),
                error=str(dependency_error),
                exception=dependency_error,
            )
            op.status = OperationStatus.FAILED
            self._progress.update_operation(op.id, OperationStatus.FAILED, dependency_error)
        else:
            op_result = await self.execute_operation(op)

        result.record(op_result)
        if op_result.status != OperationStatus.FAILED:
            return None

        self._failed_ops.add(op.id)
        error = op_result.exception or Exception(op_result.error or "operation failed")
        keep_going = self.should_continue_on_error(op, error)
        result.errors.append(
            ExecutionError(
                operation_id=op.id,
                message=op_result.error or str(error),
                error_type=classify_failure(error).value,
                recoverable=keep_going,
            )
        )
        return None if keep_going else error

    # ------------------------------------------------------------------
    # Single operation
    # ------------------------------------------------------------------

    async def execute_operation(
        self,
        op: PlannedOperation,
        project_id: str | None = None,
    ) -> OperationResult:
        """Execute one operation with timeout and retries."""
        op_result = OperationResult(operation_id=op.id, status=OperationStatus.RUNNING)

        if op.type == OperationType.NO_CHANGE:
            op_result.status = OperationStatus.COMPLETED
            op_result.completed_at = _utcnow()
            op_result.metadata["note"] = NOTE_NO_CHANGE
            op.status = OperationStatus.COMPLETED
            self._progress.update_operation(op.id, OperationStatus.COMPLETED)
            return op_result

        project = project_id or self._project_id or self._spec_project(op)
        op.status = OperationStatus.RUNNING
        self._progress.update_operation(op.id, OperationStatus.RUNNING)

        def on_retry(operation: Any, op_id: str, attempt: int, delay: float, err: BaseException) -> None:
            op.status = OperationStatus.RETRYING
            self._progress.update_operation(op_id, OperationStatus.RETRYING)

        async def attempt() -> dict[str, Any]:
            op.status = OperationStatus.RUNNING
            return await asyncio.wait_for(
                self.dispatch(op, project), timeout=self._config.operation_timeout_seconds
            )

        try:
            metadata = await self._retry.execute_with_retry(op, op.id, attempt, on_retry=on_retry)
            op_result.metadata.update(metadata or {})
            op_result.status = OperationStatus.COMPLETED
        except Exception as e:
            note = self._absorbed_note(op, e)
            if note is not None:
                op_result.status = OperationStatus.COMPLETED
                op_result.metadata["note"] = note
                logger.info(
                    "Operation error absorbed",
                    extra={"operation_id": op.id, "note": note, "error": str(e)},
                )
            else:
                op_result.status = OperationStatus.FAILED
                op_result.error = str(e)
                op_result.exception = e
                logger.error(
                    "Operation failed",
                    extra={
                        "operation_id": op.id,
                        "operation_type": op.type.value,
                        "kind": op.resource_kind.value,
                        "resource_name": op.resource_name,
                        "error": str(e),
                    },
                )

        op_result.retry_count = self._retry.get_retry_count(op.id)
        op_result.completed_at = _utcnow()
        op.status = op_result.status
        self._progress.update_operation(
            op.id,
            op_result.status,
            op_result.exception if op_result.status == OperationStatus.FAILED else None,
        )
        return op_result

    def _absorbed_note(self, op: PlannedOperation, err: BaseException) -> str | None:
        if op.type == OperationType.DELETE and is_not_found(err):
            return NOTE_ALREADY_DELETED
        if op.type == OperationType.CREATE and self.should_ignore_conflict(err):
            return NOTE_PRESERVED
        return None

    @staticmethod
    def _spec_project(op: PlannedOperation) -> str:
        return getattr(op.resource.spec, "project_name", None) or ""

    async def dispatch(self, op: PlannedOperation, project_id: str) -> dict[str, Any]:
        """Route an operation to its kind's handler.

        Raises:
            UnsupportedOperationError: If no handler covers (type, kind).
        """
        if op.type == OperationType.NO_CHANGE:
            return {}
        bundle = self._handlers.get(op.resource_kind)
        if bundle is None:
            raise UnsupportedOperationError(
                f"unsupported resource kind: {op.resource_kind.value}"
            )
        handler = bundle.handler_for(op.type)
        manifest: Manifest | None = op.current if op.type == OperationType.DELETE else op.desired
        if manifest is None:
            raise UnsupportedOperationError(
                f"{op.type.value} operation {op.id} carries no manifest"
            )
        return await handler(project_id, manifest)

    # ------------------------------------------------------------------
    # Error policy
    # ------------------------------------------------------------------

    def should_ignore_conflict(self, err: BaseException) -> bool:
        return self._config.preserve_existing and is_conflict(err)

    def should_continue_on_error(self, op: PlannedOperation, err: BaseException) -> bool:
        """Decide whether a failed operation stops the plan."""
        if is_unauthorized(err):
            return False
        if op.type == OperationType.CREATE and self.should_ignore_conflict(err):
            return True
        if is_transient(err):
            return True
        if isinstance(err, ServiceUnavailableError | UnsupportedOperationError):
            return False
        if is_validation(err):
            return False
        if op.impact.risk_level == RiskLevel.CRITICAL and not is_conflict(err):
            return False
        return True

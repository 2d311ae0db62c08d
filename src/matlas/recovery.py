"""Failure analysis and recovery.

When an operation fails, the recovery manager:
1. Classifies the failure (network, timeout, authentication, quota,
   conflict, validation, dependency, resource state, internal)
2. Picks a strategy: the configured per-operation-type strategy wins,
   otherwise the highest-confidence recommendation for the failure type
3. Executes it: retry re-dispatches the operation once, rollback undoes
   what the operation did, cleanup removes partial leftovers
4. Reports the resources affected, using the idempotency records of the
   same project

ROLLBACK RULES:
- Create: delete the created resource; not-found counts as success
- Update/Delete: restore the prior spec from the newest checkpoint that
  carries one; without such a checkpoint the failure escalates to manual
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import RecoveryConfig
from .errors import FailureType, classify_failure, is_not_found
from .idempotency import IdempotencyManager, OperationState
from .models import Manifest, OperationType, ResourceKind, parse_manifest
from .plan import OperationStatus, PlannedOperation
from .services import HandlerBundle

logger = logging.getLogger(__name__)


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    ROLLBACK = "rollback"
    ABORT = "abort"
    MANUAL = "manual"
    CLEANUP = "cleanup"


class ResourceState(str, Enum):
    HEALTHY = "healthy"
    PARTIAL = "partial"
    INCONSISTENT = "inconsistent"
    UNKNOWN = "unknown"


STATUS_TO_RESOURCE_STATE = {
    OperationStatus.PENDING: ResourceState.UNKNOWN,
    OperationStatus.RUNNING: ResourceState.PARTIAL,
    OperationStatus.RETRYING: ResourceState.PARTIAL,
    OperationStatus.COMPLETED: ResourceState.HEALTHY,
    OperationStatus.SKIPPED: ResourceState.HEALTHY,
    OperationStatus.FAILED: ResourceState.INCONSISTENT,
}

# Kinds whose operations affect each other within one project
RELATED_KINDS: dict[ResourceKind, frozenset[ResourceKind]] = {
    ResourceKind.CLUSTER: frozenset({ResourceKind.DATABASE_USER, ResourceKind.NETWORK_ACCESS}),
    ResourceKind.DATABASE_USER: frozenset({ResourceKind.CLUSTER}),
    ResourceKind.NETWORK_ACCESS: frozenset({ResourceKind.CLUSTER}),
}

PREVENTION_STEPS: dict[FailureType, list[str]] = {
    FailureType.NETWORK: ["Check network stability to the control plane", "Raise retry budgets"],
    FailureType.TIMEOUT: ["Increase the operation timeout", "Split large plans into smaller ones"],
    FailureType.AUTHENTICATION: [
        "Verify API key permissions before applying",
        "Rotate expired credentials",
    ],
    FailureType.QUOTA: ["Review project and organization limits before applying"],
    FailureType.CONFLICT: ["Enable preserve-existing when adopting existing resources"],
    FailureType.VALIDATION: ["Run validate before apply", "Check required fields and formats"],
    FailureType.DEPENDENCY: ["Declare dependsOn for resources that need a parent"],
    FailureType.RESOURCE_STATE: ["Wait for resources to become idle before changing them"],
    FailureType.INTERNAL: ["Report the failure with the operation id and error"],
}


@dataclass
class Recommendation:
    strategy: RecoveryStrategy
    confidence: float
    description: str
    actions: list[str] = field(default_factory=list)

    def numbered_actions(self) -> list[str]:
        return [f"{index}. {action}" for index, action in enumerate(self.actions, start=1)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "confidence": self.confidence,
            "description": self.description,
            "actions": self.numbered_actions(),
        }


@dataclass
class AffectedResource:
    kind: ResourceKind
    resource_id: str
    state: ResourceState
    impact: str
    recoverable: bool
    operation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "resourceId": self.resource_id,
            "state": self.state.value,
            "impact": self.impact,
            "recoverable": self.recoverable,
            "operationId": self.operation_id,
        }


@dataclass
class FailureAnalysis:
    failure_type: FailureType
    root_cause: str
    recommendations: list[Recommendation] = field(default_factory=list)
    prevention_steps: list[str] = field(default_factory=list)
    affected_resources: list[AffectedResource] = field(default_factory=list)
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "failureType": self.failure_type.value,
            "rootCause": self.root_cause,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "preventionSteps": list(self.prevention_steps),
            "affectedResources": [r.to_dict() for r in self.affected_resources],
            "confidence": self.confidence,
        }


@dataclass
class RecoveryResult:
    operation_id: str
    strategy: RecoveryStrategy
    success: bool = False
    rollback_performed: bool = False
    redispatched: bool = False
    manual_required: bool = False
    resources_cleaned: list[str] = field(default_factory=list)
    message: str = ""
    error: str | None = None
    analysis: FailureAnalysis | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operationId": self.operation_id,
            "strategy": self.strategy.value,
            "success": self.success,
            "rollbackPerformed": self.rollback_performed,
            "redispatched": self.redispatched,
            "manualRequired": self.manual_required,
            "resourcesCleaned": list(self.resources_cleaned),
            "message": self.message,
            "error": self.error,
            "analysis": self.analysis.to_dict() if self.analysis else None,
        }


def recommend(failure_type: FailureType, operation_type: OperationType) -> list[Recommendation]:
    """Recommendations for a failure, highest confidence first."""
    recommendations: list[Recommendation] = []
    if failure_type in (FailureType.NETWORK, FailureType.TIMEOUT):
        recommendations.append(
            Recommendation(
                RecoveryStrategy.RETRY,
                0.8,
                "The failure looks transient; retry the operation",
                ["Check connectivity to the control plane", "Retry the operation"],
            )
        )
    elif failure_type == FailureType.AUTHENTICATION:
        recommendations.append(
            Recommendation(
                RecoveryStrategy.MANUAL,
                0.9,
                "Credentials are missing or lack permission",
                ["Verify the API key and its project roles", "Re-run the plan"],
            )
        )
    elif failure_type == FailureType.QUOTA:
        recommendations.append(
            Recommendation(
                RecoveryStrategy.MANUAL,
                0.9,
                "A project or organization limit was reached",
                ["Free capacity or request a limit increase", "Re-run the plan"],
            )
        )
    elif failure_type == FailureType.CONFLICT:
        if operation_type == OperationType.CREATE:
            recommendations.append(
                Recommendation(
                    RecoveryStrategy.SKIP,
                    0.7,
                    "The resource already exists",
                    ["Confirm the existing resource matches the manifest", "Adopt it with preserve-existing"],
                )
            )
        else:
            recommendations.append(
                Recommendation(
                    RecoveryStrategy.RETRY,
                    0.6,
                    "A concurrent change conflicted with this operation",
                    ["Wait for the concurrent change to finish", "Retry the operation"],
                )
            )
    elif failure_type == FailureType.VALIDATION:
        recommendations.append(
            Recommendation(
                RecoveryStrategy.ABORT,
                0.9,
                "The request was rejected as invalid",
                ["Fix the manifest", "Validate it before applying again"],
            )
        )
    elif failure_type == FailureType.DEPENDENCY:
        recommendations.append(
            Recommendation(
                RecoveryStrategy.RETRY,
                0.7,
                "A dependency was not ready",
                ["Make sure the dependency exists and is healthy", "Retry the operation"],
            )
        )
    elif failure_type == FailureType.RESOURCE_STATE:
        recommendations.append(
            Recommendation(
                RecoveryStrategy.RETRY,
                0.6,
                "The resource was not in a state that allows the change",
                ["Wait for the resource to become idle", "Retry the operation"],
            )
        )
    else:
        recommendations.append(
            Recommendation(
                RecoveryStrategy.MANUAL,
                0.3,
                "The failure could not be classified",
                ["Inspect the error and the resource in the console", "Re-run the plan"],
            )
        )

    if operation_type == OperationType.CREATE and failure_type != FailureType.CONFLICT:
        recommendations.append(
            Recommendation(
                RecoveryStrategy.ROLLBACK,
                0.5,
                "Remove any partially created resource",
                ["Delete the resource if it was created", "Re-run the plan"],
            )
        )
    return sorted(recommendations, key=lambda r: r.confidence, reverse=True)


class RecoveryManager:
    """Analyzes failed operations and applies a recovery strategy."""

    def __init__(
        self,
        handlers: dict[ResourceKind, HandlerBundle],
        idempotency: IdempotencyManager,
        config: RecoveryConfig | None = None,
    ) -> None:
        self._handlers = handlers
        self._idempotency = idempotency
        self._config = config or RecoveryConfig()

    @property
    def config(self) -> RecoveryConfig:
        return self._config

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def resolve_project_id(self, op: PlannedOperation) -> str:
        """Project of an operation: spec, then state metadata, then checkpoint."""
        spec_project = getattr(op.resource.spec, "project_name", None)
        if spec_project:
            return spec_project
        state = self._idempotency.get_operation_state(op.id)
        if state is not None and state.project_id:
            return state.project_id
        checkpoint = self._idempotency.get_latest_checkpoint(op.id)
        if checkpoint is not None:
            return checkpoint.data.get("projectID", "")
        return ""

    def analyze_failure(self, op: PlannedOperation, err: BaseException) -> FailureAnalysis:
        failure_type = classify_failure(err)
        recommendations = recommend(failure_type, op.type)
        return FailureAnalysis(
            failure_type=failure_type,
            root_cause=str(err),
            recommendations=recommendations,
            prevention_steps=list(PREVENTION_STEPS.get(failure_type, [])),
            affected_resources=self.affected_resources(op),
            confidence=recommendations[0].confidence if recommendations else 0.0,
        )

    def affected_resources(self, op: PlannedOperation) -> list[AffectedResource]:
        """The failed resource plus related resources in the same project."""
        primary_state = self._idempotency.get_operation_state(op.id)
        state = (
            STATUS_TO_RESOURCE_STATE[primary_state.status]
            if primary_state is not None
            else ResourceState.UNKNOWN
        )
        affected = [
            AffectedResource(
                kind=op.resource_kind,
                resource_id=op.resource_name,
                state=state,
                impact="primary",
                recoverable=state != ResourceState.INCONSISTENT or op.type == OperationType.CREATE,
                operation_id=op.id,
            )
        ]

        project_id = self.resolve_project_id(op)
        related = RELATED_KINDS.get(op.resource_kind, frozenset())
        if not project_id or not related:
            return affected

        seen = {(op.resource_kind, op.resource_name)}
        for other in self._idempotency.list_operation_states_by_project(project_id):
            key = (other.resource_kind, other.resource_id)
            if other.resource_kind not in related or key in seen:
                continue
            seen.add(key)
            affected.append(self._dependent(other))
        return affected

    @staticmethod
    def _dependent(state: OperationState) -> AffectedResource:
        resource_state = STATUS_TO_RESOURCE_STATE[state.status]
        return AffectedResource(
            kind=state.resource_kind,
            resource_id=state.resource_id,
            state=resource_state,
            impact="dependent",
            recoverable=resource_state != ResourceState.INCONSISTENT,
            operation_id=state.id,
        )

    def choose_strategy(self, op: PlannedOperation, analysis: FailureAnalysis) -> RecoveryStrategy:
        if analysis.failure_type == FailureType.AUTHENTICATION:
            # Nothing can be undone or retried without working credentials
            return RecoveryStrategy.MANUAL
        configured = self._config.operation_strategies.get(op.type)
        if configured:
            strategy = RecoveryStrategy(configured)
            if strategy != RecoveryStrategy.ROLLBACK or self._config.enable_rollback:
                return strategy
        if analysis.recommendations:
            return analysis.recommendations[0].strategy
        return RecoveryStrategy(self._config.default_strategy)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover_from_failure(
        self,
        op: PlannedOperation,
        err: BaseException,
        project_id: str | None = None,
    ) -> RecoveryResult:
        """Analyze a failure and apply the chosen strategy."""
        analysis = self.analyze_failure(op, err)
        if not self._config.enabled:
            return RecoveryResult(
                operation_id=op.id,
                strategy=RecoveryStrategy.MANUAL,
                manual_required=True,
                message="recovery is disabled",
                analysis=analysis,
            )

        strategy = self.choose_strategy(op, analysis)
        project = project_id or self.resolve_project_id(op)
        logger.info(
            "Recovering failed operation",
            extra={
                "operation_id": op.id,
                "failure_type": analysis.failure_type.value,
                "strategy": strategy.value,
            },
        )

        result = RecoveryResult(operation_id=op.id, strategy=strategy, analysis=analysis)
        try:
            if strategy == RecoveryStrategy.RETRY:
                await self._retry(op, project, result)
            elif strategy == RecoveryStrategy.SKIP:
                result.success = True
                result.message = "operation skipped"
            elif strategy == RecoveryStrategy.ROLLBACK:
                await self._rollback(op, project, result)
            elif strategy == RecoveryStrategy.CLEANUP:
                await self._cleanup(op, project, result)
            elif strategy == RecoveryStrategy.ABORT:
                result.message = "execution aborted"
            else:
                result.manual_required = True
                result.message = "manual intervention required"
        except Exception as e:
            result.success = False
            result.error = str(e)
            logger.error(
                "Recovery failed",
                extra={"operation_id": op.id, "strategy": strategy.value, "error": str(e)},
            )

        logger.info(
            "Recovery finished",
            extra={
                "operation_id": op.id,
                "strategy": strategy.value,
                "success": result.success,
                "rollback_performed": result.rollback_performed,
            },
        )
        return result

    async def _call(self, op_type: OperationType, kind: ResourceKind, project_id: str, manifest: Manifest, timeout: float) -> dict[str, Any]:
        handler = self._handlers[kind].handler_for(op_type)
        return await asyncio.wait_for(handler(project_id, manifest), timeout=timeout)

    async def _retry(self, op: PlannedOperation, project_id: str, result: RecoveryResult) -> None:
        manifest = op.current if op.type == OperationType.DELETE else op.desired
        if manifest is None:
            raise ValueError(f"{op.type.value} operation on {op.resource_name} carries no manifest")
        await self._call(
            op.type, op.resource_kind, project_id, manifest, self._config.rollback_timeout_seconds
        )
        result.success = True
        result.redispatched = True
        result.message = "operation re-dispatched successfully"

    async def _delete_created(
        self, op: PlannedOperation, project_id: str, result: RecoveryResult, timeout: float
    ) -> None:
        if op.desired is None:
            raise ValueError(f"create operation on {op.resource_name} carries no desired manifest")
        try:
            await self._call(OperationType.DELETE, op.resource_kind, project_id, op.desired, timeout)
        except Exception as e:
            if not is_not_found(e):
                raise
        result.resources_cleaned.append(op.resource_name)

    async def _rollback(self, op: PlannedOperation, project_id: str, result: RecoveryResult) -> None:
        timeout = self._config.rollback_timeout_seconds
        if op.type == OperationType.CREATE:
            await self._delete_created(op, project_id, result, timeout)
            result.success = True
            result.rollback_performed = True
            result.message = f"rolled back create of {op.resource_name}"
            return

        checkpoint = self._idempotency.find_checkpoint_with_state(op.id)
        if checkpoint is None or checkpoint.resource_state is None:
            result.manual_required = True
            result.message = "no checkpoint with the prior state; manual rollback required"
            return

        previous = parse_manifest(checkpoint.resource_state)
        restore = OperationType.UPDATE if op.type == OperationType.UPDATE else OperationType.CREATE
        await self._call(restore, op.resource_kind, project_id, previous, timeout)
        result.success = True
        result.rollback_performed = True
        result.message = f"restored {op.resource_name} from checkpoint {checkpoint.id}"

    async def _cleanup(self, op: PlannedOperation, project_id: str, result: RecoveryResult) -> None:
        state = self._idempotency.get_operation_state(op.id)
        resource_state = (
            STATUS_TO_RESOURCE_STATE[state.status] if state is not None else ResourceState.UNKNOWN
        )
        if resource_state == ResourceState.INCONSISTENT:
            result.manual_required = True
            result.message = "resource is inconsistent; manual cleanup required"
            return
        # Only a create that was still in flight can have left a partial resource behind
        if op.type != OperationType.CREATE or resource_state != ResourceState.PARTIAL:
            result.success = True
            result.message = "nothing to clean up"
            return
        await self._delete_created(op, project_id, result, self._config.cleanup_timeout_seconds)
        result.success = True
        result.message = f"cleaned up partial resource {op.resource_name}"

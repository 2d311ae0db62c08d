"""Execution plans: operations ordered into dependency stages.

A plan is built from the diff engine's operations. Each operation becomes
a ``PlannedOperation`` with a plan-scoped id, its dependencies (ids of
operations that must finish first) and a stage number. Stage 0 holds
operations without dependencies; every other operation sits one stage
after its latest dependency.

ORDERING RULES:
1. Project settings precede every child resource
2. Clusters precede database users, roles and network access entries
3. Search resources depend on their cluster (and index, where named);
   VPC endpoints follow clusters
4. Explicit ``dependsOn`` names are honored
5. Deletes run in reverse: children are removed before their parents
6. A replaced resource is deleted before it is re-created
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .diff import DiffEngine, DiffOptions, DiffResult, Operation, RiskLevel
from .errors import CyclicDependencyError
from .models import (
    OperationType,
    ProjectState,
    ResourceKind,
    SearchIndexManifest,
    SearchMetricsManifest,
    SearchOptimizationManifest,
    SearchQueryValidationManifest,
)

logger = logging.getLogger(__name__)

# Kinds ordered after every cluster in the plan
CLUSTER_CHILDREN = frozenset(
    {
        ResourceKind.DATABASE_USER,
        ResourceKind.DATABASE_ROLE,
        ResourceKind.NETWORK_ACCESS,
        ResourceKind.VPC_ENDPOINT,
    }
)

# Kinds ordered after the cluster they name in spec.clusterName
CLUSTER_SCOPED = frozenset(
    {
        ResourceKind.SEARCH_INDEX,
        ResourceKind.SEARCH_METRICS,
        ResourceKind.SEARCH_OPTIMIZATION,
        ResourceKind.SEARCH_QUERY_VALIDATION,
    }
)


class PlanStatus(str, Enum):
    PLANNING = "planning"
    PLANNED = "planned"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OperationStatus(str, Enum):
    """Lifecycle of one operation (and of its idempotency record)."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


@dataclass
class PlannedOperation(Operation):
    """An operation placed in a plan."""

    id: str = ""
    status: OperationStatus = OperationStatus.PENDING
    depends_on: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {"id": self.id, "status": self.status.value, "dependsOn": list(self.depends_on)}
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlannedOperation:
        return cls(
            **Operation._fields_from_dict(data),
            id=data["id"],
            status=OperationStatus(data.get("status", "pending")),
            depends_on=list(data.get("dependsOn", [])),
        )

    @classmethod
    def from_operation(cls, operation: Operation, op_id: str) -> PlannedOperation:
        return cls(
            type=operation.type,
            resource_kind=operation.resource_kind,
            resource_name=operation.resource_name,
            current=operation.current,
            desired=operation.desired,
            field_changes=list(operation.field_changes),
            impact=operation.impact,
            stage=operation.stage,
            id=op_id,
        )


@dataclass
class PlanSummary:
    """Aggregate view used for approval and display."""

    total_operations: int = 0
    operations_by_type: dict[str, int] = field(default_factory=dict)
    operations_by_stage: dict[int, int] = field(default_factory=dict)
    highest_risk: RiskLevel = RiskLevel.LOW
    destructive_count: int = 0
    estimated_duration_ms: int = 0
    parallelization_factor: float = 0.0
    requires_approval: bool = False

    @classmethod
    def from_operations(cls, operations: list[PlannedOperation]) -> PlanSummary:
        summary = cls(total_operations=len(operations))
        stage_durations: dict[int, int] = {}
        for op in operations:
            summary.operations_by_type[op.type.value] = (
                summary.operations_by_type.get(op.type.value, 0) + 1
            )
            summary.operations_by_stage[op.stage] = summary.operations_by_stage.get(op.stage, 0) + 1
            if op.type == OperationType.NO_CHANGE:
                continue
            if op.impact.risk_level > summary.highest_risk:
                summary.highest_risk = op.impact.risk_level
            if op.impact.is_destructive:
                summary.destructive_count += 1
            stage_durations[op.stage] = max(
                stage_durations.get(op.stage, 0), op.impact.estimated_duration_ms
            )

        # Stages run one after another; operations inside a stage overlap
        summary.estimated_duration_ms = sum(stage_durations.values())
        if summary.operations_by_stage:
            summary.parallelization_factor = len(operations) / len(summary.operations_by_stage)
        summary.requires_approval = (
            summary.highest_risk >= RiskLevel.HIGH or summary.destructive_count > 0
        )
        return summary

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalOperations": self.total_operations,
            "operationsByType": dict(self.operations_by_type),
            "operationsByStage": {str(k): v for k, v in sorted(self.operations_by_stage.items())},
            "highestRisk": self.highest_risk.value,
            "destructiveCount": self.destructive_count,
            "estimatedDurationMs": self.estimated_duration_ms,
            "parallelizationFactor": self.parallelization_factor,
            "requiresApproval": self.requires_approval,
        }


@dataclass
class Plan:
    """An ordered, staged set of operations for one project."""

    id: str
    project_id: str
    operations: list[PlannedOperation] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: PlanStatus = PlanStatus.PLANNED
    completed_at: datetime | None = None
    last_error: str | None = None
    approved: bool = False
    approved_by: str | None = None
    approved_at: datetime | None = None

    @property
    def max_stage(self) -> int:
        return max((op.stage for op in self.operations), default=0)

    @property
    def summary(self) -> PlanSummary:
        return PlanSummary.from_operations(self.operations)

    def operations_in_stage(self, stage: int) -> list[PlannedOperation]:
        return [op for op in self.operations if op.stage == stage]

    def get_operation(self, op_id: str) -> PlannedOperation | None:
        for op in self.operations:
            if op.id == op_id:
                return op
        return None

    def has_changes(self) -> bool:
        return any(op.type != OperationType.NO_CHANGE for op in self.operations)

    def approve(self, approved_by: str) -> None:
        self.approved = True
        self.approved_by = approved_by
        self.approved_at = datetime.now(UTC)
        logger.info("Plan approved", extra={"plan_id": self.id, "approved_by": approved_by})

    def can_execute(self) -> bool:
        """True if the plan is planned and either approved or low risk."""
        if self.status != PlanStatus.PLANNED:
            return False
        return self.approved or not self.summary.requires_approval

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "createdAt": self.created_at.isoformat(),
            "status": self.status.value,
            "maxStage": self.max_stage,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "lastError": self.last_error,
            "approved": self.approved,
            "approvedBy": self.approved_by,
            "summary": self.summary.to_dict(),
            "operations": [op.to_dict() for op in self.operations],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        completed_at = data.get("completedAt")
        return cls(
            id=data["id"],
            project_id=data["projectId"],
            operations=[PlannedOperation.from_dict(op) for op in data.get("operations", [])],
            created_at=datetime.fromisoformat(data["createdAt"]),
            status=PlanStatus(data.get("status", "planned")),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            last_error=data.get("lastError"),
            approved=data.get("approved", False),
            approved_by=data.get("approvedBy"),
        )


# =============================================================================
# Staging
# =============================================================================


def _cluster_name(op: Operation) -> str | None:
    spec = op.resource.spec
    return getattr(spec, "cluster_name", None)


def _index_name(op: Operation) -> str | None:
    manifest = op.resource
    if isinstance(
        manifest, SearchMetricsManifest | SearchOptimizationManifest | SearchQueryValidationManifest
    ):
        return manifest.spec.index_name
    return None


class PlanBuilder:
    """Assigns ids, dependencies and stages to diff operations."""

    def build(
        self,
        project_id: str,
        operations: Iterable[Operation],
        plan_id: str | None = None,
    ) -> Plan:
        """Build a staged plan.

        Raises:
            CyclicDependencyError: If dependencies form a cycle. The error
                names the cycle path.
        """
        plan_id = plan_id or f"plan-{uuid.uuid4().hex[:12]}"
        planned = [
            PlannedOperation.from_operation(op, f"{plan_id}-op-{index:03d}")
            for index, op in enumerate(operations)
        ]

        edges = self._dependencies(planned)
        for op in planned:
            op.depends_on = sorted(edges[op.id])

        self._assign_stages(planned, edges)
        plan = Plan(id=plan_id, project_id=project_id, operations=planned)

        logger.info(
            "Built execution plan",
            extra={
                "plan_id": plan_id,
                "project_id": project_id,
                "operations": len(planned),
                "max_stage": plan.max_stage,
            },
        )
        return plan

    def _dependencies(self, operations: list[PlannedOperation]) -> dict[str, set[str]]:
        edges: dict[str, set[str]] = {op.id: set() for op in operations}
        forward = [op for op in operations if op.type != OperationType.DELETE]
        deletes = [op for op in operations if op.type == OperationType.DELETE]

        def depend(child: PlannedOperation, parent: PlannedOperation) -> None:
            if child.id != parent.id:
                edges[child.id].add(parent.id)

        for child, parent in self._parent_pairs(forward):
            depend(child, parent)

        # Deletes reverse the relation: a parent goes after its children
        for child, parent in self._parent_pairs(deletes):
            depend(parent, child)

        # A replaced resource is deleted before it is re-created
        deletes_by_key = {op.key: op for op in deletes}
        for op in forward:
            if op.type == OperationType.CREATE and op.key in deletes_by_key:
                depend(op, deletes_by_key[op.key])

        return edges

    def _parent_pairs(
        self, operations: list[PlannedOperation]
    ) -> Iterable[tuple[PlannedOperation, PlannedOperation]]:
        by_kind: dict[ResourceKind, list[PlannedOperation]] = {}
        by_name: dict[str, list[PlannedOperation]] = {}
        for op in operations:
            by_kind.setdefault(op.resource_kind, []).append(op)
            by_name.setdefault(op.resource_name, []).append(op)

        projects = by_kind.get(ResourceKind.PROJECT, [])
        clusters = {op.resource_name: op for op in by_kind.get(ResourceKind.CLUSTER, [])}
        indexes: dict[str, PlannedOperation] = {}
        for op in by_kind.get(ResourceKind.SEARCH_INDEX, []):
            manifest = op.resource
            if not isinstance(manifest, SearchIndexManifest):
                raise TypeError(f"search index operation carries {type(manifest).__name__}")
            indexes[manifest.spec.index_name] = op

        for op in operations:
            if op.resource_kind != ResourceKind.PROJECT:
                for project in projects:
                    yield op, project

            if op.resource_kind in CLUSTER_CHILDREN:
                for cluster in clusters.values():
                    yield op, cluster

            if op.resource_kind in CLUSTER_SCOPED:
                cluster_name = _cluster_name(op)
                if cluster_name in clusters:
                    yield op, clusters[cluster_name]
                index_name = _index_name(op)
                if index_name in indexes:
                    yield op, indexes[index_name]

            for dep in op.resource.dependencies:
                for parent in by_name.get(dep, []):
                    yield op, parent

    def _assign_stages(self, operations: list[PlannedOperation], edges: dict[str, set[str]]) -> None:
        # Kahn's algorithm; each node's stage is one past its latest dependency
        by_id = {op.id: op for op in operations}
        dependents: dict[str, list[str]] = {op.id: [] for op in operations}
        in_degree: dict[str, int] = {op.id: len(edges[op.id]) for op in operations}
        for op_id, deps in edges.items():
            for dep in deps:
                dependents[dep].append(op_id)

        stages: dict[str, int] = {}
        queue = [op_id for op_id, degree in in_degree.items() if degree == 0]
        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            stages[current] = max((stages[dep] + 1 for dep in edges[current]), default=0)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(stages) != len(operations):
            remaining = {op_id for op_id in by_id if op_id not in stages}
            cycle = _find_cycle(remaining, edges)
            raise CyclicDependencyError([by_id[op_id].key for op_id in cycle])

        for op in operations:
            op.stage = stages[op.id]


def _find_cycle(nodes: set[str], edges: dict[str, set[str]]) -> list[str]:
    """Return one cycle among ``nodes`` as a closed path."""
    # Every remaining node has an unprocessed dependency, so walking any
    # dependency chain must revisit a node
    start = min(nodes)
    path: list[str] = []
    position: dict[str, int] = {}
    current = start
    while current not in position:
        position[current] = len(path)
        path.append(current)
        current = min(dep for dep in edges[current] if dep in nodes)
    cycle = path[position[current]:]
    cycle.reverse()
    return [*cycle, cycle[0]]


def build_plan(
    desired: ProjectState,
    current: ProjectState,
    project_id: str,
    options: DiffOptions | None = None,
) -> tuple[Plan, DiffResult]:
    """Diff two states and stage the resulting operations."""
    result = DiffEngine(options).diff(desired, current)
    plan = PlanBuilder().build(project_id, result.operations)
    return plan, result

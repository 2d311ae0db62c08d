"""Drift detection and reconciliation.

Drift is found by running discovery for the project and diffing the live
state against the desired state; every operation other than NoChange is
a drift. Each drift is classified by type (from the field paths it
touches), severity (from the operation's risk) and complexity, then
matched against the configured rules to pick an action:

- autofix: record the field changes and an "autofix" checkpoint
- warn: report only
- prompt: needs an explicit approval
- manual: needs a human
- ignore: explicitly declined

An autofix from a rule is downgraded to prompt when the drift is high
severity or at least complex.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import ReconcileRule, ReconciliationConfig
from .diff import ChangeType, DiffEngine, FieldChange, Operation, RiskLevel, is_secret_path
from .discovery import StateDiscovery
from .fingerprint import compute_fingerprint
from .idempotency import IdempotencyManager
from .models import OperationType, ProjectState, ResourceKind

logger = logging.getLogger(__name__)

DEFAULT_DRIFT_CONFIDENCE = 0.8


class ReconcileError(Exception):
    """Reconciliation was requested while disabled."""


class DriftType(str, Enum):
    CONFIGURATION = "configuration"
    SCALE = "scale"
    SECURITY = "security"
    NETWORK = "network"
    METADATA = "metadata"
    STRUCTURAL = "structural"
    UNEXPECTED = "unexpected"
    DELETED = "deleted"
    CREATED = "created"


class DriftSeverity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    DANGER = "danger"

    @property
    def rank(self) -> int:
        return _COMPLEXITY_RANK[self]


class ReconcileAction(str, Enum):
    IGNORE = "ignore"
    WARN = "warn"
    AUTOFIX = "autofix"
    PROMPT = "prompt"
    MANUAL = "manual"


_SEVERITY_RANK = {s: i for i, s in enumerate(DriftSeverity)}
_COMPLEXITY_RANK = {c: i for i, c in enumerate(Complexity)}

SEVERITY_FOR_RISK = {
    RiskLevel.LOW: DriftSeverity.LOW,
    RiskLevel.MEDIUM: DriftSeverity.MEDIUM,
    RiskLevel.HIGH: DriftSeverity.HIGH,
    RiskLevel.CRITICAL: DriftSeverity.CRITICAL,
}

# Checked in order; the first type with a matching marker wins
DRIFT_PATH_MARKERS: tuple[tuple[DriftType, tuple[str, ...]], ...] = (
    (DriftType.SECURITY, ("security", "auth", "password", "roles", "scopes", "privileges")),
    (DriftType.NETWORK, ("network", "ipaddress", "cidr", "endpoint")),
    (DriftType.SCALE, ("instance", "size", "scale", "capacity", "autoscaling")),
    (DriftType.METADATA, ("label", "tag", "metadata", "annotation")),
)

FIELD_SEVERITY_MARKERS: tuple[tuple[DriftSeverity, tuple[str, ...]], ...] = (
    (DriftSeverity.HIGH, ("security", "auth", "permission", "roles", "privileges")),
    (DriftSeverity.MEDIUM, ("network", "cidr", "ipaddress", "size", "scale")),
    (DriftSeverity.LOW, ("label", "tag", "metadata", "annotation")),
)

RECOMMENDATION_TEXT: dict[DriftType, tuple[str, list[str], int, str]] = {
    DriftType.METADATA: (
        "Update metadata to match desired state",
        ["Update labels and annotations", "Verify metadata consistency"],
        3,
        "Low - metadata changes only",
    ),
    DriftType.CONFIGURATION: (
        "Update configuration to match desired state",
        ["Apply configuration changes", "Verify resource state"],
        5,
        "Medium - configuration changes may affect functionality",
    ),
    DriftType.NETWORK: (
        "Update network configuration",
        ["Update network settings", "Verify connectivity", "Test access"],
        7,
        "High - network changes may affect accessibility",
    ),
    DriftType.SECURITY: (
        "Update security configuration",
        ["Review security changes", "Apply security updates", "Verify permissions"],
        9,
        "Critical - security changes affect access control",
    ),
    DriftType.SCALE: (
        "Adjust resource scaling",
        ["Update resource capacity", "Monitor scaling", "Verify performance"],
        6,
        "Medium - scaling changes may affect performance",
    ),
    DriftType.DELETED: (
        "Recreate deleted resource",
        ["Create missing resource", "Apply configuration", "Verify functionality"],
        8,
        "High - resource recreation may cause service interruption",
    ),
    DriftType.CREATED: (
        "Remove unexpected resource",
        ["Verify resource is not needed", "Remove unexpected resource"],
        4,
        "Medium - removing resources may affect dependent services",
    ),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _match(path: str, table: tuple[tuple[Any, tuple[str, ...]], ...]) -> Any | None:
    lowered = path.lower()
    for value, markers in table:
        if any(marker in lowered for marker in markers):
            return value
    return None


def _path_drift_type(path: str) -> DriftType | None:
    if path.startswith("metadata."):
        return DriftType.METADATA
    return _match(path, DRIFT_PATH_MARKERS)


def classify_field(path: str) -> DriftType:
    return _path_drift_type(path) or DriftType.CONFIGURATION


def field_severity(path: str) -> DriftSeverity:
    if is_secret_path(path):
        return DriftSeverity.CRITICAL
    return _match(path, FIELD_SEVERITY_MARKERS) or DriftSeverity.MEDIUM


def classify_operation(operation: Operation) -> DriftType:
    """Drift type of an operation.

    The desired resource missing from live state was deleted out of band;
    a live resource missing from the desired state was created out of band.
    """
    if operation.type == OperationType.CREATE:
        return DriftType.DELETED
    if operation.type == OperationType.DELETE:
        return DriftType.CREATED
    if operation.type != OperationType.UPDATE:
        return DriftType.UNEXPECTED
    for change in operation.field_changes:
        drift_type = _path_drift_type(change.path)
        if drift_type is not None:
            return drift_type
    return DriftType.CONFIGURATION


def drift_complexity(drift_type: DriftType, severity: DriftSeverity) -> Complexity:
    if drift_type == DriftType.METADATA:
        return Complexity.SIMPLE
    if drift_type in (DriftType.CONFIGURATION, DriftType.NETWORK):
        return Complexity.MODERATE if severity.rank <= DriftSeverity.MEDIUM.rank else Complexity.COMPLEX
    if drift_type == DriftType.SCALE:
        return Complexity.MODERATE
    if drift_type in (DriftType.STRUCTURAL, DriftType.DELETED, DriftType.CREATED):
        return Complexity.DANGER
    return Complexity.COMPLEX


@dataclass
class FieldDrift:
    path: str
    desired_value: Any
    actual_value: Any
    drift_type: DriftType
    severity: DriftSeverity
    change_type: ChangeType = ChangeType.MODIFY

    def to_dict(self) -> dict[str, Any]:
        secret = is_secret_path(self.path)
        return {
            "path": self.path,
            "desiredValue": "***" if secret else self.desired_value,
            "actualValue": "***" if secret else self.actual_value,
            "changeType": self.change_type.value,
            "driftType": self.drift_type.value,
            "severity": self.severity.value,
        }


@dataclass
class ResourceDrift:
    resource_id: str
    resource_kind: ResourceKind
    resource_name: str
    operation_type: OperationType
    drift_type: DriftType
    severity: DriftSeverity
    complexity: Complexity
    differences: list[FieldDrift] = field(default_factory=list)
    reconcilable: bool = True
    auto_fix: bool = False
    confidence: float = DEFAULT_DRIFT_CONFIDENCE
    fingerprint: str = ""
    detected_at: datetime = field(default_factory=_utcnow)
    desired_state: dict[str, Any] | None = None
    actual_state: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "resourceId": self.resource_id,
            "resourceKind": self.resource_kind.value,
            "resourceName": self.resource_name,
            "operationType": self.operation_type.value,
            "driftType": self.drift_type.value,
            "severity": self.severity.value,
            "complexity": self.complexity.value,
            "differences": [d.to_dict() for d in self.differences],
            "reconcilable": self.reconcilable,
            "autoFix": self.auto_fix,
            "confidence": self.confidence,
            "fingerprint": self.fingerprint,
            "detectedAt": self.detected_at.isoformat(),
        }


@dataclass
class DriftSummary:
    total_drifts: int = 0
    by_severity: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    by_kind: dict[str, int] = field(default_factory=dict)
    highest_severity: DriftSeverity = DriftSeverity.INFO
    most_common_type: DriftType | None = None
    auto_fixable: int = 0
    requires_approval: int = 0
    requires_manual: int = 0

    @classmethod
    def from_drifts(cls, drifts: list[ResourceDrift]) -> DriftSummary:
        summary = cls(total_drifts=len(drifts))
        types: Counter[DriftType] = Counter()
        for drift in drifts:
            summary.by_severity[drift.severity.value] = summary.by_severity.get(drift.severity.value, 0) + 1
            summary.by_type[drift.drift_type.value] = summary.by_type.get(drift.drift_type.value, 0) + 1
            summary.by_kind[drift.resource_kind.value] = summary.by_kind.get(drift.resource_kind.value, 0) + 1
            types[drift.drift_type] += 1
            if drift.severity.rank > summary.highest_severity.rank:
                summary.highest_severity = drift.severity
            if drift.auto_fix:
                summary.auto_fixable += 1
            elif drift.complexity.rank <= Complexity.MODERATE.rank:
                summary.requires_approval += 1
            else:
                summary.requires_manual += 1
        if types:
            summary.most_common_type = types.most_common(1)[0][0]
        return summary

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalDrifts": self.total_drifts,
            "driftsBySeverity": dict(self.by_severity),
            "driftsByType": dict(self.by_type),
            "driftsByResource": dict(self.by_kind),
            "highestSeverity": self.highest_severity.value,
            "mostCommonType": self.most_common_type.value if self.most_common_type else None,
            "autoFixable": self.auto_fixable,
            "requiresApproval": self.requires_approval,
            "requiresManual": self.requires_manual,
        }


@dataclass
class ReconcileRecommendation:
    resource_id: str
    action: ReconcileAction
    description: str
    complexity: Complexity
    priority: int
    safety_risk: RiskLevel
    impact: str
    steps: list[str] = field(default_factory=list)
    automated: bool = False
    requires_approval: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "resourceId": self.resource_id,
            "action": self.action.value,
            "description": self.description,
            "complexity": self.complexity.value,
            "priority": self.priority,
            "safetyRisk": self.safety_risk.value,
            "impact": self.impact,
            "steps": list(self.steps),
            "automated": self.automated,
            "requiresApproval": self.requires_approval,
        }


@dataclass
class DriftDetectionResult:
    project_id: str
    detected_at: datetime = field(default_factory=_utcnow)
    total_resources: int = 0
    drifts: list[ResourceDrift] = field(default_factory=list)
    summary: DriftSummary = field(default_factory=DriftSummary)
    recommendations: list[ReconcileRecommendation] = field(default_factory=list)

    @property
    def drifted_resources(self) -> int:
        return len(self.drifts)

    @property
    def drift_percentage(self) -> float:
        if self.total_resources == 0:
            return 0.0
        return self.drifted_resources / self.total_resources * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "detectedAt": self.detected_at.isoformat(),
            "totalResources": self.total_resources,
            "driftedResources": self.drifted_resources,
            "driftPercentage": self.drift_percentage,
            "drifts": [d.to_dict() for d in self.drifts],
            "summary": self.summary.to_dict(),
            "recommendations": [r.to_dict() for r in self.recommendations],
        }


@dataclass
class ResourceReconciliation:
    resource_id: str
    resource_kind: ResourceKind
    action: ReconcileAction
    success: bool = False
    error: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    changes: list[FieldChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resourceId": self.resource_id,
            "resourceKind": self.resource_kind.value,
            "action": self.action.value,
            "success": self.success,
            "error": self.error,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "changes": [c.redacted().to_dict() for c in self.changes],
        }


@dataclass
class ReconciliationResult:
    project_id: str
    drift_detection: DriftDetectionResult
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    auto_fixed: list[ResourceReconciliation] = field(default_factory=list)
    warned: list[ResourceReconciliation] = field(default_factory=list)
    pending_approval: list[ResourceReconciliation] = field(default_factory=list)
    skipped: list[ResourceReconciliation] = field(default_factory=list)
    failed: list[ResourceReconciliation] = field(default_factory=list)
    manual_required: list[ResourceReconciliation] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def total_actions(self) -> int:
        return (
            len(self.auto_fixed)
            + len(self.warned)
            + len(self.pending_approval)
            + len(self.skipped)
            + len(self.failed)
            + len(self.manual_required)
        )

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def remaining_drift(self) -> int:
        return self.total_actions - len(self.auto_fixed)

    @property
    def drift_reduced(self) -> float:
        original = len(self.drift_detection.drifts)
        if original == 0:
            return 0.0
        return len(self.auto_fixed) / original * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "totalActions": self.total_actions,
            "autoFixed": [r.to_dict() for r in self.auto_fixed],
            "warned": [r.to_dict() for r in self.warned],
            "pendingApproval": [r.to_dict() for r in self.pending_approval],
            "skipped": [r.to_dict() for r in self.skipped],
            "failed": [r.to_dict() for r in self.failed],
            "manualRequired": [r.to_dict() for r in self.manual_required],
            "success": self.success,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "remainingDrift": self.remaining_drift,
            "driftReduced": self.drift_reduced,
        }


class ReconciliationManager:
    """Detects drift and applies rule-selected reconcile actions."""

    def __init__(
        self,
        discovery: StateDiscovery,
        config: ReconciliationConfig | None = None,
        idempotency: IdempotencyManager | None = None,
        diff_engine: DiffEngine | None = None,
    ) -> None:
        self._discovery = discovery
        self._config = config or ReconciliationConfig()
        self._idempotency = idempotency
        self._diff = diff_engine or DiffEngine()
        self._shutdown_event: asyncio.Event | None = None

    @property
    def config(self) -> ReconciliationConfig:
        return self._config

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def detect_drift(self, project_id: str, desired: ProjectState) -> DriftDetectionResult:
        """Compare live state with ``desired``.

        Raises:
            ReconcileError: If drift detection is disabled.
            DiscoveryError: If the live state cannot be read.
        """
        if not self._config.enable_drift_detection:
            raise ReconcileError("drift detection is disabled")

        current = await self._discovery.discover_project(project_id)
        diff = self._diff.diff(desired, current)

        result = DriftDetectionResult(project_id=project_id, total_resources=desired.resource_count())
        for operation in diff.operations:
            if operation.type == OperationType.NO_CHANGE:
                continue
            result.drifts.append(self.analyze_operation(operation))

        result.summary = DriftSummary.from_drifts(result.drifts)
        result.recommendations = sorted(
            (self.recommend(d) for d in result.drifts), key=lambda r: r.priority, reverse=True
        )
        logger.info(
            "Drift detection finished",
            extra={
                "project_id": project_id,
                "drifted_resources": result.drifted_resources,
                "total_resources": result.total_resources,
            },
        )
        return result

    def analyze_operation(self, operation: Operation) -> ResourceDrift:
        drift_type = classify_operation(operation)
        severity = SEVERITY_FOR_RISK.get(operation.impact.risk_level, DriftSeverity.MEDIUM)
        drift = ResourceDrift(
            resource_id=operation.resource_name,
            resource_kind=operation.resource_kind,
            resource_name=operation.resource_name,
            operation_type=operation.type,
            drift_type=drift_type,
            severity=severity,
            complexity=drift_complexity(drift_type, severity),
            differences=[
                FieldDrift(
                    path=change.path,
                    desired_value=change.new_value,
                    actual_value=change.old_value,
                    drift_type=classify_field(change.path),
                    severity=field_severity(change.path),
                    change_type=change.change_type,
                )
                for change in operation.field_changes
            ],
            reconcilable=drift_type not in (DriftType.STRUCTURAL, DriftType.UNEXPECTED),
            desired_state=operation.desired.to_document() if operation.desired else None,
            actual_state=operation.current.to_document() if operation.current else None,
        )
        drift.auto_fix = self.can_auto_fix(drift)
        drift.fingerprint = compute_fingerprint(
            {
                "kind": drift.resource_kind.value,
                "name": drift.resource_name,
                "driftType": drift.drift_type.value,
                "differences": [
                    {"path": d.path, "desired": d.desired_value, "actual": d.actual_value}
                    for d in drift.differences
                ],
            }
        )
        return drift

    def rule_matches(self, rule: ReconcileRule, drift: ResourceDrift) -> bool:
        if not rule.enabled:
            return False
        if rule.resource_kinds and drift.resource_kind not in rule.resource_kinds:
            return False
        if rule.operation_types and drift.operation_type not in rule.operation_types:
            return False
        if rule.drift_types and drift.drift_type.value not in rule.drift_types:
            return False
        return drift.complexity.rank <= Complexity(rule.max_complexity).rank

    def matching_rule(self, drift: ResourceDrift) -> ReconcileRule | None:
        rules = sorted(self._config.rules, key=lambda r: r.priority, reverse=True)
        return next((rule for rule in rules if self.rule_matches(rule, drift)), None)

    def can_auto_fix(self, drift: ResourceDrift) -> bool:
        if not self._config.enable_auto_reconciliation:
            return False
        if drift.severity.rank >= DriftSeverity.HIGH.rank or drift.complexity.rank >= Complexity.COMPLEX.rank:
            return False
        rule = self.matching_rule(drift)
        if rule is not None:
            return ReconcileAction(rule.action) == ReconcileAction.AUTOFIX
        if self._config.safe_operations_only:
            return (
                drift.drift_type == DriftType.METADATA
                and drift.severity.rank <= DriftSeverity.LOW.rank
                and drift.complexity == Complexity.SIMPLE
            )
        return False

    def recommend(self, drift: ResourceDrift) -> ReconcileRecommendation:
        action = ReconcileAction.MANUAL
        requires_approval = False
        rule = self.matching_rule(drift)
        if rule is not None:
            action = ReconcileAction(rule.action)
            requires_approval = rule.require_approval

        if action == ReconcileAction.AUTOFIX and (
            drift.severity.rank >= DriftSeverity.HIGH.rank
            or drift.complexity.rank >= Complexity.COMPLEX.rank
        ):
            action = ReconcileAction.PROMPT
            requires_approval = True

        description, steps, priority, impact = RECOMMENDATION_TEXT.get(
            drift.drift_type,
            (
                "Manual intervention required",
                ["Investigate drift", "Determine appropriate action", "Apply fixes manually"],
                1,
                "Unknown - manual investigation required",
            ),
        )
        risk = {
            DriftSeverity.CRITICAL: RiskLevel.CRITICAL,
            DriftSeverity.HIGH: RiskLevel.HIGH,
            DriftSeverity.MEDIUM: RiskLevel.MEDIUM,
        }.get(drift.severity, RiskLevel.LOW)
        return ReconcileRecommendation(
            resource_id=drift.resource_id,
            action=action,
            description=description,
            complexity=drift.complexity,
            priority=priority,
            safety_risk=risk,
            impact=impact,
            steps=list(steps),
            automated=action == ReconcileAction.AUTOFIX,
            requires_approval=requires_approval,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def determine_action(self, drift: ResourceDrift, approvals: dict[str, bool]) -> ReconcileAction:
        approval = approvals.get(drift.resource_id)
        if approval is not None:
            return ReconcileAction.AUTOFIX if approval else ReconcileAction.IGNORE
        if drift.auto_fix:
            return ReconcileAction.AUTOFIX

        threshold = Complexity(self._config.manual_approval_threshold)
        if self._config.require_manual_approval and drift.complexity.rank >= threshold.rank:
            rule = self.matching_rule(drift)
            if rule is not None and rule.require_approval:
                return ReconcileAction.PROMPT
            return ReconcileAction.MANUAL
        if drift.severity.rank >= DriftSeverity.HIGH.rank or drift.complexity.rank >= Complexity.COMPLEX.rank:
            return ReconcileAction.MANUAL
        return ReconcileAction.WARN

    async def reconcile(
        self,
        drift_result: DriftDetectionResult,
        approvals: dict[str, bool] | None = None,
    ) -> ReconciliationResult:
        """Apply an action to every detected drift.

        ``approvals`` maps resource ids to an explicit approve (autofix) or
        decline (ignore) decision.
        """
        approvals = approvals or {}
        result = ReconciliationResult(project_id=drift_result.project_id, drift_detection=drift_result)

        async def run() -> None:
            for drift in drift_result.drifts:
                self._reconcile_drift(drift, approvals, result)
                await asyncio.sleep(0)

        try:
            await asyncio.wait_for(run(), timeout=self._config.reconcile_timeout_seconds)
        except TimeoutError:
            result.errors.append("reconciliation timed out")
            logger.error(
                "Reconciliation timed out",
                extra={
                    "project_id": drift_result.project_id,
                    "timeout_seconds": self._config.reconcile_timeout_seconds,
                },
            )

        result.completed_at = _utcnow()
        logger.info(
            "Reconciliation finished",
            extra={
                "project_id": drift_result.project_id,
                "auto_fixed": len(result.auto_fixed),
                "remaining_drift": result.remaining_drift,
            },
        )
        return result

    def _reconcile_drift(
        self,
        drift: ResourceDrift,
        approvals: dict[str, bool],
        result: ReconciliationResult,
    ) -> None:
        action = self.determine_action(drift, approvals)
        item = ResourceReconciliation(
            resource_id=drift.resource_id,
            resource_kind=drift.resource_kind,
            action=action,
        )

        if action == ReconcileAction.AUTOFIX:
            try:
                self.execute_autofix(drift, item)
                item.success = True
                result.auto_fixed.append(item)
            except Exception as e:
                item.error = str(e)
                result.errors.append(f"failed to auto-fix {drift.resource_id}: {e}")
                result.failed.append(item)
        elif action == ReconcileAction.IGNORE:
            item.success = True
            result.warnings.append(f"ignoring drift in {drift.resource_id}")
            result.skipped.append(item)
        elif action == ReconcileAction.WARN:
            item.success = True
            result.warnings.append(f"drift detected in {drift.resource_id}: {drift.drift_type.value}")
            result.warned.append(item)
        elif action == ReconcileAction.PROMPT:
            item.error = "approval required"
            result.warnings.append(f"approval required for {drift.resource_id}")
            result.pending_approval.append(item)
        else:
            item.error = "manual intervention required"
            result.warnings.append(f"manual intervention required for {drift.resource_id}")
            result.manual_required.append(item)
        item.completed_at = _utcnow()

    def execute_autofix(self, drift: ResourceDrift, item: ResourceReconciliation) -> None:
        """Record the intended field changes and an "autofix" checkpoint."""
        for difference in drift.differences:
            item.changes.append(
                FieldChange(
                    path=difference.path,
                    old_value=difference.actual_value,
                    new_value=difference.desired_value,
                    change_type=difference.change_type,
                )
            )

        if self._idempotency is None:
            return
        plan_id = f"autofix-{drift.fingerprint}" if drift.fingerprint else "autofix"
        try:
            self._idempotency.create_checkpoint(
                drift.resource_id,
                plan_id,
                "autofix",
                {
                    "resourceId": drift.resource_id,
                    "resourceKind": drift.resource_kind.value,
                    "action": ReconcileAction.AUTOFIX.value,
                    "driftType": drift.drift_type.value,
                },
            )
        except Exception as e:
            logger.warning(
                "Failed to create autofix checkpoint",
                extra={"resource_id": drift.resource_id, "error": str(e)},
            )

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    async def schedule_reconciliation(self, project_id: str, desired: ProjectState) -> None:
        """Detect and reconcile drift every check interval until shut down.

        Raises:
            ReconcileError: If scheduled reconciliation is disabled.
        """
        if not self._config.enable_scheduled_reconcile:
            raise ReconcileError("scheduled reconciliation is disabled")

        self._shutdown_event = asyncio.Event()
        logger.info(
            "Scheduled reconciliation started",
            extra={"project_id": project_id, "interval_seconds": self._config.drift_check_interval_seconds},
        )
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.drift_check_interval_seconds,
                )
            except TimeoutError:
                await self._scheduled_pass(project_id, desired)
        logger.info("Scheduled reconciliation stopped", extra={"project_id": project_id})

    async def _scheduled_pass(self, project_id: str, desired: ProjectState) -> None:
        try:
            drift_result = await self.detect_drift(project_id, desired)
        except Exception as e:
            logger.error(
                "Scheduled drift detection failed",
                extra={"project_id": project_id, "error": str(e)},
            )
            return
        if drift_result.drifts and self._config.enable_auto_reconciliation:
            await self.reconcile(drift_result)

    def shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

"""Desired vs current state comparison.

The diff engine pairs resources of the same kind by ``metadata.name`` and
emits one typed operation per resource:

- desired only: Create
- current only: Delete (suppressed when preserving existing resources)
- both, with observable differences: Update
- both, equal under the kind's comparison mask: NoChange

Field changes are extracted from the alias-keyed document form, so paths
read like the manifest (``spec.instanceSize``, ``metadata.labels.env``).

IMPACT CLASSIFICATION:
- Cluster deletes are critical, destructive and take the cluster down
- Cluster size, region and topology changes are high risk with downtime
- Network and authentication changes are high risk
- Creates never exceed medium risk
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .fingerprint import canonical_json, drop_path
from .models import (
    STATE_FIELDS,
    ClusterManifest,
    Manifest,
    OperationType,
    ProjectState,
    ResourceKind,
    parse_manifest,
)
from .services import traits_for

logger = logging.getLogger(__name__)

# Substrings marking a path whose values must never be printed
SECRET_PATH_MARKERS = ("password", "secret", "privatekey", "apikey")

# Substrings marking authentication or network sensitive paths
SECURITY_PATH_MARKERS = ("password", "roles", "scopes", "privileges", "auth", "inheritedroles")

# Cluster fields whose change restarts or reshapes the deployment
DOWNTIME_CLUSTER_FIELDS = ("spec.instanceSize", "spec.region", "spec.replicationSpecs")

MINUTE_MS = 60 * 1000

# Baseline estimates for creating one resource of a kind
CREATE_DURATION_MS: dict[ResourceKind, int] = {
    ResourceKind.PROJECT: 30 * 1000,
    ResourceKind.CLUSTER: 15 * MINUTE_MS,
    ResourceKind.DATABASE_USER: 30 * 1000,
    ResourceKind.DATABASE_ROLE: 30 * 1000,
    ResourceKind.NETWORK_ACCESS: 30 * 1000,
    ResourceKind.SEARCH_INDEX: 2 * MINUTE_MS,
    ResourceKind.VPC_ENDPOINT: 5 * MINUTE_MS,
}
DEFAULT_DURATION_MS = MINUTE_MS


class ChangeType(str, Enum):
    """Kind of change at a single field path."""

    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"


class RiskLevel(str, Enum):
    """Operation risk, ordered low to critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


def is_secret_path(path: str) -> bool:
    lowered = path.lower()
    return any(marker in lowered for marker in SECRET_PATH_MARKERS)


@dataclass(frozen=True)
class FieldChange:
    """A single field-level difference."""

    path: str
    old_value: Any
    new_value: Any
    change_type: ChangeType

    def redacted(self) -> FieldChange:
        """Copy safe to log: secret values are masked."""
        if not is_secret_path(self.path):
            return self
        return FieldChange(
            path=self.path,
            old_value="***" if self.old_value is not None else None,
            new_value="***" if self.new_value is not None else None,
            change_type=self.change_type,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "type": self.change_type.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldChange:
        return cls(
            path=data["path"],
            old_value=data.get("oldValue"),
            new_value=data.get("newValue"),
            change_type=ChangeType(data["type"]),
        )


@dataclass
class OperationImpact:
    """Predicted consequences of executing an operation."""

    risk_level: RiskLevel = RiskLevel.LOW
    is_destructive: bool = False
    requires_downtime: bool = False
    estimated_duration_ms: int = 0
    warnings: list[str] = field(default_factory=list)

    def raise_to(self, risk: RiskLevel) -> None:
        if risk > self.risk_level:
            self.risk_level = risk

    def to_dict(self) -> dict[str, Any]:
        return {
            "riskLevel": self.risk_level.value,
            "isDestructive": self.is_destructive,
            "requiresDowntime": self.requires_downtime,
            "estimatedDurationMs": self.estimated_duration_ms,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OperationImpact:
        return cls(
            risk_level=RiskLevel(data.get("riskLevel", "low")),
            is_destructive=data.get("isDestructive", False),
            requires_downtime=data.get("requiresDowntime", False),
            estimated_duration_ms=data.get("estimatedDurationMs", 0),
            warnings=list(data.get("warnings", [])),
        )


@dataclass
class Operation:
    """One typed mutation against one resource.

    Create has no ``current``; Delete has no ``desired``; Update and
    NoChange carry both.
    """

    type: OperationType
    resource_kind: ResourceKind
    resource_name: str
    current: Manifest | None = None
    desired: Manifest | None = None
    field_changes: list[FieldChange] = field(default_factory=list)
    impact: OperationImpact = field(default_factory=OperationImpact)
    stage: int = 0

    @property
    def resource(self) -> Manifest:
        """The manifest the operation acts on: desired, else current."""
        manifest = self.desired if self.desired is not None else self.current
        if manifest is None:
            raise ValueError(
                f"{self.type.value} operation on {self.resource_name} carries no manifest"
            )
        return manifest

    @property
    def key(self) -> str:
        return f"{self.resource_kind.value}/{self.resource_name}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "resourceKind": self.resource_kind.value,
            "resourceName": self.resource_name,
            "fieldChanges": [fc.to_dict() for fc in self.field_changes],
            "impact": self.impact.to_dict(),
            "stage": self.stage,
        }
        if self.current is not None:
            data["current"] = self.current.to_document()
        if self.desired is not None:
            data["desired"] = self.desired.to_document()
        return data

    @staticmethod
    def _fields_from_dict(data: dict[str, Any]) -> dict[str, Any]:
        return {
            "type": OperationType(data["type"]),
            "resource_kind": ResourceKind(data["resourceKind"]),
            "resource_name": data["resourceName"],
            "current": parse_manifest(data["current"]) if data.get("current") else None,
            "desired": parse_manifest(data["desired"]) if data.get("desired") else None,
            "field_changes": [FieldChange.from_dict(fc) for fc in data.get("fieldChanges", [])],
            "impact": OperationImpact.from_dict(data.get("impact", {})),
            "stage": data.get("stage", 0),
        }


@dataclass
class DiffSummary:
    """Operation counts by type."""

    create: int = 0
    update: int = 0
    delete: int = 0
    no_change: int = 0

    @property
    def total(self) -> int:
        return self.create + self.update + self.delete + self.no_change

    @property
    def has_changes(self) -> bool:
        return (self.create + self.update + self.delete) > 0

    def count(self, operation: Operation) -> None:
        if operation.type == OperationType.CREATE:
            self.create += 1
        elif operation.type == OperationType.UPDATE:
            self.update += 1
        elif operation.type == OperationType.DELETE:
            self.delete += 1
        else:
            self.no_change += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "create": self.create,
            "update": self.update,
            "delete": self.delete,
            "noChange": self.no_change,
            "total": self.total,
        }


@dataclass
class DiffResult:
    """Operations in kind order plus their summary."""

    operations: list[Operation] = field(default_factory=list)
    summary: DiffSummary = field(default_factory=DiffSummary)

    def changes(self) -> list[Operation]:
        return [op for op in self.operations if op.type != OperationType.NO_CHANGE]


@dataclass(frozen=True)
class DiffOptions:
    """Diff behavior switches.

    Attributes:
        preserve_existing: Never emit Deletes for resources that exist
            only in the current state.
        ignore_paths: Extra dotted paths excluded from comparison for
            every kind.
    """

    preserve_existing: bool = False
    ignore_paths: frozenset[str] = frozenset()


# =============================================================================
# Field comparison
# =============================================================================


def _is_primitive(value: Any) -> bool:
    return not isinstance(value, dict | list)


def _compare(path: str, old: Any, new: Any, changes: list[FieldChange]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in sorted(set(old) | set(new)):
            child = f"{path}.{key}" if path else key
            if key not in old:
                changes.append(FieldChange(child, None, new[key], ChangeType.ADD))
            elif key not in new:
                changes.append(FieldChange(child, old[key], None, ChangeType.REMOVE))
            else:
                _compare(child, old[key], new[key], changes)
        return

    if isinstance(old, list) and isinstance(new, list):
        if all(_is_primitive(v) for v in old + new):
            # Primitive lists are compared as multisets
            if sorted(old, key=canonical_json) != sorted(new, key=canonical_json):
                changes.append(FieldChange(path, old, new, ChangeType.MODIFY))
            return
        if len(old) == len(new):
            for index, (old_item, new_item) in enumerate(zip(old, new, strict=True)):
                _compare(f"{path}[{index}]", old_item, new_item, changes)
            return
        changes.append(FieldChange(path, old, new, ChangeType.MODIFY))
        return

    if old != new:
        changes.append(FieldChange(path, old, new, ChangeType.MODIFY))


def comparable_document(manifest: Manifest, extra_ignore: frozenset[str] = frozenset()) -> dict[str, Any]:
    """Manifest document with the kind's comparison mask removed."""
    document = copy.deepcopy(manifest.to_document())
    for path in traits_for(manifest.kind).full_mask | extra_ignore:
        drop_path(document, path)
    return document


def field_changes(
    current: Manifest,
    desired: Manifest,
    extra_ignore: frozenset[str] = frozenset(),
) -> list[FieldChange]:
    """Ordered field-level differences between two manifests of one kind."""
    changes: list[FieldChange] = []
    _compare(
        "",
        comparable_document(current, extra_ignore),
        comparable_document(desired, extra_ignore),
        changes,
    )
    return changes


# =============================================================================
# Impact
# =============================================================================


def _touches(changes: list[FieldChange], prefixes: tuple[str, ...]) -> bool:
    return any(fc.path.startswith(prefix) for fc in changes for prefix in prefixes)


def _is_security_path(path: str) -> bool:
    lowered = path.lower()
    return any(marker in lowered for marker in SECURITY_PATH_MARKERS)


def _create_impact(kind: ResourceKind) -> OperationImpact:
    impact = OperationImpact(estimated_duration_ms=CREATE_DURATION_MS.get(kind, DEFAULT_DURATION_MS))
    if kind in (ResourceKind.CLUSTER, ResourceKind.PROJECT, ResourceKind.VPC_ENDPOINT):
        impact.risk_level = RiskLevel.MEDIUM
    if kind == ResourceKind.NETWORK_ACCESS:
        impact.raise_to(RiskLevel.MEDIUM)
        impact.warnings.append("opens network access to the project")
    return impact


def _delete_impact(kind: ResourceKind) -> OperationImpact:
    impact = OperationImpact(is_destructive=True, estimated_duration_ms=DEFAULT_DURATION_MS)
    if kind == ResourceKind.PROJECT:
        impact.risk_level = RiskLevel.CRITICAL
        impact.warnings.append("deleting a project removes every resource in it")
    elif kind == ResourceKind.CLUSTER:
        impact.risk_level = RiskLevel.CRITICAL
        impact.requires_downtime = True
        impact.estimated_duration_ms = 10 * MINUTE_MS
        impact.warnings.append("cluster deletion permanently removes its data")
    elif kind in (
        ResourceKind.DATABASE_USER,
        ResourceKind.DATABASE_ROLE,
        ResourceKind.NETWORK_ACCESS,
        ResourceKind.VPC_ENDPOINT,
    ):
        impact.risk_level = RiskLevel.HIGH
    else:
        impact.risk_level = RiskLevel.MEDIUM
    return impact


def _update_impact(
    kind: ResourceKind,
    current: Manifest,
    desired: Manifest,
    changes: list[FieldChange],
) -> OperationImpact:
    impact = OperationImpact(estimated_duration_ms=30 * 1000)
    if all(fc.path.startswith("metadata.") for fc in changes):
        return impact

    impact.raise_to(RiskLevel.MEDIUM if kind == ResourceKind.CLUSTER else RiskLevel.LOW)

    if kind == ResourceKind.CLUSTER:
        if not isinstance(current, ClusterManifest) or not isinstance(desired, ClusterManifest):
            raise TypeError("cluster impact needs cluster manifests")
        impact.estimated_duration_ms = 5 * MINUTE_MS
        if _touches(changes, DOWNTIME_CLUSTER_FIELDS):
            impact.raise_to(RiskLevel.HIGH)
            impact.requires_downtime = True
            impact.estimated_duration_ms = 20 * MINUTE_MS
            impact.warnings.append("cluster topology change may cause a rolling restart")
        old_disk, new_disk = current.spec.disk_size_gb, desired.spec.disk_size_gb
        if old_disk is not None and new_disk is not None and new_disk < old_disk:
            impact.raise_to(RiskLevel.CRITICAL)
            impact.is_destructive = True
            impact.warnings.append("reducing disk size can lose data")
        if current.spec.backup_enabled and desired.spec.backup_enabled is False:
            impact.raise_to(RiskLevel.HIGH)
            impact.warnings.append("disabling backups removes point-in-time recovery")

    if kind == ResourceKind.NETWORK_ACCESS or any(_is_security_path(fc.path) for fc in changes):
        impact.raise_to(RiskLevel.HIGH)
        impact.warnings.append("security-relevant change")

    return impact


# =============================================================================
# Engine
# =============================================================================


class DiffEngine:
    """Computes operations converging current state to desired state."""

    def __init__(self, options: DiffOptions | None = None) -> None:
        self._options = options or DiffOptions()

    @property
    def options(self) -> DiffOptions:
        return self._options

    def diff(self, desired: ProjectState, current: ProjectState) -> DiffResult:
        """Compare two project states.

        Operations are returned grouped by kind (project first, then the
        ``STATE_FIELDS`` order), desired resources before removals.
        """
        result = DiffResult()
        for kind in [ResourceKind.PROJECT, *STATE_FIELDS]:
            for operation in self._diff_kind(kind, desired, current):
                result.operations.append(operation)
                result.summary.count(operation)

        logger.debug(
            "Computed diff",
            extra={"summary": result.summary.to_dict()},
        )
        return result

    def diff_resource(self, current: Manifest | None, desired: Manifest | None) -> list[Operation]:
        """Operations for a single resource pair."""
        if current is None:
            if desired is None:
                return []
            return [
                Operation(
                    type=OperationType.CREATE,
                    resource_kind=desired.kind,
                    resource_name=desired.name,
                    desired=desired,
                    impact=_create_impact(desired.kind),
                )
            ]
        if desired is None:
            return [
                Operation(
                    type=OperationType.DELETE,
                    resource_kind=current.kind,
                    resource_name=current.name,
                    current=current,
                    impact=_delete_impact(current.kind),
                )
            ]

        changes = field_changes(current, desired, self._options.ignore_paths)
        kind = desired.kind
        if not changes:
            return [
                Operation(
                    type=OperationType.NO_CHANGE,
                    resource_kind=kind,
                    resource_name=desired.name,
                    current=current,
                    desired=desired,
                )
            ]

        traits = traits_for(kind)
        if traits.replace_on_update:
            # Backend has no in-place update for this kind
            delete_impact = _delete_impact(kind)
            create_impact = _create_impact(kind)
            create_impact.raise_to(RiskLevel.HIGH)
            return [
                Operation(
                    type=OperationType.DELETE,
                    resource_kind=kind,
                    resource_name=current.name,
                    current=current,
                    impact=delete_impact,
                ),
                Operation(
                    type=OperationType.CREATE,
                    resource_kind=kind,
                    resource_name=desired.name,
                    desired=desired,
                    field_changes=changes,
                    impact=create_impact,
                ),
            ]

        return [
            Operation(
                type=OperationType.UPDATE,
                resource_kind=kind,
                resource_name=desired.name,
                current=current,
                desired=desired,
                field_changes=changes,
                impact=_update_impact(kind, current, desired, changes),
            )
        ]

    def _diff_kind(
        self,
        kind: ResourceKind,
        desired: ProjectState,
        current: ProjectState,
    ) -> list[Operation]:
        desired_by_name = {m.name: m for m in desired.by_kind(kind)}
        current_by_name = {m.name: m for m in current.by_kind(kind)}
        operations: list[Operation] = []

        for name, manifest in desired_by_name.items():
            operations.extend(self.diff_resource(current_by_name.get(name), manifest))

        for name, manifest in current_by_name.items():
            if name in desired_by_name:
                continue
            if kind == ResourceKind.PROJECT or traits_for(kind).analysis_only:
                continue
            if self._options.preserve_existing:
                logger.debug(
                    "Preserving resource absent from desired state",
                    extra={"kind": kind.value, "resource_name": name},
                )
                continue
            operations.extend(self.diff_resource(manifest, None))

        return operations

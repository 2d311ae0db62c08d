"""Operation state, ownership leases and checkpoints.

The idempotency manager is the engine's memory of what it has done:

- one ``OperationState`` per operation id, with status history and the
  fingerprint of the resource it acted on
- exclusive, time-bounded ``ResourceOwnership`` leases so two plans never
  mutate the same resource concurrently
- ``Checkpoint`` records written before and after each mutation, which
  recovery uses to roll back

All mutations happen under one lock that is never held across I/O. A
background task, started and stopped explicitly, drops expired state.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import IdempotencyConfig
from .diff import Operation
from .errors import OwnershipError
from .fingerprint import FingerprintEngine
from .models import OperationType, ResourceKind
from .plan import OperationStatus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset(
    {OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.SKIPPED}
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Checkpoint:
    """Snapshot of an operation's context at one stage."""

    id: str
    operation_id: str
    plan_id: str
    stage: str
    created_at: datetime
    data: dict[str, Any] = field(default_factory=dict)
    resource_state: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operationId": self.operation_id,
            "planId": self.plan_id,
            "stage": self.stage,
            "createdAt": self.created_at.isoformat(),
            "data": dict(self.data),
            "resourceState": self.resource_state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            id=data["id"],
            operation_id=data["operationId"],
            plan_id=data["planId"],
            stage=data["stage"],
            created_at=datetime.fromisoformat(data["createdAt"]),
            data=dict(data.get("data", {})),
            resource_state=data.get("resourceState"),
        )


@dataclass
class OperationState:
    """Tracked lifecycle of one operation."""

    id: str
    plan_id: str
    status: OperationStatus
    resource_kind: ResourceKind
    resource_id: str
    fingerprint: str
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    error_history: list[str] = field(default_factory=list)
    last_checkpoint: Checkpoint | None = None
    checkpoint_data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def project_id(self) -> str | None:
        return self.metadata.get("projectID")

    @property
    def operation_type(self) -> OperationType | None:
        value = self.metadata.get("operationType")
        return OperationType(value) if value else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "planId": self.plan_id,
            "status": self.status.value,
            "resourceKind": self.resource_kind.value,
            "resourceId": self.resource_id,
            "fingerprint": self.fingerprint,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "retryCount": self.retry_count,
            "errorHistory": list(self.error_history),
            "lastCheckpoint": self.last_checkpoint.to_dict() if self.last_checkpoint else None,
            "checkpointData": dict(self.checkpoint_data),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OperationState:
        last_checkpoint = data.get("lastCheckpoint")
        return cls(
            id=data["id"],
            plan_id=data["planId"],
            status=OperationStatus(data["status"]),
            resource_kind=ResourceKind(data["resourceKind"]),
            resource_id=data["resourceId"],
            fingerprint=data.get("fingerprint", ""),
            created_at=datetime.fromisoformat(data["createdAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
            started_at=_from_iso(data.get("startedAt")),
            completed_at=_from_iso(data.get("completedAt")),
            retry_count=data.get("retryCount", 0),
            error_history=list(data.get("errorHistory", [])),
            last_checkpoint=Checkpoint.from_dict(last_checkpoint) if last_checkpoint else None,
            checkpoint_data=dict(data.get("checkpointData", {})),
            metadata=dict(data.get("metadata", {})),
        )


@dataclass
class ResourceOwnership:
    """Exclusive lease of one plan over one resource."""

    resource_kind: ResourceKind
    resource_id: str
    owner_plan_id: str
    owner_op_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "resourceKind": self.resource_kind.value,
            "resourceId": self.resource_id,
            "ownerPlanId": self.owner_plan_id,
            "ownerOpId": self.owner_op_id,
            "acquiredAt": self.acquired_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceOwnership:
        return cls(
            resource_kind=ResourceKind(data["resourceKind"]),
            resource_id=data["resourceId"],
            owner_plan_id=data["ownerPlanId"],
            owner_op_id=data["ownerOpId"],
            acquired_at=datetime.fromisoformat(data["acquiredAt"]),
            expires_at=datetime.fromisoformat(data["expiresAt"]),
        )


@dataclass
class CleanupStats:
    states: int = 0
    ownerships: int = 0
    checkpoints: int = 0


def _ownership_key(kind: ResourceKind, resource_id: str) -> str:
    return f"{kind.value}/{resource_id}"


class IdempotencyManager:
    """Tracks operation state, ownership and checkpoints in memory."""

    def __init__(
        self,
        config: IdempotencyConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config or IdempotencyConfig()
        self._clock = clock
        self._fingerprints = FingerprintEngine(
            ignore_fields=self._config.ignore_metadata_fields,
            include_fields=self._config.include_fields,
        )
        self._lock = threading.RLock()
        self._states: dict[str, OperationState] = {}
        self._ownership: dict[str, ResourceOwnership] = {}
        self._checkpoints: dict[str, list[Checkpoint]] = {}

        self._shutdown_event: asyncio.Event | None = None
        self._cleanup_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> IdempotencyConfig:
        return self._config

    # ------------------------------------------------------------------
    # Fingerprints
    # ------------------------------------------------------------------

    def fingerprint(self, resource: Any, kind: ResourceKind | None = None) -> str:
        if not self._config.enable_fingerprinting or resource is None:
            return ""
        return self._fingerprints.compute(resource, kind)

    def operation_fingerprint(self, operation: Operation) -> str:
        """Fingerprint of the resource an operation converges to."""
        return self.fingerprint(operation.resource, operation.resource_kind)

    # ------------------------------------------------------------------
    # Operation state
    # ------------------------------------------------------------------

    def create_operation_state(
        self,
        op_id: str,
        plan_id: str,
        operation: Operation,
        fingerprint: str | None = None,
        project_id: str | None = None,
    ) -> OperationState:
        """Record a new pending operation.

        Returns the existing record unchanged if one is already tracked for
        ``op_id``.
        """
        if fingerprint is None:
            fingerprint = self.operation_fingerprint(operation)
        spec_project = getattr(operation.resource.spec, "project_name", None)
        metadata: dict[str, Any] = {
            "operationType": operation.type.value,
            "resourceName": operation.resource_name,
        }
        if project_id or spec_project:
            metadata["projectID"] = project_id or spec_project

        with self._lock:
            existing = self._states.get(op_id)
            if existing is not None:
                return existing
            now = self._clock()
            state = OperationState(
                id=op_id,
                plan_id=plan_id,
                status=OperationStatus.PENDING,
                resource_kind=operation.resource_kind,
                resource_id=operation.resource_name,
                fingerprint=fingerprint,
                created_at=now,
                updated_at=now,
                metadata=metadata,
            )
            if self._config.enable_state_tracking:
                self._states[op_id] = state

        logger.debug(
            "Created operation state",
            extra={"operation_id": op_id, "plan_id": plan_id, "kind": operation.resource_kind.value},
        )
        return state

    def get_operation_state(self, op_id: str) -> OperationState | None:
        with self._lock:
            return self._states.get(op_id)

    def update_operation_state(
        self,
        op_id: str,
        status: OperationStatus,
        error: BaseException | str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> OperationState:
        """Move an operation to ``status``.

        Raises:
            KeyError: If no state is tracked for ``op_id``.
        """
        with self._lock:
            state = self._states.get(op_id)
            if state is None:
                raise KeyError(f"operation state not found: {op_id}")
            now = self._clock()
            state.status = status
            state.updated_at = now
            if status == OperationStatus.RUNNING and state.started_at is None:
                state.started_at = now
            elif status == OperationStatus.RETRYING:
                state.retry_count += 1
            if status in TERMINAL_STATUSES:
                state.completed_at = now
            if error is not None:
                state.error_history.append(str(error))
            if metadata:
                state.metadata.update(metadata)
            return state

    def list_operation_states(self, plan_id: str | None = None) -> list[OperationState]:
        with self._lock:
            states = list(self._states.values())
        if plan_id is not None:
            states = [s for s in states if s.plan_id == plan_id]
        return sorted(states, key=lambda s: (s.created_at, s.id))

    def list_operation_states_by_project(self, project_id: str) -> list[OperationState]:
        with self._lock:
            states = [s for s in self._states.values() if s.project_id == project_id]
        return sorted(states, key=lambda s: (s.created_at, s.id))

    def is_operation_idempotent(self, op_id: str, fingerprint: str) -> bool:
        """True if ``op_id`` already completed against the same content."""
        with self._lock:
            state = self._states.get(op_id)
            return (
                state is not None
                and state.status == OperationStatus.COMPLETED
                and state.fingerprint == fingerprint
            )

    def find_duplicate_operation(
        self,
        operation: Operation,
        exclude_id: str | None = None,
    ) -> OperationState | None:
        """Most recent non-failed state for the same resource inside the window."""
        if not self._config.enable_deduplication:
            return None
        cutoff = self._clock() - timedelta(seconds=self._config.deduplication_window_seconds)
        with self._lock:
            matches = [
                state
                for state in self._states.values()
                if state.id != exclude_id
                and state.created_at >= cutoff
                and state.resource_kind == operation.resource_kind
                and state.resource_id == operation.resource_name
                and state.status != OperationStatus.FAILED
            ]
        if not matches:
            return None
        return max(matches, key=lambda s: (s.updated_at, s.id))

    def is_duplicate_operation(self, operation: Operation, exclude_id: str | None = None) -> bool:
        return self.find_duplicate_operation(operation, exclude_id) is not None

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    def acquire_resource_ownership(
        self,
        kind: ResourceKind,
        resource_id: str,
        plan_id: str,
        op_id: str,
    ) -> ResourceOwnership:
        """Take or extend the lease on a resource.

        Raises:
            OwnershipError: If another plan holds an unexpired lease.
        """
        key = _ownership_key(kind, resource_id)
        ttl = timedelta(seconds=self._config.ownership_ttl_seconds)
        with self._lock:
            now = self._clock()
            lease = self._ownership.get(key)
            if lease is not None and not lease.is_expired(now):
                if lease.owner_plan_id != plan_id:
                    raise OwnershipError(
                        f"resource {key} is owned by plan {lease.owner_plan_id} "
                        f"until {lease.expires_at.isoformat()}"
                    )
                lease.owner_op_id = op_id
                lease.expires_at = now + ttl
                return lease

            lease = ResourceOwnership(
                resource_kind=kind,
                resource_id=resource_id,
                owner_plan_id=plan_id,
                owner_op_id=op_id,
                acquired_at=now,
                expires_at=now + ttl,
            )
            if self._config.enable_ownership_tracking:
                self._ownership[key] = lease
            return lease

    def release_resource_ownership(self, kind: ResourceKind, resource_id: str, plan_id: str) -> None:
        """Release a lease held by ``plan_id``.

        Raises:
            OwnershipError: If the lease belongs to another plan.
        """
        key = _ownership_key(kind, resource_id)
        with self._lock:
            lease = self._ownership.get(key)
            if lease is None:
                return
            if lease.owner_plan_id != plan_id:
                raise OwnershipError(
                    f"cannot release {key}: owned by plan {lease.owner_plan_id}, not {plan_id}"
                )
            del self._ownership[key]

    def get_resource_ownership(self, kind: ResourceKind, resource_id: str) -> ResourceOwnership | None:
        with self._lock:
            lease = self._ownership.get(_ownership_key(kind, resource_id))
            if lease is None or lease.is_expired(self._clock()):
                return None
            return lease

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def create_checkpoint(
        self,
        op_id: str,
        plan_id: str,
        stage: str,
        data: dict[str, Any] | None = None,
        resource_state: dict[str, Any] | None = None,
    ) -> Checkpoint:
        with self._lock:
            now = self._clock()
            checkpoint = Checkpoint(
                id=f"{op_id}-{stage}-{int(now.timestamp())}",
                operation_id=op_id,
                plan_id=plan_id,
                stage=stage,
                created_at=now,
                data=dict(data or {}),
                resource_state=resource_state,
            )
            self._checkpoints.setdefault(op_id, []).append(checkpoint)
            state = self._states.get(op_id)
            if state is not None:
                state.last_checkpoint = checkpoint
                state.checkpoint_data.update(checkpoint.data)
                state.updated_at = now
        return checkpoint

    def get_latest_checkpoint(self, op_id: str) -> Checkpoint | None:
        with self._lock:
            checkpoints = self._checkpoints.get(op_id)
            return checkpoints[-1] if checkpoints else None

    def list_checkpoints(self, op_id: str) -> list[Checkpoint]:
        with self._lock:
            return list(self._checkpoints.get(op_id, []))

    def find_checkpoint_with_state(self, op_id: str) -> Checkpoint | None:
        """Newest checkpoint carrying a prior resource state."""
        with self._lock:
            for checkpoint in reversed(self._checkpoints.get(op_id, [])):
                if checkpoint.resource_state is not None:
                    return checkpoint
        return None

    # ------------------------------------------------------------------
    # Cleanup and persistence
    # ------------------------------------------------------------------

    def cleanup_expired_state(self) -> CleanupStats:
        """Drop expired states and leases; trim checkpoint history."""
        stats = CleanupStats()
        with self._lock:
            now = self._clock()
            state_cutoff = now - timedelta(seconds=self._config.state_ttl_seconds)
            for op_id in [i for i, s in self._states.items() if s.updated_at < state_cutoff]:
                del self._states[op_id]
                stats.checkpoints += len(self._checkpoints.pop(op_id, []))
                stats.states += 1

            for key in [k for k, lease in self._ownership.items() if lease.is_expired(now)]:
                del self._ownership[key]
                stats.ownerships += 1

            limit = self._config.max_checkpoints_per_operation
            for op_id, checkpoints in self._checkpoints.items():
                if len(checkpoints) > limit:
                    stats.checkpoints += len(checkpoints) - limit
                    self._checkpoints[op_id] = checkpoints[-limit:]

        if stats.states or stats.ownerships or stats.checkpoints:
            logger.debug(
                "Cleaned up idempotency state",
                extra={
                    "states": stats.states,
                    "ownerships": stats.ownerships,
                    "checkpoints": stats.checkpoints,
                },
            )
        return stats

    def export_state(self) -> dict[str, Any]:
        """Serialize everything tracked, for optional persistence."""
        with self._lock:
            return {
                "operationStates": [s.to_dict() for s in self._states.values()],
                "ownership": [lease.to_dict() for lease in self._ownership.values()],
                "checkpoints": {
                    op_id: [c.to_dict() for c in checkpoints]
                    for op_id, checkpoints in self._checkpoints.items()
                },
            }

    def import_state(self, data: dict[str, Any]) -> None:
        """Load state produced by ``export_state``, replacing what is tracked."""
        states = [OperationState.from_dict(s) for s in data.get("operationStates", [])]
        leases = [ResourceOwnership.from_dict(o) for o in data.get("ownership", [])]
        checkpoints = {
            op_id: [Checkpoint.from_dict(c) for c in items]
            for op_id, items in data.get("checkpoints", {}).items()
        }
        with self._lock:
            self._states = {s.id: s for s in states}
            self._ownership = {
                _ownership_key(lease.resource_kind, lease.resource_id): lease for lease in leases
            }
            self._checkpoints = checkpoints

    def start(self) -> None:
        """Start the periodic cleanup task on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._shutdown_event = asyncio.Event()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(self._shutdown_event))

    async def stop(self) -> None:
        if self._cleanup_task is None or self._shutdown_event is None:
            return
        self._shutdown_event.set()
        await self._cleanup_task
        self._cleanup_task = None

    async def _cleanup_loop(self, shutdown: asyncio.Event) -> None:
        while not shutdown.is_set():
            try:
                await asyncio.wait_for(
                    shutdown.wait(),
                    timeout=self._config.cleanup_interval_seconds,
                )
            except TimeoutError:
                self.cleanup_expired_state()

"""Execution progress tracking.

The tracker aggregates per-operation status into stage and overall
progress and publishes events on a bounded ``asyncio.Queue``. Publishing
never waits: when the queue is full the newest event is dropped and
counted. A timer task emits a ``progress`` snapshot every update
interval until stopped.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import ProgressConfig
from .plan import OperationStatus, PlannedOperation

logger = logging.getLogger(__name__)

DONE_STATUSES = frozenset(
    {OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.SKIPPED}
)


class ProgressEventType(str, Enum):
    START = "start"
    PROGRESS = "progress"
    OPERATION = "operation"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class StageProgress:
    stage: int
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    running: int = 0

    @property
    def done(self) -> bool:
        return self.completed + self.failed + self.skipped >= self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "running": self.running,
        }


@dataclass
class ExecutorProgress:
    """Point-in-time view of an execution."""

    plan_id: str = ""
    total_operations: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    running: int = 0
    pending: int = 0
    current_stage: int = 0
    max_stage: int = 0
    started_at: datetime | None = None
    eta_seconds: float | None = None
    stages: list[StageProgress] = field(default_factory=list)
    operations: dict[str, OperationStatus] = field(default_factory=dict)

    @property
    def ratio(self) -> float:
        if self.total_operations == 0:
            return 1.0
        return (self.completed + self.failed + self.skipped) / self.total_operations

    def to_dict(self) -> dict[str, Any]:
        return {
            "planId": self.plan_id,
            "totalOperations": self.total_operations,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "running": self.running,
            "pending": self.pending,
            "currentStage": self.current_stage,
            "maxStage": self.max_stage,
            "progress": self.ratio,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "etaSeconds": self.eta_seconds,
            "stages": [s.to_dict() for s in self.stages],
        }


@dataclass
class ProgressEvent:
    type: ProgressEventType
    timestamp: datetime
    message: str = ""
    operation_id: str | None = None
    progress: ExecutorProgress | None = None
    error: str | None = None


class ProgressTracker:
    """Aggregates operation status and emits progress events."""

    def __init__(
        self,
        config: ProgressConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or ProgressConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._events: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self._config.queue_size)
        self.dropped_events = 0

        self._plan_id = ""
        self._statuses: dict[str, OperationStatus] = {}
        self._stage_of: dict[str, int] = {}
        self._max_stage = 0
        self._current_stage = 0
        self._started_at: datetime | None = None
        self._op_started: dict[str, float] = {}
        self._durations: list[float] = []

        self._shutdown_event: asyncio.Event | None = None
        self._timer_task: asyncio.Task[None] | None = None

    @property
    def events(self) -> asyncio.Queue[ProgressEvent]:
        return self._events

    def initialize(self, plan_id: str, operations: Iterable[PlannedOperation]) -> None:
        """Reset for a new execution; every operation starts pending."""
        with self._lock:
            self._plan_id = plan_id
            self._statuses = {}
            self._stage_of = {}
            for op in operations:
                self._statuses[op.id] = OperationStatus.PENDING
                self._stage_of[op.id] = op.stage
            self._max_stage = max(self._stage_of.values(), default=0)
            self._current_stage = 0
            self._started_at = datetime.now(UTC)
            self._op_started = {}
            self._durations = []
        self.emit(ProgressEventType.START, f"executing plan {plan_id}")

    def set_stage(self, stage: int) -> None:
        with self._lock:
            self._current_stage = stage

    def update_operation(
        self,
        op_id: str,
        status: OperationStatus,
        error: BaseException | str | None = None,
    ) -> None:
        with self._lock:
            if op_id not in self._statuses:
                return
            self._statuses[op_id] = status
            now = self._clock()
            if status == OperationStatus.RUNNING:
                self._op_started.setdefault(op_id, now)
            elif status in DONE_STATUSES and op_id in self._op_started:
                self._durations.append(now - self._op_started.pop(op_id))

        if error is not None:
            self.emit(ProgressEventType.ERROR, f"operation {op_id} failed", op_id, str(error))
        else:
            self.emit(ProgressEventType.OPERATION, f"operation {op_id} {status.value}", op_id)

    def finish(self, message: str = "execution finished") -> None:
        self.emit(ProgressEventType.COMPLETE, message)

    def snapshot(self) -> ExecutorProgress:
        with self._lock:
            stages = {s: StageProgress(stage=s) for s in range(self._max_stage + 1)}
            progress = ExecutorProgress(
                plan_id=self._plan_id,
                total_operations=len(self._statuses),
                current_stage=self._current_stage,
                max_stage=self._max_stage,
                started_at=self._started_at,
                operations=dict(self._statuses),
            )
            for op_id, status in self._statuses.items():
                stage = stages[self._stage_of[op_id]]
                stage.total += 1
                if status == OperationStatus.COMPLETED:
                    progress.completed += 1
                    stage.completed += 1
                elif status == OperationStatus.FAILED:
                    progress.failed += 1
                    stage.failed += 1
                elif status == OperationStatus.SKIPPED:
                    progress.skipped += 1
                    stage.skipped += 1
                elif status in (OperationStatus.RUNNING, OperationStatus.RETRYING):
                    progress.running += 1
                    stage.running += 1
                else:
                    progress.pending += 1
            progress.stages = [stages[s] for s in sorted(stages)]

            remaining = progress.running + progress.pending
            if self._durations and remaining:
                average = sum(self._durations) / len(self._durations)
                progress.eta_seconds = average * remaining
            elif not remaining:
                progress.eta_seconds = 0.0
        return progress

    def emit(
        self,
        event_type: ProgressEventType,
        message: str = "",
        operation_id: str | None = None,
        error: str | None = None,
    ) -> None:
        """Publish an event without waiting; drops it when the queue is full."""
        event = ProgressEvent(
            type=event_type,
            timestamp=datetime.now(UTC),
            message=message,
            operation_id=operation_id,
            progress=self.snapshot(),
            error=error,
        )
        try:
            self._events.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped_events += 1

    def drain(self) -> list[ProgressEvent]:
        """Remove and return every queued event."""
        events: list[ProgressEvent] = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def start(self) -> None:
        """Start the periodic progress timer on the running event loop."""
        if self._timer_task is not None and not self._timer_task.done():
            return
        self._shutdown_event = asyncio.Event()
        self._timer_task = asyncio.create_task(self._timer_loop(self._shutdown_event))

    async def stop(self) -> None:
        if self._timer_task is None or self._shutdown_event is None:
            return
        self._shutdown_event.set()
        await self._timer_task
        self._timer_task = None

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    async def _timer_loop(self, shutdown: asyncio.Event) -> None:
        while not shutdown.is_set():
            try:
                await asyncio.wait_for(
                    shutdown.wait(),
                    timeout=self._config.update_interval_seconds,
                )
            except TimeoutError:
                self.emit(ProgressEventType.PROGRESS)

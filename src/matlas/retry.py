"""Retry with exponential backoff, jitter and a per-resource circuit breaker.

Each attempt's error is classified:
- unauthorized, validation, quota, not-found: never retried
- conflict: retried only when existing resources are not being preserved
- transient (timeouts, throttling, 5xx): retried
- anything else: not retried

Backoff for retry ``n`` (0-based) is
``min(initial * multiplier**n * (1 + U[0, jitter]), max_delay)``. Attempts
stop at the policy's retry budget or when the next sleep would cross the
configured wall-clock ceiling, whichever comes first.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from .config import RetryConfig, RetryPolicy
from .diff import Operation
from .errors import (
    CircuitOpenError,
    is_conflict,
    is_not_found,
    is_quota,
    is_transient,
    is_unauthorized,
    is_validation,
)
from .models import OperationType, ResourceKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryDecision(str, Enum):
    """Manual override for a failing operation."""

    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"
    IGNORE = "ignore"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Consecutive-failure breaker for one (operation type, kind) pair."""

    failure_threshold: int
    recovery_seconds: float
    success_threshold: int
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    half_open_successes: int = 0
    opened_at: float | None = None

    def allow(self, now: float) -> bool:
        if self.state == CircuitState.OPEN:
            if self.opened_at is not None and now - self.opened_at < self.recovery_seconds:
                return False
            self.state = CircuitState.HALF_OPEN
            self.half_open_successes = 0
        return True

    def record_success(self) -> None:
        self.consecutive_failures = 0
        if self.state == CircuitState.HALF_OPEN:
            self.half_open_successes += 1
            if self.half_open_successes >= self.success_threshold:
                self.state = CircuitState.CLOSED
                self.opened_at = None

    def record_failure(self, now: float) -> bool:
        """Count a failure; returns True if this opened the circuit."""
        self.consecutive_failures += 1
        if self.state == CircuitState.HALF_OPEN or (
            self.state == CircuitState.CLOSED
            and self.consecutive_failures >= self.failure_threshold
        ):
            self.state = CircuitState.OPEN
            self.opened_at = now
            return True
        return False


RetryCallback = Callable[[Operation, str, int, float, BaseException], None]


def compute_backoff(policy: RetryPolicy, retry_index: int, jitter_sample: float) -> float:
    """Delay before retry ``retry_index`` given a jitter sample in [0, 1]."""
    delay = (
        policy.initial_delay_seconds
        * policy.multiplier**retry_index
        * (1 + jitter_sample * policy.jitter)
    )
    return min(delay, policy.max_delay_seconds)


class RetryManager:
    """Runs operation attempts under the configured retry policies."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        preserve_existing: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        jitter_source: Callable[[], float] = random.random,
    ) -> None:
        self._config = config or RetryConfig()
        self._preserve_existing = preserve_existing
        self._sleep = sleep
        self._clock = clock
        self._jitter_source = jitter_source
        self._retry_counts: dict[str, int] = {}
        self._decisions: dict[str, RetryDecision] = {}
        self._breakers: dict[tuple[OperationType, ResourceKind], CircuitBreaker] = {}

    @property
    def config(self) -> RetryConfig:
        return self._config

    def should_retry(self, err: BaseException) -> bool:
        """Classify one attempt's error."""
        if is_unauthorized(err) or is_validation(err) or is_quota(err) or is_not_found(err):
            return False
        if is_conflict(err):
            return not self._preserve_existing
        return is_transient(err)

    def get_retry_count(self, op_id: str) -> int:
        return self._retry_counts.get(op_id, 0)

    def set_retry_decision(self, op_id: str, decision: RetryDecision) -> None:
        self._decisions[op_id] = decision

    def get_retry_decision(self, op_id: str) -> RetryDecision | None:
        return self._decisions.get(op_id)

    def circuit_state(self, op_type: OperationType, kind: ResourceKind) -> CircuitState:
        breaker = self._breakers.get((op_type, kind))
        return breaker.state if breaker else CircuitState.CLOSED

    def _breaker(self, operation: Operation) -> CircuitBreaker:
        key = (operation.type, operation.resource_kind)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                failure_threshold=self._config.circuit_failure_threshold,
                recovery_seconds=self._config.circuit_recovery_seconds,
                success_threshold=self._config.circuit_success_threshold,
            )
            self._breakers[key] = breaker
        return breaker

    async def execute_with_retry(
        self,
        operation: Operation,
        op_id: str,
        attempt: Callable[[], Awaitable[T]],
        on_retry: RetryCallback | None = None,
    ) -> T | None:
        """Run ``attempt`` until it succeeds or retrying stops.

        Returns:
            The attempt's result, or None when a manual SKIP/IGNORE decision
            absorbed the failure.

        Raises:
            CircuitOpenError: If the breaker for this operation class is open.
            Exception: The last attempt's error once retrying stops.
        """
        policy = self._config.policy_for(operation.type)
        breaker = self._breaker(operation) if self._config.circuit_breaker_enabled else None
        if breaker is not None and not breaker.allow(self._clock()):
            raise CircuitOpenError(
                f"circuit open for {operation.type.value} {operation.resource_kind.value}; "
                f"not attempting {operation.resource_name}"
            )

        started = self._clock()
        retries = 0
        while True:
            try:
                result = await attempt()
            except Exception as e:
                decision = self._decisions.get(op_id)
                if decision in (RetryDecision.SKIP, RetryDecision.IGNORE):
                    logger.warning(
                        "Failure absorbed by manual decision",
                        extra={"operation_id": op_id, "decision": decision.value, "error": str(e)},
                    )
                    return None

                if decision != RetryDecision.ABORT and self._absorbed_by_caller(operation, e):
                    # The executor treats this outcome as success
                    if breaker is not None:
                        breaker.record_success()
                    raise

                retryable = decision == RetryDecision.RETRY or self.should_retry(e)
                if decision == RetryDecision.ABORT or not retryable or retries >= policy.max_retries:
                    self._record_failure(breaker, operation)
                    raise

                delay = compute_backoff(policy, retries, self._jitter_source())
                elapsed = self._clock() - started
                if elapsed + delay > self._config.max_elapsed_seconds:
                    logger.warning(
                        "Retry ceiling reached",
                        extra={
                            "operation_id": op_id,
                            "elapsed_seconds": elapsed,
                            "ceiling_seconds": self._config.max_elapsed_seconds,
                        },
                    )
                    self._record_failure(breaker, operation)
                    raise

                retries += 1
                self._retry_counts[op_id] = retries
                logger.warning(
                    "Operation failed, retrying",
                    extra={
                        "operation_id": op_id,
                        "kind": operation.resource_kind.value,
                        "resource_name": operation.resource_name,
                        "attempt": retries,
                        "max_attempts": policy.max_retries + 1,
                        "wait_seconds": delay,
                        "error": str(e),
                    },
                )
                if on_retry is not None:
                    on_retry(operation, op_id, retries, delay, e)
                await self._sleep(delay)
                continue

            if breaker is not None:
                breaker.record_success()
            return result

    def _absorbed_by_caller(self, operation: Operation, err: BaseException) -> bool:
        """True for errors the executor records as a no-op rather than a failure."""
        if operation.type == OperationType.DELETE and is_not_found(err):
            return True
        return (
            operation.type == OperationType.CREATE and self._preserve_existing and is_conflict(err)
        )

    def _record_failure(self, breaker: CircuitBreaker | None, operation: Operation) -> None:
        if breaker is None:
            return
        if breaker.record_failure(self._clock()):
            logger.error(
                "Circuit breaker opened after consecutive failures",
                extra={
                    "operation_type": operation.type.value,
                    "kind": operation.resource_kind.value,
                    "consecutive_failures": breaker.consecutive_failures,
                    "reset_seconds": breaker.recovery_seconds,
                },
            )

"""Error types and classification helpers.

Backend errors carry an HTTP-style status code. Classification prefers
the typed error (class or status code) and falls back to message
inspection only for error shapes the engine does not recognise, e.g.
exceptions raised by third-party transports.
"""

from __future__ import annotations

import asyncio
from enum import Enum

# Lower-cased message fragments used only when no typed signal is present
NOT_FOUND_PATTERNS = (
    "not found",
    "does not exist",
    "404",
    "resource_not_found",
    "cluster_not_found",
    "user_not_found",
)
CONFLICT_PATTERNS = ("conflict", "already exists", "duplicate", "409")
TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporary failure",
    "rate limit",
    "throttl",
    "too many requests",
    "service unavailable",
    "internal server error",
    "bad gateway",
    "gateway timeout",
)
UNAUTHORIZED_PATTERNS = (
    "unauthorized",
    "forbidden",
    "authentication",
    "permission denied",
    "access denied",
    "invalid credentials",
)
VALIDATION_PATTERNS = ("invalid request", "malformed", "validation", "bad request")
QUOTA_PATTERNS = ("quota", "limit exceeded", "insufficient capacity")

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


# =============================================================================
# Backend errors
# =============================================================================


class AtlasError(Exception):
    """Error returned by a control-plane resource service."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(AtlasError):
    """The addressed resource does not exist."""

    def __init__(self, message: str = "resource not found") -> None:
        super().__init__(message, 404)


class ConflictError(AtlasError):
    """The resource already exists or a concurrent change conflicts."""

    def __init__(self, message: str = "resource already exists") -> None:
        super().__init__(message, 409)


class TransientError(AtlasError):
    """Temporary failure: throttling, 5xx, timeouts."""

    def __init__(self, message: str = "service unavailable", status_code: int = 503) -> None:
        super().__init__(message, status_code)


class UnauthorizedError(AtlasError):
    """Credentials are missing, invalid or lack permission."""

    def __init__(self, message: str = "unauthorized", status_code: int = 401) -> None:
        super().__init__(message, status_code)


class InvalidRequestError(AtlasError):
    """The backend rejected the request payload."""

    def __init__(self, message: str = "invalid request") -> None:
        super().__init__(message, 400)


class QuotaExceededError(AtlasError):
    """An organization or project quota would be exceeded."""

    def __init__(self, message: str = "quota exceeded") -> None:
        super().__init__(message, 402)


# =============================================================================
# Engine errors
# =============================================================================


class PlanningError(Exception):
    """Base class for errors raised while building a plan."""

    pass


class CyclicDependencyError(PlanningError):
    """Raised when resource dependencies form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"circular dependency detected: {' -> '.join(cycle)}")


class ManifestValidationError(PlanningError):
    """Raised when a desired state is structurally invalid."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Manifest validation failed:\n  - " + "\n  - ".join(errors))


class ManifestLoadError(Exception):
    """Raised when a manifest or snapshot file cannot be read or parsed."""

    pass


class ServiceUnavailableError(Exception):
    """No resource service is registered for a kind."""

    pass


class UnsupportedOperationError(Exception):
    """The (operation type, resource kind) combination has no handler."""

    pass


class OwnershipError(Exception):
    """Resource ownership lease could not be acquired or released."""

    pass


class ExecutionCancelled(Exception):
    """Execution stopped by cancel() or by task cancellation."""

    pass


class CircuitOpenError(Exception):
    """The circuit breaker for a resource is open; the call was not attempted."""

    pass


class DiscoveryError(Exception):
    """Aggregated per-kind failures from a discovery fan-out.

    ``state`` holds whatever was discovered successfully.
    """

    def __init__(self, project_id: str, errors: list[Exception], state: object = None) -> None:
        self.project_id = project_id
        self.errors = errors
        self.state = state
        if len(errors) == 1:
            message = f"discovery failed for project {project_id}: {errors[0]}"
        else:
            message = (
                f"discovery failed for project {project_id} with {len(errors)} errors: {errors[0]}"
            )
        super().__init__(message)


# =============================================================================
# Predicates
# =============================================================================


def _message(err: BaseException) -> str:
    return str(err).lower()


def _matches(err: BaseException, patterns: tuple[str, ...]) -> bool:
    message = _message(err)
    return any(pattern in message for pattern in patterns)


def _status(err: BaseException) -> int | None:
    return getattr(err, "status_code", None)


def _is_typed(err: BaseException) -> bool:
    # Backend errors with a status code are classified by type only
    return isinstance(err, AtlasError) and err.status_code is not None


def is_not_found(err: BaseException | None) -> bool:
    if err is None:
        return False
    if isinstance(err, NotFoundError) or _status(err) == 404:
        return True
    if _is_typed(err):
        return False
    return _matches(err, NOT_FOUND_PATTERNS)


def is_conflict(err: BaseException | None) -> bool:
    if err is None:
        return False
    if isinstance(err, ConflictError) or _status(err) == 409:
        return True
    if _is_typed(err):
        return False
    return _matches(err, CONFLICT_PATTERNS)


def is_transient(err: BaseException | None) -> bool:
    if err is None:
        return False
    if isinstance(err, TransientError | asyncio.TimeoutError | ConnectionError):
        return True
    if _status(err) in TRANSIENT_STATUS_CODES:
        return True
    if _is_typed(err):
        return False
    return _matches(err, TRANSIENT_PATTERNS)


def is_unauthorized(err: BaseException | None) -> bool:
    if err is None:
        return False
    if isinstance(err, UnauthorizedError) or _status(err) in (401, 403):
        return True
    if _is_typed(err):
        return False
    return _matches(err, UNAUTHORIZED_PATTERNS)


def is_validation(err: BaseException | None) -> bool:
    if err is None:
        return False
    if isinstance(err, InvalidRequestError | ManifestValidationError) or _status(err) == 400:
        return True
    if _is_typed(err):
        return False
    return _matches(err, VALIDATION_PATTERNS)


def is_quota(err: BaseException | None) -> bool:
    if err is None:
        return False
    if isinstance(err, QuotaExceededError):
        return True
    if _is_typed(err):
        return False
    return _matches(err, QUOTA_PATTERNS)


# =============================================================================
# Failure taxonomy
# =============================================================================

TIMEOUT_PATTERNS = ("timeout", "timed out", "deadline exceeded")
DEPENDENCY_PATTERNS = ("dependency", "depends on", "prerequisite")
RESOURCE_STATE_PATTERNS = ("not ready", "in progress", "invalid state", "being deleted", "idle")


class DependencyFailedError(Exception):
    """An operation was not attempted because a dependency failed."""

    def __init__(self, operation_id: str, failed: list[str]) -> None:
        self.operation_id = operation_id
        self.failed = failed
        super().__init__(f"dependency failed for {operation_id}: {', '.join(failed)}")


class FailureType(str, Enum):
    """Why an operation failed, as used by recovery."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    QUOTA = "quota"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    DEPENDENCY = "dependency"
    RESOURCE_STATE = "resource_state"
    INTERNAL = "internal"


def classify_failure(err: BaseException) -> FailureType:
    """Map an error to the failure taxonomy, typed signals first."""
    if isinstance(err, TimeoutError):
        return FailureType.TIMEOUT
    if isinstance(err, DependencyFailedError):
        return FailureType.DEPENDENCY
    if is_unauthorized(err):
        return FailureType.AUTHENTICATION
    if is_quota(err):
        return FailureType.QUOTA
    if is_conflict(err):
        return FailureType.CONFLICT
    if is_validation(err):
        return FailureType.VALIDATION
    typed = _is_typed(err)
    if not typed and _matches(err, TIMEOUT_PATTERNS):
        return FailureType.TIMEOUT
    if is_transient(err):
        return FailureType.NETWORK
    if is_not_found(err):
        return FailureType.RESOURCE_STATE
    if not typed and _matches(err, DEPENDENCY_PATTERNS):
        return FailureType.DEPENDENCY
    if not typed and _matches(err, RESOURCE_STATE_PATTERNS):
        return FailureType.RESOURCE_STATE
    return FailureType.INTERNAL

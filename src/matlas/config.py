"""Configuration management with validation.

Every subsystem of the apply engine has its own frozen configuration
dataclass with safe defaults. Values can be overridden from ``MATLAS_*``
environment variables via ``from_env()``; invalid values are rejected at
load time rather than failing halfway through a plan.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .models import OperationType, ResourceKind


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CACHE_TTL_SECONDS = 15 * 60
DEFAULT_CACHE_MAX_ENTRIES = 100
DEFAULT_CACHE_CLEANUP_INTERVAL_SECONDS = 5 * 60

DEFAULT_DISCOVERY_CONCURRENCY = 5
DEFAULT_DISCOVERY_RATE_PER_SECOND = 10.0
MAX_DISCOVERY_CONCURRENCY = 50

DEFAULT_STATE_TTL_SECONDS = 24 * 3600
DEFAULT_CHECKPOINT_INTERVAL_SECONDS = 5 * 60
DEFAULT_DEDUPLICATION_WINDOW_SECONDS = 3600
DEFAULT_OWNERSHIP_TTL_SECONDS = 2 * 3600
DEFAULT_IDEMPOTENCY_CLEANUP_INTERVAL_SECONDS = 5 * 60
MAX_CHECKPOINTS_PER_OPERATION = 10
DEFAULT_IGNORE_METADATA_FIELDS = ("createdAt", "updatedAt", "lastModified", "etag")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.25
DEFAULT_RETRY_CEILING_SECONDS = 10 * 60
MAX_RETRIES_LIMIT = 20

DEFAULT_CIRCUIT_FAILURE_THRESHOLD = 5
DEFAULT_CIRCUIT_RECOVERY_SECONDS = 60.0
DEFAULT_CIRCUIT_SUCCESS_THRESHOLD = 3

DEFAULT_MAX_CONCURRENT_OPERATIONS = 5
DEFAULT_OPERATION_TIMEOUT_SECONDS = 30 * 60
DEFAULT_PROGRESS_INTERVAL_SECONDS = 1.0
DEFAULT_PROGRESS_QUEUE_SIZE = 100

DEFAULT_ROLLBACK_TIMEOUT_SECONDS = 10 * 60
DEFAULT_CLEANUP_TIMEOUT_SECONDS = 5 * 60

DEFAULT_DRIFT_CHECK_INTERVAL_SECONDS = 3600
DEFAULT_RECONCILE_TIMEOUT_SECONDS = 30 * 60
MIN_DRIFT_CHECK_INTERVAL_SECONDS = 1

# SECURITY: Size limits for files read from disk
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB
MAX_SNAPSHOT_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB

# Environment fallback for custom role DDL connections
ROLE_CONNECTION_STRING_ENV = "MATLAS_ROLE_CONN_STRING"
ROLE_CONNECTION_STRING_ANNOTATION = "matlas.mongodb.com/connection-string"


def _get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer: {value}") from e


def _get_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be a number: {value}") from e


def _get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


def _get_list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.environ.get(key, "")
    if not value:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _raise_if_errors(name: str, errors: list[str]) -> None:
    if errors:
        error_msg = f"{name} validation failed:\n  - " + "\n  - ".join(errors)
        raise ConfigurationError(error_msg)


@dataclass(frozen=True)
class CacheConfig:
    """State cache configuration."""

    default_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    cleanup_interval_seconds: float = DEFAULT_CACHE_CLEANUP_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []
        if self.default_ttl_seconds <= 0:
            errors.append("default_ttl_seconds must be positive")
        if self.max_entries < 1:
            errors.append("max_entries must be at least 1")
        if self.cleanup_interval_seconds <= 0:
            errors.append("cleanup_interval_seconds must be positive")
        _raise_if_errors("CacheConfig", errors)

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment.

        Environment Variables:
            MATLAS_CACHE_TTL: Default entry TTL in seconds (default: 900)
            MATLAS_CACHE_MAX_ENTRIES: Maximum cached projects (default: 100)
            MATLAS_CACHE_CLEANUP_INTERVAL: Expiry sweep interval (default: 300)
        """
        return cls(
            default_ttl_seconds=_get_float("MATLAS_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS),
            max_entries=_get_int("MATLAS_CACHE_MAX_ENTRIES", DEFAULT_CACHE_MAX_ENTRIES),
            cleanup_interval_seconds=_get_float(
                "MATLAS_CACHE_CLEANUP_INTERVAL", DEFAULT_CACHE_CLEANUP_INTERVAL_SECONDS
            ),
        )


@dataclass(frozen=True)
class DiscoveryConfig:
    """State discovery fan-out limits."""

    max_concurrent_calls: int = DEFAULT_DISCOVERY_CONCURRENCY
    requests_per_second: float = DEFAULT_DISCOVERY_RATE_PER_SECOND

    def __post_init__(self) -> None:
        errors: list[str] = []
        if not (1 <= self.max_concurrent_calls <= MAX_DISCOVERY_CONCURRENCY):
            errors.append(
                f"max_concurrent_calls must be between 1 and {MAX_DISCOVERY_CONCURRENCY}"
            )
        if self.requests_per_second <= 0:
            errors.append("requests_per_second must be positive")
        _raise_if_errors("DiscoveryConfig", errors)

    @classmethod
    def from_env(cls) -> DiscoveryConfig:
        """Load configuration from environment.

        Environment Variables:
            MATLAS_DISCOVERY_CONCURRENCY: Simultaneous list calls (default: 5)
            MATLAS_DISCOVERY_RATE: Token bucket refill per second (default: 10)
        """
        return cls(
            max_concurrent_calls=_get_int(
                "MATLAS_DISCOVERY_CONCURRENCY", DEFAULT_DISCOVERY_CONCURRENCY
            ),
            requests_per_second=_get_float(
                "MATLAS_DISCOVERY_RATE", DEFAULT_DISCOVERY_RATE_PER_SECOND
            ),
        )


@dataclass(frozen=True)
class IdempotencyConfig:
    """Operation state, ownership and checkpoint tracking."""

    state_ttl_seconds: float = DEFAULT_STATE_TTL_SECONDS
    checkpoint_interval_seconds: float = DEFAULT_CHECKPOINT_INTERVAL_SECONDS
    deduplication_window_seconds: float = DEFAULT_DEDUPLICATION_WINDOW_SECONDS
    ownership_ttl_seconds: float = DEFAULT_OWNERSHIP_TTL_SECONDS
    cleanup_interval_seconds: float = DEFAULT_IDEMPOTENCY_CLEANUP_INTERVAL_SECONDS
    max_checkpoints_per_operation: int = MAX_CHECKPOINTS_PER_OPERATION

    enable_state_tracking: bool = True
    enable_fingerprinting: bool = True
    enable_deduplication: bool = True
    enable_ownership_tracking: bool = True

    ignore_metadata_fields: tuple[str, ...] = DEFAULT_IGNORE_METADATA_FIELDS
    include_fields: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        errors: list[str] = []
        for name in (
            "state_ttl_seconds",
            "deduplication_window_seconds",
            "ownership_ttl_seconds",
            "cleanup_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")
        if self.max_checkpoints_per_operation < 1:
            errors.append("max_checkpoints_per_operation must be at least 1")
        _raise_if_errors("IdempotencyConfig", errors)

    @classmethod
    def from_env(cls) -> IdempotencyConfig:
        """Load configuration from environment.

        Environment Variables:
            MATLAS_STATE_TTL: Operation state retention in seconds (default: 86400)
            MATLAS_DEDUP_WINDOW: Duplicate detection window (default: 3600)
            MATLAS_OWNERSHIP_TTL: Ownership lease length (default: 7200)
            MATLAS_IDEMPOTENCY_CLEANUP_INTERVAL: Cleanup tick (default: 300)
            MATLAS_ENABLE_DEDUPLICATION: Skip duplicate operations (default: true)
            MATLAS_ENABLE_OWNERSHIP: Acquire resource leases (default: true)
            MATLAS_FINGERPRINT_IGNORE_FIELDS: Comma separated field names
        """
        return cls(
            state_ttl_seconds=_get_float("MATLAS_STATE_TTL", DEFAULT_STATE_TTL_SECONDS),
            deduplication_window_seconds=_get_float(
                "MATLAS_DEDUP_WINDOW", DEFAULT_DEDUPLICATION_WINDOW_SECONDS
            ),
            ownership_ttl_seconds=_get_float(
                "MATLAS_OWNERSHIP_TTL", DEFAULT_OWNERSHIP_TTL_SECONDS
            ),
            cleanup_interval_seconds=_get_float(
                "MATLAS_IDEMPOTENCY_CLEANUP_INTERVAL",
                DEFAULT_IDEMPOTENCY_CLEANUP_INTERVAL_SECONDS,
            ),
            enable_deduplication=_get_bool("MATLAS_ENABLE_DEDUPLICATION", True),
            enable_ownership_tracking=_get_bool("MATLAS_ENABLE_OWNERSHIP", True),
            ignore_metadata_fields=_get_list(
                "MATLAS_FINGERPRINT_IGNORE_FIELDS", DEFAULT_IGNORE_METADATA_FIELDS
            ),
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one class of operation."""

    max_retries: int = DEFAULT_MAX_RETRIES
    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = DEFAULT_JITTER

    def __post_init__(self) -> None:
        errors: list[str] = []
        if not (0 <= self.max_retries <= MAX_RETRIES_LIMIT):
            errors.append(f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}")
        if self.initial_delay_seconds < 0:
            errors.append("initial_delay_seconds cannot be negative")
        if self.max_delay_seconds < self.initial_delay_seconds:
            errors.append("max_delay_seconds must be >= initial_delay_seconds")
        if self.multiplier < 1:
            errors.append("multiplier must be >= 1")
        if not (0 <= self.jitter <= 1):
            errors.append("jitter must be between 0 and 1")
        _raise_if_errors("RetryPolicy", errors)


def _default_operation_policies() -> dict[OperationType, RetryPolicy]:
    return {
        OperationType.CREATE: RetryPolicy(
            max_retries=5, initial_delay_seconds=2.0, max_delay_seconds=60.0
        ),
        OperationType.UPDATE: RetryPolicy(
            max_retries=3, initial_delay_seconds=1.0, max_delay_seconds=30.0, multiplier=1.5
        ),
        OperationType.DELETE: RetryPolicy(
            max_retries=2, initial_delay_seconds=1.0, max_delay_seconds=15.0
        ),
    }


@dataclass(frozen=True)
class RetryConfig:
    """Retry manager configuration."""

    default_policy: RetryPolicy = field(default_factory=RetryPolicy)
    operation_policies: dict[OperationType, RetryPolicy] = field(
        default_factory=_default_operation_policies
    )
    # Wall-clock ceiling across all attempts of one operation
    max_elapsed_seconds: float = DEFAULT_RETRY_CEILING_SECONDS

    circuit_breaker_enabled: bool = True
    circuit_failure_threshold: int = DEFAULT_CIRCUIT_FAILURE_THRESHOLD
    circuit_recovery_seconds: float = DEFAULT_CIRCUIT_RECOVERY_SECONDS
    circuit_success_threshold: int = DEFAULT_CIRCUIT_SUCCESS_THRESHOLD

    def __post_init__(self) -> None:
        errors: list[str] = []
        if self.max_elapsed_seconds <= 0:
            errors.append("max_elapsed_seconds must be positive")
        if self.circuit_failure_threshold < 1:
            errors.append("circuit_failure_threshold must be at least 1")
        if self.circuit_success_threshold < 1:
            errors.append("circuit_success_threshold must be at least 1")
        _raise_if_errors("RetryConfig", errors)

    def policy_for(self, operation_type: OperationType) -> RetryPolicy:
        """Return the policy for an operation type, falling back to the default."""
        return self.operation_policies.get(operation_type, self.default_policy)

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Load configuration from environment.

        Environment Variables:
            MATLAS_MAX_RETRIES: Default retry budget (default: 3)
            MATLAS_RETRY_INITIAL_DELAY: First backoff in seconds (default: 1)
            MATLAS_RETRY_MAX_DELAY: Backoff cap in seconds (default: 30)
            MATLAS_RETRY_CEILING: Total seconds per operation (default: 600)
            MATLAS_CIRCUIT_BREAKER: Enable per-resource breaker (default: true)
        """
        return cls(
            default_policy=RetryPolicy(
                max_retries=_get_int("MATLAS_MAX_RETRIES", DEFAULT_MAX_RETRIES),
                initial_delay_seconds=_get_float(
                    "MATLAS_RETRY_INITIAL_DELAY", DEFAULT_INITIAL_DELAY_SECONDS
                ),
                max_delay_seconds=_get_float("MATLAS_RETRY_MAX_DELAY", DEFAULT_MAX_DELAY_SECONDS),
            ),
            max_elapsed_seconds=_get_float("MATLAS_RETRY_CEILING", DEFAULT_RETRY_CEILING_SECONDS),
            circuit_breaker_enabled=_get_bool("MATLAS_CIRCUIT_BREAKER", True),
        )


@dataclass(frozen=True)
class ExecutorConfig:
    """Staged executor configuration."""

    max_concurrent_operations: int = DEFAULT_MAX_CONCURRENT_OPERATIONS
    parallel_safe_operations: frozenset[OperationType] = frozenset(
        {OperationType.CREATE, OperationType.UPDATE}
    )
    operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS
    progress_interval_seconds: float = DEFAULT_PROGRESS_INTERVAL_SECONDS

    # Treat conflicts on create as "already there" instead of failing
    preserve_existing: bool = False

    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        errors: list[str] = []
        if self.max_concurrent_operations < 1:
            errors.append("max_concurrent_operations must be at least 1")
        if self.operation_timeout_seconds <= 0:
            errors.append("operation_timeout_seconds must be positive")
        if self.progress_interval_seconds <= 0:
            errors.append("progress_interval_seconds must be positive")
        _raise_if_errors("ExecutorConfig", errors)

    @classmethod
    def from_env(cls) -> ExecutorConfig:
        """Load configuration from environment.

        Environment Variables:
            MATLAS_MAX_CONCURRENT_OPERATIONS: Parallel workers per stage (default: 5)
            MATLAS_OPERATION_TIMEOUT: Per-operation timeout in seconds (default: 1800)
            MATLAS_PRESERVE_EXISTING: Keep resources that already exist (default: false)
        """
        return cls(
            max_concurrent_operations=_get_int(
                "MATLAS_MAX_CONCURRENT_OPERATIONS", DEFAULT_MAX_CONCURRENT_OPERATIONS
            ),
            operation_timeout_seconds=_get_float(
                "MATLAS_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            preserve_existing=_get_bool("MATLAS_PRESERVE_EXISTING", False),
            retry=RetryConfig.from_env(),
        )


@dataclass(frozen=True)
class RecoveryConfig:
    """Failure recovery configuration."""

    enabled: bool = True
    default_strategy: str = "retry"
    operation_strategies: dict[OperationType, str] = field(
        default_factory=lambda: {
            OperationType.CREATE: "rollback",
            OperationType.UPDATE: "retry",
            OperationType.DELETE: "skip",
        }
    )
    rollback_timeout_seconds: float = DEFAULT_ROLLBACK_TIMEOUT_SECONDS
    cleanup_timeout_seconds: float = DEFAULT_CLEANUP_TIMEOUT_SECONDS
    enable_rollback: bool = True
    enable_cleanup: bool = True

    @classmethod
    def from_env(cls) -> RecoveryConfig:
        """Load configuration from environment.

        Environment Variables:
            MATLAS_ENABLE_RECOVERY: Analyze and recover failures (default: true)
            MATLAS_ENABLE_ROLLBACK: Allow rollback strategies (default: true)
        """
        return cls(
            enabled=_get_bool("MATLAS_ENABLE_RECOVERY", True),
            enable_rollback=_get_bool("MATLAS_ENABLE_ROLLBACK", True),
        )


@dataclass(frozen=True)
class ReconcileRule:
    """Rule selecting a reconcile action for matching drifts.

    Empty ``resource_kinds``, ``operation_types`` or ``drift_types`` match
    everything.
    """

    name: str
    action: str
    max_complexity: str
    description: str = ""
    resource_kinds: tuple[ResourceKind, ...] = ()
    operation_types: tuple[OperationType, ...] = ()
    drift_types: tuple[str, ...] = ()
    require_approval: bool = False
    enabled: bool = True
    priority: int = 0


def _default_reconcile_rules() -> tuple[ReconcileRule, ...]:
    return (
        ReconcileRule(
            name="auto-fix-metadata",
            description="Automatically fix metadata drift",
            operation_types=(OperationType.UPDATE,),
            drift_types=("metadata",),
            action="autofix",
            max_complexity="simple",
            priority=10,
        ),
        ReconcileRule(
            name="warn-security-drift",
            description="Warn about security configuration drift",
            operation_types=(OperationType.UPDATE,),
            drift_types=("security",),
            action="warn",
            max_complexity="complex",
            require_approval=True,
            priority=1,
        ),
    )


@dataclass(frozen=True)
class ReconciliationConfig:
    """Drift detection and reconciliation configuration."""

    enable_drift_detection: bool = True
    drift_check_interval_seconds: float = DEFAULT_DRIFT_CHECK_INTERVAL_SECONDS

    enable_auto_reconciliation: bool = True
    rules: tuple[ReconcileRule, ...] = field(default_factory=_default_reconcile_rules)
    safe_operations_only: bool = True

    require_manual_approval: bool = True
    manual_approval_threshold: str = "moderate"

    enable_scheduled_reconcile: bool = False
    reconcile_timeout_seconds: float = DEFAULT_RECONCILE_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []
        if self.drift_check_interval_seconds < MIN_DRIFT_CHECK_INTERVAL_SECONDS:
            errors.append(
                f"drift_check_interval_seconds must be at least {MIN_DRIFT_CHECK_INTERVAL_SECONDS}"
            )
        if self.manual_approval_threshold not in ("simple", "moderate", "complex", "danger"):
            errors.append(
                f"manual_approval_threshold is not a complexity: {self.manual_approval_threshold}"
            )
        _raise_if_errors("ReconciliationConfig", errors)

    @classmethod
    def from_env(cls) -> ReconciliationConfig:
        """Load configuration from environment.

        Environment Variables:
            MATLAS_DRIFT_DETECTION: Enable drift detection (default: true)
            MATLAS_DRIFT_INTERVAL: Seconds between scheduled checks (default: 3600)
            MATLAS_AUTO_RECONCILE: Apply rule-matched auto fixes (default: true)
            MATLAS_SCHEDULED_RECONCILE: Allow the schedule loop (default: false)
        """
        return cls(
            enable_drift_detection=_get_bool("MATLAS_DRIFT_DETECTION", True),
            drift_check_interval_seconds=_get_float(
                "MATLAS_DRIFT_INTERVAL", DEFAULT_DRIFT_CHECK_INTERVAL_SECONDS
            ),
            enable_auto_reconciliation=_get_bool("MATLAS_AUTO_RECONCILE", True),
            enable_scheduled_reconcile=_get_bool("MATLAS_SCHEDULED_RECONCILE", False),
        )


@dataclass(frozen=True)
class ProgressConfig:
    """Progress tracker configuration."""

    update_interval_seconds: float = DEFAULT_PROGRESS_INTERVAL_SECONDS
    queue_size: int = DEFAULT_PROGRESS_QUEUE_SIZE

    def __post_init__(self) -> None:
        errors: list[str] = []
        if self.update_interval_seconds <= 0:
            errors.append("update_interval_seconds must be positive")
        if self.queue_size < 1:
            errors.append("queue_size must be at least 1")
        _raise_if_errors("ProgressConfig", errors)


@dataclass(frozen=True)
class EngineConfig:
    """Aggregate configuration for one apply engine instance."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)

    # Enhanced executor switches
    enable_idempotency_checks: bool = True
    create_checkpoints: bool = True
    skip_idempotent_operations: bool = True

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load every subsystem configuration from the environment."""
        return cls(
            cache=CacheConfig.from_env(),
            discovery=DiscoveryConfig.from_env(),
            idempotency=IdempotencyConfig.from_env(),
            executor=ExecutorConfig.from_env(),
            recovery=RecoveryConfig.from_env(),
            reconciliation=ReconciliationConfig.from_env(),
            progress=ProgressConfig(
                update_interval_seconds=_get_float(
                    "MATLAS_PROGRESS_INTERVAL", DEFAULT_PROGRESS_INTERVAL_SECONDS
                ),
            ),
            enable_idempotency_checks=_get_bool("MATLAS_IDEMPOTENCY_CHECKS", True),
            create_checkpoints=_get_bool("MATLAS_CREATE_CHECKPOINTS", True),
        )

"""Tests for error classification."""

from __future__ import annotations

import asyncio

from matlas.errors import (
    AtlasError,
    ConflictError,
    DependencyFailedError,
    DiscoveryError,
    FailureType,
    InvalidRequestError,
    ManifestValidationError,
    NotFoundError,
    QuotaExceededError,
    TransientError,
    UnauthorizedError,
    classify_failure,
    is_conflict,
    is_not_found,
    is_quota,
    is_transient,
    is_unauthorized,
    is_validation,
)


class TestPredicates:
    """Tests for the error predicates."""

    def test_typed_errors(self) -> None:
        """Test each typed error satisfies only its own predicate."""
        assert is_not_found(NotFoundError())
        assert is_conflict(ConflictError())
        assert is_transient(TransientError())
        assert is_unauthorized(UnauthorizedError())
        assert is_validation(InvalidRequestError())
        assert is_quota(QuotaExceededError())

        assert not is_transient(NotFoundError())
        assert not is_conflict(UnauthorizedError())

    def test_none_is_never_classified(self) -> None:
        """Test predicates accept None."""
        for predicate in (is_not_found, is_conflict, is_transient, is_unauthorized, is_validation, is_quota):
            assert predicate(None) is False

    def test_status_codes(self) -> None:
        """Test bare status codes are classified."""
        assert is_not_found(AtlasError("gone", 404))
        assert is_transient(AtlasError("slow down", 429))
        assert is_unauthorized(AtlasError("nope", 403))
        assert is_validation(AtlasError("bad", 400))

    def test_typed_error_ignores_message(self) -> None:
        """Test a status-coded error is not reclassified by its message."""
        err = AtlasError("cluster not found while service unavailable", 500)
        assert is_transient(err)
        assert not is_not_found(err)

    def test_untyped_message_fallback(self) -> None:
        """Test plain exceptions fall back to message matching."""
        assert is_not_found(Exception("Cluster does not exist"))
        assert is_conflict(Exception("user already exists"))
        assert is_transient(Exception("Too Many Requests"))
        assert is_unauthorized(Exception("Access denied for key"))
        assert is_quota(Exception("project quota reached"))

    def test_builtin_transient_types(self) -> None:
        """Test timeouts and connection errors are transient."""
        assert is_transient(asyncio.TimeoutError())
        assert is_transient(ConnectionResetError())

    def test_manifest_validation_is_validation(self) -> None:
        """Test manifest validation errors count as validation failures."""
        assert is_validation(ManifestValidationError(["missing name"]))


class TestClassifyFailure:
    """Tests for the recovery failure taxonomy."""

    def test_typed_classification(self) -> None:
        """Test typed errors map to their failure types."""
        assert classify_failure(TimeoutError()) == FailureType.TIMEOUT
        assert classify_failure(UnauthorizedError()) == FailureType.AUTHENTICATION
        assert classify_failure(QuotaExceededError()) == FailureType.QUOTA
        assert classify_failure(ConflictError()) == FailureType.CONFLICT
        assert classify_failure(InvalidRequestError()) == FailureType.VALIDATION
        assert classify_failure(TransientError()) == FailureType.NETWORK
        assert classify_failure(NotFoundError()) == FailureType.RESOURCE_STATE

    def test_dependency_failure(self) -> None:
        """Test dependency failures carry the failed operation ids."""
        err = DependencyFailedError("op-2", ["op-1"])
        assert classify_failure(err) == FailureType.DEPENDENCY
        assert err.failed == ["op-1"]
        assert "op-1" in str(err)

    def test_message_classification(self) -> None:
        """Test untyped errors are classified from their message."""
        assert classify_failure(Exception("deadline exceeded")) == FailureType.TIMEOUT
        assert classify_failure(Exception("cluster is not ready")) == FailureType.RESOURCE_STATE
        assert classify_failure(Exception("prerequisite missing")) == FailureType.DEPENDENCY
        assert classify_failure(Exception("boom")) == FailureType.INTERNAL


class TestDiscoveryError:
    """Tests for aggregated discovery errors."""

    def test_single_error_message(self) -> None:
        """Test a single failure is named in the message."""
        err = DiscoveryError("proj1", [TransientError()])
        assert str(err) == "discovery failed for project proj1: service unavailable"
        assert err.state is None

    def test_multiple_errors_message(self) -> None:
        """Test several failures report their count."""
        err = DiscoveryError("proj1", [TransientError(), NotFoundError()], state="partial")
        assert "with 2 errors" in str(err)
        assert err.state == "partial"

"""Exception hierarchy for the escrow engine.

Every failure the engine surfaces belongs to exactly one of these kinds:

- ValidationError: malformed input, rejected before anything is persisted
- AuthorizationError: the actor is not allowed to perform the action
- StateConflictError: the entity is not in the status the action requires
- NotFoundError: unknown identifier
- ExternalFailure: ledger, datastore or network trouble (possibly retryable)
- SecurityFailure: decryption or key recovery failed; never retried

Usage:
    from escrow_engine.exceptions import StateConflictError

    if contract.status is not EscrowStatus.FULLY_FUNDED:
        raise StateConflictError(
            "Escrow must be fully funded before release",
            expected=EscrowStatus.FULLY_FUNDED,
            actual=contract.status,
        )

All exceptions carry an ``error_code`` (machine readable), an
``http_status`` hint for whatever transport sits in front of the engine,
a human-readable ``message`` and a ``details`` dict, and render through
``to_dict()``.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class EscrowException(Exception):
    """Base exception for all escrow engine errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "ESCROW_ERROR"
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    @property
    def kind(self) -> str:
        """Name of the failure kind, e.g. ``"StateConflictError"``."""
        for cls in type(self).__mro__:
            if cls in _KINDS:
                return cls.__name__
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a response payload."""
        result = {
            "error": self.error_code,
            "kind": self.kind,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(EscrowException):
    """Invalid input data or parameters."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class AuthorizationError(EscrowException):
    """Actor is not permitted to perform the action."""

    error_code = "AUTHORIZATION_ERROR"
    http_status = 403

    def __init__(
        self,
        message: str,
        actor: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if actor:
            details["actor"] = actor
        super().__init__(message, details=details)


def _status_value(status: Any) -> Any:
    if isinstance(status, Enum):
        return status.value
    if isinstance(status, (list, tuple, set, frozenset)):
        return sorted(_status_value(s) for s in status)
    return status


class StateConflictError(EscrowException):
    """Action attempted from the wrong status, or lost a concurrent update."""

    error_code = "STATE_CONFLICT"
    http_status = 409

    def __init__(
        self,
        message: str,
        expected: Any = None,
        actual: Any = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if expected is not None:
            details["expected"] = _status_value(expected)
        if actual is not None:
            details["actual"] = _status_value(actual)
        super().__init__(message, details=details)
        self.expected = expected
        self.actual = actual


class NotFoundError(EscrowException):
    """Requested resource not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class ExternalFailure(EscrowException):
    """Ledger, datastore or network call failed or timed out."""

    error_code = "EXTERNAL_FAILURE"
    http_status = 502

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        retryable: bool = True,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        details["retryable"] = retryable
        super().__init__(message, details=details)
        self.operation = operation
        self.retryable = retryable


class LedgerRejectedError(ExternalFailure):
    """The ledger accepted the request but rejected the transaction."""

    error_code = "LEDGER_REJECTED"

    def __init__(
        self,
        message: str,
        tx_ref: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if tx_ref:
            details["tx_ref"] = tx_ref
        super().__init__(message, operation=operation, retryable=False, details=details)
        self.tx_ref = tx_ref


class SecurityFailure(EscrowException):
    """Decryption or keypair recovery failed. Never retried."""

    error_code = "SECURITY_FAILURE"
    http_status = 500


class ConfigurationError(EscrowException):
    """Engine is misconfigured (missing key, bad fee settings...)."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


_KINDS = frozenset({
    ValidationError,
    AuthorizationError,
    StateConflictError,
    NotFoundError,
    ExternalFailure,
    SecurityFailure,
    ConfigurationError,
})


def is_retryable(exc: BaseException) -> bool:
    """Return True if ``exc`` may be retried under the idempotency rules."""
    return isinstance(exc, EscrowException) and exc.retryable

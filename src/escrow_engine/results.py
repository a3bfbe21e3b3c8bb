"""Discriminated success/failure results returned at the engine boundary."""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, ParamSpec, TypeVar

from .exceptions import EscrowException

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Result of a public engine operation.

    Exactly one of ``value`` / ``error`` is meaningful, selected by ``success``.
    """

    success: bool
    value: Optional[T] = None
    error: Optional[EscrowException] = None

    @classmethod
    def succeeded(cls, value: T) -> "OperationResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def failed(cls, error: EscrowException) -> "OperationResult[T]":
        return cls(success=False, error=error)

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error else None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error else None

    def unwrap(self) -> T:
        """Return the value or re-raise the failure."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def to_dict(self) -> dict[str, Any]:
        if self.error is None:
            return {"success": True, "value": self.value}
        return {"success": False, **self.error.to_dict()}


@dataclass(frozen=True)
class ValidationReport:
    """Outcome of a validation pass that may also carry non-fatal warnings."""

    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = field(default_factory=tuple)


def boundary(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[OperationResult[T]]]:
    """Turn an exception-raising coroutine into one returning OperationResult.

    Only engine exceptions are converted. Anything else is a bug and keeps
    propagating.
    """

    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> OperationResult[T]:
        try:
            return OperationResult.succeeded(await func(*args, **kwargs))
        except EscrowException as e:
            logger.info(
                "%s failed: %s (%s)", func.__qualname__, e.message, e.error_code,
            )
            return OperationResult.failed(e)

    return wrapper

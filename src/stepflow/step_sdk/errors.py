"""
Step errors - typed failures raised by step implementations.

Every failure that crosses the step boundary is a StepError carrying a
kind, a message, a retryable flag and an optional retry_after delay.
The scheduler and the recovery manager only consume this contract.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class StepErrorKind(str, Enum):
    """Failure taxonomy."""
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    NETWORK = "network"
    DEPENDENCY = "dependency"
    PERMISSION = "permission"
    SANDBOX_VIOLATION = "sandbox_violation"
    ITERATION_LIMIT_EXCEEDED = "iteration_limit_exceeded"
    CANCELLED = "cancelled"
    EXECUTION = "execution"


# Kinds that are retryable unless the raiser says otherwise
RETRYABLE_KINDS = frozenset({
    StepErrorKind.TIMEOUT,
    StepErrorKind.NETWORK,
    StepErrorKind.DEPENDENCY,
})


class StepErrorInfo(BaseModel):
    """Serializable form of a StepError, stored in run state."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: StepErrorKind = Field(..., description="Failure kind")
    message: str = Field(..., description="Human-readable message")
    retryable: bool = Field(False, description="Whether re-invocation may succeed")
    retry_after: Optional[float] = Field(
        None,
        alias="retryAfter",
        description="Seconds to wait before re-invoking",
    )
    step_id: Optional[str] = Field(None, alias="stepId")
    details: Dict[str, Any] = Field(default_factory=dict)


class StepError(Exception):
    """Base failure raised from a step's execute()."""

    kind: StepErrorKind = StepErrorKind.EXECUTION

    def __init__(
        self,
        message: str,
        kind: Optional[StepErrorKind] = None,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
        step_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        if kind is not None:
            self.kind = StepErrorKind(kind)
        self.retryable = self.kind in RETRYABLE_KINDS if retryable is None else retryable
        self.retry_after = retry_after
        self.step_id = step_id
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"

    def to_info(self) -> StepErrorInfo:
        return StepErrorInfo(
            kind=self.kind,
            message=self.message,
            retryable=self.retryable,
            retry_after=self.retry_after,
            step_id=self.step_id,
            details=self.details,
        )

    @classmethod
    def from_info(cls, info: StepErrorInfo) -> "StepError":
        """Rebuild an error from its stored form."""
        error_cls = _KIND_TO_CLASS.get(info.kind, StepError)
        error = error_cls.__new__(error_cls)
        StepError.__init__(
            error,
            info.message,
            kind=info.kind,
            retryable=info.retryable,
            retry_after=info.retry_after,
            step_id=info.step_id,
            details=dict(info.details),
        )
        return error

    @classmethod
    def wrap(cls, exc: BaseException, step_id: Optional[str] = None) -> "StepError":
        """Convert an arbitrary exception into a StepError."""
        if isinstance(exc, StepError):
            if step_id and not exc.step_id:
                exc.step_id = step_id
            return exc
        return cls(
            f"{type(exc).__name__}: {exc}",
            kind=StepErrorKind.EXECUTION,
            step_id=step_id,
        )


class StepValidationError(StepError):
    """Bad parameters or input shape. Never retryable."""
    kind = StepErrorKind.VALIDATION


class StepTimeoutError(StepError):
    """A step or sandbox exceeded its deadline."""
    kind = StepErrorKind.TIMEOUT


class NetworkError(StepError):
    """Connection-level failure talking to an external system."""
    kind = StepErrorKind.NETWORK


class DependencyError(StepError):
    """An external dependency answered but is unavailable or throttling."""
    kind = StepErrorKind.DEPENDENCY


class PermissionDeniedError(StepError):
    """The external system rejected the credentials."""
    kind = StepErrorKind.PERMISSION


class SandboxViolationError(StepError):
    """Disallowed construct or resource overreach in user code."""
    kind = StepErrorKind.SANDBOX_VIOLATION

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)


class IterationLimitExceeded(StepError):
    """Loop runaway."""
    kind = StepErrorKind.ITERATION_LIMIT_EXCEEDED

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)


class StepCancelledError(StepError):
    """The run was cancelled while the step was executing."""
    kind = StepErrorKind.CANCELLED


_KIND_TO_CLASS = {
    StepErrorKind.VALIDATION: StepValidationError,
    StepErrorKind.TIMEOUT: StepTimeoutError,
    StepErrorKind.NETWORK: NetworkError,
    StepErrorKind.DEPENDENCY: DependencyError,
    StepErrorKind.PERMISSION: PermissionDeniedError,
    StepErrorKind.SANDBOX_VIOLATION: SandboxViolationError,
    StepErrorKind.ITERATION_LIMIT_EXCEEDED: IterationLimitExceeded,
    StepErrorKind.CANCELLED: StepCancelledError,
}


__all__ = [
    "DependencyError",
    "IterationLimitExceeded",
    "NetworkError",
    "PermissionDeniedError",
    "RETRYABLE_KINDS",
    "SandboxViolationError",
    "StepCancelledError",
    "StepError",
    "StepErrorInfo",
    "StepErrorKind",
    "StepTimeoutError",
    "StepValidationError",
]

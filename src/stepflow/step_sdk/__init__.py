"""
Step SDK - contract shared by the scheduler and step implementations.
"""

from .basestep import BaseStep, ExecutionContext, StepLogger
from .cancellation import CancellationToken
from .errors import (
    DependencyError,
    IterationLimitExceeded,
    NetworkError,
    PermissionDeniedError,
    SandboxViolationError,
    StepCancelledError,
    StepError,
    StepErrorInfo,
    StepErrorKind,
    StepTimeoutError,
    StepValidationError,
)
from .expressions import DictVariableResolver, ExpressionError, VariableResolver
from .http import HttpClient, HttpResponse, error_for_status
from .items import InputBundle, Item, PortBundle, wrap_payloads


__all__ = [
    "BaseStep",
    "CancellationToken",
    "DependencyError",
    "DictVariableResolver",
    "ExecutionContext",
    "ExpressionError",
    "HttpClient",
    "HttpResponse",
    "InputBundle",
    "Item",
    "IterationLimitExceeded",
    "NetworkError",
    "PermissionDeniedError",
    "PortBundle",
    "SandboxViolationError",
    "StepCancelledError",
    "StepError",
    "StepErrorInfo",
    "StepErrorKind",
    "StepLogger",
    "StepTimeoutError",
    "StepValidationError",
    "VariableResolver",
    "error_for_status",
    "wrap_payloads",
]

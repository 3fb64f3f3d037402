from __future__ import annotations

from enum import Enum
from typing import Any


class DecompositionErrorKind(str, Enum):
    INVALID_OBJECTIVE = "invalid_objective"
    DUPLICATE_TITLE = "duplicate_title"
    UNKNOWN_DEPENDENCY = "unknown_dependency"
    CYCLIC_DEPENDENCY = "cyclic_dependency"
    MALFORMED_RESPONSE = "malformed_response"
    INVOCATION_FAILED = "invocation_failed"


class DispatcherErrorKind(str, Enum):
    NO_CAPABLE_AGENT = "no_capable_agent"


class OrchestrationError(RuntimeError):
    """Base class for engine failures surfaced to callers."""


class DecompositionError(OrchestrationError):
    """Raised when an objective cannot be turned into a valid task graph."""

    def __init__(
        self,
        kind: DecompositionErrorKind,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}


class DispatcherError(OrchestrationError):
    """Raised when a task cannot be mapped to an agent."""

    def __init__(self, kind: DispatcherErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class InvalidTransitionError(OrchestrationError):
    """Raised when a task status change violates the task lifecycle."""


class GraphNotFoundError(LookupError):
    """Raised when a graph identifier is unknown to the state store."""


class GraphExistsError(OrchestrationError):
    """Raised when creating a graph whose identifier is already stored."""


class GraphNotStoredError(OrchestrationError):
    """Raised when a write targets a graph or task the state store does not hold."""


__all__ = [
    "DecompositionError",
    "DecompositionErrorKind",
    "DispatcherError",
    "DispatcherErrorKind",
    "GraphExistsError",
    "GraphNotFoundError",
    "GraphNotStoredError",
    "InvalidTransitionError",
    "OrchestrationError",
]

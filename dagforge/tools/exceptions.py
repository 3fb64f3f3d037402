from __future__ import annotations

from enum import Enum


class InvocationErrorKind(str, Enum):
    MISSING_PARAMETER = "missing_parameter"
    MALFORMED_TEMPLATE = "malformed_template"
    UNKNOWN_TOOL = "unknown_tool"
    SCHEMA_MISMATCH = "schema_mismatch"
    TRANSIENT_PROVIDER_ERROR = "transient_provider_error"
    PERMANENT_PROVIDER_ERROR = "permanent_provider_error"
    TIMEOUT = "timeout"


TRANSIENT_KINDS = frozenset(
    {
        InvocationErrorKind.SCHEMA_MISMATCH,
        InvocationErrorKind.TRANSIENT_PROVIDER_ERROR,
        InvocationErrorKind.TIMEOUT,
    }
)


class ToolError(RuntimeError):
    """Base class for tooling-related failures."""


class InvocationError(ToolError):
    """Raised when a tool invocation cannot produce a structured result."""

    def __init__(
        self,
        kind: InvocationErrorKind,
        message: str,
        *,
        tool_id: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.tool_id = tool_id
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS


class ToolNotFoundError(InvocationError):
    """Raised when a requested tool cannot be resolved."""

    def __init__(self, tool_id: str) -> None:
        super().__init__(InvocationErrorKind.UNKNOWN_TOOL, f"Tool '{tool_id}' is not registered", tool_id=tool_id)

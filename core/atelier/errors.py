"""
Error taxonomy for pipeline execution and callback reconciliation.

Executors never raise across ``execute()``. They return a ``NodeError`` inside
their ``NodeResult`` and the executor engine decides whether to retry or fail.
Exceptions are reserved for API edges: compiling a definition, handling an
inbound callback, and the external HTTP clients.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class NodeErrorKind(StrEnum):
    """Closed set of error kinds surfaced by nodes and the callback layer."""

    INVALID_CONFIG = "INVALID_CONFIG"
    MISSING_INPUT = "MISSING_INPUT"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    TIMEOUT = "TIMEOUT"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    TOOL_ERROR = "TOOL_ERROR"
    KB_RETRIEVE_ERROR = "KB_RETRIEVE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    # Callback layer
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    TIMESTAMP_EXPIRED = "TIMESTAMP_EXPIRED"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    STEP_NOT_FOUND = "STEP_NOT_FOUND"


# Configuration and input problems do not get better by trying again.
NON_RETRYABLE: frozenset[NodeErrorKind] = frozenset(
    {NodeErrorKind.INVALID_CONFIG, NodeErrorKind.MISSING_INPUT}
)


class NodeError(BaseModel):
    """Structured error returned by a node executor."""

    kind: NodeErrorKind
    message: str
    code: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @property
    def retryable(self) -> bool:
        """False for non-retryable kinds, or when the source marked the error final."""
        if self.kind in NON_RETRYABLE:
            return False
        return self.details.get("retryable", True) is not False

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class PipelineCompileError(Exception):
    """Raised when a pipeline definition cannot be compiled."""

    def __init__(self, message: str, diagnostics: list[Any] | None = None):
        self.diagnostics = diagnostics or []
        self.kind = NodeErrorKind.INVALID_CONFIG
        super().__init__(message)


class RunNotFoundError(KeyError):
    """Raised by run-control operations for a run this process does not own."""


class ProviderCallError(Exception):
    """Raised by a provider client when the remote call fails."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        timeout: bool = False,
        details: dict[str, Any] | None = None,
    ):
        self.status = status
        self.timeout = timeout
        self.details = details or {}
        super().__init__(message)


class ToolCallError(ProviderCallError):
    """Raised by a tool client when a tool server call fails."""


class UnknownToolEndpointError(ToolCallError):
    """Raised when a tool_call node names an endpoint that is not configured."""


class KnowledgeRetrieveError(Exception):
    """Raised by a knowledge retriever when a lookup fails."""


class CallbackError(Exception):
    """Base class for rejected completion callbacks."""

    status_code: int = 400
    kind: NodeErrorKind = NodeErrorKind.INTERNAL_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class CallbackPayloadError(CallbackError):
    status_code = 400
    kind = NodeErrorKind.MISSING_INPUT


class SignatureInvalidError(CallbackError):
    status_code = 403
    kind = NodeErrorKind.SIGNATURE_INVALID


class TimestampExpiredError(CallbackError):
    status_code = 400
    kind = NodeErrorKind.TIMESTAMP_EXPIRED


class TaskNotFoundError(CallbackError):
    status_code = 404
    kind = NodeErrorKind.TASK_NOT_FOUND


class StepNotFoundError(CallbackError):
    status_code = 404
    kind = NodeErrorKind.STEP_NOT_FOUND

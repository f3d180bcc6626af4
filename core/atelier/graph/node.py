"""
Node Protocol - The building block of pipeline graphs.

A node is one unit of work in a pipeline. Every node kind has exactly one
registered implementation; the executor engine looks the implementation up
by kind and never branches on kind itself.

Node kinds:
- input / output: boundary markers for form inputs and run artifacts
- provider: a call to an external AI service (sync, or async via callback)
- kb_retrieve: knowledge-base lookup written into run state
- transform: reshapes upstream outputs through a template tree
- tool_call: one call to a tool server (MCP style) written into run state
- condition: boolean selector for outgoing edges
- fork / join: structural fan-out and fan-in
- loop: bounded per-iteration execution of a sub-graph

Implementations return structured errors instead of raising, so retry and
failure decisions stay in one place.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field, field_validator

from atelier.errors import NodeError, NodeErrorKind

if TYPE_CHECKING:
    from atelier.graph.resolver import VariableResolver
    from atelier.graph.run_context import FlowContext


class NodeKind(StrEnum):
    INPUT = "input"
    OUTPUT = "output"
    PROVIDER = "provider"
    KB_RETRIEVE = "kb_retrieve"
    CONDITION = "condition"
    FORK = "fork"
    JOIN = "join"
    LOOP = "loop"
    TRANSFORM = "transform"
    TOOL_CALL = "tool_call"


# Names the visual editor and older stored pipelines use for the same kinds.
NODE_KIND_ALIASES: dict[str, NodeKind] = {
    "start": NodeKind.INPUT,
    "end": NodeKind.OUTPUT,
    "kb": NodeKind.KB_RETRIEVE,
    "kbretrieve": NodeKind.KB_RETRIEVE,
    "knowledge": NodeKind.KB_RETRIEVE,
    "parallel": NodeKind.FORK,
    "merge": NodeKind.JOIN,
    "data_transform": NodeKind.TRANSFORM,
    "tool": NodeKind.TOOL_CALL,
    "mcp": NodeKind.TOOL_CALL,
    "toolcall": NodeKind.TOOL_CALL,
    "mcptoolcall": NodeKind.TOOL_CALL,
}


def parse_node_kind(value: Any) -> NodeKind:
    """Parse a node kind from editor JSON, accepting aliases and any case."""
    if isinstance(value, NodeKind):
        return value
    raw = str(value).strip()
    normalized = raw.lower().replace("-", "_")
    if normalized in NODE_KIND_ALIASES:
        return NODE_KIND_ALIASES[normalized]
    if normalized.replace("_", "") in NODE_KIND_ALIASES:
        return NODE_KIND_ALIASES[normalized.replace("_", "")]
    return NodeKind(normalized)


DEFAULT_RETRYABLE_ERRORS = [
    NodeErrorKind.TIMEOUT,
    NodeErrorKind.PROVIDER_ERROR,
    NodeErrorKind.TOOL_ERROR,
    NodeErrorKind.EXECUTION_FAILED,
]


class RetryPolicy(BaseModel):
    """
    Per-node retry policy.

    ``retry_delay`` is in milliseconds. The n-th retry (1-based) waits
    ``retry_delay * n`` with linear backoff and ``retry_delay * 2**(n-1)``
    with exponential backoff.
    """

    max_retries: int = Field(default=0, ge=0, alias="maxRetries")
    retry_delay: int = Field(default=1000, ge=0, alias="retryDelay")
    backoff: Literal["linear", "exponential"] = "linear"
    retryable_errors: list[NodeErrorKind] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS), alias="retryableErrors"
    )

    model_config = {"extra": "allow", "populate_by_name": True}

    def delay_seconds(self, retry_number: int) -> float:
        """Delay before the given retry (1-based), in seconds."""
        if retry_number < 1:
            return 0.0
        if self.backoff == "exponential":
            delay_ms = self.retry_delay * 2 ** (retry_number - 1)
        else:
            delay_ms = self.retry_delay * retry_number
        return delay_ms / 1000

    def allows(self, error: NodeError) -> bool:
        """True if this error kind may be retried under this policy."""
        return error.retryable and error.kind in self.retryable_errors


class NodeSpec(BaseModel):
    """
    Specification for a node in a pipeline.

    Example:
        NodeSpec(
            id="tryon",
            kind=NodeKind.PROVIDER,
            config={"providerRef": "virtual-tryon", "mode": "async"},
            retry_policy=RetryPolicy(max_retries=2, backoff="exponential"),
            timeout=60_000,
        )
    """

    id: str
    kind: NodeKind
    name: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    retry_policy: RetryPolicy | None = Field(default=None, alias="retryPolicy")
    timeout: int | None = Field(default=None, description="Per-attempt deadline in milliseconds")

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("kind", mode="before")
    @classmethod
    def _parse_kind(cls, value: Any) -> NodeKind:
        return parse_node_kind(value)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def output_key(self) -> str:
        """State key this node writes its output under."""
        key = self.config.get("outputKey")
        if isinstance(key, str) and key:
            return key
        if self.kind == NodeKind.KB_RETRIEVE:
            return "kb_results"
        tool_name = self.config.get("toolName")
        if self.kind == NodeKind.TOOL_CALL and isinstance(tool_name, str) and tool_name:
            return tool_name
        return self.id


@dataclass
class NodeResult:
    """
    The executor envelope returned by every node.

    ``suspended`` is set by nodes whose work continues on external compute;
    the engine then waits for a completion callback instead of following edges.
    """

    success: bool
    outputs: dict[str, Any] = field(default_factory=dict)
    error: NodeError | None = None
    duration_ms: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    suspended: bool = False

    @classmethod
    def ok(cls, outputs: dict[str, Any] | None = None, **kwargs: Any) -> "NodeResult":
        return cls(success=True, outputs=outputs or {}, **kwargs)

    @classmethod
    def fail(
        cls,
        kind: NodeErrorKind,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> "NodeResult":
        error = NodeError(kind=kind, message=message, code=code, details=details or {})
        return cls(success=False, error=error, **kwargs)

    def to_envelope(self) -> dict[str, Any]:
        """JSON shape exchanged with the rest of the platform."""
        envelope: dict[str, Any] = {"success": self.success, "duration": self.duration_ms}
        if self.success:
            envelope["outputs"] = self.outputs
        elif self.error is not None:
            envelope["error"] = self.error.model_dump(exclude_none=True)
        if self.metadata:
            envelope["metadata"] = self.metadata
        return envelope


SubgraphRunner = Callable[[Any, dict[str, Any]], Awaitable[Any]]
EventEmitter = Callable[..., Awaitable[None]]


@dataclass
class NodeContext:
    """Everything a node needs to execute one attempt."""

    node: NodeSpec
    run: "FlowContext"
    config: dict[str, Any]  # node config with placeholders resolved
    inputs: dict[str, Any] = field(default_factory=dict)  # upstream outputs
    attempt: int = 0
    step_index: int | None = None
    resolver: "VariableResolver | None" = None
    run_subgraph: SubgraphRunner | None = None
    # bound to the run and node; publishes node-level progress events
    emit: EventEmitter | None = None

    @property
    def node_id(self) -> str:
        return self.node.id

    @property
    def state(self) -> dict[str, Any]:
        return self.run.state

    def write_state(self, key: str, value: Any) -> None:
        """Write to run state. The only side effect a node is allowed."""
        self.run.state[key] = value


class NodeProtocol(ABC):
    """
    Interface all node implementations satisfy.

    ``validate`` is a cheap synchronous pre-flight run by the compiler.
    ``execute`` performs one attempt and returns a NodeResult.
    """

    kind: NodeKind
    # Loops span many child nodes, so only an explicit node timeout bounds them.
    uses_default_timeout: bool = True

    @abstractmethod
    async def execute(self, ctx: NodeContext) -> NodeResult:
        pass

    def config_errors(self, config: dict[str, Any]) -> list[str]:
        """Describe what is wrong with a node config. Empty means valid."""
        return []

    def validate(self, config: dict[str, Any]) -> bool:
        return not self.config_errors(config)

    def is_async(self, node: NodeSpec) -> bool:
        """True if this node completes through an external callback."""
        return False

    async def rollback(self, ctx: NodeContext) -> None:
        """Compensate a successful execution when the run is rolled back."""
        return None


class Stopwatch:
    """Tiny helper for filling NodeResult.duration_ms."""

    def __init__(self) -> None:
        self._start = time.perf_counter()

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)

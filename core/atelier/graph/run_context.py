"""
Run Context - Engine-owned state for one execution of a pipeline.

A FlowContext is created per run and passed by reference through every
dispatch. It owns the run's NodeOutputCache, so concurrent runs never share
outputs. Node bookkeeping (statuses, errors, join arrivals, the pause
frontier) lives here too, which lets a suspended run pick up exactly where
it stopped when a completion callback arrives.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from atelier.errors import NodeError
from atelier.graph.resolver import VariableResolver
from atelier.schemas.run import NodeStatus, RunStatus

if TYPE_CHECKING:
    from atelier.graph.compiler import CompiledGraph


def generate_run_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"run_{timestamp}_{uuid.uuid4().hex[:8]}"


class NodeOutputCache:
    """
    Run-scoped arena of node outputs.

    ``claim`` is the at-most-once gate: the first caller for a node id wins
    and every later caller is told the node is already taken.
    """

    def __init__(self) -> None:
        self._outputs: dict[str, dict[str, Any]] = {}
        self._claimed: set[str] = set()

    def claim(self, node_id: str) -> bool:
        if node_id in self._claimed:
            return False
        self._claimed.add(node_id)
        return True

    def release(self, node_id: str) -> None:
        """Give a claim back without storing output (the node was parked, not run)."""
        if node_id not in self._outputs:
            self._claimed.discard(node_id)

    def store(self, node_id: str, output: dict[str, Any]) -> None:
        self._claimed.add(node_id)
        self._outputs[node_id] = output

    def get(self, node_id: str) -> dict[str, Any] | None:
        return self._outputs.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._outputs

    def __len__(self) -> int:
        return len(self._outputs)

    def as_dict(self) -> dict[str, dict[str, Any]]:
        return dict(self._outputs)


@dataclass
class Arrival:
    """One settled upstream branch as seen by a join."""

    source: str
    status: NodeStatus
    sequence: int
    output: dict[str, Any] | None = None


@dataclass
class FlowContext:
    """The Run: everything the engine knows about one execution."""

    graph: "CompiledGraph"
    run_id: str = field(default_factory=generate_run_id)
    user_id: str | None = None
    form: dict[str, Any] = field(default_factory=dict)
    state: dict[str, Any] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    parent_run_id: str | None = None

    cache: NodeOutputCache = field(default_factory=NodeOutputCache)
    node_status: dict[str, NodeStatus] = field(default_factory=dict)
    node_errors: dict[str, NodeError] = field(default_factory=dict)
    retry_counts: dict[str, int] = field(default_factory=dict)
    arrivals: dict[str, dict[str, Arrival]] = field(default_factory=dict)
    path: list[str] = field(default_factory=list)
    completion_order: list[str] = field(default_factory=list)
    failure_order: list[str] = field(default_factory=list)

    # node_id -> step_index for nodes suspended on external work
    awaiting: dict[str, int] = field(default_factory=dict)
    # nodes parked by a pause, with the inputs they were dispatched with
    frontier: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    pause_requested: bool = False
    # halted: nothing new is dispatched. doomed: a failure reached a terminal
    # node; the run will fail once in-flight work settles.
    halted: bool = False
    doomed: bool = False
    degraded: bool = False
    artifacts: dict[str, Any] | None = None
    error_node: str | None = None
    initial_state: dict[str, Any] = field(default_factory=dict)

    # walk segments currently in flight; terminal status is decided only at zero
    active: int = 0
    step_counter: int = 0
    _sequence: int = 0

    def __post_init__(self) -> None:
        for node_id in self.graph.nodes:
            self.node_status.setdefault(node_id, NodeStatus.PENDING)
        self.initial_state = copy.deepcopy(self.state)

    @property
    def definition_id(self) -> str:
        return self.graph.id

    @property
    def system(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "taskId": self.run_id,
            "pipelineId": self.definition_id,
            "definitionId": self.definition_id,
            "userId": self.user_id,
            "startedAt": self.created_at.isoformat(),
            "now": datetime.now().isoformat(),
        }

    @property
    def outputs(self) -> dict[str, dict[str, Any]]:
        return self.cache.as_dict()

    def resolver(self) -> VariableResolver:
        return VariableResolver(
            system=self.system, form=self.form, outputs=self.outputs, state=self.state
        )

    def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def set_status(self, status: RunStatus) -> None:
        self.status = status
        self.updated_at = datetime.now()

    def mark(self, node_id: str, status: NodeStatus) -> None:
        self.node_status[node_id] = status
        self.updated_at = datetime.now()

    def record_arrival(
        self,
        join_id: str,
        source: str,
        status: NodeStatus,
        output: dict[str, Any] | None = None,
    ) -> dict[str, Arrival]:
        arrivals = self.arrivals.setdefault(join_id, {})
        if source not in arrivals:
            arrivals[source] = Arrival(
                source=source, status=status, sequence=self.next_sequence(), output=output
            )
        return arrivals

    def first_error(self) -> tuple[str, NodeError] | tuple[None, None]:
        """The chronologically first node failure in this run."""
        for node_id in self.failure_order:
            error = self.node_errors.get(node_id)
            if error is not None:
                return node_id, error
        return None, None

    def restore_initial_state(self) -> None:
        self.state.clear()
        self.state.update(copy.deepcopy(self.initial_state))

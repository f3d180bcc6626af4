"""
Run Schema - Persisted records for pipeline runs and their async steps.

A RunRecord is the durable view of one execution of a pipeline definition.
StepRecords exist only for nodes whose work happens on external compute;
the callback reconciler updates them when the worker reports back.

Status transitions are monotonic. Once a record reaches a terminal status,
further writes are refused.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field


class RunStatus(StrEnum):
    """Status of a run."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_RUN


_TERMINAL_RUN = {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}

# Allowed forward moves. PAUSED can go back to RUNNING; nothing leaves a terminal state.
_RUN_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.PAUSED} | _TERMINAL_RUN,
    RunStatus.PAUSED: {RunStatus.RUNNING} | _TERMINAL_RUN,
    RunStatus.SUCCEEDED: set(),
    RunStatus.FAILED: set(),
    RunStatus.CANCELLED: set(),
}


class NodeStatus(StrEnum):
    """Status of a node within one run."""

    PENDING = "pending"
    RUNNING = "running"
    AWAITING_CALLBACK = "awaiting_callback"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_settled(self) -> bool:
        return self in (NodeStatus.SUCCESS, NodeStatus.FAILED, NodeStatus.SKIPPED)


class StepStatus(StrEnum):
    """Status of a persisted async step."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)


class RunRecord(BaseModel):
    """Durable record of a single pipeline run."""

    run_id: str
    definition_id: str
    user_id: str | None = None
    status: RunStatus = RunStatus.PENDING

    artifacts: dict[str, Any] | None = None
    error_message: str | None = None
    error_kind: str | None = None
    error_node: str | None = None

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    def can_transition(self, new_status: RunStatus) -> bool:
        if new_status == self.status:
            return False
        return new_status in _RUN_TRANSITIONS[self.status]

    @computed_field
    @property
    def duration_ms(self) -> int:
        """Duration of the run in milliseconds."""
        if self.completed_at is None:
            return 0
        delta = self.completed_at - self.created_at
        return int(delta.total_seconds() * 1000)


class StepRecord(BaseModel):
    """Durable record of one externally executed step."""

    run_id: str
    step_index: int
    node_id: str
    kind: str
    provider_ref: str | None = None
    status: StepStatus = StepStatus.PENDING

    output: Any = None
    error_message: str | None = None
    external_ref: str | None = None

    created_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

"""
Run Store - Persistence interface for runs and their async steps.

Both implementations share the update rules defined here, so a status can
only move forward and a terminal record is never rewritten. Update methods
return False instead of raising when a write is refused; the callback
reconciler relies on that for idempotency.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from atelier.schemas.run import RunRecord, RunStatus, StepRecord, StepStatus

_UNSET: Any = object()

_STEP_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {
        StepStatus.PROCESSING,
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.SKIPPED,
    },
    StepStatus.PROCESSING: {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED},
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
    StepStatus.SKIPPED: set(),
}


def apply_run_update(
    record: RunRecord,
    status: RunStatus | None = None,
    artifacts: Any = _UNSET,
    error_message: Any = _UNSET,
    error_kind: Any = _UNSET,
    error_node: Any = _UNSET,
) -> RunRecord | None:
    """Return an updated copy of ``record``, or None if the write is refused."""
    if record.status.is_terminal:
        return None
    if status is not None and status != record.status and not record.can_transition(status):
        return None

    now = datetime.now()
    changes: dict[str, Any] = {"updated_at": now}
    if status is not None:
        changes["status"] = status
        if status.is_terminal:
            changes["completed_at"] = now
    for name, value in (
        ("artifacts", artifacts),
        ("error_message", error_message),
        ("error_kind", error_kind),
        ("error_node", error_node),
    ):
        if value is not _UNSET:
            changes[name] = value
    return record.model_copy(update=changes)


def apply_step_update(
    record: StepRecord,
    status: StepStatus | None = None,
    output: Any = _UNSET,
    error_message: Any = _UNSET,
    external_ref: Any = _UNSET,
) -> StepRecord | None:
    """Return an updated copy of ``record``, or None if the write is refused."""
    if record.status.is_terminal:
        return None
    if status is not None and status != record.status:
        if status not in _STEP_TRANSITIONS[record.status]:
            return None

    changes: dict[str, Any] = {}
    if status is not None:
        changes["status"] = status
        if status.is_terminal:
            changes["completed_at"] = datetime.now()
    if output is not _UNSET:
        changes["output"] = output
    if error_message is not _UNSET:
        changes["error_message"] = error_message
    if external_ref is not _UNSET:
        changes["external_ref"] = external_ref
    return record.model_copy(update=changes)


class RunStore(ABC):
    """Durable storage for RunRecords and StepRecords."""

    @abstractmethod
    async def create_run(self, record: RunRecord) -> None:
        pass

    @abstractmethod
    async def get_run(self, run_id: str) -> RunRecord | None:
        pass

    @abstractmethod
    async def update_run(self, run_id: str, **changes: Any) -> bool:
        """Apply changes to a run. False if missing, terminal, or a regression."""

    @abstractmethod
    async def list_runs(self, status: RunStatus | None = None, limit: int = 100) -> list[RunRecord]:
        pass

    @abstractmethod
    async def create_step(self, record: StepRecord) -> None:
        pass

    @abstractmethod
    async def get_step(self, run_id: str, step_index: int) -> StepRecord | None:
        pass

    @abstractmethod
    async def update_step(self, run_id: str, step_index: int, **changes: Any) -> bool:
        """Apply changes to a step. False if missing or already terminal."""

    @abstractmethod
    async def list_steps(self, run_id: str) -> list[StepRecord]:
        """Steps of a run ordered by step index."""

    async def count_steps(self, run_id: str, status: StepStatus | None = None) -> int:
        steps = await self.list_steps(run_id)
        return sum(1 for s in steps if status is None or s.status == status)

    async def next_step_index(self, run_id: str) -> int:
        steps = await self.list_steps(run_id)
        return max((s.step_index for s in steps), default=-1) + 1

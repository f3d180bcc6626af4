"""In-process run store. Default for tests and single-process deployments."""

import asyncio
from typing import Any

from atelier.schemas.run import RunRecord, RunStatus, StepRecord
from atelier.storage.backend import RunStore, apply_run_update, apply_step_update


class InMemoryRunStore(RunStore):
    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}
        self._steps: dict[str, dict[int, StepRecord]] = {}
        self._lock = asyncio.Lock()

    async def create_run(self, record: RunRecord) -> None:
        async with self._lock:
            if record.run_id in self._runs:
                raise ValueError(f"Run {record.run_id} already exists")
            self._runs[record.run_id] = record
            self._steps.setdefault(record.run_id, {})

    async def get_run(self, run_id: str) -> RunRecord | None:
        return self._runs.get(run_id)

    async def update_run(self, run_id: str, **changes: Any) -> bool:
        async with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                return False
            updated = apply_run_update(current, **changes)
            if updated is None:
                return False
            self._runs[run_id] = updated
            return True

    async def list_runs(self, status: RunStatus | None = None, limit: int = 100) -> list[RunRecord]:
        runs = [r for r in self._runs.values() if status is None or r.status == status]
        runs.sort(key=lambda r: r.updated_at, reverse=True)
        return runs[:limit]

    async def create_step(self, record: StepRecord) -> None:
        async with self._lock:
            steps = self._steps.setdefault(record.run_id, {})
            if record.step_index in steps:
                raise ValueError(f"Step {record.step_index} of run {record.run_id} already exists")
            steps[record.step_index] = record

    async def get_step(self, run_id: str, step_index: int) -> StepRecord | None:
        return self._steps.get(run_id, {}).get(step_index)

    async def update_step(self, run_id: str, step_index: int, **changes: Any) -> bool:
        async with self._lock:
            current = self._steps.get(run_id, {}).get(step_index)
            if current is None:
                return False
            updated = apply_step_update(current, **changes)
            if updated is None:
                return False
            self._steps[run_id][step_index] = updated
            return True

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        steps = self._steps.get(run_id, {})
        return [steps[i] for i in sorted(steps)]

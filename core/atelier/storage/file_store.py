"""
File Run Store - Runs and steps as JSON files on disk.

Layout:
  {base_path}/runs/{run_id}/
    ├── run.json          # RunRecord
    └── steps/
        ├── 0.json        # StepRecord per async step
        └── 1.json

All file I/O runs in a worker thread and every write is atomic
(temp file + rename).
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

from atelier.schemas.run import RunRecord, RunStatus, StepRecord
from atelier.storage.backend import RunStore, apply_run_update, apply_step_update
from atelier.utils.io import atomic_write

logger = logging.getLogger(__name__)


class FileRunStore(RunStore):
    def __init__(self, base_path: Path | str):
        self.base_path = Path(base_path)
        self.runs_dir = self.base_path / "runs"
        self._lock = asyncio.Lock()

    def get_run_path(self, run_id: str) -> Path:
        return self.runs_dir / run_id / "run.json"

    def get_step_path(self, run_id: str, step_index: int) -> Path:
        return self.runs_dir / run_id / "steps" / f"{step_index}.json"

    # === RUNS ===

    async def create_run(self, record: RunRecord) -> None:
        async with self._lock:
            path = self.get_run_path(record.run_id)
            if await asyncio.to_thread(path.exists):
                raise ValueError(f"Run {record.run_id} already exists")
            await self._write(path, record.model_dump_json(indent=2, exclude={"duration_ms"}))
        logger.debug(f"Created run {record.run_id}")

    async def get_run(self, run_id: str) -> RunRecord | None:
        content = await self._read(self.get_run_path(run_id))
        return RunRecord.model_validate_json(content) if content is not None else None

    async def update_run(self, run_id: str, **changes: Any) -> bool:
        async with self._lock:
            current = await self.get_run(run_id)
            if current is None:
                return False
            updated = apply_run_update(current, **changes)
            if updated is None:
                return False
            await self._write(
                self.get_run_path(run_id),
                updated.model_dump_json(indent=2, exclude={"duration_ms"}),
            )
            return True

    async def list_runs(self, status: RunStatus | None = None, limit: int = 100) -> list[RunRecord]:
        def _scan() -> list[RunRecord]:
            runs: list[RunRecord] = []
            if not self.runs_dir.exists():
                return runs
            for run_dir in self.runs_dir.iterdir():
                run_path = run_dir / "run.json"
                if not run_path.exists():
                    continue
                try:
                    record = RunRecord.model_validate_json(run_path.read_text(encoding="utf-8"))
                except ValueError as e:
                    logger.warning(f"Failed to load {run_path}: {e}")
                    continue
                if status is None or record.status == status:
                    runs.append(record)
            runs.sort(key=lambda r: r.updated_at, reverse=True)
            return runs[:limit]

        return await asyncio.to_thread(_scan)

    # === STEPS ===

    async def create_step(self, record: StepRecord) -> None:
        async with self._lock:
            path = self.get_step_path(record.run_id, record.step_index)
            if await asyncio.to_thread(path.exists):
                raise ValueError(f"Step {record.step_index} of run {record.run_id} already exists")
            await self._write(path, record.model_dump_json(indent=2))

    async def get_step(self, run_id: str, step_index: int) -> StepRecord | None:
        content = await self._read(self.get_step_path(run_id, step_index))
        return StepRecord.model_validate_json(content) if content is not None else None

    async def update_step(self, run_id: str, step_index: int, **changes: Any) -> bool:
        async with self._lock:
            current = await self.get_step(run_id, step_index)
            if current is None:
                return False
            updated = apply_step_update(current, **changes)
            if updated is None:
                return False
            await self._write(
                self.get_step_path(run_id, step_index), updated.model_dump_json(indent=2)
            )
            return True

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        steps_dir = self.runs_dir / run_id / "steps"

        def _scan() -> list[StepRecord]:
            if not steps_dir.exists():
                return []
            steps = [
                StepRecord.model_validate_json(p.read_text(encoding="utf-8"))
                for p in steps_dir.glob("*.json")
                if p.stem.isdigit()
            ]
            steps.sort(key=lambda s: s.step_index)
            return steps

        return await asyncio.to_thread(_scan)

    # === HELPERS ===

    @staticmethod
    async def _write(path: Path, content: str) -> None:
        def _write_file() -> None:
            with atomic_write(path) as f:
                f.write(content)

        await asyncio.to_thread(_write_file)

    @staticmethod
    async def _read(path: Path) -> str | None:
        def _read_file() -> str | None:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

        return await asyncio.to_thread(_read_file)

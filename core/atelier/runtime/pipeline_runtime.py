"""
Pipeline Runtime - run control for a single process.

Holds every live run in memory so pause/resume/cancel can reach it and so
completion callbacks can be routed back into the executor engine. A run is
released as soon as it reaches a terminal status; from then on only the run
store knows it. Callback
resumptions are scheduled as tasks; the HTTP reply does not wait for the rest
of the pipeline to finish.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from atelier.config import EngineConfig
from atelier.errors import RunNotFoundError
from atelier.graph.compiler import CompiledGraph, GraphCompiler
from atelier.graph.executor import ExecutionResult, GraphExecutor
from atelier.graph.run_context import FlowContext
from atelier.nodes.registry import NodeRegistry
from atelier.runtime.event_bus import EventBus
from atelier.storage.backend import RunStore

logger = logging.getLogger(__name__)


class PipelineRuntime:
    """
    Run-control surface over GraphExecutor. Also the reconciler's RunResumer.

    Example:
        runtime = PipelineRuntime(default_registry(client), InMemoryRunStore())
        result = await runtime.start_run(pipeline_json, {"imageUrl": url}, user_id="u_1")
        reconciler = CallbackReconciler(runtime.store, resumer=runtime)
    """

    def __init__(
        self,
        registry: NodeRegistry,
        store: RunStore,
        event_bus: EventBus | None = None,
        engine_config: EngineConfig | None = None,
    ):
        self.registry = registry
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.engine_config = engine_config or EngineConfig()
        self.executor = GraphExecutor(
            registry, store=store, event_bus=self.event_bus, config=self.engine_config
        )
        self._compiler = GraphCompiler(
            registry,
            allow_cycles=self.engine_config.allow_cycles,
            default_join_strategy=self.engine_config.default_join_strategy,
        )
        self._runs: dict[str, FlowContext] = {}
        self._tasks: set[asyncio.Task] = set()

    def compile(self, raw: Any) -> CompiledGraph:
        return self._compiler.compile(raw)

    async def start_run(
        self,
        pipeline: Any,
        form: dict[str, Any] | None = None,
        user_id: str | None = None,
        *,
        run_id: str | None = None,
    ) -> ExecutionResult:
        """Compile (if needed), create and start a run."""
        compiled = pipeline if isinstance(pipeline, CompiledGraph) else self.compile(pipeline)
        ctx = self.executor.create_context(compiled, form, run_id=run_id, user_id=user_id)
        self._runs[ctx.run_id] = ctx
        return await self._tracked(ctx, self.executor.run(ctx))

    def get_context(self, run_id: str) -> FlowContext:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFoundError(f"Run {run_id} is not held by this runtime") from None

    def pause(self, run_id: str) -> None:
        self.executor.request_pause(self.get_context(run_id))

    async def resume(self, run_id: str) -> ExecutionResult:
        ctx = self.get_context(run_id)
        return await self._tracked(ctx, self.executor.resume(ctx))

    async def cancel(self, run_id: str) -> ExecutionResult:
        ctx = self.get_context(run_id)
        return await self._tracked(ctx, self.executor.cancel(ctx))

    # === RunResumer ===

    def owns(self, run_id: str) -> bool:
        return run_id in self._runs

    def resume_step(self, run_id: str, step_index: int, output: Any) -> None:
        ctx = self.get_context(run_id)
        node_id = self._node_for_step(ctx, step_index)
        if node_id is None:
            logger.warning(f"⚠ Run {run_id} has no node awaiting step {step_index}")
            return
        self._schedule(self._tracked(ctx, self.executor.resume_step(ctx, node_id, output)))

    def fail_step(self, run_id: str, step_index: int, message: str) -> None:
        ctx = self.get_context(run_id)
        node_id = self._node_for_step(ctx, step_index)
        if node_id is None:
            logger.warning(f"⚠ Run {run_id} has no node awaiting step {step_index}")
            return
        self._schedule(self._tracked(ctx, self.executor.fail_step(ctx, node_id, message)))

    async def wait_idle(self) -> None:
        """Wait until every scheduled resumption has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @staticmethod
    def _node_for_step(ctx: FlowContext, step_index: int) -> str | None:
        for node_id, index in ctx.awaiting.items():
            if index == step_index:
                return node_id
        return None

    async def _tracked(
        self, ctx: FlowContext, work: Awaitable[ExecutionResult]
    ) -> ExecutionResult:
        """Await run work, then release the run if it ended."""
        try:
            return await work
        finally:
            if ctx.status.is_terminal and self._runs.get(ctx.run_id) is ctx:
                del self._runs[ctx.run_id]
                logger.debug(f"Released run {ctx.run_id} ({ctx.status})")

    def _schedule(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"✗ Run resumption failed: {task.exception()}")

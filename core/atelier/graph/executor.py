"""
Graph Executor - Runs compiled pipelines.

The executor:
1. Creates a FlowContext (the run) with its own output cache
2. Walks from the entry node, following edges a node's outcome selects
3. Fans out at forks with asyncio.gather and aggregates at joins
4. Applies each node's retry policy and deadline
5. Suspends at async provider nodes until a completion callback resumes them
6. Applies the pipeline's error handling (stop / continue / rollback)
7. Persists run and step records and returns an ExecutionResult

Nodes reached by several edges are joins. A join waits until every source
has settled (succeeded, failed, or skipped) and then applies its strategy,
so a failing branch becomes a settled result and never an exception.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any

from atelier.config import EngineConfig
from atelier.errors import NodeError, NodeErrorKind
from atelier.graph.compiler import CompiledGraph, GraphCompiler, JoinInfo
from atelier.graph.edge import JoinStrategy
from atelier.graph.node import (
    NodeContext,
    NodeProtocol,
    NodeResult,
    NodeSpec,
    RetryPolicy,
    Stopwatch,
)
from atelier.graph.run_context import Arrival, FlowContext
from atelier.observability import set_trace_context
from atelier.runtime.event_bus import EventBus, EventType
from atelier.schemas.run import NodeStatus, RunRecord, RunStatus, StepRecord, StepStatus

if TYPE_CHECKING:
    from atelier.nodes.registry import NodeRegistry
    from atelier.storage.backend import RunStore

# Walk actions. Joins decide between the first three.
_RUN = "run"
_SKIP = "skip"
_FAIL = "fail"
_SETTLE = "settle"
_FORK = "fork"


@dataclass
class ExecutionResult:
    """Result of executing (or resuming) a run."""

    run_id: str
    status: RunStatus
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_kind: str | None = None
    failed_node: str | None = None
    path: list[str] = field(default_factory=list)
    node_statuses: dict[str, str] = field(default_factory=dict)
    node_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)

    # node_id -> step_index for nodes waiting on a completion callback
    awaiting: dict[str, int] = field(default_factory=dict)

    # Execution quality metrics
    total_retries: int = 0
    retry_details: dict[str, int] = field(default_factory=dict)  # {node_id: retry_count}
    execution_quality: str = "clean"  # "clean", "degraded", or "failed"

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def is_suspended(self) -> bool:
        """True while the run waits on external work."""
        return self.status == RunStatus.RUNNING and bool(self.awaiting)

    @property
    def is_clean_success(self) -> bool:
        """True only if execution succeeded with no retries or failures."""
        return self.success and self.execution_quality == "clean"

    @property
    def is_degraded_success(self) -> bool:
        """True if execution succeeded but had retries or absorbed failures."""
        return self.success and self.execution_quality == "degraded"


class GraphExecutor:
    """
    Executes compiled pipelines.

    Example:
        executor = GraphExecutor(registry=default_registry(provider_client))
        compiled = GraphCompiler(executor.registry).compile(definition)

        result = await executor.execute(compiled, form={"imageUrl": url}, user_id="u_1")
        if result.is_suspended:
            ...  # completion callbacks will resume it
    """

    def __init__(
        self,
        registry: "NodeRegistry",
        store: "RunStore | None" = None,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
    ):
        """
        Initialize the executor.

        Args:
            registry: One implementation per node kind
            store: Optional run store; runs and async steps are persisted when set
            event_bus: Optional event bus for run and node lifecycle events
            config: Engine-wide defaults (timeouts, loop bound, join strategy)
        """
        self.registry = registry
        self.store = store
        self._event_bus = event_bus
        self.config = config or EngineConfig()
        self.logger = logging.getLogger(__name__)
        self._compiler = GraphCompiler(
            registry,
            allow_cycles=self.config.allow_cycles,
            default_join_strategy=self.config.default_join_strategy,
        )
        self._loop_bodies: dict[tuple[str, str], CompiledGraph] = {}

    # ------------------------------------------------------------------
    # Run entry points
    # ------------------------------------------------------------------

    def create_context(
        self,
        graph: CompiledGraph,
        form: dict[str, Any] | None = None,
        *,
        run_id: str | None = None,
        user_id: str | None = None,
    ) -> FlowContext:
        """Create the run. Pipeline variables are defaults for the form."""
        merged_form = {**graph.definition.variables, **(form or {})}
        kwargs: dict[str, Any] = {"graph": graph, "form": merged_form, "user_id": user_id}
        if run_id:
            kwargs["run_id"] = run_id
        return FlowContext(**kwargs)

    async def execute(
        self,
        graph: CompiledGraph,
        form: dict[str, Any] | None = None,
        *,
        run_id: str | None = None,
        user_id: str | None = None,
    ) -> ExecutionResult:
        ctx = self.create_context(graph, form, run_id=run_id, user_id=user_id)
        return await self.run(ctx)

    async def run(self, ctx: FlowContext) -> ExecutionResult:
        """Start a freshly created run and walk it as far as it can go."""
        if ctx.status != RunStatus.PENDING:
            raise ValueError(f"Run {ctx.run_id} has already started ({ctx.status})")

        set_trace_context(run_id=ctx.run_id, definition_id=ctx.definition_id)
        ctx.set_status(RunStatus.RUNNING)
        await self._persist_start(ctx)
        await self._emit(EventType.RUN_STARTED, ctx, input=ctx.form)

        self.logger.info(f"🚀 Starting run {ctx.run_id}: {ctx.definition_id}")
        self.logger.info(f"   Entry node: {ctx.graph.entry}")

        return await self._drive(ctx, self._walk(ctx, [(_RUN, ctx.graph.entry, {})]))

    async def resume_step(self, ctx: FlowContext, node_id: str, output: Any) -> ExecutionResult:
        """Complete a suspended node with its external output and continue the walk."""
        set_trace_context(run_id=ctx.run_id, definition_id=ctx.definition_id, node_id=node_id)
        if ctx.status.is_terminal:
            self.logger.info(f"   Run is {ctx.status}; ignoring completion of '{node_id}'")
            return self._result(ctx)
        if node_id not in ctx.awaiting:
            self.logger.warning(f"⚠ Node '{node_id}' is not awaiting a callback")
            return self._result(ctx)

        step_index = ctx.awaiting.pop(node_id)
        node = ctx.graph.get_node(node_id)
        payload = output if isinstance(output, dict) else {"result": output}

        ctx.cache.store(node_id, payload)
        ctx.state[node.output_key] = payload
        ctx.mark(node_id, NodeStatus.SUCCESS)
        ctx.completion_order.append(node_id)
        if self.store is not None:
            await self.store.update_step(
                ctx.run_id, step_index, status=StepStatus.COMPLETED, output=payload
            )
        self.logger.info(f"   ✓ {node.display_name}: completed externally (step {step_index})")
        await self._emit(EventType.NODE_COMPLETED, ctx, node_id=node_id, step_index=step_index)

        return await self._drive(ctx, self._walk(ctx, [(_SETTLE, node_id, None)]))

    async def fail_step(self, ctx: FlowContext, node_id: str, message: str) -> ExecutionResult:
        """
        Fail a suspended node reported failed by its worker.

        External failures are not isolated by joins: the run fails at once.
        """
        set_trace_context(run_id=ctx.run_id, definition_id=ctx.definition_id, node_id=node_id)
        if ctx.status.is_terminal:
            return self._result(ctx)

        step_index = ctx.awaiting.pop(node_id, None)
        error = NodeError(kind=NodeErrorKind.PROVIDER_ERROR, message=message)
        await self._record_failure(ctx, node_id, error)
        if self.store is not None and step_index is not None:
            await self.store.update_step(
                ctx.run_id, step_index, status=StepStatus.FAILED, error_message=message
            )
        ctx.halted = True
        return await self._drive(ctx, None)

    def request_pause(self, ctx: FlowContext) -> None:
        """
        Request a pause. Nodes already running finish; no new node is
        dispatched. Ready nodes are parked on the frontier for resume().
        """
        ctx.pause_requested = True
        self.logger.info(f"⏸ Pause requested for run {ctx.run_id}")

    async def resume(self, ctx: FlowContext) -> ExecutionResult:
        """Drain the frontier of a paused run."""
        if ctx.status.is_terminal:
            return self._result(ctx)

        ctx.pause_requested = False
        if ctx.status == RunStatus.PAUSED:
            ctx.set_status(RunStatus.RUNNING)
            if self.store is not None:
                await self.store.update_run(ctx.run_id, status=RunStatus.RUNNING)
            await self._emit(EventType.RUN_RESUMED, ctx)

        parked, ctx.frontier = ctx.frontier, []
        self.logger.info(f"▶ Resuming run {ctx.run_id} with {len(parked)} parked node(s)")
        work = asyncio.gather(*(self._branch(ctx, n, i) for n, i in parked))
        return await self._drive(ctx, work)

    async def cancel(self, ctx: FlowContext) -> ExecutionResult:
        """Cancel the run. In-flight external work is not recalled; its callbacks become inert."""
        if ctx.status.is_terminal:
            return self._result(ctx)

        ctx.halted = True
        ctx.frontier.clear()
        self._skip_pending(ctx)
        ctx.set_status(RunStatus.CANCELLED)
        if self.store is not None:
            await self.store.update_run(ctx.run_id, status=RunStatus.CANCELLED)
        self.logger.info(f"⏹ Run {ctx.run_id} cancelled")
        await self._emit(EventType.RUN_CANCELLED, ctx)
        return self._result(ctx)

    # ------------------------------------------------------------------
    # Walk
    # ------------------------------------------------------------------

    async def _drive(self, ctx: FlowContext, work: Any) -> ExecutionResult:
        ctx.active += 1
        try:
            if work is not None:
                await work
        finally:
            ctx.active -= 1
        return await self._finalize(ctx)

    async def _walk(self, ctx: FlowContext, steps: list[tuple[str, str, Any]]) -> None:
        """
        Drive a segment of the walk from a LIFO worklist.

        Linear stretches are handled in this loop; only a fork starts nested
        walks (one per branch), so chain length never grows the call stack.
        """
        while steps:
            action, node_id, payload = steps.pop()
            if action == _FORK:
                self.logger.info(f"   ⑂ Fan-out: executing {len(payload)} branches in parallel")
                await asyncio.gather(*(self._branch(ctx, t, i) for t, i in payload))
                continue

            if action == _RUN:
                settled = await self._dispatch(ctx, node_id, payload)
            elif action == _SETTLE:
                settled = True
            else:
                settled = await self._block(ctx, node_id, failed=action == _FAIL)
            if settled:
                steps.extend(await self._settle(ctx, node_id))

    async def _branch(self, ctx: FlowContext, node_id: str, inputs: dict[str, Any]) -> None:
        """Run one branch; an unexpected exception becomes a settled failure."""
        try:
            await self._walk(ctx, [(_RUN, node_id, inputs)])
        except Exception as e:
            self.logger.error(f"      ✗ Branch {node_id}: exception - {e}")
            if not ctx.node_status[node_id].is_settled:
                error = NodeError(kind=NodeErrorKind.INTERNAL_ERROR, message=str(e))
                await self._record_failure(ctx, node_id, error)
                await self._walk(ctx, [(_SETTLE, node_id, None)])

    async def _dispatch(self, ctx: FlowContext, node_id: str, inputs: dict[str, Any]) -> bool:
        """Execute a node. True when it settled and its edges should be followed."""
        # Cache-before-execute: a node runs at most once per run.
        if not ctx.cache.claim(node_id):
            self.logger.debug(f"   {node_id} already dispatched in this run")
            return False
        if ctx.halted or ctx.status.is_terminal:
            ctx.cache.release(node_id)
            return False
        if ctx.pause_requested or ctx.status == RunStatus.PAUSED:
            ctx.cache.release(node_id)
            ctx.frontier.append((node_id, inputs))
            self.logger.info(f"   ⏸ Parked '{node_id}' until resume")
            return False

        status = await self._execute_node(ctx, node_id, inputs)
        return status != NodeStatus.AWAITING_CALLBACK

    async def _execute_node(
        self, ctx: FlowContext, node_id: str, inputs: dict[str, Any]
    ) -> NodeStatus:
        node = ctx.graph.get_node(node_id)
        impl = self.registry.get(node.kind)
        set_trace_context(node_id=node_id)

        ctx.mark(node_id, NodeStatus.RUNNING)
        ctx.path.append(node_id)
        self.logger.info(f"▶ {node.display_name} ({node.kind})")
        await self._emit(EventType.NODE_STARTED, ctx, node_id=node_id, kind=str(node.kind))

        if impl.is_async(node):
            if ctx.parent_run_id is not None:
                error = NodeError(
                    kind=NodeErrorKind.INVALID_CONFIG,
                    message=f"Async node '{node_id}' cannot run inside a loop body",
                )
                await self._record_failure(ctx, node_id, error)
                return NodeStatus.FAILED
            return await self._suspend(ctx, node, impl, inputs)

        result = await self._execute_with_retry(ctx, node, impl, inputs)
        if not result.success:
            await self._record_failure(ctx, node_id, result.error)
            return NodeStatus.FAILED

        ctx.cache.store(node_id, result.outputs)
        ctx.mark(node_id, NodeStatus.SUCCESS)
        ctx.completion_order.append(node_id)
        self.logger.info(f"   ✓ {node.display_name}: success ({result.duration_ms}ms)")
        await self._emit(
            EventType.NODE_COMPLETED, ctx, node_id=node_id, duration_ms=result.duration_ms
        )
        return NodeStatus.SUCCESS

    async def _suspend(
        self, ctx: FlowContext, node: NodeSpec, impl: NodeProtocol, inputs: dict[str, Any]
    ) -> NodeStatus:
        """Persist the step first, then hand the work to external compute."""
        step_index = ctx.step_counter
        ctx.step_counter += 1

        if self.store is not None:
            await self.store.create_step(
                StepRecord(
                    run_id=ctx.run_id,
                    step_index=step_index,
                    node_id=node.id,
                    kind=str(node.kind),
                    provider_ref=node.config.get("providerRef"),
                    status=StepStatus.PROCESSING,
                )
            )
        ctx.awaiting[node.id] = step_index
        ctx.mark(node.id, NodeStatus.AWAITING_CALLBACK)

        result = await self._execute_with_retry(ctx, node, impl, inputs, step_index=step_index)
        if not result.success:
            ctx.awaiting.pop(node.id, None)
            if self.store is not None:
                await self.store.update_step(
                    ctx.run_id,
                    step_index,
                    status=StepStatus.FAILED,
                    error_message=result.error.message if result.error else None,
                )
            await self._record_failure(ctx, node.id, result.error)
            return NodeStatus.FAILED

        if not result.suspended:
            # The executor finished the work itself.
            ctx.awaiting.pop(node.id, None)
            if self.store is not None:
                await self.store.update_step(
                    ctx.run_id, step_index, status=StepStatus.COMPLETED, output=result.outputs
                )
            ctx.cache.store(node.id, result.outputs)
            ctx.mark(node.id, NodeStatus.SUCCESS)
            ctx.completion_order.append(node.id)
            await self._emit(EventType.NODE_COMPLETED, ctx, node_id=node.id)
            return NodeStatus.SUCCESS

        external_ref = (result.metadata.get("acknowledgement") or {}).get("jobId")
        if self.store is not None and external_ref:
            await self.store.update_step(ctx.run_id, step_index, external_ref=str(external_ref))
        self.logger.info(f"   ⏸ {node.display_name}: awaiting callback for step {step_index}")
        await self._emit(EventType.NODE_SUSPENDED, ctx, node_id=node.id, step_index=step_index)
        return NodeStatus.AWAITING_CALLBACK

    async def _execute_with_retry(
        self,
        ctx: FlowContext,
        node: NodeSpec,
        impl: NodeProtocol,
        inputs: dict[str, Any],
        step_index: int | None = None,
    ) -> NodeResult:
        policy = node.retry_policy or RetryPolicy()
        timeout_ms = node.timeout
        if timeout_ms is None and impl.uses_default_timeout:
            timeout_ms = ctx.graph.settings.default_timeout_ms or self.config.default_timeout_ms

        attempt = 0
        while True:
            result = await self._attempt(ctx, node, impl, inputs, attempt, timeout_ms, step_index)
            if result.success:
                return result

            error = result.error or NodeError(
                kind=NodeErrorKind.EXECUTION_FAILED,
                message="Node reported failure without an error",
            )
            if attempt < policy.max_retries and policy.allows(error):
                attempt += 1
                ctx.retry_counts[node.id] = attempt
                delay = policy.delay_seconds(attempt)
                self.logger.warning(
                    f"   ↻ {node.display_name}: retry {attempt}/{policy.max_retries} "
                    f"in {delay}s ({error.kind})"
                )
                await self._emit(
                    EventType.NODE_RETRY,
                    ctx,
                    node_id=node.id,
                    retry_count=attempt,
                    max_retries=policy.max_retries,
                    error=error.message,
                )
                await asyncio.sleep(delay)
                continue

            if attempt > 0:
                result.error = NodeError(
                    kind=NodeErrorKind.RETRY_EXHAUSTED,
                    message=f"Failed after {attempt + 1} attempts: {error.message}",
                    code=error.code,
                    details={"lastError": error.model_dump(), "attempts": attempt + 1},
                )
            else:
                result.error = error
            return result

    async def _attempt(
        self,
        ctx: FlowContext,
        node: NodeSpec,
        impl: NodeProtocol,
        inputs: dict[str, Any],
        attempt: int,
        timeout_ms: int | None,
        step_index: int | None,
    ) -> NodeResult:
        resolver = ctx.resolver()
        node_ctx = NodeContext(
            node=node,
            run=ctx,
            config=resolver.resolve_all(node.config),
            inputs=inputs,
            attempt=attempt,
            step_index=step_index,
            resolver=resolver,
            run_subgraph=partial(self._run_subgraph, ctx, node),
            emit=partial(self._emit_for_node, ctx, node.id),
        )

        watch = Stopwatch()
        try:
            if timeout_ms:
                result = await asyncio.wait_for(impl.execute(node_ctx), timeout=timeout_ms / 1000)
            else:
                result = await impl.execute(node_ctx)
        except TimeoutError:
            result = NodeResult.fail(
                NodeErrorKind.TIMEOUT, f"Node '{node.id}' exceeded its {timeout_ms}ms deadline"
            )
        except Exception as e:
            self.logger.error(f"   ✗ {node.display_name}: unexpected exception - {e}")
            result = NodeResult.fail(NodeErrorKind.INTERNAL_ERROR, f"Unexpected error: {e}")

        if not result.duration_ms:
            result.duration_ms = watch.elapsed_ms
        return result

    # ------------------------------------------------------------------
    # Settling: edges, joins, failure propagation
    # ------------------------------------------------------------------

    async def _settle(self, ctx: FlowContext, node_id: str) -> list[tuple[str, str, Any]]:
        """
        Deliver a settled node's outcome along its outgoing edges.

        Returns the follow-up steps in worklist order: blocked targets are
        popped first, then the launch (a single node, or one fork step).
        """
        status = ctx.node_status[node_id]
        edges = ctx.graph.outgoing(node_id)
        if not edges:
            if status == NodeStatus.FAILED or self._carries_failure(ctx, node_id):
                self._unabsorbed_failure(ctx, node_id)
            return []

        output = ctx.cache.get(node_id) or {}
        outcome = status
        if status == NodeStatus.SKIPPED and self._carries_failure(ctx, node_id):
            outcome = NodeStatus.FAILED

        launches: list[tuple[str, dict[str, Any]]] = []
        cascades: list[tuple[str, str]] = []
        for edge in edges:
            arrival = outcome
            if outcome == NodeStatus.SUCCESS:
                if edge.should_traverse(output):
                    await self._emit(
                        EventType.EDGE_TRAVERSED,
                        ctx,
                        node_id=node_id,
                        target_node=edge.target,
                        edge_condition=edge.condition or "",
                    )
                else:
                    arrival = NodeStatus.SKIPPED

            decision = self._arrive(ctx, node_id, edge.target, arrival, output)
            if decision is None:
                continue
            action, payload = decision
            if action == _RUN:
                launches.append((edge.target, payload))
            else:
                cascades.append((edge.target, action))

        steps: list[tuple[str, str, Any]] = []
        if len(launches) > 1:
            steps.append((_FORK, node_id, launches))
        elif launches:
            target, inputs = launches[0]
            steps.append((_RUN, target, inputs))
        steps.extend((action, target, None) for target, action in reversed(cascades))
        return steps

    def _arrive(
        self,
        ctx: FlowContext,
        source: str,
        target: str,
        arrival: NodeStatus,
        output: dict[str, Any],
    ) -> tuple[str, Any] | None:
        """Deliver one edge outcome to its target and decide what the target does."""
        join = ctx.graph.joins.get(target)
        if join is not None:
            arrivals = ctx.record_arrival(
                target, source, arrival, output if arrival == NodeStatus.SUCCESS else None
            )
            if len(arrivals) < len(set(join.sources)):
                return None
            return self._evaluate_join(ctx, join, arrivals)

        if arrival == NodeStatus.SUCCESS:
            return _RUN, {source: output}
        if arrival == NodeStatus.SKIPPED:
            return _SKIP, None
        if self._error_handling(ctx) == "continue":
            ctx.degraded = True
            return _RUN, {}
        return _FAIL, None

    def _evaluate_join(
        self, ctx: FlowContext, join: JoinInfo, arrivals: dict[str, Arrival]
    ) -> tuple[str, Any]:
        ordered = sorted(arrivals.values(), key=lambda a: a.sequence)
        succeeded = [a for a in ordered if a.status == NodeStatus.SUCCESS]
        failed = [a for a in ordered if a.status == NodeStatus.FAILED]

        if not succeeded and not failed:
            return _SKIP, None

        if join.strategy == JoinStrategy.ALL:
            accepted = not failed
            chosen = succeeded
        elif join.strategy == JoinStrategy.FIRST:
            accepted = bool(succeeded)
            chosen = succeeded[:1]
        else:
            accepted = bool(succeeded)
            chosen = succeeded

        self.logger.info(
            f"   ⑃ Join '{join.node_id}' ({join.strategy}): "
            f"{len(succeeded)} succeeded, {len(failed)} failed"
        )
        inputs = {a.source: a.output or {} for a in chosen}
        if accepted:
            if failed:
                ctx.degraded = True
            return _RUN, inputs
        if self._error_handling(ctx) == "continue":
            ctx.degraded = True
            return _RUN, inputs

        failed_sources = [a.source for a in failed]
        ctx.node_errors[join.node_id] = NodeError(
            kind=NodeErrorKind.EXECUTION_FAILED,
            message=f"Join '{join.node_id}' ({join.strategy}) rejected: "
            f"branch(es) {failed_sources} failed",
            details={"failedBranches": failed_sources},
        )
        return _FAIL, failed_sources

    async def _block(self, ctx: FlowContext, node_id: str, failed: bool) -> bool:
        """Settle a node that will not run. True when its outcome should be passed on."""
        if ctx.node_status[node_id].is_settled or not ctx.cache.claim(node_id):
            return False

        if failed and ctx.graph.is_join(node_id):
            ctx.mark(node_id, NodeStatus.FAILED)
            ctx.failure_order.append(node_id)
            self.logger.error(f"   ✗ {ctx.node_errors[node_id].message}")
            await self._emit(
                EventType.NODE_FAILED,
                ctx,
                node_id=node_id,
                error=ctx.node_errors[node_id].message,
            )
        else:
            ctx.mark(node_id, NodeStatus.SKIPPED)
            if failed:
                ctx.node_errors.setdefault(
                    node_id,
                    NodeError(
                        kind=NodeErrorKind.EXECUTION_FAILED,
                        message="Skipped because an upstream node failed",
                        details={"upstreamFailure": True},
                    ),
                )
            self.logger.info(f"   ⤼ {node_id}: skipped")
            await self._emit(EventType.NODE_SKIPPED, ctx, node_id=node_id, upstream_failed=failed)
        return True

    @staticmethod
    def _carries_failure(ctx: FlowContext, node_id: str) -> bool:
        error = ctx.node_errors.get(node_id)
        return error is not None and (
            ctx.node_status[node_id] == NodeStatus.FAILED
            or error.details.get("upstreamFailure") is True
        )

    def _unabsorbed_failure(self, ctx: FlowContext, node_id: str) -> None:
        """
        A failure reached a terminal node. Under "continue" the run only
        degrades. Otherwise the run will fail, but branches already under way
        run to the end first.
        """
        if self._error_handling(ctx) == "continue":
            ctx.degraded = True
            return
        if not ctx.doomed:
            self.logger.error(f"✗ Failure reached terminal node '{node_id}'; run will fail")
        ctx.doomed = True

    async def _record_failure(
        self, ctx: FlowContext, node_id: str, error: NodeError | None
    ) -> None:
        error = error or NodeError(kind=NodeErrorKind.INTERNAL_ERROR, message="Unknown error")
        ctx.node_errors[node_id] = error
        ctx.mark(node_id, NodeStatus.FAILED)
        ctx.failure_order.append(node_id)
        self.logger.error(f"   ✗ {node_id}: failed - {error}")
        await self._emit(
            EventType.NODE_FAILED,
            ctx,
            node_id=node_id,
            error=error.message,
            error_kind=str(error.kind),
        )

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _run_subgraph(
        self,
        parent: FlowContext,
        loop_node: NodeSpec,
        body: dict[str, Any],
        extra_form: dict[str, Any],
    ) -> ExecutionResult:
        key = (parent.definition_id, loop_node.id)
        compiled = self._loop_bodies.get(key)
        if compiled is None:
            compiled = self._compiler.compile(
                {"id": f"{parent.definition_id}.{loop_node.id}", "edges": [], **body}
            )
            self._loop_bodies[key] = compiled

        index = extra_form.get("index", 0)
        child = FlowContext(
            graph=compiled,
            run_id=f"{parent.run_id}.{loop_node.id}.{index}",
            user_id=parent.user_id,
            form={**parent.form, **extra_form},
            state=dict(parent.state),
            parent_run_id=parent.run_id,
        )
        result = await self.run(child)
        set_trace_context(run_id=parent.run_id, node_id=loop_node.id)
        return result

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(self, ctx: FlowContext) -> ExecutionResult:
        if ctx.active > 0 or ctx.status.is_terminal:
            return self._result(ctx)

        stopping = ctx.halted or ctx.doomed
        if not stopping and ctx.awaiting:
            return self._result(ctx)

        if not stopping and ctx.frontier:
            if ctx.status != RunStatus.PAUSED:
                ctx.set_status(RunStatus.PAUSED)
                if self._persists(ctx):
                    await self.store.update_run(ctx.run_id, status=RunStatus.PAUSED)
                parked = len(ctx.frontier)
                self.logger.info(f"⏸ Run {ctx.run_id} paused with {parked} parked node(s)")
                await self._emit(EventType.RUN_PAUSED, ctx, frontier=[n for n, _ in ctx.frontier])
            return self._result(ctx)

        ctx.pause_requested = False
        ctx.frontier.clear()
        self._skip_pending(ctx)
        if self._run_failed(ctx):
            if self._error_handling(ctx) == "rollback":
                await self._rollback(ctx)
            ctx.set_status(RunStatus.FAILED)
            node_id, error = ctx.first_error()
            ctx.error_node = node_id
            if self._persists(ctx):
                await self.store.update_run(
                    ctx.run_id,
                    status=RunStatus.FAILED,
                    error_message=error.message if error else None,
                    error_kind=str(error.kind) if error else None,
                    error_node=node_id,
                )
            self.logger.error(f"✗ Run {ctx.run_id} failed at '{node_id}': {error}")
            await self._emit(
                EventType.RUN_FAILED,
                ctx,
                error=error.message if error else None,
                failed_node=node_id,
            )
            return self._result(ctx)

        ctx.artifacts = self._collect_output(ctx)
        ctx.set_status(RunStatus.SUCCEEDED)
        if self._persists(ctx):
            await self.store.update_run(
                ctx.run_id, status=RunStatus.SUCCEEDED, artifacts=ctx.artifacts
            )
        self.logger.info(f"✓ Run {ctx.run_id} complete")
        self.logger.info(f"   Path: {' → '.join(ctx.path)}")
        await self._emit(EventType.RUN_COMPLETED, ctx, output=ctx.artifacts)
        return self._result(ctx)

    def _skip_pending(self, ctx: FlowContext) -> None:
        """Nodes never dispatched by the time the run ends are skipped."""
        for node_id, status in ctx.node_status.items():
            if status == NodeStatus.PENDING:
                ctx.mark(node_id, NodeStatus.SKIPPED)

    def _run_failed(self, ctx: FlowContext) -> bool:
        if ctx.halted or ctx.doomed:
            return True
        if self._error_handling(ctx) != "continue":
            return False
        # Under "continue" a run only fails if no terminal node produced output.
        terminals = [n for n in ctx.graph.nodes if ctx.graph.is_terminal(n)]
        return not any(ctx.node_status[n] == NodeStatus.SUCCESS for n in terminals)

    async def _rollback(self, ctx: FlowContext) -> None:
        """Compensate succeeded nodes in reverse completion order, then restore state."""
        self.logger.info(f"↩ Rolling back {len(ctx.completion_order)} node(s)")
        resolver = ctx.resolver()
        for node_id in reversed(ctx.completion_order):
            node = ctx.graph.get_node(node_id)
            impl = self.registry.get(node.kind)
            node_ctx = NodeContext(
                node=node,
                run=ctx,
                config=resolver.resolve_all(node.config),
                inputs={},
                resolver=resolver,
            )
            try:
                await impl.rollback(node_ctx)
            except Exception as e:
                self.logger.error(f"   ✗ Rollback of '{node_id}' failed: {e}")
        ctx.restore_initial_state()

    @staticmethod
    def _collect_output(ctx: FlowContext) -> dict[str, Any]:
        finished = [
            n
            for n in ctx.graph.nodes
            if ctx.graph.is_terminal(n) and ctx.node_status[n] == NodeStatus.SUCCESS
        ]
        if len(finished) == 1:
            return dict(ctx.cache.get(finished[0]) or {})
        return {n: ctx.cache.get(n) for n in finished}

    def _result(self, ctx: FlowContext) -> ExecutionResult:
        node_id, error = ctx.first_error() if ctx.status == RunStatus.FAILED else (None, None)

        if ctx.status == RunStatus.FAILED:
            quality = "failed"
        elif ctx.retry_counts or ctx.degraded or ctx.failure_order:
            quality = "degraded"
        else:
            quality = "clean"

        return ExecutionResult(
            run_id=ctx.run_id,
            status=ctx.status,
            output=dict(ctx.artifacts or {}) if ctx.status == RunStatus.SUCCEEDED else {},
            error=error.message if error else None,
            error_kind=str(error.kind) if error else None,
            failed_node=node_id,
            path=list(ctx.path),
            node_statuses={n: str(s) for n, s in ctx.node_status.items()},
            node_outputs=ctx.cache.as_dict(),
            awaiting=dict(ctx.awaiting),
            total_retries=sum(ctx.retry_counts.values()),
            retry_details=dict(ctx.retry_counts),
            execution_quality=quality,
        )

    # ------------------------------------------------------------------
    # Persistence and events
    # ------------------------------------------------------------------

    def _error_handling(self, ctx: FlowContext) -> str:
        return ctx.graph.settings.error_handling or self.config.default_error_handling

    def _persists(self, ctx: FlowContext) -> bool:
        return self.store is not None and ctx.parent_run_id is None

    async def _persist_start(self, ctx: FlowContext) -> None:
        if not self._persists(ctx):
            return
        existing = await self.store.get_run(ctx.run_id)
        if existing is None:
            await self.store.create_run(
                RunRecord(
                    run_id=ctx.run_id,
                    definition_id=ctx.definition_id,
                    user_id=ctx.user_id,
                    status=RunStatus.RUNNING,
                    created_at=ctx.created_at,
                )
            )
        else:
            await self.store.update_run(ctx.run_id, status=RunStatus.RUNNING)

    async def _emit(
        self, event_type: EventType, ctx: FlowContext, node_id: str | None = None, **data: Any
    ) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.emit(
            event_type,
            run_id=ctx.run_id,
            node_id=node_id,
            correlation_id=ctx.parent_run_id,
            **data,
        )

    async def _emit_for_node(
        self, ctx: FlowContext, node_id: str, event_type: EventType, **data: Any
    ) -> None:
        await self._emit(event_type, ctx, node_id=node_id, **data)

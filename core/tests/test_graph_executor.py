"""
Tests for GraphExecutor execution paths.

Pipelines are built from the reference node implementations with a
FunctionProviderClient standing in for real AI services.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from atelier.config import EngineConfig
from atelier.errors import ProviderCallError, ToolCallError
from atelier.graph.compiler import GraphCompiler
from atelier.graph.executor import GraphExecutor
from atelier.knowledge.retriever import InMemoryKnowledgeBase
from atelier.nodes.provider import ProviderNode
from atelier.nodes.registry import default_registry
from atelier.providers.client import FunctionProviderClient
from atelier.providers.tools import FunctionToolClient
from atelier.runtime.event_bus import EventBus, EventType
from atelier.schemas.run import RunStatus, StepStatus
from atelier.storage.memory import InMemoryRunStore

# ---- Helpers ----


def provider(node_id, ref=None, **extra):
    config = {"providerRef": ref or node_id}
    config.update(extra.pop("config", {}))
    return {"id": node_id, "kind": "provider", "config": config, **extra}


def edge(source, target, condition=None):
    data = {"source": source, "target": target}
    if condition is not None:
        data["condition"] = condition
    return data


def returning(value, delay=0.0):
    async def fn(inputs):
        if delay:
            await asyncio.sleep(delay)
        return value

    return fn


def failing(status=500, message="boom"):
    async def fn(inputs):
        raise ProviderCallError(message, status=status)

    return fn


class Harness:
    def __init__(self, functions=None, *, retriever=None, config=None, registry=None):
        config = config or EngineConfig()
        self.client = FunctionProviderClient(functions or {})
        self.store = InMemoryRunStore()
        self.bus = EventBus()
        self.registry = registry or default_registry(
            self.client, retriever, max_loop_iterations=config.max_loop_iterations
        )
        self.executor = GraphExecutor(
            self.registry, store=self.store, event_bus=self.bus, config=config
        )
        self.compiler = GraphCompiler(self.registry)

    def compile(self, pipeline):
        return self.compiler.compile(pipeline)

    async def execute(self, pipeline, form=None, **kwargs):
        return await self.executor.execute(self.compile(pipeline), form, **kwargs)


def fork_join(branches, strategy="ALL", error_handling=None):
    nodes = [{"id": "start", "kind": "input"}, {"id": "fork1", "kind": "fork"}]
    edges = [edge("start", "fork1")]
    for name in branches:
        nodes.append(provider(name))
        edges += [edge("fork1", name), edge(name, "join1")]
    nodes += [
        {"id": "join1", "kind": "join", "config": {"strategy": strategy}},
        {"id": "end", "kind": "output"},
    ]
    edges.append(edge("join1", "end"))
    pipeline = {"id": "fan", "nodes": nodes, "edges": edges}
    if error_handling:
        pipeline["settings"] = {"errorHandling": error_handling}
    return pipeline


def chain(*node_specs, settings=None):
    nodes = [{"id": "start", "kind": "input"}, *node_specs, {"id": "end", "kind": "output"}]
    ids = [n["id"] for n in nodes]
    pipeline = {
        "id": "chain",
        "nodes": nodes,
        "edges": [edge(a, b) for a, b in zip(ids, ids[1:], strict=False)],
    }
    if settings:
        pipeline["settings"] = settings
    return pipeline


# ---- Linear execution ----


class TestLinearExecution:
    @pytest.mark.asyncio
    async def test_single_provider_success(self):
        harness = Harness({"upscale": returning({"url": "https://cdn/up.png"})})
        result = await harness.execute(chain(provider("upscale")), {"imageUrl": "https://x/y.jpg"})

        assert result.success is True
        assert result.status == RunStatus.SUCCEEDED
        assert result.path == ["start", "upscale", "end"]
        assert result.output == {"url": "https://cdn/up.png"}
        assert result.is_clean_success

    @pytest.mark.asyncio
    async def test_templates_resolved_against_form_and_outputs(self):
        harness = Harness(
            {
                "segment": returning({"mask": "m.png"}),
                "compose": returning({"url": "final.png"}),
            }
        )
        pipeline = chain(
            provider("segment", config={"inputs": {"image": "{{form.imageUrl}}"}}),
            provider(
                "compose",
                config={"inputs": {"mask": "{{segment.mask}}", "run": "{{system.runId}}"}},
            ),
        )
        result = await harness.execute(pipeline, {"imageUrl": "https://x/y.jpg"}, run_id="run_t")

        assert result.success
        assert harness.client.calls == [
            ("segment", {"image": "https://x/y.jpg"}),
            ("compose", {"mask": "m.png", "run": "run_t"}),
        ]

    @pytest.mark.asyncio
    async def test_pipeline_variables_are_form_defaults(self):
        harness = Harness({"p": returning({"ok": True})})
        pipeline = chain(provider("p", config={"inputs": {"style": "{{form.style}}"}}))
        pipeline["variables"] = {"style": "studio"}

        await harness.execute(pipeline)
        await harness.execute(pipeline, {"style": "street"})

        assert [inputs["style"] for _, inputs in harness.client.calls] == ["studio", "street"]

    @pytest.mark.asyncio
    async def test_missing_required_input_fails_without_retry(self):
        harness = Harness({"p": returning({})})
        pipeline = chain(provider("p"))
        pipeline["nodes"][0]["config"] = {"required": ["imageUrl"]}

        result = await harness.execute(pipeline, {})

        assert result.status == RunStatus.FAILED
        assert result.error_kind == "MISSING_INPUT"
        assert result.failed_node == "start"
        assert harness.client.calls == []

    @pytest.mark.asyncio
    async def test_run_record_persisted(self):
        harness = Harness({"p": returning({"url": "u"})})
        result = await harness.execute(chain(provider("p")), user_id="u_1")

        record = await harness.store.get_run(result.run_id)
        assert record.status == RunStatus.SUCCEEDED
        assert record.user_id == "u_1"
        assert record.artifacts == {"url": "u"}
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_thousand_step_chain(self):
        harness = Harness({"step": returning({"ok": True})})
        steps = [provider(f"s{i}", ref="step") for i in range(1000)]

        result = await harness.execute(chain(*steps))

        assert result.success
        assert len(harness.client.calls) == 1000
        assert result.path[-2:] == ["s999", "end"]

    @pytest.mark.asyncio
    async def test_thousand_step_legacy_pipeline(self):
        harness = Harness({"step": returning({"ok": True})})
        legacy = [{"type": "provider", "providerRef": "step"} for _ in range(1000)]

        result = await harness.execute(legacy)

        assert result.success
        assert len(result.path) == 1002


# ---- At-most-once ----


class TestAtMostOnce:
    @pytest.mark.asyncio
    async def test_node_reached_by_two_paths_executes_once(self):
        harness = Harness(
            {
                "left": returning({"l": 1}),
                "right": returning({"r": 2}),
                "shared": returning({"done": True}),
            }
        )
        pipeline = {
            "id": "diamond",
            "nodes": [
                {"id": "start", "kind": "input"},
                provider("left"),
                provider("right"),
                provider("shared"),
            ],
            "edges": [
                edge("start", "left"),
                edge("start", "right"),
                edge("left", "shared"),
                edge("right", "shared"),
            ],
        }
        result = await harness.execute(pipeline)

        assert result.success
        assert [ref for ref, _ in harness.client.calls].count("shared") == 1
        assert result.path.count("shared") == 1

    @pytest.mark.asyncio
    async def test_concurrent_runs_do_not_share_outputs(self):
        async def echo(inputs):
            await asyncio.sleep(0.01)
            return {"seen": inputs["image"]}

        harness = Harness({"p": echo})
        compiled = harness.compile(
            chain(provider("p", config={"inputs": {"image": "{{form.imageUrl}}"}}))
        )
        results = await asyncio.gather(
            *(harness.executor.execute(compiled, {"imageUrl": f"img{i}"}) for i in range(5))
        )

        assert [r.output["seen"] for r in results] == [f"img{i}" for i in range(5)]


# ---- Fork / join ----


class TestForkJoin:
    @pytest.mark.asyncio
    async def test_fork_branches_run_concurrently(self):
        harness = Harness(
            {"A": returning({"a": 1}, delay=0.2), "B": returning({"b": 2}, delay=0.2)}
        )
        loop = asyncio.get_running_loop()
        started = loop.time()

        result = await harness.execute(fork_join(["A", "B"]))

        assert result.success
        assert loop.time() - started < 0.35
        assert result.output["branches"] == {"A": {"a": 1}, "B": {"b": 2}}
        assert result.output["merged"] == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_end_to_end_branch_failure_fails_run_under_all(self):
        harness = Harness({"A": returning({"result": "A"}), "B": failing()})
        result = await harness.execute(fork_join(["A", "B"], strategy="ALL"))

        assert result.status == RunStatus.FAILED
        assert result.failed_node == "B"
        assert result.error_kind == "PROVIDER_ERROR"
        assert result.node_outputs["A"] == {"result": "A"}
        assert result.node_statuses["A"] == "success"
        assert result.node_statuses["join1"] == "failed"
        assert result.node_statuses["end"] == "skipped"
        assert result.execution_quality == "failed"

        record = await harness.store.get_run(result.run_id)
        assert record.status == RunStatus.FAILED
        assert record.error_node == "B"

    @pytest.mark.asyncio
    async def test_any_succeeds_with_survivors(self):
        harness = Harness(
            {"A": returning({"a": 1}), "B": failing(), "C": returning({"c": 3})}
        )
        result = await harness.execute(fork_join(["A", "B", "C"], strategy="ANY"))

        assert result.success
        assert result.output["branches"] == {"A": {"a": 1}, "C": {"c": 3}}
        assert result.output["strategy"] == "ANY"
        assert result.is_degraded_success

    @pytest.mark.asyncio
    async def test_first_takes_earliest_survivor(self):
        harness = Harness(
            {
                "A": returning({"winner": "A"}, delay=0.1),
                "B": failing(),
                "C": returning({"winner": "C"}, delay=0.01),
            }
        )
        result = await harness.execute(fork_join(["A", "B", "C"], strategy="FIRST"))

        assert result.success
        assert result.output["branches"] == {"C": {"winner": "C"}}
        # Slower branches are discarded, not cancelled.
        assert result.node_statuses["A"] == "success"

    @pytest.mark.asyncio
    async def test_any_with_all_branches_failed(self):
        harness = Harness({"A": failing(message="a down"), "B": failing(message="b down")})
        result = await harness.execute(fork_join(["A", "B"], strategy="ANY"))

        assert result.status == RunStatus.FAILED
        assert result.failed_node in ("A", "B")

    @pytest.mark.asyncio
    async def test_branch_exception_becomes_settled_failure(self):
        async def explode(inputs):
            raise RuntimeError("kaboom")

        harness = Harness({"A": returning({"a": 1}), "B": explode})
        result = await harness.execute(fork_join(["A", "B"], strategy="ANY"))

        assert result.success
        assert result.node_statuses["B"] == "failed"


# ---- Conditions ----


class TestConditions:
    def pipeline(self):
        return {
            "id": "cond",
            "nodes": [
                {"id": "start", "kind": "input"},
                {
                    "id": "has_model",
                    "kind": "condition",
                    "config": {"variable": "form.modelPhoto", "operator": "exists"},
                },
                provider("tryon"),
                provider("generate_model"),
                {"id": "end", "kind": "output"},
            ],
            "edges": [
                edge("start", "has_model"),
                edge("has_model", "tryon", "true"),
                edge("has_model", "generate_model", "false"),
                edge("tryon", "end"),
                edge("generate_model", "end"),
            ],
        }

    @pytest.mark.asyncio
    async def test_true_branch(self):
        harness = Harness(
            {"tryon": returning({"url": "t"}), "generate_model": returning({"url": "g"})}
        )
        result = await harness.execute(self.pipeline(), {"modelPhoto": "m.jpg"})

        assert result.success
        assert result.output == {"url": "t"}
        assert result.node_statuses["generate_model"] == "skipped"
        assert result.is_clean_success

    @pytest.mark.asyncio
    async def test_false_branch(self):
        harness = Harness(
            {"tryon": returning({"url": "t"}), "generate_model": returning({"url": "g"})}
        )
        result = await harness.execute(self.pipeline(), {})

        assert result.output == {"url": "g"}
        assert result.node_statuses["tryon"] == "skipped"
        assert [ref for ref, _ in harness.client.calls] == ["generate_model"]

    @pytest.mark.asyncio
    async def test_skipped_events_emitted(self):
        harness = Harness({"tryon": returning({}), "generate_model": returning({})})
        await harness.execute(self.pipeline(), {"modelPhoto": "m.jpg"})

        skipped = harness.bus.get_history(event_type=EventType.NODE_SKIPPED)
        assert [e.node_id for e in skipped] == ["generate_model"]


# ---- Retry / timeout ----


class TestRetry:
    @pytest.fixture
    def no_sleep(self, monkeypatch):
        sleep = AsyncMock()
        monkeypatch.setattr("atelier.graph.executor.asyncio.sleep", sleep)
        return sleep

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, no_sleep):
        attempts = {"n": 0}

        async def flaky(inputs):
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise ProviderCallError("busy", status=503)
            return {"url": "ok"}

        harness = Harness({"p": flaky})
        pipeline = chain(provider("p", retryPolicy={"maxRetries": 3, "retryDelay": 200}))
        result = await harness.execute(pipeline)

        assert result.success
        assert result.retry_details == {"p": 2}
        assert result.is_degraded_success
        assert [c.args[0] for c in no_sleep.await_args_list] == [0.2, 0.4]
        retries = harness.bus.get_history(event_type=EventType.NODE_RETRY)
        assert len(retries) == 2

    @pytest.mark.asyncio
    async def test_exponential_backoff(self, no_sleep):
        harness = Harness({"p": failing(status=502)})
        pipeline = chain(
            provider(
                "p", retryPolicy={"maxRetries": 3, "retryDelay": 100, "backoff": "exponential"}
            )
        )
        await harness.execute(pipeline)

        assert [c.args[0] for c in no_sleep.await_args_list] == [0.1, 0.2, 0.4]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, no_sleep):
        harness = Harness({"p": failing(status=500)})
        pipeline = chain(provider("p", retryPolicy={"maxRetries": 2, "retryDelay": 10}))
        result = await harness.execute(pipeline)

        assert result.status == RunStatus.FAILED
        assert result.error_kind == "RETRY_EXHAUSTED"
        assert result.failed_node == "p"
        assert len(harness.client.calls) == 3

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, no_sleep):
        harness = Harness({"p": failing(status=400, message="bad image")})
        pipeline = chain(provider("p", retryPolicy={"maxRetries": 3}))
        result = await harness.execute(pipeline)

        assert result.error_kind == "PROVIDER_ERROR"
        assert len(harness.client.calls) == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_kind_outside_allowlist_is_not_retried(self, no_sleep):
        harness = Harness({"p": failing(status=500)})
        pipeline = chain(
            provider("p", retryPolicy={"maxRetries": 3, "retryableErrors": ["TIMEOUT"]})
        )
        result = await harness.execute(pipeline)

        assert result.error_kind == "PROVIDER_ERROR"
        assert len(harness.client.calls) == 1


class TestTimeout:
    @pytest.mark.asyncio
    async def test_node_deadline_is_timeout(self):
        harness = Harness({"slow": returning({"late": True}, delay=1.0)})
        result = await harness.execute(chain(provider("slow", timeout=50)))

        assert result.status == RunStatus.FAILED
        assert result.error_kind == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self):
        calls = {"n": 0}

        async def slow_then_fast(inputs):
            calls["n"] += 1
            if calls["n"] == 1:
                await asyncio.sleep(1.0)
            return {"ok": True}

        harness = Harness({"p": slow_then_fast})
        pipeline = chain(provider("p", timeout=50, retryPolicy={"maxRetries": 1, "retryDelay": 0}))
        result = await harness.execute(pipeline)

        assert result.success
        assert result.retry_details == {"p": 1}

    @pytest.mark.asyncio
    async def test_engine_default_timeout(self):
        harness = Harness(
            {"slow": returning({}, delay=1.0)}, config=EngineConfig(default_timeout_ms=50)
        )
        result = await harness.execute(chain(provider("slow")))

        assert result.error_kind == "TIMEOUT"


# ---- Error handling policies ----


class RecordingProviderNode(ProviderNode):
    def __init__(self, client):
        super().__init__(client)
        self.rolled_back = []

    async def rollback(self, ctx):
        self.rolled_back.append(ctx.node_id)


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_stop_halts_before_downstream(self):
        harness = Harness({"a": failing(status=400), "b": returning({})})
        result = await harness.execute(chain(provider("a"), provider("b")))

        assert result.status == RunStatus.FAILED
        assert result.node_statuses["b"] == "skipped"
        assert [ref for ref, _ in harness.client.calls] == ["a"]

    @pytest.mark.asyncio
    async def test_stop_lets_launched_branches_finish(self):
        harness = Harness(
            {
                "a": failing(status=400),
                "b": returning({"b": 1}, delay=0.05),
                "b2": returning({"b2": 2}),
            }
        )
        pipeline = {
            "id": "split",
            "nodes": [
                {"id": "start", "kind": "input"},
                {"id": "fork1", "kind": "fork"},
                provider("a"),
                provider("b"),
                provider("b2"),
            ],
            "edges": [
                edge("start", "fork1"),
                edge("fork1", "a"),
                edge("fork1", "b"),
                edge("b", "b2"),
            ],
        }
        result = await harness.execute(pipeline)

        assert result.status == RunStatus.FAILED
        assert result.failed_node == "a"
        assert result.node_statuses["b"] == "success"
        assert result.node_statuses["b2"] == "success"
        assert "pending" not in result.node_statuses.values()
        record = await harness.store.get_run(result.run_id)
        assert record.status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_continue_runs_successors_and_degrades(self):
        harness = Harness({"a": failing(status=400), "b": returning({"url": "b"})})
        pipeline = chain(provider("a"), provider("b"), settings={"errorHandling": "continue"})
        result = await harness.execute(pipeline)

        assert result.status == RunStatus.SUCCEEDED
        assert result.execution_quality == "degraded"
        assert result.output == {"url": "b"}
        assert [ref for ref, _ in harness.client.calls] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_continue_past_failed_all_join(self):
        harness = Harness({"A": returning({"a": 1}), "B": failing()})
        result = await harness.execute(fork_join(["A", "B"], error_handling="continue"))

        assert result.success
        assert result.output["branches"] == {"A": {"a": 1}}
        assert result.is_degraded_success

    @pytest.mark.asyncio
    async def test_rollback_compensates_in_reverse_order(self):
        client = FunctionProviderClient(
            {"a": returning({"a": 1}), "b": returning({"b": 2}), "c": failing(status=400)}
        )
        registry = default_registry(client)
        recording = RecordingProviderNode(client)
        registry.register("provider", recording)
        harness = Harness(registry=registry)

        pipeline = chain(
            provider("a"), provider("b"), provider("c"), settings={"errorHandling": "rollback"}
        )
        ctx = harness.executor.create_context(harness.compile(pipeline), {})
        ctx.state["seed"] = "kept"
        ctx.initial_state = {"seed": "kept"}
        result = await harness.executor.run(ctx)

        assert result.status == RunStatus.FAILED
        assert recording.rolled_back == ["b", "a"]
        assert ctx.state == {"seed": "kept"}
        # Cache survives for audit.
        assert result.node_outputs["a"] == {"a": 1}


# ---- Async suspension ----


class TestAsyncSuspension:
    def pipeline(self):
        return chain(
            provider("segment"),
            provider("tryon", config={"mode": "async", "inputs": {"mask": "{{segment.mask}}"}}),
            provider("upscale", config={"inputs": {"image": "{{tryon.url}}"}}),
        )

    @pytest.mark.asyncio
    async def test_suspends_and_persists_step(self):
        harness = Harness(
            {"segment": returning({"mask": "m.png"}), "upscale": returning({"url": "hd"})}
        )
        result = await harness.execute(self.pipeline())

        assert result.status == RunStatus.RUNNING
        assert result.is_suspended
        assert result.awaiting == {"tryon": 0}
        assert result.node_statuses["tryon"] == "awaiting_callback"

        step = await harness.store.get_step(result.run_id, 0)
        assert step.status == StepStatus.PROCESSING
        assert step.node_id == "tryon"
        assert step.provider_ref == "tryon"
        assert step.external_ref == f"{result.run_id}:0"

        job = harness.client.submitted[0]
        assert job["callback"] == {"taskId": result.run_id, "stepIndex": 0}
        assert job["input"] == {"mask": "m.png"}

    @pytest.mark.asyncio
    async def test_resume_step_continues_walk(self):
        harness = Harness(
            {"segment": returning({"mask": "m.png"}), "upscale": returning({"url": "hd"})}
        )
        ctx = harness.executor.create_context(harness.compile(self.pipeline()), {})
        await harness.executor.run(ctx)

        result = await harness.executor.resume_step(ctx, "tryon", {"url": "tryon.png"})

        assert result.success
        assert result.output == {"url": "hd"}
        assert harness.client.calls[-1] == ("upscale", {"image": "tryon.png"})
        step = await harness.store.get_step(ctx.run_id, 0)
        assert step.status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_second_resume_is_inert(self):
        harness = Harness(
            {"segment": returning({"mask": "m"}), "upscale": returning({"url": "hd"})}
        )
        ctx = harness.executor.create_context(harness.compile(self.pipeline()), {})
        await harness.executor.run(ctx)

        await harness.executor.resume_step(ctx, "tryon", {"url": "1"})
        again = await harness.executor.resume_step(ctx, "tryon", {"url": "2"})

        assert again.success
        assert [ref for ref, _ in harness.client.calls].count("upscale") == 1

    @pytest.mark.asyncio
    async def test_fail_step_fails_run(self):
        harness = Harness({"segment": returning({"mask": "m"})})
        ctx = harness.executor.create_context(harness.compile(self.pipeline()), {})
        await harness.executor.run(ctx)

        result = await harness.executor.fail_step(ctx, "tryon", "GPU out of memory")

        assert result.status == RunStatus.FAILED
        assert result.failed_node == "tryon"
        assert result.error == "GPU out of memory"

    @pytest.mark.asyncio
    async def test_suspended_step_events(self):
        harness = Harness({"segment": returning({"mask": "m"})})
        result = await harness.execute(self.pipeline())

        suspended = harness.bus.get_history(event_type=EventType.NODE_SUSPENDED)
        assert [(e.node_id, e.data["step_index"]) for e in suspended] == [("tryon", 0)]
        assert result.run_id == suspended[0].run_id


# ---- Run controls ----


class TestRunControls:
    @pytest.mark.asyncio
    async def test_pause_parks_frontier_and_resume_drains_it(self):
        holder = {}

        async def pause_after(inputs):
            harness.executor.request_pause(holder["ctx"])
            return {"a": 1}

        harness = Harness({"a": pause_after, "b": returning({"b": 2})})
        compiled = harness.compile(chain(provider("a"), provider("b")))
        ctx = harness.executor.create_context(compiled, {})
        holder["ctx"] = ctx

        paused = await harness.executor.run(ctx)
        assert paused.status == RunStatus.PAUSED
        assert [node_id for node_id, _ in ctx.frontier] == ["b"]
        assert (await harness.store.get_run(ctx.run_id)).status == RunStatus.PAUSED

        resumed = await harness.executor.resume(ctx)
        assert resumed.success
        assert resumed.output == {"b": 2}
        assert resumed.path == ["start", "a", "b", "end"]

    @pytest.mark.asyncio
    async def test_cancel_makes_later_completion_inert(self):
        harness = Harness({"segment": returning({"mask": "m"}), "upscale": returning({})})
        pipeline = chain(
            provider("segment"),
            provider("tryon", config={"mode": "async"}),
            provider("upscale"),
        )
        ctx = harness.executor.create_context(harness.compile(pipeline), {})
        await harness.executor.run(ctx)

        cancelled = await harness.executor.cancel(ctx)
        late = await harness.executor.resume_step(ctx, "tryon", {"url": "x"})

        assert cancelled.status == RunStatus.CANCELLED
        assert late.status == RunStatus.CANCELLED
        assert "upscale" not in [ref for ref, _ in harness.client.calls]
        assert (await harness.store.get_run(ctx.run_id)).status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_skips_undispatched_nodes(self):
        harness = Harness({"segment": returning({"mask": "m"})})
        pipeline = chain(
            provider("segment"),
            provider("tryon", config={"mode": "async"}),
            provider("upscale"),
        )
        ctx = harness.executor.create_context(harness.compile(pipeline), {})
        await harness.executor.run(ctx)

        cancelled = await harness.executor.cancel(ctx)

        assert cancelled.node_statuses["upscale"] == "skipped"
        assert cancelled.node_statuses["end"] == "skipped"
        assert cancelled.node_statuses["tryon"] == "awaiting_callback"

    @pytest.mark.asyncio
    async def test_run_cannot_start_twice(self):
        harness = Harness({"p": returning({})})
        ctx = harness.executor.create_context(harness.compile(chain(provider("p"))), {})
        await harness.executor.run(ctx)

        with pytest.raises(ValueError):
            await harness.executor.run(ctx)


# ---- Loops and knowledge ----


class TestLoop:
    def pipeline(self, **loop_config):
        body = {
            "nodes": [provider("tag", config={"inputs": {"garment": "{{form.item}}"}})],
            "edges": [],
        }
        config = {"body": body, "items": "{{form.garments}}", **loop_config}
        return chain({"id": "each", "kind": "loop", "config": config})

    @pytest.mark.asyncio
    async def test_runs_body_per_item(self):
        async def tag(inputs):
            return {"tag": inputs["garment"].upper()}

        harness = Harness({"tag": tag})
        result = await harness.execute(self.pipeline(), {"garments": ["shirt", "dress"]})

        assert result.success
        assert result.output == {"iterations": [{"tag": "SHIRT"}, {"tag": "DRESS"}], "count": 2}

    @pytest.mark.asyncio
    async def test_iterations_bounded(self):
        harness = Harness(
            {"tag": returning({"ok": True})}, config=EngineConfig(max_loop_iterations=3)
        )
        result = await harness.execute(self.pipeline(), {"garments": list("abcdefg")})

        assert result.output["count"] == 3

    @pytest.mark.asyncio
    async def test_failed_iteration_fails_loop(self):
        harness = Harness({"tag": failing(status=400, message="unreadable")})
        result = await harness.execute(self.pipeline(), {"garments": ["shirt"]})

        assert result.status == RunStatus.FAILED
        assert result.failed_node == "each"
        assert "unreadable" in result.error

    @pytest.mark.asyncio
    async def test_iteration_events(self):
        async def tag(inputs):
            return {"tag": inputs["garment"]}

        harness = Harness({"tag": tag})
        result = await harness.execute(self.pipeline(), {"garments": ["shirt", "dress"]})

        events = list(
            reversed(
                harness.bus.get_history(event_type=EventType.LOOP_ITERATION, run_id=result.run_id)
            )
        )
        assert [(e.node_id, e.data["iteration"]) for e in events] == [("each", 0), ("each", 1)]
        assert [e.data["result"] for e in events] == [{"tag": "shirt"}, {"tag": "dress"}]
        assert all(e.data["success"] for e in events)


class TestKnowledgeRetrieval:
    @pytest.mark.asyncio
    async def test_results_flow_into_provider_inputs(self):
        kb = InMemoryKnowledgeBase()
        kb.add_document("d1", "Silk dresses photograph best in soft window light", title="Silk")
        kb.add_document("d2", "Denim needs hard light for texture", title="Denim")

        harness = Harness({"compose": returning({"ok": True})}, retriever=kb)
        pipeline = chain(
            {
                "id": "kb",
                "kind": "kb_retrieve",
                "config": {"query": "{{form.garment}} dresses", "topK": 1},
            },
            provider("compose", config={"inputs": {"hint": "{{kb_results.results.0.text}}"}}),
        )
        result = await harness.execute(pipeline, {"garment": "silk"})

        assert result.success
        assert harness.client.calls == [
            ("compose", {"hint": "Silk dresses photograph best in soft window light"})
        ]
        assert result.node_outputs["kb"]["metadata"]["count"] == 1


class TestTransform:
    @pytest.mark.asyncio
    async def test_reshapes_upstream_outputs(self):
        harness = Harness({"tryon": returning({"url": "https://cdn/t.png", "seed": 7})})
        pipeline = chain(
            provider("tryon"),
            {
                "id": "listing",
                "kind": "transform",
                "config": {
                    "type": "listing",
                    "transform": {"image": "{{tryon.url}}", "sku": "{{form.sku}}"},
                },
            },
        )
        result = await harness.execute(pipeline, {"sku": "D-104"})

        assert result.success
        assert result.output["processed_data"] == {"image": "https://cdn/t.png", "sku": "D-104"}
        assert result.output["transformation_applied"] == "listing"
        assert "processed_at" in result.output

    @pytest.mark.asyncio
    async def test_later_nodes_template_against_transform_output(self):
        harness = Harness(
            {"tryon": returning({"url": "t.png"}), "upscale": returning({"url": "t@2x.png"})}
        )
        pipeline = chain(
            provider("tryon"),
            {"id": "shape", "kind": "transform", "config": {"transform": {"src": "{{tryon.url}}"}}},
            provider("upscale", config={"inputs": {"image": "{{shape.processed_data.src}}"}}),
        )
        result = await harness.execute(pipeline)

        assert result.success
        assert harness.client.calls[-1] == ("upscale", {"image": "t.png"})


class TestToolCall:
    def harness(self, tools, schemas=None):
        tool_client = FunctionToolClient(tools, schemas)
        provider_client = FunctionProviderClient({"compose": returning({"ok": True})})
        registry = default_registry(provider_client, tool_client=tool_client)
        return Harness(registry=registry), tool_client, provider_client

    @pytest.mark.asyncio
    async def test_result_flows_into_later_nodes(self):
        async def size_chart(parameters):
            return {"sizes": ["S", "M"], "sku": parameters["sku"]}

        harness, tools, providers = self.harness({"size_chart": size_chart})
        pipeline = chain(
            {
                "id": "sizes",
                "kind": "mcp_tool_call",
                "config": {
                    "endpointRef": "catalog",
                    "toolName": "size_chart",
                    "parameters": {"sku": "{{form.sku}}"},
                },
            },
            provider("compose", config={"inputs": {"sizes": "{{size_chart.sizes}}"}}),
        )
        result = await harness.execute(pipeline, {"sku": "D-104"})

        assert result.success
        assert tools.calls == [("catalog", "size_chart", {"sku": "D-104"})]
        assert result.node_outputs["sizes"] == {"size_chart": {"sizes": ["S", "M"], "sku": "D-104"}}
        assert providers.calls == [("compose", {"sizes": ["S", "M"]})]

    @pytest.mark.asyncio
    async def test_tool_error_is_retried(self, monkeypatch):
        monkeypatch.setattr("atelier.graph.executor.asyncio.sleep", AsyncMock())
        attempts = []

        async def flaky(parameters):
            attempts.append(parameters)
            if len(attempts) == 1:
                raise ToolCallError("busy", status=503)
            return "ok"

        harness, _, _ = self.harness({"lookup": flaky})
        pipeline = chain(
            {
                "id": "lookup",
                "kind": "tool_call",
                "config": {"endpointRef": "catalog", "toolName": "lookup"},
                "retryPolicy": {"maxRetries": 2},
            }
        )
        result = await harness.execute(pipeline)

        assert result.success
        assert len(attempts) == 2
        assert result.retry_details == {"lookup": 1}


# ---- Events ----


class TestEvents:
    @pytest.mark.asyncio
    async def test_lifecycle_events(self):
        harness = Harness({"p": returning({})})
        result = await harness.execute(chain(provider("p")))

        types = [e.type for e in reversed(harness.bus.get_history(run_id=result.run_id))]
        assert types[0] == EventType.RUN_STARTED
        assert types[-1] == EventType.RUN_COMPLETED
        assert types.count(EventType.NODE_COMPLETED) == 3

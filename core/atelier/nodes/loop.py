"""
Loop node - bounded per-iteration execution of a sub-graph.

Config:
    body           {"nodes": [...], "edges": [...]} run once per iteration
    items          list (or a placeholder resolving to one) to iterate over
    iterations     fixed count, used when ``items`` is absent
    itemKey        form key the current item is exposed under (default "item")
    maxIterations  upper bound, itself capped by the engine-wide limit

Each iteration is a child run with its own output cache; its form is the
parent form plus ``{itemKey: item, "index": i}``. A loop_iteration event is
published after every iteration. Async nodes are not allowed in a body
because a child run cannot be suspended.
"""

import logging
from typing import Any

from atelier.errors import NodeErrorKind
from atelier.graph.node import NodeContext, NodeKind, NodeProtocol, NodeResult, parse_node_kind
from atelier.runtime.event_bus import EventType

logger = logging.getLogger(__name__)


def _body_async_nodes(body: dict[str, Any]) -> list[str]:
    found = []
    for node in body.get("nodes") or []:
        if not isinstance(node, dict):
            continue
        config = node.get("config") or node.get("data") or {}
        mode = str(config.get("mode") or config.get("invokeType") or "sync").lower()
        try:
            kind = parse_node_kind(node.get("kind") or node.get("type"))
        except ValueError:
            continue
        if kind == NodeKind.PROVIDER and mode == "async":
            found.append(str(node.get("id")))
    return found


class LoopNode(NodeProtocol):
    kind = NodeKind.LOOP
    uses_default_timeout = False

    def __init__(self, max_iterations: int = 100):
        self.max_iterations = max_iterations

    def config_errors(self, config: dict[str, Any]) -> list[str]:
        errors = []
        body = config.get("body")
        if not isinstance(body, dict) or not isinstance(body.get("nodes"), list):
            errors.append("Loop node requires a 'body' with a nodes list")
        else:
            async_nodes = _body_async_nodes(body)
            if async_nodes:
                errors.append(f"Async nodes are not allowed in a loop body: {async_nodes}")

        items = config.get("items")
        iterations = config.get("iterations")
        if items is None and iterations is None:
            errors.append("Loop node requires 'items' or 'iterations'")
        if items is not None and not isinstance(items, (list, str)):
            errors.append("'items' must be a list or a placeholder")
        if iterations is not None and (
            isinstance(iterations, bool) or not isinstance(iterations, int) or iterations < 0
        ):
            errors.append("'iterations' must be a non-negative integer")

        limit = config.get("maxIterations")
        valid = isinstance(limit, int) and not isinstance(limit, bool) and limit >= 1
        if limit is not None and not valid:
            errors.append("'maxIterations' must be a positive integer")
        return errors

    async def execute(self, ctx: NodeContext) -> NodeResult:
        if ctx.run_subgraph is None:
            return NodeResult.fail(
                NodeErrorKind.INTERNAL_ERROR, "Loop executed without a sub-graph runner"
            )

        items = ctx.config.get("items")
        if items is None:
            items = list(range(int(ctx.config.get("iterations", 0))))
        if not isinstance(items, list):
            return NodeResult.fail(
                NodeErrorKind.MISSING_INPUT, f"Loop items did not resolve to a list: {items!r}"
            )

        requested = int(ctx.config.get("maxIterations") or self.max_iterations)
        limit = min(requested, self.max_iterations)
        truncated = len(items) > limit
        if truncated:
            logger.warning(
                f"⚠ Loop '{ctx.node_id}' has {len(items)} items, running the first {limit}"
            )
            items = items[:limit]

        item_key = ctx.config.get("itemKey") or "item"
        body = ctx.node.config["body"]
        results: list[dict[str, Any]] = []

        for index, item in enumerate(items):
            child = await ctx.run_subgraph(body, {item_key: item, "index": index})
            if ctx.emit is not None:
                await ctx.emit(
                    EventType.LOOP_ITERATION,
                    iteration=index,
                    success=child.success,
                    result=child.output,
                )
            if not child.success:
                return NodeResult.fail(
                    child.error_kind or NodeErrorKind.EXECUTION_FAILED,
                    f"Iteration {index} failed: {child.error}",
                    details={"iteration": index, "failedNode": child.failed_node},
                )
            results.append(child.output)

        output = {"iterations": results, "count": len(results)}
        ctx.write_state(ctx.node.output_key, output)
        return NodeResult.ok(output, metadata={"truncated": truncated})

"""
Structural nodes - pipeline boundaries and explicit fan-out/fan-in.

Branch scheduling and join aggregation are done by the engine. These
implementations only shape what the node publishes.
"""

from typing import Any

from atelier.errors import NodeErrorKind
from atelier.graph.node import NodeContext, NodeKind, NodeProtocol, NodeResult


def merge_inputs(inputs: dict[str, Any]) -> dict[str, Any]:
    """Shallow-merge upstream outputs in arrival order; later keys win."""
    merged: dict[str, Any] = {}
    for output in inputs.values():
        if isinstance(output, dict):
            merged.update(output)
    return merged


class InputNode(NodeProtocol):
    """Exposes the caller's form, optionally narrowed to ``fields``."""

    kind = NodeKind.INPUT

    def config_errors(self, config: dict[str, Any]) -> list[str]:
        errors = []
        for key in ("fields", "required"):
            value = config.get(key)
            if value is not None and not isinstance(value, list):
                errors.append(f"'{key}' must be a list of form field names")
        return errors

    async def execute(self, ctx: NodeContext) -> NodeResult:
        form = ctx.run.form
        missing = [name for name in ctx.config.get("required") or [] if form.get(name) is None]
        if missing:
            return NodeResult.fail(
                NodeErrorKind.MISSING_INPUT,
                f"Missing required input(s): {', '.join(missing)}",
                details={"missing": missing},
            )

        fields = ctx.config.get("fields")
        if fields:
            return NodeResult.ok({name: form.get(name) for name in fields})
        return NodeResult.ok(dict(form))


class OutputNode(NodeProtocol):
    """
    Publishes the run's artifacts.

    With an ``outputs`` template tree, the resolved tree is the artifact set.
    Without one, a single upstream output is passed through and several are
    keyed by their source node id.
    """

    kind = NodeKind.OUTPUT

    def config_errors(self, config: dict[str, Any]) -> list[str]:
        outputs = config.get("outputs")
        if outputs is not None and not isinstance(outputs, dict):
            return ["'outputs' must be an object mapping artifact names to values or templates"]
        return []

    async def execute(self, ctx: NodeContext) -> NodeResult:
        if "outputs" in ctx.config:
            return NodeResult.ok(dict(ctx.config["outputs"]))
        if len(ctx.inputs) == 1:
            (only,) = ctx.inputs.values()
            return NodeResult.ok(dict(only) if isinstance(only, dict) else {"result": only})
        return NodeResult.ok(dict(ctx.inputs))


class ForkNode(NodeProtocol):
    """Passes its input through; the engine fans out along its edges."""

    kind = NodeKind.FORK

    async def execute(self, ctx: NodeContext) -> NodeResult:
        return NodeResult.ok(merge_inputs(ctx.inputs))


class JoinNode(NodeProtocol):
    """
    Publishes the branches the engine accepted for this join.

    ``inputs`` holds only the surviving branches, in arrival order. For
    FIRST that is the single earliest success.
    """

    kind = NodeKind.JOIN

    def config_errors(self, config: dict[str, Any]) -> list[str]:
        strategy = config.get("strategy") or config.get("joinStrategy")
        if strategy is not None and str(strategy).upper() not in ("ALL", "ANY", "FIRST"):
            return [f"Unknown join strategy '{strategy}' (expected ALL, ANY or FIRST)"]
        return []

    async def execute(self, ctx: NodeContext) -> NodeResult:
        join = ctx.run.graph.joins.get(ctx.node_id)
        strategy = str(join.strategy) if join else "ALL"
        return NodeResult.ok(
            {
                "merged": merge_inputs(ctx.inputs),
                "branches": dict(ctx.inputs),
                "strategy": strategy,
            }
        )

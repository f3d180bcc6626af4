"""
Transform node - reshapes upstream outputs without calling out.

Config:
    transform   template tree (object, list or string) built from upstream
                outputs, e.g. ``{"image": "{{tryon.url}}", "sku": "{{form.sku}}"}``
    type        label recorded as ``transformation_applied`` (default "default")
    outputKey   state key for the result (default: node id)

Without ``transform`` the merged upstream outputs pass through unchanged.
"""

from datetime import datetime
from typing import Any

from atelier.graph.node import NodeContext, NodeKind, NodeProtocol, NodeResult
from atelier.nodes.structural import merge_inputs


class TransformNode(NodeProtocol):
    kind = NodeKind.TRANSFORM

    def config_errors(self, config: dict[str, Any]) -> list[str]:
        errors = []
        template = config.get("transform")
        if template is not None and not isinstance(template, (dict, list, str)):
            errors.append("'transform' must be an object, a list or a string")
        label = config.get("type")
        if label is not None and (not isinstance(label, str) or not label):
            errors.append("'type' must be a non-empty string")
        return errors

    async def execute(self, ctx: NodeContext) -> NodeResult:
        template = ctx.config.get("transform")
        processed = merge_inputs(ctx.inputs) if template is None else template

        output = {
            "processed_data": processed,
            "transformation_applied": ctx.config.get("type") or "default",
            "processed_at": datetime.now().isoformat(),
        }
        ctx.write_state(ctx.node.output_key, output)
        return NodeResult.ok(output)

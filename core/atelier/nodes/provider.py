"""
Provider node - one call to an external AI service.

Config:
    providerRef   required, which provider to call
    providerType  optional label (legacy ``type``)
    mode          "sync" (default) or "async"
    inputs        template tree sent to the provider; defaults to the form
                  merged with upstream outputs
    outputKey     state key for the output (default: node id)

Async nodes hand the job off with a ``{taskId, stepIndex}`` callback
descriptor and return ``suspended``. The engine then waits for the signed
completion callback instead of following edges.
"""

import logging
from typing import TYPE_CHECKING, Any

from atelier.errors import NodeErrorKind, ProviderCallError
from atelier.graph.node import NodeContext, NodeKind, NodeProtocol, NodeResult, NodeSpec
from atelier.nodes.structural import merge_inputs
from atelier.providers.client import is_retryable_status

if TYPE_CHECKING:
    from atelier.providers.client import ProviderClient

logger = logging.getLogger(__name__)

PROVIDER_MODES = ("sync", "async")


def provider_mode(config: dict[str, Any]) -> str:
    mode = config.get("mode") or config.get("invokeType") or "sync"
    return str(mode).lower()


class ProviderNode(NodeProtocol):
    kind = NodeKind.PROVIDER

    def __init__(self, client: "ProviderClient | None" = None):
        self.client = client

    def config_errors(self, config: dict[str, Any]) -> list[str]:
        errors = []
        ref = config.get("providerRef")
        if not isinstance(ref, str) or not ref.strip():
            errors.append("Provider node requires a 'providerRef'")
        if provider_mode(config) not in PROVIDER_MODES:
            errors.append(f"Unknown provider mode '{config.get('mode')}' (expected sync or async)")
        inputs = config.get("inputs")
        if inputs is not None and not isinstance(inputs, dict):
            errors.append("'inputs' must be an object")
        return errors

    def is_async(self, node: NodeSpec) -> bool:
        return provider_mode(node.config) == "async"

    async def execute(self, ctx: NodeContext) -> NodeResult:
        if self.client is None:
            return NodeResult.fail(
                NodeErrorKind.INVALID_CONFIG, "No provider client configured for provider nodes"
            )

        provider_ref = ctx.config["providerRef"]
        if "inputs" in ctx.config:
            inputs = dict(ctx.config["inputs"])
        else:
            inputs = {**ctx.run.form, **merge_inputs(ctx.inputs)}

        try:
            if self.is_async(ctx.node):
                ack = await self.client.submit(
                    provider_ref,
                    inputs,
                    callback={"taskId": ctx.run.run_id, "stepIndex": ctx.step_index},
                    timeout_ms=ctx.node.timeout,
                )
                logger.info(f"      ⏸ Submitted to '{provider_ref}' as step {ctx.step_index}")
                return NodeResult(
                    success=True,
                    suspended=True,
                    metadata={"providerRef": provider_ref, "acknowledgement": ack},
                )

            output = await self.client.invoke(
                provider_ref,
                inputs,
                run_id=ctx.run.run_id,
                node_id=ctx.node_id,
                timeout_ms=ctx.node.timeout,
            )
        except ProviderCallError as e:
            return self._classify(e)

        ctx.write_state(ctx.node.output_key, output)
        return NodeResult.ok(output, metadata={"providerRef": provider_ref})

    @staticmethod
    def _classify(error: ProviderCallError) -> NodeResult:
        if error.timeout:
            return NodeResult.fail(NodeErrorKind.TIMEOUT, str(error))
        details: dict[str, Any] = dict(error.details)
        if error.status is not None:
            details["status"] = error.status
            details["retryable"] = is_retryable_status(error.status)
        return NodeResult.fail(
            NodeErrorKind.PROVIDER_ERROR,
            str(error),
            code=f"HTTP_{error.status}" if error.status is not None else None,
            details=details,
        )

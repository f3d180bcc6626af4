"""
Tool call node - one call to a tool server.

Config:
    endpointRef     tool server from the ``tools`` configuration (``mcpEndpointRef`` too)
    toolName        tool to run
    parameters      object of parameters; placeholders are resolved first
    outputKey       state key for the result (default: toolName)
    validateSchema  check required parameters against the server's discovery
                    entry before calling (default true)

The tool's result is written to run state under ``outputKey`` and published
as ``{outputKey: result}``.
"""

import logging
from typing import TYPE_CHECKING, Any

from atelier.errors import NodeErrorKind, ToolCallError, UnknownToolEndpointError
from atelier.graph.node import NodeContext, NodeKind, NodeProtocol, NodeResult
from atelier.providers.client import is_retryable_status

if TYPE_CHECKING:
    from atelier.providers.tools import ToolClient

logger = logging.getLogger(__name__)


def _endpoint_ref(config: dict[str, Any]) -> Any:
    return config.get("endpointRef", config.get("mcpEndpointRef"))


class ToolCallNode(NodeProtocol):
    kind = NodeKind.TOOL_CALL

    def __init__(self, client: "ToolClient | None" = None):
        self.client = client

    def config_errors(self, config: dict[str, Any]) -> list[str]:
        errors = []
        tool_name = config.get("toolName")
        if not isinstance(tool_name, str) or not tool_name:
            errors.append("Tool call node requires a 'toolName'")
        ref = _endpoint_ref(config)
        if not isinstance(ref, str) or not ref:
            errors.append("Tool call node requires an 'endpointRef'")
        parameters = config.get("parameters")
        if parameters is not None and not isinstance(parameters, dict):
            errors.append("'parameters' must be an object")
        return errors

    async def execute(self, ctx: NodeContext) -> NodeResult:
        if self.client is None:
            return NodeResult.fail(NodeErrorKind.INVALID_CONFIG, "No tool client configured")

        tool_name = ctx.config["toolName"]
        endpoint_ref = _endpoint_ref(ctx.config)
        parameters = ctx.config.get("parameters") or {}

        try:
            if ctx.config.get("validateSchema", True):
                missing = await self._missing_parameters(endpoint_ref, tool_name, parameters)
                if missing:
                    return NodeResult.fail(
                        NodeErrorKind.MISSING_INPUT,
                        f"Missing required parameter(s) for tool '{tool_name}': {missing}",
                        code="MISSING_REQUIRED_PARAM",
                    )
            result = await self.client.call(
                endpoint_ref, tool_name, parameters, timeout_ms=ctx.node.timeout
            )
        except UnknownToolEndpointError as e:
            return NodeResult.fail(NodeErrorKind.INVALID_CONFIG, str(e))
        except ToolCallError as e:
            return self._classify(e)

        ctx.write_state(ctx.node.output_key, result)
        return NodeResult.ok(
            {ctx.node.output_key: result},
            metadata={"toolName": tool_name, "endpointRef": endpoint_ref},
        )

    async def _missing_parameters(
        self, endpoint_ref: str, tool_name: str, parameters: dict[str, Any]
    ) -> list[str]:
        schema = await self.client.describe(endpoint_ref, tool_name)
        if not schema:
            logger.warning(f"⚠ No schema published for tool '{tool_name}', skipping validation")
            return []
        required = (schema.get("parameters") or {}).get("required") or []
        return [name for name in required if parameters.get(name) is None]

    @staticmethod
    def _classify(error: ToolCallError) -> NodeResult:
        if error.timeout:
            return NodeResult.fail(NodeErrorKind.TIMEOUT, str(error))
        retryable = error.status is None or is_retryable_status(error.status)
        return NodeResult.fail(
            NodeErrorKind.TOOL_ERROR,
            str(error),
            code="MCP_TOOL_ERROR",
            details={"status": error.status, "retryable": retryable, **error.details},
        )

"""
Node Registry - One implementation per node kind.

The engine resolves a node's implementation here and never switches on the
kind itself. Adding a kind means adding a NodeKind member and registering an
implementation.
"""

import logging
from typing import TYPE_CHECKING

from atelier.graph.node import NodeKind, NodeProtocol, parse_node_kind

if TYPE_CHECKING:
    from atelier.knowledge.retriever import KnowledgeRetriever
    from atelier.providers.client import ProviderClient
    from atelier.providers.tools import ToolClient

logger = logging.getLogger(__name__)


class NodeRegistry:
    def __init__(self) -> None:
        self._implementations: dict[NodeKind, NodeProtocol] = {}

    def register(self, kind: NodeKind | str, implementation: NodeProtocol) -> None:
        """Register the implementation for a kind. Unknown kinds raise ValueError."""
        node_kind = parse_node_kind(kind)
        if node_kind in self._implementations:
            logger.debug(f"Replacing implementation for '{node_kind}'")
        self._implementations[node_kind] = implementation

    def get(self, kind: NodeKind | str) -> NodeProtocol:
        node_kind = parse_node_kind(kind)
        try:
            return self._implementations[node_kind]
        except KeyError:
            raise KeyError(f"No implementation registered for node kind '{node_kind}'") from None

    def find(self, kind: NodeKind | str) -> NodeProtocol | None:
        try:
            return self._implementations.get(parse_node_kind(kind))
        except ValueError:
            return None

    def kinds(self) -> list[NodeKind]:
        return list(self._implementations)

    def __contains__(self, kind: object) -> bool:
        return kind in self._implementations


def default_registry(
    provider_client: "ProviderClient | None" = None,
    retriever: "KnowledgeRetriever | None" = None,
    *,
    max_loop_iterations: int = 100,
    tool_client: "ToolClient | None" = None,
) -> NodeRegistry:
    """Registry wired with the reference implementation of every kind."""
    from atelier.nodes.condition import ConditionNode
    from atelier.nodes.kb_retrieve import KnowledgeRetrieveNode
    from atelier.nodes.loop import LoopNode
    from atelier.nodes.provider import ProviderNode
    from atelier.nodes.structural import ForkNode, InputNode, JoinNode, OutputNode
    from atelier.nodes.tool_call import ToolCallNode
    from atelier.nodes.transform import TransformNode

    registry = NodeRegistry()
    registry.register(NodeKind.INPUT, InputNode())
    registry.register(NodeKind.OUTPUT, OutputNode())
    registry.register(NodeKind.FORK, ForkNode())
    registry.register(NodeKind.JOIN, JoinNode())
    registry.register(NodeKind.CONDITION, ConditionNode())
    registry.register(NodeKind.PROVIDER, ProviderNode(provider_client))
    registry.register(NodeKind.KB_RETRIEVE, KnowledgeRetrieveNode(retriever))
    registry.register(NodeKind.LOOP, LoopNode(max_iterations=max_loop_iterations))
    registry.register(NodeKind.TRANSFORM, TransformNode())
    registry.register(NodeKind.TOOL_CALL, ToolCallNode(tool_client))
    return registry

"""Reference implementations of every node kind."""

from atelier.nodes.condition import ConditionNode
from atelier.nodes.kb_retrieve import KnowledgeRetrieveNode
from atelier.nodes.loop import LoopNode
from atelier.nodes.provider import ProviderNode
from atelier.nodes.registry import NodeRegistry, default_registry
from atelier.nodes.structural import ForkNode, InputNode, JoinNode, OutputNode
from atelier.nodes.tool_call import ToolCallNode
from atelier.nodes.transform import TransformNode

__all__ = [
    "ConditionNode",
    "ForkNode",
    "InputNode",
    "JoinNode",
    "KnowledgeRetrieveNode",
    "LoopNode",
    "NodeRegistry",
    "OutputNode",
    "ProviderNode",
    "ToolCallNode",
    "TransformNode",
    "default_registry",
]

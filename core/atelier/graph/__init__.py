"""Pipeline graphs: node and edge specs, compilation, and execution."""

from atelier.graph.node import (
    NodeContext,
    NodeKind,
    NodeProtocol,
    NodeResult,
    NodeSpec,
    RetryPolicy,
)
from atelier.graph.edge import EdgeSpec, JoinStrategy, PipelineDefinition, PipelineSettings
from atelier.graph.resolver import VariableResolver, extract_references
from atelier.graph.compiler import CompileDiagnostic, CompiledGraph, GraphCompiler, detect_format
from atelier.graph.run_context import FlowContext, NodeOutputCache
from atelier.graph.executor import ExecutionResult, GraphExecutor

__all__ = [
    "CompileDiagnostic",
    "CompiledGraph",
    "EdgeSpec",
    "ExecutionResult",
    "FlowContext",
    "GraphCompiler",
    "GraphExecutor",
    "JoinStrategy",
    "NodeContext",
    "NodeKind",
    "NodeOutputCache",
    "NodeProtocol",
    "NodeResult",
    "NodeSpec",
    "PipelineDefinition",
    "PipelineSettings",
    "RetryPolicy",
    "VariableResolver",
    "detect_format",
    "extract_references",
]

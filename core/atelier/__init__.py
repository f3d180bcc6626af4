"""
Atelier - pipeline execution engine for AI photo processing jobs.

Pipelines are graphs of provider calls, knowledge lookups, conditions,
fan-out/fan-in and loops. Long-running provider steps run on external
compute and report back through signed completion callbacks.
"""

from atelier.graph import (
    ExecutionResult,
    GraphCompiler,
    GraphExecutor,
    NodeKind,
    PipelineDefinition,
)
from atelier.nodes import NodeRegistry, default_registry
from atelier.runtime.pipeline_runtime import PipelineRuntime
from atelier.runtime import CallbackReconciler, WebhookServer
from atelier.storage import FileRunStore, InMemoryRunStore

__version__ = "0.1.0"

__all__ = [
    "CallbackReconciler",
    "ExecutionResult",
    "FileRunStore",
    "GraphCompiler",
    "GraphExecutor",
    "InMemoryRunStore",
    "NodeKind",
    "NodeRegistry",
    "PipelineDefinition",
    "PipelineRuntime",
    "WebhookServer",
    "default_registry",
]

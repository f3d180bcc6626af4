"""
Graph Compiler - Turns a declarative pipeline into an executable graph.

Accepts either form a pipeline is stored in:
- graph form: ``{"nodes": [...], "edges": [...], "variables"?, "settings"?}``
- legacy linear form: ``[{type, providerRef, timeout, retry}, ...]`` or
  ``{"steps": [...]}``, lifted into a straight chain
  ``start -> step_0 -> ... -> step_n -> end`` so both run on one engine.

Compilation builds forward/reverse adjacency, checks there is exactly one
entry node, reports unreachable nodes, validates each node's config through
its registered implementation, detects cycles, and records FORK/JOIN
structure so the executor knows which branches feed which join.
"""

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from pydantic import ValidationError

from atelier.errors import PipelineCompileError
from atelier.graph.edge import EdgeSpec, JoinStrategy, PipelineDefinition, PipelineSettings
from atelier.graph.node import NodeKind, NodeSpec
from atelier.graph.resolver import extract_references

if TYPE_CHECKING:
    from atelier.nodes.registry import NodeRegistry

logger = logging.getLogger(__name__)

DiagnosticSeverity = Literal["error", "warning", "info"]

# Variable roots that are always in scope.
_BUILTIN_SCOPES = {"system", "form"}


@dataclass
class CompileDiagnostic:
    code: str
    severity: DiagnosticSeverity
    message: str
    node_id: str | None = None
    hint: str | None = None

    def __str__(self) -> str:
        where = f" [{self.node_id}]" if self.node_id else ""
        return f"{self.severity.upper()} {self.code}{where}: {self.message}"


@dataclass
class JoinInfo:
    """Fan-in point: which sources feed it and how their outcomes combine."""

    node_id: str
    sources: list[str]
    strategy: JoinStrategy
    explicit: bool = False


@dataclass
class CompiledGraph:
    definition: PipelineDefinition
    entry: str
    nodes: dict[str, NodeSpec]
    forward: dict[str, list[EdgeSpec]]
    reverse: dict[str, list[str]]
    forks: dict[str, list[str]] = field(default_factory=dict)
    joins: dict[str, JoinInfo] = field(default_factory=dict)
    topo_order: list[str] = field(default_factory=list)
    dropped_edges: list[EdgeSpec] = field(default_factory=list)
    diagnostics: list[CompileDiagnostic] = field(default_factory=list)
    source_format: str = "graph"

    @property
    def id(self) -> str:
        return self.definition.id

    @property
    def settings(self) -> PipelineSettings:
        return self.definition.settings

    @property
    def warnings(self) -> list[CompileDiagnostic]:
        return [d for d in self.diagnostics if d.severity != "error"]

    def get_node(self, node_id: str) -> NodeSpec:
        return self.nodes[node_id]

    def outgoing(self, node_id: str) -> list[EdgeSpec]:
        return self.forward.get(node_id, [])

    def incoming(self, node_id: str) -> list[str]:
        return self.reverse.get(node_id, [])

    def is_join(self, node_id: str) -> bool:
        return node_id in self.joins

    def is_fork(self, node_id: str) -> bool:
        return node_id in self.forks

    def is_terminal(self, node_id: str) -> bool:
        return not self.forward.get(node_id)


def detect_format(raw: Any) -> str:
    """
    Decide which stored form a pipeline uses.

    Returns "legacy" for a list of steps or a mapping with ``steps``, and
    "graph" for a mapping with both ``nodes`` and ``edges``.
    """
    if isinstance(raw, list):
        return "legacy"
    if isinstance(raw, dict):
        if "nodes" in raw and "edges" in raw:
            return "graph"
        if isinstance(raw.get("steps"), list):
            return "legacy"
    raise PipelineCompileError(
        "Unrecognised pipeline format: expected a steps list or an object with nodes and edges"
    )


def normalize_legacy_steps(steps: list[Any], pipeline_id: str = "legacy") -> dict[str, Any]:
    """Lift legacy linear steps into graph form as a straight chain."""
    nodes: list[dict[str, Any]] = [{"id": "start", "kind": "input"}]
    edges: list[dict[str, Any]] = []
    previous = "start"

    for index, step in enumerate(steps):
        if not isinstance(step, dict):
            raise PipelineCompileError(f"Legacy step {index} must be an object")

        node_id = f"step_{index}"
        config: dict[str, Any] = {
            "providerType": step.get("type"),
            "providerRef": step.get("providerRef") or step.get("provider_ref"),
            "mode": step.get("mode") or step.get("invokeType") or "sync",
        }
        for passthrough in ("inputs", "outputKey"):
            if passthrough in step:
                config[passthrough] = step[passthrough]

        node: dict[str, Any] = {"id": node_id, "kind": "provider", "config": config}
        if step.get("timeout") is not None:
            node["timeout"] = step["timeout"]

        retry = step.get("retry") or step.get("retry_policy") or step.get("retryPolicy")
        if isinstance(retry, dict):
            node["retryPolicy"] = _legacy_retry_policy(retry)

        nodes.append(node)
        edges.append({"source": previous, "target": node_id})
        previous = node_id

    nodes.append({"id": "end", "kind": "output"})
    edges.append({"source": previous, "target": "end"})
    return {"id": pipeline_id, "nodes": nodes, "edges": edges}


def _legacy_retry_policy(retry: dict[str, Any]) -> dict[str, Any]:
    policy: dict[str, Any] = {}
    if "maxRetries" in retry:
        policy["maxRetries"] = retry["maxRetries"]
    elif "maxAttempts" in retry:
        # Legacy counted total attempts, not retries.
        policy["maxRetries"] = max(0, int(retry["maxAttempts"]) - 1)
    delay = retry.get("retryDelay", retry.get("delayMs"))
    if delay is not None:
        policy["retryDelay"] = delay
    if "backoff" in retry:
        policy["backoff"] = retry["backoff"]
    elif retry.get("exponential"):
        policy["backoff"] = "exponential"
    if "retryableErrors" in retry:
        policy["retryableErrors"] = retry["retryableErrors"]
    return policy


def _canonicalize_node(node: Any) -> Any:
    """Accept editor node shapes (``type``/``data``) alongside ``kind``/``config``."""
    if not isinstance(node, dict):
        return node
    normalized = dict(node)
    if "kind" not in normalized and "type" in normalized:
        normalized["kind"] = normalized.pop("type")
    if "config" not in normalized and isinstance(normalized.get("data"), dict):
        normalized["config"] = normalized.pop("data")
    if normalized.get("config") is None:
        normalized["config"] = {}
    return normalized


class GraphCompiler:
    """
    Compiles pipeline definitions into CompiledGraph instances.

    Example:
        compiler = GraphCompiler(registry=default_registry())
        compiled = compiler.compile(pipeline_json)
        for warning in compiled.warnings:
            print(warning)
    """

    def __init__(
        self,
        registry: "NodeRegistry | None" = None,
        *,
        allow_cycles: bool = False,
        default_join_strategy: JoinStrategy | str = JoinStrategy.ALL,
    ):
        self.registry = registry
        self.allow_cycles = allow_cycles
        self.default_join_strategy = JoinStrategy(str(default_join_strategy).upper())

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(self, raw: Any) -> tuple[PipelineDefinition, str]:
        """Parse any accepted input into a PipelineDefinition."""
        if isinstance(raw, PipelineDefinition):
            return raw, "graph"
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise PipelineCompileError(f"Pipeline definition is not valid JSON: {e}") from e

        source_format = detect_format(raw)
        if source_format == "legacy":
            steps = raw if isinstance(raw, list) else raw["steps"]
            pipeline_id = "legacy" if isinstance(raw, list) else str(raw.get("id") or "legacy")
            data = normalize_legacy_steps(steps, pipeline_id)
            if isinstance(raw, dict) and isinstance(raw.get("settings"), dict):
                data["settings"] = raw["settings"]
        else:
            data = dict(raw)
            data["nodes"] = [_canonicalize_node(n) for n in raw.get("nodes") or []]
            data["edges"] = list(raw.get("edges") or [])
            for optional in ("variables", "settings"):
                if data.get(optional) is None:
                    data.pop(optional, None)

        try:
            return PipelineDefinition.model_validate(data), source_format
        except ValidationError as e:
            raise PipelineCompileError(f"Invalid pipeline definition: {e}") from e

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------

    def compile(self, raw: Any) -> CompiledGraph:
        definition, source_format = self.parse(raw)
        diagnostics: list[CompileDiagnostic] = []

        nodes: dict[str, NodeSpec] = {}
        for node in definition.nodes:
            if node.id in nodes:
                diagnostics.append(
                    CompileDiagnostic(
                        code="DUPLICATE_NODE",
                        severity="error",
                        message=f"Node id '{node.id}' is declared more than once",
                        node_id=node.id,
                    )
                )
                continue
            nodes[node.id] = node

        if not nodes:
            raise PipelineCompileError(
                "Pipeline must contain at least one node",
                [CompileDiagnostic("EMPTY_PIPELINE", "error", "Pipeline has no nodes")],
            )

        edges: list[EdgeSpec] = []
        for edge in definition.edges:
            missing = [end for end in (edge.source, edge.target) if end not in nodes]
            if missing:
                diagnostics.append(
                    CompileDiagnostic(
                        code="UNKNOWN_EDGE_ENDPOINT",
                        severity="error",
                        message=f"Edge '{edge.edge_id}' references missing node(s) {missing}",
                    )
                )
                continue
            edges.append(edge)

        allow_cycles = (
            definition.settings.allow_cycles
            if definition.settings.allow_cycles is not None
            else self.allow_cycles
        )
        edges, dropped = self._check_cycles(nodes, edges, allow_cycles, diagnostics)

        forward: dict[str, list[EdgeSpec]] = {node_id: [] for node_id in nodes}
        reverse: dict[str, list[str]] = {node_id: [] for node_id in nodes}
        for edge in edges:
            forward[edge.source].append(edge)
            reverse[edge.target].append(edge.source)

        entry = self._find_entry(nodes, reverse, diagnostics)
        if entry is not None:
            self._check_reachability(entry, nodes, forward, diagnostics)

        self._check_node_configs(nodes, diagnostics)
        self._check_structure(nodes, forward, reverse, diagnostics)
        if entry is not None:
            self._check_variable_references(nodes, reverse, diagnostics)

        errors = [d for d in diagnostics if d.severity == "error"]
        if errors or entry is None:
            summary = "; ".join(str(d) for d in errors)
            raise PipelineCompileError(
                f"Pipeline '{definition.id}' is invalid: {summary}", diagnostics
            )

        forks = {
            node_id: [e.target for e in out_edges]
            for node_id, out_edges in forward.items()
            if len(out_edges) > 1
        }
        joins = {
            node_id: JoinInfo(
                node_id=node_id,
                sources=list(sources),
                strategy=self._join_strategy(nodes[node_id], definition.settings),
                explicit=nodes[node_id].kind == NodeKind.JOIN,
            )
            for node_id, sources in reverse.items()
            if len(sources) > 1
        }

        compiled = CompiledGraph(
            definition=definition,
            entry=entry,
            nodes=nodes,
            forward=forward,
            reverse=reverse,
            forks=forks,
            joins=joins,
            topo_order=self._topological_order(nodes, forward, reverse),
            dropped_edges=dropped,
            diagnostics=diagnostics,
            source_format=source_format,
        )

        for warning in compiled.warnings:
            logger.warning(f"⚠ {warning}")
        logger.info(
            f"Compiled pipeline '{definition.id}' ({source_format}): {len(nodes)} nodes, "
            f"{len(edges)} edges, {len(forks)} fork(s), {len(joins)} join(s)"
        )
        return compiled

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _check_cycles(
        self,
        nodes: dict[str, NodeSpec],
        edges: list[EdgeSpec],
        allow_cycles: bool,
        diagnostics: list[CompileDiagnostic],
    ) -> tuple[list[EdgeSpec], list[EdgeSpec]]:
        """Find back-edges with a DFS that tracks the nodes on the current path."""
        adjacency: dict[str, list[EdgeSpec]] = {node_id: [] for node_id in nodes}
        in_degree: dict[str, int] = {node_id: 0 for node_id in nodes}
        for edge in edges:
            adjacency[edge.source].append(edge)
            in_degree[edge.target] += 1

        visited: set[str] = set()
        on_path: set[str] = set()
        back_edges: list[EdgeSpec] = []

        def visit(root: str) -> None:
            # Explicit stack so long chains do not exhaust the interpreter stack.
            visited.add(root)
            on_path.add(root)
            stack = [(root, iter(adjacency[root]))]
            while stack:
                node_id, pending = stack[-1]
                edge = next(pending, None)
                if edge is None:
                    on_path.discard(node_id)
                    stack.pop()
                elif edge.target in on_path:
                    back_edges.append(edge)
                elif edge.target not in visited:
                    visited.add(edge.target)
                    on_path.add(edge.target)
                    stack.append((edge.target, iter(adjacency[edge.target])))

        roots = [n for n in nodes if in_degree[n] == 0] + list(nodes)
        for root in roots:
            if root not in visited:
                visit(root)

        if not back_edges:
            return edges, []

        described = ", ".join(f"{e.source}->{e.target}" for e in back_edges)
        if not allow_cycles:
            diagnostics.append(
                CompileDiagnostic(
                    code="CYCLE_DETECTED",
                    severity="error",
                    message=f"Pipeline contains a cycle (closing edge(s): {described})",
                    hint=(
                        "Use a loop node for repetition, "
                        "or set allowCycles for stored legacy pipelines"
                    ),
                )
            )
            return edges, []

        diagnostics.append(
            CompileDiagnostic(
                code="CYCLE_DETECTED",
                severity="warning",
                message=f"Pipeline contains a cycle; ignoring closing edge(s): {described}",
            )
        )
        dropped_ids = {id(e) for e in back_edges}
        return [e for e in edges if id(e) not in dropped_ids], back_edges

    def _find_entry(
        self,
        nodes: dict[str, NodeSpec],
        reverse: dict[str, list[str]],
        diagnostics: list[CompileDiagnostic],
    ) -> str | None:
        entries = [node_id for node_id in nodes if not reverse[node_id]]
        if len(entries) == 1:
            return entries[0]
        message = (
            "Pipeline has no entry node (every node has an incoming edge)"
            if not entries
            else f"Pipeline must have exactly one entry node, found {len(entries)}: {entries}"
        )
        diagnostics.append(
            CompileDiagnostic(code="ENTRY_NODE_COUNT", severity="error", message=message)
        )
        return None

    def _check_reachability(
        self,
        entry: str,
        nodes: dict[str, NodeSpec],
        forward: dict[str, list[EdgeSpec]],
        diagnostics: list[CompileDiagnostic],
    ) -> None:
        reachable = {entry}
        queue = deque([entry])
        while queue:
            current = queue.popleft()
            for edge in forward[current]:
                if edge.target not in reachable:
                    reachable.add(edge.target)
                    queue.append(edge.target)

        for node_id in nodes:
            if node_id not in reachable:
                diagnostics.append(
                    CompileDiagnostic(
                        code="UNREACHABLE_NODE",
                        severity="warning",
                        message=f"Node '{node_id}' is not reachable from entry '{entry}'",
                        node_id=node_id,
                        hint="Remove it or connect it with an edge",
                    )
                )

    def _check_node_configs(
        self, nodes: dict[str, NodeSpec], diagnostics: list[CompileDiagnostic]
    ) -> None:
        if self.registry is None:
            return
        for node in nodes.values():
            implementation = self.registry.find(node.kind)
            if implementation is None:
                diagnostics.append(
                    CompileDiagnostic(
                        code="INVALID_CONFIG",
                        severity="error",
                        message=f"No implementation registered for kind '{node.kind}'",
                        node_id=node.id,
                    )
                )
                continue
            if implementation.validate(node.config):
                continue
            for problem in implementation.config_errors(node.config):
                diagnostics.append(
                    CompileDiagnostic(
                        code="INVALID_CONFIG", severity="error", message=problem, node_id=node.id
                    )
                )

    def _check_structure(
        self,
        nodes: dict[str, NodeSpec],
        forward: dict[str, list[EdgeSpec]],
        reverse: dict[str, list[str]],
        diagnostics: list[CompileDiagnostic],
    ) -> None:
        for node_id, node in nodes.items():
            out_edges = forward[node_id]
            if node.kind == NodeKind.CONDITION:
                for edge in out_edges:
                    if edge.condition not in (None, "true", "false"):
                        diagnostics.append(
                            CompileDiagnostic(
                                code="UNKNOWN_BRANCH_LABEL",
                                severity="warning",
                                message=f"Edge '{edge.edge_id}' has label '{edge.condition}'; "
                                "condition nodes only publish 'true' or 'false'",
                                node_id=node_id,
                            )
                        )
            else:
                for edge in out_edges:
                    if edge.condition is not None:
                        diagnostics.append(
                            CompileDiagnostic(
                                code="LABEL_ON_NON_CONDITION",
                                severity="warning",
                                message=f"Edge '{edge.edge_id}' is labelled but its source "
                                "is not a condition node; it is only taken if the source "
                                "publishes a matching 'branch'",
                                node_id=node_id,
                            )
                        )
            if node.kind == NodeKind.JOIN and len(reverse[node_id]) <= 1:
                diagnostics.append(
                    CompileDiagnostic(
                        code="JOIN_WITHOUT_BRANCHES",
                        severity="warning",
                        message=(
                            f"Join node '{node_id}' has "
                            f"{len(reverse[node_id])} incoming edge(s)"
                        ),
                        node_id=node_id,
                    )
                )
            if node.kind == NodeKind.FORK and len(out_edges) <= 1:
                diagnostics.append(
                    CompileDiagnostic(
                        code="FORK_WITHOUT_BRANCHES",
                        severity="warning",
                        message=f"Fork node '{node_id}' has {len(out_edges)} outgoing edge(s)",
                        node_id=node_id,
                    )
                )

    def _check_variable_references(
        self,
        nodes: dict[str, NodeSpec],
        reverse: dict[str, list[str]],
        diagnostics: list[CompileDiagnostic],
    ) -> None:
        """Warn about placeholders that point at nodes which cannot have run yet."""
        for node_id, node in nodes.items():
            config = {k: v for k, v in node.config.items() if k != "body"}
            references = extract_references(config)
            if not references:
                continue

            upstream = self._ancestors(node_id, reverse)
            in_scope = set(_BUILTIN_SCOPES)
            for ancestor in upstream:
                in_scope.add(ancestor)
                in_scope.add(nodes[ancestor].output_key)

            for path in references:
                root = path.split(".", 1)[0]
                if root not in in_scope:
                    diagnostics.append(
                        CompileDiagnostic(
                            code="UNREACHABLE_VARIABLE",
                            severity="warning",
                            message=f"Node '{node_id}' references '{{{{{path}}}}}' "
                            "which no upstream node provides",
                            node_id=node_id,
                        )
                    )

    @staticmethod
    def _ancestors(node_id: str, reverse: dict[str, list[str]]) -> set[str]:
        seen: set[str] = set()
        stack = list(reverse[node_id])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(reverse[current])
        return seen

    def _join_strategy(self, node: NodeSpec, settings: PipelineSettings) -> JoinStrategy:
        configured = node.config.get("strategy") or node.config.get("joinStrategy")
        if isinstance(configured, str):
            try:
                return JoinStrategy(configured.upper())
            except ValueError:
                logger.warning(
                    f"⚠ Unknown join strategy '{configured}' on '{node.id}', using default"
                )
        return settings.join_strategy or self.default_join_strategy

    @staticmethod
    def _topological_order(
        nodes: dict[str, NodeSpec],
        forward: dict[str, list[EdgeSpec]],
        reverse: dict[str, list[str]],
    ) -> list[str]:
        """Kahn's algorithm over the execution adjacency."""
        in_degree = {node_id: len(reverse[node_id]) for node_id in nodes}
        queue = deque(node_id for node_id in nodes if in_degree[node_id] == 0)
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for edge in forward[current]:
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    queue.append(edge.target)
        return order

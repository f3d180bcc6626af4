"""
Knowledge-base retrieve node.

Writes ``{results, metadata}`` into run state under ``outputKey``
(default ``kb_results``) so later nodes can template against it.
"""

from typing import TYPE_CHECKING, Any

from atelier.errors import KnowledgeRetrieveError, NodeErrorKind
from atelier.graph.node import NodeContext, NodeKind, NodeProtocol, NodeResult
from atelier.graph.resolver import PLACEHOLDER_PATTERN

if TYPE_CHECKING:
    from atelier.knowledge.retriever import KnowledgeRetriever

DEFAULT_TOP_K = 5
RETRIEVAL_MODES = ("lexical", "semantic", "hybrid")


class KnowledgeRetrieveNode(NodeProtocol):
    kind = NodeKind.KB_RETRIEVE

    def __init__(self, retriever: "KnowledgeRetriever | None" = None):
        self.retriever = retriever

    def config_errors(self, config: dict[str, Any]) -> list[str]:
        errors = []
        query = config.get("query")
        if not isinstance(query, str) or not query.strip():
            errors.append("Knowledge retrieve node requires a 'query'")
        top_k = config.get("topK", DEFAULT_TOP_K)
        if isinstance(top_k, bool) or not isinstance(top_k, int) or top_k < 1:
            errors.append("'topK' must be a positive integer")
        filters = config.get("filters")
        if filters is not None and not isinstance(filters, dict):
            errors.append("'filters' must be an object")
        if config.get("mode", "lexical") not in RETRIEVAL_MODES:
            errors.append(f"Unknown retrieval mode '{config.get('mode')}'")
        return errors

    async def execute(self, ctx: NodeContext) -> NodeResult:
        if self.retriever is None:
            return NodeResult.fail(
                NodeErrorKind.INVALID_CONFIG, "No knowledge retriever configured"
            )

        query = ctx.config.get("query")
        if not isinstance(query, str) or not query.strip() or PLACEHOLDER_PATTERN.search(query):
            return NodeResult.fail(
                NodeErrorKind.MISSING_INPUT,
                f"Query did not resolve to text: {query!r}",
            )

        kb_id = ctx.config.get("kbId")
        top_k = int(ctx.config.get("topK", DEFAULT_TOP_K))
        filters = ctx.config.get("filters") or {}
        mode = ctx.config.get("mode", "lexical")

        try:
            results = await self.retriever.retrieve(
                query, kb_id=kb_id, top_k=top_k, filters=filters, mode=mode
            )
        except KnowledgeRetrieveError as e:
            return NodeResult.fail(NodeErrorKind.KB_RETRIEVE_ERROR, str(e))

        payload = {
            "results": results,
            "metadata": {
                "query": query,
                "kbId": kb_id,
                "topK": top_k,
                "count": len(results),
                "mode": mode,
            },
        }
        ctx.write_state(ctx.node.output_key, payload)
        return NodeResult.ok(payload)

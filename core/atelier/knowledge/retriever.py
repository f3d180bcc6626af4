"""
Knowledge Retrievers - Backends for kb_retrieve nodes.

A retriever answers ``retrieve(query, kb_id=, top_k=, filters=, mode=)`` with
ranked hits shaped ``{"id", "text", "score", "metadata", "title", "kbId"}``.
Ranking lives behind this interface; the engine only consumes the results.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from atelier.errors import KnowledgeRetrieveError

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\w+")


@runtime_checkable
class KnowledgeRetriever(Protocol):
    async def retrieve(
        self,
        query: str,
        *,
        kb_id: str | None = None,
        top_k: int = 5,
        filters: dict[str, Any] | None = None,
        mode: str = "lexical",
    ) -> list[dict[str, Any]]:
        ...


@dataclass
class KnowledgeDocument:
    id: str
    text: str
    title: str = ""
    kb_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _tokens(text: str) -> set[str]:
    return {t.lower() for t in _TOKEN.findall(text)}


class InMemoryKnowledgeBase:
    """
    Lexical retriever over documents held in memory.

    Scores a document by the share of query tokens found in its title or
    text. Filters are exact matches on document metadata. Every mode ranks
    lexically; ``mode`` is echoed so callers can tell what they asked for.
    """

    def __init__(self, documents: list[KnowledgeDocument] | None = None):
        self.documents: list[KnowledgeDocument] = list(documents or [])

    def add_document(
        self,
        doc_id: str,
        text: str,
        *,
        title: str = "",
        kb_id: str | None = None,
        **metadata: Any,
    ) -> KnowledgeDocument:
        doc = KnowledgeDocument(id=doc_id, text=text, title=title, kb_id=kb_id, metadata=metadata)
        self.documents.append(doc)
        return doc

    async def retrieve(
        self,
        query: str,
        *,
        kb_id: str | None = None,
        top_k: int = 5,
        filters: dict[str, Any] | None = None,
        mode: str = "lexical",
    ) -> list[dict[str, Any]]:
        terms = _tokens(query)
        if not terms:
            return []

        hits: list[dict[str, Any]] = []
        for doc in self.documents:
            if kb_id is not None and doc.kb_id != kb_id:
                continue
            if filters and any(doc.metadata.get(k) != v for k, v in filters.items()):
                continue
            score = len(terms & _tokens(f"{doc.title} {doc.text}")) / len(terms)
            if score <= 0:
                continue
            hits.append(
                {
                    "id": doc.id,
                    "text": doc.text,
                    "score": round(score, 4),
                    "metadata": dict(doc.metadata),
                    "title": doc.title,
                    "kbId": doc.kb_id,
                }
            )

        hits.sort(key=lambda h: (-h["score"], h["id"]))
        return hits[: max(top_k, 0)]


class HttpKnowledgeRetriever:
    """Queries a remote knowledge service (``knowledge.endpoint`` in configuration.json)."""

    def __init__(
        self,
        endpoint: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ):
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def retrieve(
        self,
        query: str,
        *,
        kb_id: str | None = None,
        top_k: int = 5,
        filters: dict[str, Any] | None = None,
        mode: str = "lexical",
    ) -> list[dict[str, Any]]:
        payload = {
            "query": query,
            "kbId": kb_id,
            "topK": top_k,
            "filters": filters or {},
            "mode": mode,
        }
        try:
            response = await self._client.post(self.endpoint, json=payload)
        except httpx.RequestError as e:
            raise KnowledgeRetrieveError(f"Knowledge service unreachable: {e}") from e

        if response.status_code >= 400:
            raise KnowledgeRetrieveError(
                f"Knowledge service error (HTTP {response.status_code}): {response.text}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise KnowledgeRetrieveError("Knowledge service returned invalid JSON") from e

        results = data.get("results") if isinstance(data, dict) else data
        if not isinstance(results, list):
            raise KnowledgeRetrieveError("Knowledge service response has no results list")
        return results[:top_k]

"""Knowledge-base retrieval backends."""

from atelier.knowledge.retriever import (
    HttpKnowledgeRetriever,
    InMemoryKnowledgeBase,
    KnowledgeDocument,
    KnowledgeRetriever,
)

__all__ = [
    "HttpKnowledgeRetriever",
    "InMemoryKnowledgeBase",
    "KnowledgeDocument",
    "KnowledgeRetriever",
]

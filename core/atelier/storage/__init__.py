"""Persistence for runs and async steps."""

from atelier.storage.backend import RunStore
from atelier.storage.file_store import FileRunStore
from atelier.storage.memory import InMemoryRunStore

__all__ = ["FileRunStore", "InMemoryRunStore", "RunStore"]

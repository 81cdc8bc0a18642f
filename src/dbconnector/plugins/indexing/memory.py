# src/dbconnector/plugins/indexing/memory.py
"""In-process indexing service.

Keeps documents in a dict and records every operation in order, which is
what scenario tests assert on ("deleted exactly once", "re-pushed within two
cycles").
"""

import threading
from dataclasses import dataclass
from typing import Literal

from dbconnector.contracts import DocumentRecord


@dataclass(frozen=True, slots=True)
class IndexOperation:
    """One recorded call against the index."""

    op: Literal["upsert", "delete"]
    item_id: str


class MemoryIndex:
    """Thread-safe in-memory implementation of IndexingService."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._documents: dict[str, DocumentRecord] = {}
        self._operations: list[IndexOperation] = []

    def upsert(self, document: DocumentRecord) -> None:
        with self._lock:
            self._documents[document.item_id] = document
            self._operations.append(IndexOperation("upsert", document.item_id))

    def delete(self, item_id: str) -> None:
        with self._lock:
            self._documents.pop(item_id, None)
            self._operations.append(IndexOperation("delete", item_id))

    def get(self, item_id: str) -> DocumentRecord | None:
        with self._lock:
            return self._documents.get(item_id)

    def close(self) -> None:
        pass

    @property
    def documents(self) -> dict[str, DocumentRecord]:
        """Copy of the current index contents."""
        with self._lock:
            return dict(self._documents)

    @property
    def operations(self) -> list[IndexOperation]:
        """Copy of the operation log, oldest first."""
        with self._lock:
            return list(self._operations)

    def count(self, op: Literal["upsert", "delete"], item_id: str) -> int:
        """How many times op was applied to item_id."""
        with self._lock:
            return sum(1 for o in self._operations if o.op == op and o.item_id == item_id)

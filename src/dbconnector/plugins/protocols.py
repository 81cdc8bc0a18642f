# src/dbconnector/plugins/protocols.py
"""Protocols for the connector's collaborators.

These are structural contracts used for type checking. The traversal
runner only ever talks to a RowSource and an IndexingService, so tests can
substitute any object with the right methods.

Collaborators:
- RowSource: yields rows from the relational source
- IndexingService: upserts, deletes and reads documents in the search index
"""

from collections.abc import Callable, Iterator
from typing import Any, Protocol, runtime_checkable

from dbconnector.contracts import DocumentRecord, Row


@runtime_checkable
class RowSource(Protocol):
    """Protocol for relational sources.

    Lifecycle:
    1. check_connection() - fail fast at startup
    2. iter_all_rows() / iter_changed_rows() - once per traversal cycle
    3. close() - release connections
    """

    @property
    def supports_incremental(self) -> bool: ...

    def check_connection(self) -> None:
        """Raise SourceConnectionError if the source is unreachable."""
        ...

    def iter_all_rows(self, should_stop: Callable[[], bool] | None = None) -> Iterator[Row]:
        """Yield every row of the full snapshot."""
        ...

    def iter_changed_rows(self, watermark: Any) -> Iterator[Row]:
        """Yield rows changed since watermark."""
        ...

    def close(self) -> None: ...


@runtime_checkable
class IndexingService(Protocol):
    """Protocol for search index backends.

    Implementations must be safe to call from the full and incremental
    traversal threads at the same time.

    Error contract:
    - TransientIndexingError: worth retrying (timeouts, throttling, 5xx)
    - IndexingError: permanent rejection of this operation
    """

    def upsert(self, document: DocumentRecord) -> None:
        """Create or replace the document with document.item_id."""
        ...

    def delete(self, item_id: str) -> None:
        """Remove an item. Deleting an unknown id is not an error."""
        ...

    def get(self, item_id: str) -> DocumentRecord | None:
        """Return the indexed document, or None."""
        ...

    def close(self) -> None: ...

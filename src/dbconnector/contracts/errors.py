# src/dbconnector/contracts/errors.py
"""Exception hierarchy for the connector.

Errors fall in two groups:
- Cycle-fatal: configuration, connection and query failures abort the
  startup or the current traversal cycle.
- Per-row: mapping and indexing failures skip one row; the cycle records a
  RowError and continues.
"""

from typing import Any, NotRequired, TypedDict


class ConnectorError(Exception):
    """Base class for all connector errors."""


class ConfigurationError(ConnectorError):
    """Raised when settings are internally inconsistent."""


class SourceConnectionError(ConnectorError):
    """Raised when the relational source is unreachable or misconfigured.

    Fatal at startup, surfaced before the first traversal.
    """


class QueryConfigurationError(ConfigurationError):
    """Raised when a configured SQL statement has the wrong placeholders."""


class QueryExecutionError(ConnectorError):
    """Raised when a query fails mid-cycle (bad SQL, lost connection).

    Aborts the current cycle. The next scheduled cycle runs independently.
    """


class RowMappingError(ConnectorError):
    """Raised when a single row cannot be mapped into a document.

    Attributes:
        item_id: Identity of the row when it could be derived, else None
    """

    def __init__(self, message: str, *, item_id: str | None = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class MissingUniqueKeyError(RowMappingError):
    """Raised when a row lacks a value for a unique-key column."""

    def __init__(self, column: str) -> None:
        super().__init__(f"Row is missing unique key column '{column}'")
        self.column = column


class FieldCoercionError(RowMappingError):
    """Raised when a column value cannot be coerced to its configured kind."""

    def __init__(self, field: str, kind: str, value: Any) -> None:
        super().__init__(f"Cannot coerce {type(value).__name__} value {value!r} in field '{field}' to {kind}")
        self.field = field
        self.kind = kind
        self.value = value


class IndexingError(ConnectorError):
    """Raised when the indexing service rejects an operation permanently."""


class TransientIndexingError(IndexingError):
    """Raised for indexing failures worth retrying (timeouts, 429, 5xx)."""


class TraversalAborted(ConnectorError):
    """Raised inside a cycle when shutdown was requested between rows.

    This is a control flow signal, not a failure: the cycle stops without
    deleting items, incrementing counters or advancing the watermark.
    """


class RowErrorPayload(TypedDict):
    """Schema for per-row error payloads in logs and stats output."""

    traversal: str  # "full" or "incremental"
    error_type: str  # Exception class name
    message: str
    item_id: NotRequired[str]

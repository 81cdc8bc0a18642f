# src/dbconnector/contracts/enums.py
"""All modes, kinds and statuses used across subsystem boundaries.

Values are lowercase strings so they round-trip through YAML config,
environment variables and the JSON wire form unchanged.
"""

from enum import StrEnum


class FieldKind(StrEnum):
    """Type of a structured data field.

    Configured per field under ``structured_data.fields`` and used by the
    schema mapper to coerce driver values.
    """

    TEXT = "text"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    DOUBLE = "double"
    DATE = "date"
    TIMESTAMP = "timestamp"
    ENUM = "enum"
    BLOB = "blob"


class AclMode(StrEnum):
    """How the configured default ACL combines with per-row ACL columns.

    Values:
        NONE: Default ACL disabled, per-row ACL used as is
        FALLBACK: Per-row readers when present, else the default readers
        APPEND: Per-row readers followed by the default readers, deduplicated
        OVERRIDE: Default readers always, per-row readers ignored
    """

    NONE = "none"
    FALLBACK = "fallback"
    APPEND = "append"
    OVERRIDE = "override"


class PrincipalKind(StrEnum):
    """Kind of ACL principal."""

    USER = "user"
    GROUP = "group"


class ItemType(StrEnum):
    """Index item type."""

    CONTENT_ITEM = "content_item"
    CONTAINER_ITEM = "container_item"
    VIRTUAL_CONTAINER_ITEM = "virtual_container_item"


class ContentFormat(StrEnum):
    """Encoding of item content pushed alongside metadata."""

    RAW = "raw"
    HTML = "html"
    TEXT = "text"


class PaginationMode(StrEnum):
    """Pagination discipline for the full-snapshot query.

    Values:
        NONE: Statement returns the full result in one execution
        OFFSET: Statement has one placeholder bound to an increasing offset
    """

    NONE = "none"
    OFFSET = "offset"


class TraversalKind(StrEnum):
    """Kind of traversal cycle."""

    FULL = "full"
    INCREMENTAL = "incremental"


class SchedulerStatus(StrEnum):
    """Lifecycle status of one traversal schedule.

    IDLE -> RUNNING -> SCHEDULED -> RUNNING ... -> STOPPED
    """

    IDLE = "idle"
    RUNNING = "running"
    SCHEDULED = "scheduled"
    STOPPED = "stopped"


class IndexingBackend(StrEnum):
    """Indexing service implementation selected by config."""

    MEMORY = "memory"
    HTTP = "http"

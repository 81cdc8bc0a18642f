"""Shared contracts: enums, typed records and the exception hierarchy."""

from dbconnector.contracts.data import (
    BYTES_MARKER_PREFIX,
    Acl,
    AclPolicy,
    DocumentRecord,
    FieldValue,
    ItemContent,
    Principal,
    Row,
    RowError,
    bytes_marker,
)
from dbconnector.contracts.enums import (
    AclMode,
    ContentFormat,
    FieldKind,
    IndexingBackend,
    ItemType,
    PaginationMode,
    PrincipalKind,
    SchedulerStatus,
    TraversalKind,
)
from dbconnector.contracts.errors import (
    ConfigurationError,
    ConnectorError,
    FieldCoercionError,
    IndexingError,
    MissingUniqueKeyError,
    QueryConfigurationError,
    QueryExecutionError,
    RowErrorPayload,
    RowMappingError,
    SourceConnectionError,
    TransientIndexingError,
    TraversalAborted,
)
from dbconnector.contracts.identity import item_id, item_name

__all__ = [
    "BYTES_MARKER_PREFIX",
    "Acl",
    "AclMode",
    "AclPolicy",
    "ConfigurationError",
    "ConnectorError",
    "ContentFormat",
    "DocumentRecord",
    "FieldCoercionError",
    "FieldKind",
    "FieldValue",
    "IndexingBackend",
    "IndexingError",
    "ItemContent",
    "ItemType",
    "MissingUniqueKeyError",
    "PaginationMode",
    "Principal",
    "PrincipalKind",
    "QueryConfigurationError",
    "QueryExecutionError",
    "Row",
    "RowError",
    "RowErrorPayload",
    "RowMappingError",
    "SchedulerStatus",
    "SourceConnectionError",
    "TransientIndexingError",
    "TraversalAborted",
    "TraversalKind",
    "bytes_marker",
    "item_id",
    "item_name",
]

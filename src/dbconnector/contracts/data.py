# src/dbconnector/contracts/data.py
"""Typed records flowing between the mapper, builder, resolver and index.

All records are frozen dataclasses: a document built in one traversal thread
can be handed to the indexing service and compared in tests without copies.
"""

from __future__ import annotations

import base64
import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from dbconnector.contracts.enums import (
    AclMode,
    ContentFormat,
    FieldKind,
    ItemType,
    PrincipalKind,
    TraversalKind,
)
from dbconnector.contracts.errors import RowErrorPayload

# One result row: column label -> driver value (None allowed)
Row = Mapping[str, Any]

BYTES_MARKER_PREFIX = "[bytes@"


def bytes_marker(data: bytes | bytearray | memoryview) -> str:
    """Render an opaque byte sequence as index text.

    Columns of native types the driver hands back as raw bytes (geometry,
    hierarchy ids, rowversion) are not decoded. They surface as a stable
    marker derived from the content so repeated traversals produce the same
    document.
    """
    digest = hashlib.sha256(bytes(data)).hexdigest()[:8]
    return f"{BYTES_MARKER_PREFIX}{digest}]"


@dataclass(frozen=True, slots=True)
class FieldValue:
    """One typed structured data value."""

    kind: FieldKind
    value: str | int | float | bool | bytes

    def as_text(self) -> str:
        """Render the value the way the index stores it."""
        if self.kind is FieldKind.BOOLEAN:
            return "true" if self.value else "false"
        if self.kind is FieldKind.DOUBLE:
            return f"{float(self.value):.2f}"
        if isinstance(self.value, bytes):
            return bytes_marker(self.value)
        return str(self.value)

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.value, bytes):
            return {"kind": self.kind.value, "value": base64.b64encode(self.value).decode("ascii")}
        return {"kind": self.kind.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FieldValue:
        kind = FieldKind(data["kind"])
        value = data["value"]
        if kind is FieldKind.BLOB:
            value = base64.b64decode(value)
        return cls(kind=kind, value=value)


@dataclass(frozen=True, slots=True)
class Principal:
    """An ACL principal, e.g. ``Principal(PrincipalKind.USER, "google:jdoe@example.com")``."""

    kind: PrincipalKind
    name: str

    @classmethod
    def user(cls, name: str) -> Principal:
        return cls(PrincipalKind.USER, name)

    @classmethod
    def group(cls, name: str) -> Principal:
        return cls(PrincipalKind.GROUP, name)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "name": self.name}


@dataclass(frozen=True, slots=True)
class Acl:
    """Effective access control list of one item."""

    readers: tuple[Principal, ...] = ()
    denied_readers: tuple[Principal, ...] = ()
    public: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "readers": [p.to_dict() for p in self.readers],
            "denied_readers": [p.to_dict() for p in self.denied_readers],
            "public": self.public,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Acl:
        return cls(
            readers=tuple(Principal(PrincipalKind(p["kind"]), p["name"]) for p in data["readers"]),
            denied_readers=tuple(Principal(PrincipalKind(p["kind"]), p["name"]) for p in data["denied_readers"]),
            public=bool(data["public"]),
        )


@dataclass(frozen=True, slots=True)
class ItemContent:
    """Content pushed with an item (blob column or rendered template)."""

    data: bytes
    content_format: ContentFormat

    def to_dict(self) -> dict[str, str]:
        return {
            "content_format": self.content_format.value,
            "data": base64.b64encode(self.data).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ItemContent:
        return cls(data=base64.b64decode(data["data"]), content_format=ContentFormat(data["content_format"]))


@dataclass(frozen=True)
class DocumentRecord:
    """A search-index document built from one row.

    Invariant: title and source_repository_url hold configured default values
    only when the mapped column value was null or absent.
    """

    item_id: str
    name: str
    title: str | None = None
    content_language: str | None = None
    source_repository_url: str | None = None
    object_type: str | None = None
    structured_data: Mapping[str, tuple[FieldValue, ...]] = field(default_factory=dict)
    acl: Acl = field(default_factory=Acl)
    item_type: ItemType = ItemType.CONTENT_ITEM
    create_time: str | None = None
    update_time: str | None = None
    content: ItemContent | None = None

    def structured_text(self, name: str) -> list[str]:
        """Text rendering of one structured field (empty when absent)."""
        return [v.as_text() for v in self.structured_data.get(name, ())]

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe wire form used by the HTTP indexing backend."""
        return {
            "item_id": self.item_id,
            "name": self.name,
            "item_type": self.item_type.value,
            "metadata": {
                "title": self.title,
                "content_language": self.content_language,
                "source_repository_url": self.source_repository_url,
                "object_type": self.object_type,
                "create_time": self.create_time,
                "update_time": self.update_time,
            },
            "structured_data": {name: [v.to_dict() for v in values] for name, values in self.structured_data.items()},
            "acl": self.acl.to_dict(),
            "content": self.content.to_dict() if self.content is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DocumentRecord:
        metadata = data["metadata"]
        content = data.get("content")
        return cls(
            item_id=data["item_id"],
            name=data["name"],
            item_type=ItemType(data["item_type"]),
            title=metadata.get("title"),
            content_language=metadata.get("content_language"),
            source_repository_url=metadata.get("source_repository_url"),
            object_type=metadata.get("object_type"),
            create_time=metadata.get("create_time"),
            update_time=metadata.get("update_time"),
            structured_data={
                name: tuple(FieldValue.from_dict(v) for v in values) for name, values in data["structured_data"].items()
            },
            acl=Acl.from_dict(data["acl"]),
            content=ItemContent.from_dict(content) if content is not None else None,
        )


@dataclass(frozen=True, slots=True)
class RowError:
    """A per-row failure recorded during a traversal cycle."""

    traversal: TraversalKind
    error_type: str
    message: str
    item_id: str | None = None

    @classmethod
    def from_exception(cls, traversal: TraversalKind, error: BaseException, item_id: str | None = None) -> RowError:
        return cls(traversal=traversal, error_type=type(error).__name__, message=str(error), item_id=item_id)

    def to_payload(self) -> RowErrorPayload:
        payload: RowErrorPayload = {
            "traversal": self.traversal.value,
            "error_type": self.error_type,
            "message": self.message,
        }
        if self.item_id is not None:
            payload["item_id"] = self.item_id
        return payload


@dataclass(frozen=True, slots=True)
class AclPolicy:
    """Configured default ACL.

    readers and denied_readers hold the default user and group principals.
    """

    mode: AclMode = AclMode.NONE
    public: bool = False
    readers: tuple[Principal, ...] = ()
    denied_readers: tuple[Principal, ...] = ()
    name: str | None = None

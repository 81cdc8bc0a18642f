# src/dbconnector/core/checkpoint.py
"""Checkpoint store for traversal progress.

Persists, per data source:
- The incremental watermark (typed, so a datetime stays a datetime)
- The item ids seen by the last successful full traversal

Both survive restarts, so the first full traversal after a restart can
still delete rows that vanished while the connector was down, and the
first incremental traversal resumes from where the last one stopped.

Every write is a single transaction (``engine.begin()``).
"""

import json
import threading
from collections.abc import Iterable
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Self

from sqlalchemy import Column, DateTime, MetaData, String, Table, Text, create_engine, delete, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

watermarks_table = Table(
    "watermarks",
    metadata,
    Column("source_id", String(255), primary_key=True),
    Column("value_json", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

indexed_items_table = Table(
    "indexed_items",
    metadata,
    Column("source_id", String(255), primary_key=True),
    Column("item_id", String(1024), primary_key=True),
)

full_traversals_table = Table(
    "full_traversals",
    metadata,
    Column("source_id", String(255), primary_key=True),
    Column("completed_at", DateTime(timezone=True), nullable=False),
)


class CheckpointFormatError(Exception):
    """Raised when a stored watermark cannot be decoded."""


def encode_watermark(value: Any) -> str:
    """Encode a watermark value as tagged JSON.

    Raises:
        TypeError: If the value type cannot be stored
    """
    if isinstance(value, bool):
        raise TypeError("Boolean watermark values are not supported")
    if isinstance(value, datetime):
        payload: dict[str, Any] = {"type": "datetime", "value": value.isoformat()}
    elif isinstance(value, date):
        payload = {"type": "date", "value": value.isoformat()}
    elif isinstance(value, Decimal):
        payload = {"type": "decimal", "value": str(value)}
    elif isinstance(value, int):
        payload = {"type": "int", "value": value}
    elif isinstance(value, float):
        payload = {"type": "float", "value": value}
    elif isinstance(value, str):
        payload = {"type": "str", "value": value}
    else:
        raise TypeError(f"Unsupported watermark type: {type(value).__name__}")
    return json.dumps(payload, allow_nan=False)


def decode_watermark(raw: str) -> Any:
    """Inverse of encode_watermark."""
    try:
        payload = json.loads(raw)
        kind = payload["type"]
        value = payload["value"]
    except (ValueError, KeyError, TypeError) as e:
        raise CheckpointFormatError(f"Malformed watermark record: {raw!r}") from e

    if kind == "datetime":
        return datetime.fromisoformat(value)
    if kind == "date":
        return date.fromisoformat(value)
    if kind == "decimal":
        return Decimal(value)
    if kind in ("int", "float", "str"):
        return value
    raise CheckpointFormatError(f"Unknown watermark type '{kind}'")


class CheckpointStore:
    """SQLAlchemy-backed store for watermarks and indexed item ids.

    Safe to share between the full and incremental traversal threads.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        metadata.create_all(engine)

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            # Set busy timeout to avoid immediate SQLITE_BUSY errors under contention
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    @classmethod
    def in_memory(cls) -> Self:
        """Create a store backed by in-memory SQLite.

        One shared connection, so both traversal threads see the same data.
        """
        engine = create_engine(
            "sqlite://",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        return cls(engine)

    @classmethod
    def from_url(cls, url: str) -> Self:
        engine = create_engine(url, echo=False)
        if url.startswith("sqlite"):
            cls._configure_sqlite(engine)
        return cls(engine)

    @classmethod
    def from_directory(cls, directory: Path) -> Self:
        """Create (or reopen) ``checkpoint.db`` inside directory."""
        directory.mkdir(parents=True, exist_ok=True)
        return cls.from_url(f"sqlite:///{directory / 'checkpoint.db'}")

    @property
    def engine(self) -> Engine:
        return self._engine

    def load_watermark(self, source_id: str) -> Any | None:
        """Return the stored watermark, or None if none was saved."""
        with self._lock, self._engine.connect() as conn:
            raw = conn.execute(
                select(watermarks_table.c.value_json).where(watermarks_table.c.source_id == source_id)
            ).scalar_one_or_none()
        if raw is None:
            return None
        return decode_watermark(raw)

    def save_watermark(self, source_id: str, value: Any) -> None:
        """Replace the stored watermark."""
        encoded = encode_watermark(value)
        with self._lock, self._engine.begin() as conn:
            conn.execute(delete(watermarks_table).where(watermarks_table.c.source_id == source_id))
            conn.execute(
                watermarks_table.insert().values(
                    source_id=source_id,
                    value_json=encoded,
                    updated_at=datetime.now(UTC),
                )
            )

    def load_indexed_ids(self, source_id: str) -> frozenset[str] | None:
        """Return item ids from the last successful full traversal.

        Returns None when no full traversal has completed yet, which differs
        from an empty set (a completed traversal that saw no rows).
        """
        with self._lock, self._engine.connect() as conn:
            completed = conn.execute(
                select(full_traversals_table.c.source_id).where(full_traversals_table.c.source_id == source_id)
            ).first()
            if completed is None:
                return None
            rows = conn.execute(
                select(indexed_items_table.c.item_id).where(indexed_items_table.c.source_id == source_id)
            ).all()
        return frozenset(row.item_id for row in rows)

    def replace_indexed_ids(self, source_id: str, item_ids: Iterable[str]) -> None:
        """Atomically replace the indexed id set of a source."""
        values = [{"source_id": source_id, "item_id": item_id} for item_id in sorted(set(item_ids))]
        now = datetime.now(UTC)
        with self._lock, self._engine.begin() as conn:
            conn.execute(delete(indexed_items_table).where(indexed_items_table.c.source_id == source_id))
            if values:
                conn.execute(indexed_items_table.insert(), values)
            conn.execute(delete(full_traversals_table).where(full_traversals_table.c.source_id == source_id))
            conn.execute(full_traversals_table.insert().values(source_id=source_id, completed_at=now))

    def close(self) -> None:
        self._engine.dispose()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()

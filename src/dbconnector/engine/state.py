# src/dbconnector/engine/state.py
"""Traversal state shared by the full and incremental schedules.

TraversalState is mutated only by traversal cycles, under its lock.
Readers take an immutable TraversalStats snapshot.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from dbconnector.contracts import RowError, RowErrorPayload, TraversalKind

MAX_RECENT_ROW_ERRORS = 100


@dataclass(frozen=True, slots=True)
class TraversalStats:
    """Point-in-time copy of the traversal counters."""

    successful_full_traversals: int = 0
    successful_incremental_traversals: int = 0
    failed_full_traversals: int = 0
    failed_incremental_traversals: int = 0
    indexed_item_count: int = 0
    watermark: Any = None
    recent_row_errors: tuple[RowError, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        payloads: list[RowErrorPayload] = [e.to_payload() for e in self.recent_row_errors]
        return {
            "successful_full_traversals": self.successful_full_traversals,
            "successful_incremental_traversals": self.successful_incremental_traversals,
            "failed_full_traversals": self.failed_full_traversals,
            "failed_incremental_traversals": self.failed_incremental_traversals,
            "indexed_item_count": self.indexed_item_count,
            "watermark": None if self.watermark is None else str(self.watermark),
            "recent_row_errors": payloads,
        }


class TraversalState:
    """Counters, last-seen id set and watermark behind a lock."""

    def __init__(self, *, max_row_errors: int = MAX_RECENT_ROW_ERRORS) -> None:
        self._lock = threading.Lock()
        self._successes = {TraversalKind.FULL: 0, TraversalKind.INCREMENTAL: 0}
        self._failures = {TraversalKind.FULL: 0, TraversalKind.INCREMENTAL: 0}
        self._last_seen_ids: frozenset[str] | None = None
        self._watermark: Any = None
        self._row_errors: deque[RowError] = deque(maxlen=max_row_errors)

    def record_success(self, kind: TraversalKind) -> None:
        with self._lock:
            self._successes[kind] += 1

    def record_failure(self, kind: TraversalKind) -> None:
        with self._lock:
            self._failures[kind] += 1

    def record_row_error(self, error: RowError) -> None:
        with self._lock:
            self._row_errors.append(error)

    @property
    def last_seen_ids(self) -> frozenset[str] | None:
        """Ids of the last successful full traversal (None before the first)."""
        with self._lock:
            return self._last_seen_ids

    @last_seen_ids.setter
    def last_seen_ids(self, ids: frozenset[str]) -> None:
        with self._lock:
            self._last_seen_ids = ids

    @property
    def watermark(self) -> Any:
        with self._lock:
            return self._watermark

    @watermark.setter
    def watermark(self, value: Any) -> None:
        with self._lock:
            self._watermark = value

    def seed_watermark(self, value: Any) -> bool:
        """Set the watermark only if none exists yet. Returns True if set."""
        with self._lock:
            if self._watermark is not None:
                return False
            self._watermark = value
            return True

    def snapshot(self) -> TraversalStats:
        with self._lock:
            return TraversalStats(
                successful_full_traversals=self._successes[TraversalKind.FULL],
                successful_incremental_traversals=self._successes[TraversalKind.INCREMENTAL],
                failed_full_traversals=self._failures[TraversalKind.FULL],
                failed_incremental_traversals=self._failures[TraversalKind.INCREMENTAL],
                indexed_item_count=len(self._last_seen_ids or ()),
                watermark=self._watermark,
                recent_row_errors=tuple(self._row_errors),
            )

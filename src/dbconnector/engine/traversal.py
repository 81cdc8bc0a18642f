# src/dbconnector/engine/traversal.py
"""Traversal cycles: full and incremental.

Full traversal:
    named default ACL container (if configured)
    -> snapshot query -> build -> upsert each row (with retry)
    -> delete ids present last time and absent now (each exactly once)
    -> persist the new id set -> count success

Incremental traversal:
    changed-rows query with the current watermark -> build -> upsert
    -> advance and persist the watermark (last, and only if rows came back)
    -> count success
    With a watermark column but no watermark yet, every row is scanned
    instead and the maximum observed value becomes the watermark.

Failure handling:
- A row that cannot be mapped or pushed is recorded as a RowError; the
  cycle continues.
- A failing query aborts the cycle: the failure counter is incremented and
  QueryExecutionError propagates. Nothing is deleted and the watermark
  stays where it was.
- A shutdown request is checked between rows and between deletes. The cycle
  raises TraversalAborted without counting it as a failure. Deletes already
  sent are dropped from the persisted id set so they are never repeated.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from dbconnector.contracts import (
    DocumentRecord,
    IndexingError,
    QueryExecutionError,
    Row,
    RowError,
    RowMappingError,
    TraversalAborted,
    TraversalKind,
)
from dbconnector.core.checkpoint import CheckpointStore
from dbconnector.engine.clock import Clock, SystemClock
from dbconnector.engine.documents import DocumentBuilder
from dbconnector.engine.retry import MaxRetriesExceeded, RetryManager
from dbconnector.engine.state import TraversalState
from dbconnector.plugins.protocols import IndexingService, RowSource
from dbconnector.plugins.sources.database_source import WatermarkTracker

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class TraversalResult:
    """Outcome of one completed cycle."""

    kind: TraversalKind
    rows_seen: int
    items_upserted: int
    items_deleted: int
    row_errors: int
    watermark: Any
    duration_ms: float


@dataclass(frozen=True, slots=True)
class _RowOutcome:
    item_id: str | None
    pushed: bool


class TraversalRunner:
    """Executes traversal cycles against one source and one index.

    One cycle of each kind runs at a time; a full and an incremental cycle
    may run concurrently.
    """

    def __init__(
        self,
        *,
        source_id: str,
        source: RowSource,
        builder: DocumentBuilder,
        index: IndexingService,
        state: TraversalState,
        checkpoint: CheckpointStore,
        retry: RetryManager,
        watermark_column: str | None = None,
        stop_event: threading.Event | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._source_id = source_id
        self._source = source
        self._builder = builder
        self._index = index
        self._state = state
        self._checkpoint = checkpoint
        self._retry = retry
        self._watermark_column = watermark_column
        self._stop_event = stop_event if stop_event is not None else threading.Event()
        self._clock = clock if clock is not None else SystemClock()
        self._started_at = self._clock.now()
        self._cycle_locks = {TraversalKind.FULL: threading.Lock(), TraversalKind.INCREMENTAL: threading.Lock()}
        self._log = logger.bind(source_id=source_id)

        stored = checkpoint.load_watermark(source_id)
        if stored is not None:
            state.watermark = stored
            self._log.info("watermark_restored", watermark=str(stored))

    @property
    def started_at(self) -> Any:
        return self._started_at

    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def _check_stop(self, kind: TraversalKind) -> None:
        if self._stop_event.is_set():
            raise TraversalAborted(f"{kind.value} traversal aborted by shutdown request")

    def run_full(self) -> TraversalResult:
        """Run one full traversal cycle.

        Raises:
            QueryExecutionError: If the snapshot query fails
            TraversalAborted: If shutdown was requested mid-cycle
        """
        kind = TraversalKind.FULL
        with self._cycle_locks[kind]:
            log = self._log.bind(traversal=kind.value)
            log.info("traversal_started")
            started = time.perf_counter()
            tracker = WatermarkTracker(self._watermark_column)
            seen: set[str] = set()
            upserted = row_errors = 0
            previous: frozenset[str] | None = None
            deleted_ids: set[str] = set()

            try:
                if not self._publish_default_acl(kind):
                    row_errors += 1
                for row in self._source.iter_all_rows(should_stop=self.stop_requested):
                    self._check_stop(kind)
                    tracker.observe(row)
                    outcome = self._process_row(kind, row)
                    if outcome.item_id is not None:
                        seen.add(outcome.item_id)
                    if outcome.pushed:
                        upserted += 1
                    else:
                        row_errors += 1
                self._check_stop(kind)

                previous = self._previous_ids()
                vanished = sorted(previous - seen) if previous is not None else []
                undeleted: set[str] = set()
                for doc_id in vanished:
                    self._check_stop(kind)
                    if self._delete(kind, doc_id):
                        deleted_ids.add(doc_id)
                    else:
                        row_errors += 1
                        # Kept so the next full traversal retries the delete
                        undeleted.add(doc_id)
            except QueryExecutionError as e:
                self._state.record_failure(kind)
                log.error("traversal_failed", error=str(e), rows_seen=tracker.rows_seen)
                raise
            except TraversalAborted:
                log.warning("traversal_aborted", rows_seen=tracker.rows_seen, items_deleted=len(deleted_ids))
                if previous is not None and deleted_ids:
                    self._forget_deleted(previous, deleted_ids)
                raise

            deleted = len(deleted_ids)
            current = frozenset(seen | undeleted)
            self._checkpoint.replace_indexed_ids(self._source_id, current)
            self._state.last_seen_ids = current
            self._seed_watermark(tracker)
            self._state.record_success(kind)

            result = TraversalResult(
                kind=kind,
                rows_seen=tracker.rows_seen,
                items_upserted=upserted,
                items_deleted=deleted,
                row_errors=row_errors,
                watermark=self._state.watermark,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            log.info(
                "traversal_completed",
                rows_seen=result.rows_seen,
                items_upserted=result.items_upserted,
                items_deleted=result.items_deleted,
                row_errors=result.row_errors,
                duration_ms=round(result.duration_ms, 1),
            )
            return result

    def run_incremental(self) -> TraversalResult:
        """Run one incremental traversal cycle.

        Raises:
            QueryExecutionError: If the changed-rows query fails
            TraversalAborted: If shutdown was requested mid-cycle
        """
        kind = TraversalKind.INCREMENTAL
        with self._cycle_locks[kind]:
            log = self._log.bind(traversal=kind.value)
            watermark = self._state.watermark
            # A column watermark nobody has observed yet is established by
            # scanning every row; binding a start time would not match its type
            scan_all = watermark is None and self._watermark_column is not None
            if watermark is None and not scan_all:
                watermark = self._started_at
            cycle_started_at = self._clock.now()
            log.info("traversal_started", watermark=str(watermark), scan_all=scan_all)
            started = time.perf_counter()
            tracker = WatermarkTracker(self._watermark_column)
            upserted = row_errors = 0

            try:
                rows = (
                    self._source.iter_all_rows(should_stop=self.stop_requested)
                    if scan_all
                    else self._source.iter_changed_rows(watermark)
                )
                for row in rows:
                    self._check_stop(kind)
                    tracker.observe(row)
                    outcome = self._process_row(kind, row)
                    if outcome.pushed:
                        upserted += 1
                    else:
                        row_errors += 1
                self._check_stop(kind)
            except QueryExecutionError as e:
                self._state.record_failure(kind)
                log.error("traversal_failed", error=str(e), rows_seen=tracker.rows_seen)
                raise
            except TraversalAborted:
                log.warning("traversal_aborted", rows_seen=tracker.rows_seen)
                raise

            if tracker.rows_seen:
                advanced = tracker.value if self._watermark_column is not None else cycle_started_at
                if advanced is not None:
                    self._checkpoint.save_watermark(self._source_id, advanced)
                    self._state.watermark = advanced
                    watermark = advanced
            self._state.record_success(kind)

            result = TraversalResult(
                kind=kind,
                rows_seen=tracker.rows_seen,
                items_upserted=upserted,
                items_deleted=0,
                row_errors=row_errors,
                watermark=watermark,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            log.info(
                "traversal_completed",
                rows_seen=result.rows_seen,
                items_upserted=result.items_upserted,
                row_errors=result.row_errors,
                watermark=str(result.watermark),
                duration_ms=round(result.duration_ms, 1),
            )
            return result

    def _previous_ids(self) -> frozenset[str] | None:
        previous = self._state.last_seen_ids
        if previous is None:
            previous = self._checkpoint.load_indexed_ids(self._source_id)
        return previous

    def _publish_default_acl(self, kind: TraversalKind) -> bool:
        """Upsert the named default ACL container; every full cycle re-publishes it."""
        container = self._builder.default_acl_container()
        if container is None:
            return True
        if not self._upsert(kind, container):
            return False
        self._log.debug("default_acl_published", item_id=container.item_id)
        return True

    def _forget_deleted(self, previous: frozenset[str], deleted_ids: set[str]) -> None:
        # Deletes already sent by an aborted cycle must not be sent again
        remaining = previous - deleted_ids
        self._checkpoint.replace_indexed_ids(self._source_id, remaining)
        self._state.last_seen_ids = remaining

    def _seed_watermark(self, tracker: WatermarkTracker) -> None:
        if self._watermark_column is None or tracker.value is None:
            return
        if self._state.seed_watermark(tracker.value):
            self._checkpoint.save_watermark(self._source_id, tracker.value)
            self._log.info("watermark_seeded", watermark=str(tracker.value))

    def _process_row(self, kind: TraversalKind, row: Row) -> _RowOutcome:
        try:
            _, doc_id = self._builder.identify(row)
        except RowMappingError as e:
            self._record_row_error(kind, e, None)
            return _RowOutcome(item_id=None, pushed=False)

        try:
            document = self._builder.build(row)
        except RowMappingError as e:
            self._record_row_error(kind, e, doc_id)
            return _RowOutcome(item_id=doc_id, pushed=False)

        return _RowOutcome(item_id=doc_id, pushed=self._upsert(kind, document))

    def _upsert(self, kind: TraversalKind, document: DocumentRecord) -> bool:
        return self._with_retry(kind, document.item_id, "upsert", lambda: self._index.upsert(document))

    def _delete(self, kind: TraversalKind, doc_id: str) -> bool:
        return self._with_retry(kind, doc_id, "delete", lambda: self._index.delete(doc_id))

    def _with_retry(self, kind: TraversalKind, doc_id: str, op: str, operation: Callable[[], None]) -> bool:
        def on_retry(attempt: int, error: BaseException) -> None:
            self._log.warning("indexing_retry", op=op, item_id=doc_id, attempt=attempt, error=str(error))

        try:
            self._retry.execute_with_retry(operation, on_retry=on_retry)
        except MaxRetriesExceeded as e:
            self._record_row_error(kind, e, doc_id)
            return False
        except IndexingError as e:
            self._record_row_error(kind, e, doc_id)
            return False
        return True

    def _record_row_error(self, kind: TraversalKind, error: Exception, doc_id: str | None) -> None:
        row_error = RowError.from_exception(kind, error, item_id=doc_id)
        self._state.record_row_error(row_error)
        self._log.warning(
            "row_skipped",
            traversal=kind.value,
            item_id=doc_id,
            error_type=row_error.error_type,
            error=row_error.message,
        )

# tests/engine/test_traversal_runner.py
"""Tests for TraversalRunner full and incremental cycles."""

import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any

import pytest

from dbconnector.contracts import (
    DocumentRecord,
    IndexingError,
    ItemType,
    QueryExecutionError,
    Row,
    TransientIndexingError,
    TraversalAborted,
    TraversalKind,
)
from dbconnector.core.checkpoint import CheckpointStore
from dbconnector.core.config import ConnectorSettings
from dbconnector.engine.clock import MockClock
from dbconnector.engine.documents import DocumentBuilder
from dbconnector.engine.retry import RetryManager
from dbconnector.engine.state import TraversalState
from dbconnector.engine.traversal import TraversalRunner
from dbconnector.plugins.indexing.memory import MemoryIndex
from dbconnector.plugins.protocols import IndexingService, RowSource
from dbconnector.plugins.sources.database_source import DatabaseSource

INCREMENTAL = {
    "database": {
        "all_records_sql": "SELECT id, name, phone, version FROM employees",
        "incremental_update_sql": "SELECT id, name, phone, version FROM employees WHERE version > ? ORDER BY version",
        "incremental_watermark_column": "version",
    }
}


class FailingIndex(MemoryIndex):
    """MemoryIndex that rejects operations on selected ids."""

    def __init__(self, *, fail_upserts: set[str] | None = None, fail_deletes: set[str] | None = None, transient: bool = True) -> None:
        super().__init__()
        self.fail_upserts = fail_upserts or set()
        self.fail_deletes = fail_deletes or set()
        self._error = TransientIndexingError if transient else IndexingError

    def upsert(self, document: DocumentRecord) -> None:
        if document.item_id in self.fail_upserts:
            raise self._error(f"upsert {document.item_id} failed")
        super().upsert(document)

    def delete(self, item_id: str) -> None:
        if item_id in self.fail_deletes:
            raise self._error(f"delete {item_id} failed")
        super().delete(item_id)


class StubSource:
    """RowSource serving fixed rows and recording incremental watermarks."""

    def __init__(self, rows: list[Row]) -> None:
        self.rows = rows
        self.watermarks: list[Any] = []

    @property
    def supports_incremental(self) -> bool:
        return True

    def check_connection(self) -> None:
        pass

    def iter_all_rows(self, should_stop: Callable[[], bool] | None = None) -> Iterator[Row]:
        yield from self.rows

    def iter_changed_rows(self, watermark: Any) -> Iterator[Row]:
        self.watermarks.append(watermark)
        yield from self.rows

    def close(self) -> None:
        pass


def doc_id(name: str) -> str:
    return f"datasources/employees/items/{name}"


@pytest.fixture
def make_runner(
    make_settings: Callable[..., ConnectorSettings],
    employees_db: Any,
    fast_retry: RetryManager,
) -> Iterator[Callable[..., TraversalRunner]]:
    """Factory for runners over the employees table.

    Keyword arguments override collaborators; by default every runner gets
    a fresh MemoryIndex, TraversalState and in-memory CheckpointStore.
    """
    created: list[DatabaseSource] = []

    def _make(
        overrides: dict[str, Any] | None = None,
        *,
        source: RowSource | None = None,
        index: IndexingService | None = None,
        state: TraversalState | None = None,
        checkpoint: CheckpointStore | None = None,
        stop_event: threading.Event | None = None,
        clock: MockClock | None = None,
    ) -> TraversalRunner:
        merged = dict(overrides or {})
        database = {"url": employees_db.url, **merged.pop("database", {})}
        settings = make_settings({"database": database, **merged})
        if source is None:
            db_source = DatabaseSource(settings.database)
            created.append(db_source)
            source = db_source
        return TraversalRunner(
            source_id=settings.source_id,
            source=source,
            builder=DocumentBuilder(settings),
            index=index if index is not None else MemoryIndex(),
            state=state if state is not None else TraversalState(),
            checkpoint=checkpoint if checkpoint is not None else CheckpointStore.in_memory(),
            retry=fast_retry,
            watermark_column=settings.database.incremental_watermark_column,
            stop_event=stop_event,
            clock=clock,
        )

    yield _make
    for db_source in created:
        db_source.close()


def insert(db: Any, *rows: tuple[str, str, str, int]) -> None:
    db.execute(
        "INSERT INTO employees (id, name, phone, version) VALUES (:id, :name, :phone, :version)",
        [{"id": r[0], "name": r[1], "phone": r[2], "version": r[3]} for r in rows],
    )


class TestFullTraversal:
    def test_upserts_every_row(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        insert(employees_db, ("1", "Jones May", "2134", 1), ("2", "Joe Smith", "9898", 1))
        index = MemoryIndex()
        state = TraversalState()

        result = make_runner(index=index, state=state).run_full()

        assert result.kind is TraversalKind.FULL
        assert result.rows_seen == 2
        assert result.items_upserted == 2
        assert result.items_deleted == 0
        assert set(index.documents) == {doc_id("1"), doc_id("2")}
        assert state.snapshot().successful_full_traversals == 1
        assert state.snapshot().indexed_item_count == 2

    def test_vanished_row_deleted_exactly_once(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        insert(employees_db, ("1", "a", "1", 1), ("2", "b", "2", 1), ("3", "c", "3", 1))
        index = MemoryIndex()
        runner = make_runner(index=index)
        runner.run_full()

        employees_db.execute("DELETE FROM employees WHERE id = '2'")
        second = runner.run_full()
        third = runner.run_full()

        assert second.items_deleted == 1
        assert third.items_deleted == 0
        assert index.count("delete", doc_id("2")) == 1
        assert doc_id("2") not in index.documents

    def test_first_traversal_deletes_nothing(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        insert(employees_db, ("1", "a", "1", 1))
        index = MemoryIndex()

        make_runner(index=index).run_full()

        assert [op.op for op in index.operations] == ["upsert"]

    def test_previous_ids_loaded_from_checkpoint(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        """A restarted connector still deletes rows removed while it was down."""
        insert(employees_db, ("1", "a", "1", 1), ("2", "b", "2", 1))
        checkpoint = CheckpointStore.in_memory()
        make_runner(checkpoint=checkpoint).run_full()
        employees_db.execute("DELETE FROM employees WHERE id = '1'")
        index = MemoryIndex()

        result = make_runner(checkpoint=checkpoint, index=index).run_full()

        assert result.items_deleted == 1
        assert index.count("delete", doc_id("1")) == 1

    def test_row_error_does_not_abort_cycle(
        self, make_runner: Callable[..., TraversalRunner], employees_db: Any
    ) -> None:
        insert(employees_db, ("1", "a", "not a number", 1), ("2", "b", "2134", 1))
        index = MemoryIndex()
        state = TraversalState()
        runner = make_runner({"structured_data": {"fields": {"phone": "integer"}}}, index=index, state=state)

        result = runner.run_full()

        assert result.row_errors == 1
        assert result.items_upserted == 1
        assert set(index.documents) == {doc_id("2")}
        errors = state.snapshot().recent_row_errors
        assert len(errors) == 1
        assert errors[0].item_id == doc_id("1")
        assert errors[0].error_type == "FieldCoercionError"
        assert state.snapshot().successful_full_traversals == 1

    def test_unbuildable_row_is_not_deleted(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        """A row that still exists but fails to build keeps its indexed item."""
        insert(employees_db, ("1", "a", "2134", 1))
        index = MemoryIndex()
        state = TraversalState()
        checkpoint = CheckpointStore.in_memory()
        overrides = {"structured_data": {"fields": {"phone": "integer"}}}
        make_runner(overrides, index=index, state=state, checkpoint=checkpoint).run_full()
        employees_db.execute("UPDATE employees SET phone = 'unknown' WHERE id = '1'")

        result = make_runner(overrides, index=index, state=state, checkpoint=checkpoint).run_full()

        assert result.items_deleted == 0
        assert index.count("delete", doc_id("1")) == 0

    def test_missing_unique_key_recorded(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        employees_db.execute("INSERT INTO employees (id, name, phone, version) VALUES (NULL, 'ghost', '0', 1)")
        insert(employees_db, ("2", "b", "2", 1))
        state = TraversalState()

        result = make_runner(state=state).run_full()

        assert result.row_errors == 1
        error = state.snapshot().recent_row_errors[0]
        assert error.error_type == "MissingUniqueKeyError"
        assert error.item_id is None

    def test_retry_exhaustion_recorded_as_row_error(
        self, make_runner: Callable[..., TraversalRunner], employees_db: Any
    ) -> None:
        insert(employees_db, ("1", "a", "1", 1), ("2", "b", "2", 1))
        index = FailingIndex(fail_upserts={doc_id("1")})
        state = TraversalState()

        result = make_runner(index=index, state=state).run_full()

        assert result.row_errors == 1
        assert set(index.documents) == {doc_id("2")}
        assert state.snapshot().recent_row_errors[0].error_type == "MaxRetriesExceeded"

    def test_failed_delete_retried_next_cycle(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        insert(employees_db, ("1", "a", "1", 1), ("2", "b", "2", 1))
        index = FailingIndex(transient=False)
        runner = make_runner(index=index)
        runner.run_full()
        employees_db.execute("DELETE FROM employees WHERE id = '2'")
        index.fail_deletes = {doc_id("2")}

        failed = runner.run_full()
        index.fail_deletes = set()
        retried = runner.run_full()

        assert failed.items_deleted == 0
        assert failed.row_errors == 1
        assert retried.items_deleted == 1
        assert doc_id("2") not in index.documents

    def test_query_failure_aborts_cycle(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        insert(employees_db, ("1", "a", "1", 1))
        index = MemoryIndex()
        state = TraversalState()
        runner = make_runner(index=index, state=state)
        runner.run_full()
        employees_db.execute("ALTER TABLE employees RENAME TO staff")

        with pytest.raises(QueryExecutionError):
            runner.run_full()

        stats = state.snapshot()
        assert stats.failed_full_traversals == 1
        assert stats.successful_full_traversals == 1
        assert index.count("delete", doc_id("1")) == 0

    def test_shutdown_mid_cycle_aborts_without_deletes(
        self, make_runner: Callable[..., TraversalRunner], employees_db: Any
    ) -> None:
        insert(employees_db, ("1", "a", "1", 1), ("2", "b", "2", 1), ("3", "c", "3", 1))
        stop_event = threading.Event()
        state = TraversalState()

        class StoppingIndex(MemoryIndex):
            def upsert(self, document: DocumentRecord) -> None:
                super().upsert(document)
                stop_event.set()

        index = StoppingIndex()
        checkpoint = CheckpointStore.in_memory()
        checkpoint.replace_indexed_ids("employees", {doc_id("9")})
        runner = make_runner(index=index, state=state, checkpoint=checkpoint, stop_event=stop_event)

        with pytest.raises(TraversalAborted):
            runner.run_full()

        stats = state.snapshot()
        assert stats.failed_full_traversals == 0
        assert stats.successful_full_traversals == 0
        assert index.count("delete", doc_id("9")) == 0
        assert len(index.documents) == 1
        assert checkpoint.load_indexed_ids("employees") == frozenset({doc_id("9")})

    def test_deletes_sent_before_shutdown_are_not_repeated(
        self, make_runner: Callable[..., TraversalRunner], employees_db: Any
    ) -> None:
        """A shutdown between deletes still deletes each vanished id once overall."""
        insert(employees_db, ("1", "a", "1", 1))
        stop_event = threading.Event()

        class StopAfterDeleteIndex(MemoryIndex):
            def delete(self, item_id: str) -> None:
                super().delete(item_id)
                stop_event.set()

        index = StopAfterDeleteIndex()
        checkpoint = CheckpointStore.in_memory()
        checkpoint.replace_indexed_ids("employees", {doc_id("1"), doc_id("8"), doc_id("9")})
        runner = make_runner(index=index, checkpoint=checkpoint, stop_event=stop_event)

        with pytest.raises(TraversalAborted):
            runner.run_full()
        assert checkpoint.load_indexed_ids("employees") == frozenset({doc_id("1"), doc_id("9")})

        stop_event.clear()
        resumed = runner.run_full()
        stop_event.clear()
        settled = runner.run_full()

        assert resumed.items_deleted == 1
        assert settled.items_deleted == 0
        assert index.count("delete", doc_id("8")) == 1
        assert index.count("delete", doc_id("9")) == 1
        assert checkpoint.load_indexed_ids("employees") == frozenset({doc_id("1")})

    def test_named_default_acl_published_and_never_deleted(
        self, make_runner: Callable[..., TraversalRunner], employees_db: Any
    ) -> None:
        insert(employees_db, ("1", "a", "1", 1))
        index = MemoryIndex()
        runner = make_runner({"default_acl": {"name": "hr_default"}}, index=index)
        container_id = doc_id("hr_default")

        first = runner.run_full()
        second = runner.run_full()

        container = index.get(container_id)
        assert container is not None
        assert container.item_type is ItemType.VIRTUAL_CONTAINER_ITEM
        assert container.acl.public is True
        assert index.count("upsert", container_id) == 2
        assert index.count("delete", container_id) == 0
        assert first.items_upserted == 1
        assert second.items_deleted == 0

    def test_failed_default_acl_publish_is_a_row_error(
        self, make_runner: Callable[..., TraversalRunner], employees_db: Any
    ) -> None:
        insert(employees_db, ("1", "a", "1", 1))
        index = FailingIndex(fail_upserts={doc_id("hr_default")}, transient=False)
        state = TraversalState()

        result = make_runner({"default_acl": {"name": "hr_default"}}, index=index, state=state).run_full()

        assert result.row_errors == 1
        assert result.items_upserted == 1
        assert state.snapshot().recent_row_errors[0].item_id == doc_id("hr_default")
        assert state.snapshot().successful_full_traversals == 1

    def test_full_traversal_seeds_watermark(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        insert(employees_db, ("1", "a", "1", 3), ("2", "b", "2", 8))
        state = TraversalState()
        checkpoint = CheckpointStore.in_memory()

        result = make_runner(INCREMENTAL, state=state, checkpoint=checkpoint).run_full()

        assert result.watermark == 8
        assert state.watermark == 8
        assert checkpoint.load_watermark("employees") == 8


class TestIncrementalTraversal:
    def test_pushes_changed_rows_and_advances_watermark(
        self, make_runner: Callable[..., TraversalRunner], employees_db: Any
    ) -> None:
        insert(employees_db, ("1", "a", "1", 1), ("2", "b", "2", 2))
        index = MemoryIndex()
        state = TraversalState()
        checkpoint = CheckpointStore.in_memory()
        checkpoint.save_watermark("employees", 1)
        runner = make_runner(INCREMENTAL, index=index, state=state, checkpoint=checkpoint)

        result = runner.run_incremental()

        assert result.kind is TraversalKind.INCREMENTAL
        assert result.rows_seen == 1
        assert set(index.documents) == {doc_id("2")}
        assert result.watermark == 2
        assert checkpoint.load_watermark("employees") == 2
        assert state.snapshot().successful_incremental_traversals == 1

    def test_no_rows_keeps_watermark(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        insert(employees_db, ("1", "a", "1", 4))
        checkpoint = CheckpointStore.in_memory()
        checkpoint.save_watermark("employees", 4)
        state = TraversalState()

        result = make_runner(INCREMENTAL, state=state, checkpoint=checkpoint).run_incremental()

        assert result.rows_seen == 0
        assert result.watermark == 4
        assert state.watermark == 4
        assert state.snapshot().successful_incremental_traversals == 1

    def test_watermark_restored_from_checkpoint(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        checkpoint = CheckpointStore.in_memory()
        checkpoint.save_watermark("employees", 11)
        state = TraversalState()

        make_runner(INCREMENTAL, state=state, checkpoint=checkpoint)

        assert state.watermark == 11

    def test_updated_row_picked_up(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        insert(employees_db, ("1", "a", "1", 1))
        index = MemoryIndex()
        runner = make_runner(INCREMENTAL, index=index)
        runner.run_full()
        employees_db.execute("UPDATE employees SET name = 'renamed', version = 2 WHERE id = '1'")

        result = runner.run_incremental()

        assert result.items_upserted == 1
        assert result.watermark == 2
        document = index.get(doc_id("1"))
        assert document is not None
        assert index.count("upsert", doc_id("1")) == 2

    def test_first_cycle_after_empty_full_scans_all_rows(
        self, make_runner: Callable[..., TraversalRunner], employees_db: Any
    ) -> None:
        """An empty table seeds no watermark; the next incremental cycle establishes one."""
        index = MemoryIndex()
        state = TraversalState()
        checkpoint = CheckpointStore.in_memory()
        runner = make_runner(INCREMENTAL, index=index, state=state, checkpoint=checkpoint)
        runner.run_full()
        assert state.watermark is None
        insert(employees_db, ("1", "a", "1", 1))

        first = runner.run_incremental()
        employees_db.execute("UPDATE employees SET name = 'renamed', version = 2 WHERE id = '1'")
        second = runner.run_incremental()

        assert first.items_upserted == 1
        assert first.watermark == 1
        assert second.items_upserted == 1
        assert second.watermark == 2
        assert checkpoint.load_watermark("employees") == 2
        document = index.get(doc_id("1"))
        assert document is not None
        assert index.count("upsert", doc_id("1")) == 2

    def test_scan_without_rows_leaves_watermark_unset(
        self, make_runner: Callable[..., TraversalRunner], employees_db: Any
    ) -> None:
        state = TraversalState()

        result = make_runner(INCREMENTAL, state=state).run_incremental()

        assert result.rows_seen == 0
        assert result.watermark is None
        assert state.watermark is None
        assert state.snapshot().successful_incremental_traversals == 1

    def test_query_failure_keeps_watermark(self, make_runner: Callable[..., TraversalRunner], employees_db: Any) -> None:
        checkpoint = CheckpointStore.in_memory()
        checkpoint.save_watermark("employees", 3)
        state = TraversalState()
        runner = make_runner(INCREMENTAL, state=state, checkpoint=checkpoint)
        employees_db.execute("DROP TABLE employees")

        with pytest.raises(QueryExecutionError):
            runner.run_incremental()

        assert state.snapshot().failed_incremental_traversals == 1
        assert state.watermark == 3
        assert checkpoint.load_watermark("employees") == 3


class TestClockWatermark:
    """Without a watermark column the cycle start time is the watermark."""

    def test_initial_watermark_is_connector_start(self, make_runner: Callable[..., TraversalRunner]) -> None:
        start = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
        clock = MockClock(start)
        source = StubSource([])

        make_runner(source=source, clock=clock).run_incremental()

        assert source.watermarks == [start]

    def test_advances_to_cycle_start_when_rows_returned(self, make_runner: Callable[..., TraversalRunner]) -> None:
        start = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
        clock = MockClock(start)
        source = StubSource([{"id": "1", "name": "a", "phone": "1"}])
        runner = make_runner(source=source, clock=clock)

        clock.advance(60)
        first = runner.run_incremental()
        clock.advance(60)
        runner.run_incremental()

        assert first.watermark == datetime(2024, 1, 1, 9, 1, tzinfo=UTC)
        assert source.watermarks == [start, datetime(2024, 1, 1, 9, 1, tzinfo=UTC)]

    def test_no_rows_does_not_advance(self, make_runner: Callable[..., TraversalRunner]) -> None:
        start = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
        clock = MockClock(start)
        source = StubSource([])
        runner = make_runner(source=source, clock=clock)

        clock.advance(60)
        runner.run_incremental()
        runner.run_incremental()

        assert source.watermarks == [start, start]

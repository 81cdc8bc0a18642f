# src/dbconnector/plugins/sources/database_source.py
"""Relational database source.

Runs the configured full-snapshot and changed-rows statements through
SQLAlchemy and yields each result row as a plain dict keyed by result-set
label, so SQL aliases rename columns.

Rows are produced lazily: one cursor per call, consumed as the traversal
pushes documents. Offset pagination re-executes the statement with an
increasing offset until a page comes back empty (or short, when a page size
is configured).
"""

from collections.abc import Callable, Iterator, Mapping
from typing import Any

import structlog
from sqlalchemy import TextClause, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dbconnector.contracts import PaginationMode, QueryExecutionError, Row, SourceConnectionError
from dbconnector.core.config import DatabaseSettings
from dbconnector.plugins.sources.statements import PreparedStatement, prepare_statement

logger = structlog.get_logger(__name__)

OFFSET_PARAM = "offset"
WATERMARK_PARAM = "watermark"


class WatermarkTracker:
    """Tracks the highest watermark column value seen during one pass.

    ``value`` stays None when the pass returned no rows, or when no row had
    a non-null watermark: the caller must not advance in that case.
    """

    def __init__(self, column: str | None) -> None:
        self._column = column
        self._value: Any = None
        self._rows_seen = 0

    @property
    def value(self) -> Any:
        return self._value

    @property
    def rows_seen(self) -> int:
        return self._rows_seen

    def observe(self, row: Row) -> None:
        self._rows_seen += 1
        if self._column is None:
            return
        candidate = row.get(self._column)
        if candidate is None:
            return
        if self._value is None or candidate > self._value:
            self._value = candidate


class DatabaseSource:
    """Query executor over a SQLAlchemy engine.

    Statements are validated at construction time: a wrong placeholder
    count raises QueryConfigurationError before any traversal starts.
    """

    def __init__(self, settings: DatabaseSettings, *, engine: Engine | None = None) -> None:
        self._settings = settings
        if settings.pagination is PaginationMode.OFFSET:
            self._all_records = prepare_statement(settings.all_records_sql, OFFSET_PARAM)
        else:
            self._all_records = prepare_statement(settings.all_records_sql, None)
        self._changed_rows: PreparedStatement | None = None
        if settings.incremental_update_sql is not None:
            self._changed_rows = prepare_statement(settings.incremental_update_sql, WATERMARK_PARAM)

        if engine is None:
            try:
                engine = create_engine(settings.sqlalchemy_url(), echo=False)
            except (SQLAlchemyError, ImportError) as e:
                raise SourceConnectionError(f"Cannot create database engine: {e}") from e
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def supports_incremental(self) -> bool:
        return self._changed_rows is not None

    def check_connection(self) -> None:
        """Verify the source is reachable.

        Raises:
            SourceConnectionError: If a trivial query cannot be executed
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            safe_url = self._engine.url.render_as_string(hide_password=True)
            raise SourceConnectionError(f"Cannot connect to {safe_url}: {e}") from e
        logger.debug("source_connection_ok", dialect=self._engine.dialect.name)

    def iter_all_rows(self, should_stop: Callable[[], bool] | None = None) -> Iterator[Row]:
        """Yield every row of the full-snapshot statement.

        Args:
            should_stop: Checked before each page fetch; pagination ends early
                when it returns True

        Raises:
            QueryExecutionError: If the statement fails
        """
        if self._settings.pagination is PaginationMode.NONE:
            yield from self._execute(self._all_records.clause, {})
            return

        param = self._all_records.param_name
        assert param is not None
        page_size = self._settings.page_size
        offset = 0
        while True:
            if should_stop is not None and should_stop():
                return
            page = list(self._execute(self._all_records.clause, {param: offset}))
            logger.debug("page_fetched", offset=offset, rows=len(page))
            if not page:
                return
            yield from page
            offset += len(page)
            if page_size is not None and len(page) < page_size:
                return

    def iter_changed_rows(self, watermark: Any) -> Iterator[Row]:
        """Yield rows changed since watermark.

        Raises:
            QueryExecutionError: If the statement fails
            RuntimeError: If no incremental statement is configured
        """
        if self._changed_rows is None:
            raise RuntimeError("No incremental_update_sql configured")
        param = self._changed_rows.param_name
        assert param is not None
        yield from self._execute(self._changed_rows.clause, {param: watermark})

    def _execute(self, clause: TextClause, params: Mapping[str, Any]) -> Iterator[Row]:
        try:
            with self._engine.connect() as conn:
                result = conn.execute(clause, dict(params))
                for mapping in result.mappings():
                    yield dict(mapping)
        except SQLAlchemyError as e:
            raise QueryExecutionError(f"Query failed: {e}") from e

    def close(self) -> None:
        self._engine.dispose()

# src/dbconnector/application.py
"""Connector assembly and lifecycle.

ConnectorApplication wires settings into a running connector:

    settings -> DatabaseSource, IndexingService, CheckpointStore
             -> DocumentBuilder -> TraversalRunner -> TraversalScheduler

Lifecycle:
1. start() - verify the source connection (fatal on failure), start schedules
2. shutdown(reason) - stop at the next row boundary
3. await_terminated(timeout) - join schedule threads
4. close() - release source, index and checkpoint resources

Collaborators can be injected for tests; anything not injected is built
from settings.
"""

import threading
from types import TracebackType
from typing import Self

import structlog

from dbconnector.contracts import TraversalKind
from dbconnector.core.checkpoint import CheckpointStore
from dbconnector.core.config import ConnectorSettings
from dbconnector.engine.clock import Clock
from dbconnector.engine.documents import DocumentBuilder
from dbconnector.engine.retry import RetryConfig, RetryManager
from dbconnector.engine.scheduler import TraversalScheduler, shutdown_signal_handlers
from dbconnector.engine.state import TraversalState, TraversalStats
from dbconnector.engine.traversal import TraversalResult, TraversalRunner
from dbconnector.plugins.indexing.factory import create_indexing_service
from dbconnector.plugins.protocols import IndexingService, RowSource
from dbconnector.plugins.sources.database_source import DatabaseSource

logger = structlog.get_logger(__name__)


class ConnectorApplication:
    """A configured connector instance."""

    def __init__(
        self,
        settings: ConnectorSettings,
        *,
        source: RowSource | None = None,
        index: IndexingService | None = None,
        checkpoint: CheckpointStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings
        self._stop_event = threading.Event()
        self._source = source if source is not None else DatabaseSource(settings.database)
        self._index = index if index is not None else create_indexing_service(settings.indexing)
        if checkpoint is None:
            directory = settings.connector.checkpoint_directory
            checkpoint = CheckpointStore.from_directory(directory) if directory is not None else CheckpointStore.in_memory()
        self._checkpoint = checkpoint
        self._clock = clock
        self._state = TraversalState()
        self._runner: TraversalRunner | None = None
        self._scheduler: TraversalScheduler | None = None

    @property
    def settings(self) -> ConnectorSettings:
        return self._settings

    @property
    def index(self) -> IndexingService:
        return self._index

    @property
    def runner(self) -> TraversalRunner:
        if self._runner is None:
            raise RuntimeError("Connector not started")
        return self._runner

    @property
    def scheduler(self) -> TraversalScheduler:
        if self._scheduler is None:
            raise RuntimeError("Connector not started")
        return self._scheduler

    def _build_runner(self) -> TraversalRunner:
        # Backoff waits on the stop event so shutdown is not delayed by retries
        retry = RetryManager(
            RetryConfig.from_settings(self._settings.indexing.retry),
            sleep=self._stop_event.wait,
        )
        return TraversalRunner(
            source_id=self._settings.source_id,
            source=self._source,
            builder=DocumentBuilder(self._settings),
            index=self._index,
            state=self._state,
            checkpoint=self._checkpoint,
            retry=retry,
            watermark_column=self._settings.database.incremental_watermark_column,
            stop_event=self._stop_event,
            clock=self._clock,
        )

    def start(self) -> None:
        """Verify the source and start traversal schedules.

        Raises:
            SourceConnectionError: If the source database is unreachable
            RuntimeError: If already started
        """
        if self._scheduler is not None:
            raise RuntimeError("Connector already started")
        self._source.check_connection()
        self._runner = self._build_runner()
        schedule = self._settings.schedule
        self._scheduler = TraversalScheduler(
            self._runner,
            stop_event=self._stop_event,
            full_interval_seconds=schedule.traversal_interval_seconds,
            incremental_interval_seconds=(
                schedule.incremental_traversal_interval_seconds if self._settings.incremental_enabled else None
            ),
            run_once=self._settings.connector.run_once,
        )
        logger.info(
            "connector_starting",
            source_id=self._settings.source_id,
            run_once=self._settings.connector.run_once,
            incremental=self._settings.incremental_enabled,
        )
        self._scheduler.start()

    def run_until_stopped(self) -> None:
        """Start, then block until shutdown (signal, run-once end or crash).

        SIGINT/SIGTERM request a graceful shutdown while this runs.
        """
        with shutdown_signal_handlers(lambda name: self.shutdown(f"received {name}")):
            self.start()
            self.scheduler.wait_for_stop()
            self.scheduler.await_terminated()

    def shutdown(self, reason: str) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(reason)
        else:
            self._stop_event.set()

    def await_terminated(self, timeout: float | None = None) -> bool:
        if self._scheduler is None:
            return True
        return self._scheduler.await_terminated(timeout)

    def stats(self) -> TraversalStats:
        return self._state.snapshot()

    def last_result(self, kind: TraversalKind) -> TraversalResult | None:
        if self._scheduler is None:
            return None
        return self._scheduler.last_result(kind)

    @property
    def fatal_error(self) -> BaseException | None:
        if self._scheduler is None:
            return None
        return self._scheduler.fatal_error

    def close(self) -> None:
        self._source.close()
        self._index.close()
        self._checkpoint.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.shutdown("context exit")
        self.await_terminated(timeout=30.0)
        self.close()

# src/dbconnector/engine/__init__.py
"""Traversal engine: rows in, index operations out.

This package provides:
- DocumentBuilder: row -> DocumentRecord (schema mapper + ACL resolver)
- TraversalRunner: full and incremental cycles
- TraversalScheduler: interval scheduling and graceful shutdown
- RetryManager: retry logic with tenacity

Example:
    runner = TraversalRunner(
        source_id="employees",
        source=DatabaseSource(settings.database),
        builder=DocumentBuilder(settings),
        index=MemoryIndex(),
        state=TraversalState(),
        checkpoint=CheckpointStore.in_memory(),
        retry=RetryManager(RetryConfig()),
    )
    result = runner.run_full()
"""

from dbconnector.engine.acl import resolve_acl, row_acl_from_row
from dbconnector.engine.clock import Clock, MockClock, SystemClock
from dbconnector.engine.documents import DocumentBuilder, HtmlContentRenderer
from dbconnector.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from dbconnector.engine.scheduler import TraversalScheduler, shutdown_signal_handlers
from dbconnector.engine.schema_mapper import map_row, value_to_text
from dbconnector.engine.state import TraversalState, TraversalStats
from dbconnector.engine.traversal import TraversalResult, TraversalRunner

__all__ = [
    "Clock",
    "DocumentBuilder",
    "HtmlContentRenderer",
    "MaxRetriesExceeded",
    "MockClock",
    "RetryConfig",
    "RetryManager",
    "SystemClock",
    "TraversalResult",
    "TraversalRunner",
    "TraversalScheduler",
    "TraversalState",
    "TraversalStats",
    "map_row",
    "resolve_acl",
    "row_acl_from_row",
    "shutdown_signal_handlers",
    "value_to_text",
]

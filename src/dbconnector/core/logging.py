# src/dbconnector/core/logging.py
"""Logging setup shared by the CLI and the traversal threads.

Modules log through ``structlog.get_logger(__name__)`` with event names and
key/value context (``traversal_started``, ``row_skipped item_id=...``).
configure_logging() installs one stdout handler on the root logger whose
ProcessorFormatter renders both structlog events and plain stdlib records
(SQLAlchemy, httpx), so the whole process writes a single format.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

# Libraries that log every statement or connection at DEBUG
_CHATTY_LIBRARIES = ("sqlalchemy", "httpx", "httpcore", "urllib3")


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderers(json_output: bool) -> list[Any]:
    if json_output:
        return [
            ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [
        ProcessorFormatter.remove_processors_meta,
        structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
    ]


def configure_logging(*, json_output: bool = False, level: str = "INFO") -> None:
    """Route structlog and stdlib logging to stdout.

    Args:
        json_output: One JSON object per line instead of console text
        level: Root level name, e.g. "DEBUG"

    Calling it again replaces the previous configuration.
    """
    root_level = logging.getLevelName(level.upper())
    if not isinstance(root_level, int):
        raise ValueError(f"Unknown log level: {level}")

    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        # Loggers are resolved per call so reconfiguring takes effect at once
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProcessorFormatter(processors=_renderers(json_output), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(root_level)

    for name in _CHATTY_LIBRARIES:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))

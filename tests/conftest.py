# tests/conftest.py
"""Shared test fixtures.

Fixtures:
- make_settings: build ConnectorSettings from the base connector config plus
  overrides (nested dicts are merged)
- sqlite_url: URL of a file-backed SQLite database under tmp_path
- sqlite_db: helper to run DDL/DML against that database
- fast_retry: RetryManager without backoff sleeps

File-backed SQLite (not :memory:) is used for source databases because the
scheduler runs traversals on worker threads and every thread must see the
same data.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import copy
import logging
import os
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from dbconnector.core.config import ConnectorSettings
from dbconnector.engine.retry import RetryConfig, RetryManager

# Minimal connector config: one table, "id" as identity, title and URL from
# "id", content language defaulting to en-US, public fallback ACL
BASE_CONFIG: dict[str, Any] = {
    "source_id": "employees",
    "connector": {"run_once": True},
    "database": {
        "url": "sqlite://",
        "all_records_sql": "SELECT id, name, phone FROM employees",
        "all_columns": "id, name, phone",
        "unique_key_columns": "id",
        "view_url_columns": "id",
    },
    "url": {"columns": "id"},
    "item_metadata": {
        "title": {"field": "id"},
        "content_language": {"default_value": "en-US"},
    },
    "default_acl": {"mode": "fallback", "public": True},
}


def _merge(base: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@pytest.fixture
def make_settings() -> Callable[..., ConnectorSettings]:
    """Factory: make_settings({"database": {...}}) -> ConnectorSettings."""

    def _make(overrides: Mapping[str, Any] | None = None) -> ConnectorSettings:
        return ConnectorSettings(**_merge(BASE_CONFIG, overrides or {}))

    return _make


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'source.db'}"


class SqliteDatabase:
    """Runs statements against a test source database."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.engine: Engine = create_engine(url)

    def execute(self, statement: str, params: Mapping[str, Any] | list[Mapping[str, Any]] | None = None) -> None:
        with self.engine.begin() as conn:
            if isinstance(params, list):
                conn.execute(text(statement), [dict(p) for p in params])
            else:
                conn.execute(text(statement), dict(params or {}))

    def close(self) -> None:
        self.engine.dispose()


@pytest.fixture
def sqlite_db(sqlite_url: str) -> Iterator[SqliteDatabase]:
    db = SqliteDatabase(sqlite_url)
    yield db
    db.close()


@pytest.fixture
def employees_db(sqlite_db: SqliteDatabase) -> SqliteDatabase:
    """Source database with an employees table (id, name, phone, version)."""
    sqlite_db.execute("CREATE TABLE employees (id TEXT PRIMARY KEY, name TEXT, phone TEXT, version INTEGER)")
    return sqlite_db


@pytest.fixture
def fast_retry() -> RetryManager:
    return RetryManager(RetryConfig(max_attempts=3, initial_delay=0.01, max_delay=0.05, jitter=0.0), sleep=lambda _: None)


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """Drop handlers bound to a previous test's captured stdout."""
    yield
    logging.getLogger().handlers = []
    structlog.reset_defaults()


# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Timing varies on CI runners
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))

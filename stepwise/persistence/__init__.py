"""Persistence layer for workflow definitions and runs."""

from __future__ import annotations

from typing import Optional

from ..config import StepwiseConfig, load_config
from .inmemory import InMemoryRunStore
from .models import RunRecord, RunStats, RunStatusView
from .postgres import PostgresRunStore
from .repository import RunStore
from .sqlite import SQLiteRunStore

_store_instance: RunStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> RunStore:
    """Factory function to obtain a run store.

    The backend is selected from ``database_url``, which can be passed
    explicitly or come from configuration (where ``STEPWISE_DATABASE_URL``
    and ``DATABASE_URL`` already override the YAML value). Without a
    database an in-memory store is returned. The store is cached when
    neither argument is given.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = database_url or config.database_url

    if not database_url:
        _store_instance = InMemoryRunStore()
    elif database_url.startswith("sqlite://"):
        _store_instance = SQLiteRunStore(database_url.replace("sqlite://", "", 1))
    elif database_url.startswith(("postgres://", "postgresql://")):
        _store_instance = PostgresRunStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")
    return _store_instance


__all__ = [
    "InMemoryRunStore",
    "PostgresRunStore",
    "RunRecord",
    "RunStats",
    "RunStatusView",
    "RunStore",
    "SQLiteRunStore",
    "get_store",
]

"""Storage adapters for workflows, executions and their side records."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import WaystoneConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

logger = logging.getLogger(__name__)

_repository_instance: WorkflowRepository | None = None


def _resolve_database_url(database_url: Optional[str], config: Optional[WaystoneConfig]) -> str:
    if database_url:
        return database_url
    env_url = os.getenv("WAYSTONE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_url:
        return env_url
    return (config or load_config()).database_url or "memory://"


def build_repository(database_url: str) -> WorkflowRepository:
    """Instantiate the adapter for ``database_url`` without caching it.

    ``memory://`` (or an empty url) selects the in-memory store and
    ``sqlite://<path>`` a SQLite file.
    """
    if not database_url or database_url.startswith("memory://"):
        return InMemoryWorkflowRepository()
    if database_url.startswith("sqlite://"):
        return SQLiteWorkflowRepository(database_url[len("sqlite://") :])
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[WaystoneConfig] = None
) -> WorkflowRepository:
    """Return the process-wide repository, creating it on first use.

    An explicit ``database_url`` or ``config`` always builds a fresh adapter
    and makes it the cached one.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    url = _resolve_database_url(database_url, config)
    _repository_instance = build_repository(url)
    logger.debug(f"Using {type(_repository_instance).__name__} for {url}")
    return _repository_instance


def reset_repository() -> None:
    global _repository_instance
    _repository_instance = None


__all__ = [
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "build_repository",
    "get_repository",
    "reset_repository",
]

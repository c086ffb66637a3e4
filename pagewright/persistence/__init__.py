"""Persistence layer for pagewright runs and tasks."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PagewrightConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import WorkflowRepository
from .sql import SQLWorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[PagewrightConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via ``PAGEWRIGHT_DATABASE_URL`` or ``DATABASE_URL``, or from
    loaded configuration. ``sqlite://<path>`` uses the plain SQLite backend;
    URLs naming an async driver (``sqlite+aiosqlite://``,
    ``postgresql+asyncpg://``) and ``postgres://`` URLs use SQLModel. With no
    database configured an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("PAGEWRIGHT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteWorkflowRepository(path)
        return _repository_instance

    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        database_url = "postgresql+asyncpg://" + database_url.split("://", 1)[1]

    if "+" not in database_url.split("://", 1)[0]:
        raise ValueError(f"Unsupported database backend: {database_url}")
    _repository_instance = SQLWorkflowRepository(database_url)
    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository instance."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    "SQLiteWorkflowRepository",
    "SQLWorkflowRepository",
    "get_repository",
    "reset_repository",
]

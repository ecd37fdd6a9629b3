"""Persistence layer for flowkeeper workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowkeeperConfig, load_config
from .inmemory import (
    InMemoryCompensationRunRepository,
    InMemoryJobRepository,
    InMemoryRepositories,
    InMemoryResolutionDecisionRepository,
    InMemoryStepOutputRepository,
    InMemoryStepRunRepository,
    InMemoryWorkflowRepository,
)
from .repository import (
    CompensationRunRepository,
    JobRepository,
    Repositories,
    ResolutionDecisionRepository,
    StepOutputRepository,
    StepRunRepository,
    WorkflowRepository,
)
from .sqlite import SQLiteDatabase, SQLiteRepositories

_repositories_instance: Repositories | None = None


def get_repositories(
    database_url: Optional[str] = None, config: Optional[FlowkeeperConfig] = None
) -> Repositories:
    """Factory function to obtain the repositories.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWKEEPER_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, in-memory repositories are returned.
    """

    global _repositories_instance
    if _repositories_instance is not None and database_url is None and config is None:
        return _repositories_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWKEEPER_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repositories_instance = InMemoryRepositories()
        return _repositories_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repositories_instance = SQLiteRepositories(path)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repositories_instance


__all__ = [
    "CompensationRunRepository",
    "InMemoryCompensationRunRepository",
    "InMemoryJobRepository",
    "InMemoryRepositories",
    "InMemoryResolutionDecisionRepository",
    "InMemoryStepOutputRepository",
    "InMemoryStepRunRepository",
    "InMemoryWorkflowRepository",
    "JobRepository",
    "Repositories",
    "ResolutionDecisionRepository",
    "SQLiteDatabase",
    "SQLiteRepositories",
    "StepOutputRepository",
    "StepRunRepository",
    "WorkflowRepository",
    "get_repositories",
]

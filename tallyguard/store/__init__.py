"""Persistence layer for overrides, scopes, policies and audit records."""

from __future__ import annotations

import os
from typing import Optional

from ..config import TallyguardConfig, load_config
from ..errors import ConfigurationError
from .inmemory import InMemoryAccessStore
from .repository import AccessStore, pick_override, sort_policies
from .sqlite import SQLiteAccessStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresAccessStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresAccessStore = None  # type: ignore


def get_store(
    database_url: Optional[str] = None, config: Optional[TallyguardConfig] = None
) -> AccessStore:
    """Factory function to obtain an access store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``TALLYGUARD_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned. Every call builds a new store.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("TALLYGUARD_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        return InMemoryAccessStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteAccessStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresAccessStore is None:
            raise ConfigurationError("Postgres support not available")
        return PostgresAccessStore(database_url)
    else:
        raise ConfigurationError(f"Unsupported database backend: {database_url}")


__all__ = [
    "AccessStore",
    "InMemoryAccessStore",
    "SQLiteAccessStore",
    "PostgresAccessStore",
    "get_store",
    "pick_override",
    "sort_policies",
]

"""
Picks the store backend named by settings.database.store_backend.

    database:
      url: "sqlite:///./booking_assistant.db"   # postgresql:// and mysql:// work too
      store_backend: "resilient"                # "sql" | "memory" | "resilient"
      store_timeout_seconds: 5                  # per call, resilient only

"sql" lets database errors reach the caller. "resilient" wraps the same
SQL store and serves from memory once it has failed.

The first store built is kept as the process-wide instance; reset_store()
drops it.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from database.store_base import BaseStore

logger = structlog.get_logger()

_instance: Optional[BaseStore] = None


def _memory(config: dict) -> BaseStore:
    from database.store_memory import InMemoryStore
    return InMemoryStore()


def _sql(config: dict) -> BaseStore:
    from database.store import SqlStore
    return SqlStore()


def _resilient(config: dict) -> BaseStore:
    from database.store_resilient import ResilientStore
    timeout = float(config.get("store_timeout_seconds", 5.0))
    return ResilientStore(_sql(config), _memory(config), timeout=timeout)


BACKENDS: dict[str, Callable[[dict], BaseStore]] = {
    "memory": _memory,
    "sql": _sql,
    "resilient": _resilient,
}


def create_store(config: dict = None) -> BaseStore:
    """
    Build (once) and return the store for config["store_backend"].

    Raises ValueError for a backend name that is not in BACKENDS.
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("store_backend") or "memory"
    build = BACKENDS.get(backend)
    if build is None:
        raise ValueError(
            f"Unknown store_backend '{backend}'. Expected one of: {', '.join(BACKENDS)}"
        )
    _instance = build(config)
    logger.info("store_created", backend=backend, store=type(_instance).__name__)
    return _instance


def get_store() -> BaseStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None

"""Choose the storage backend at startup."""

from __future__ import annotations

import logging

from .config import DatabaseConfig
from .database import check_connection
from .errors import StoreError
from .memory_store import MemoryStore
from .sqlite_store import SQLiteStore
from .store import Clock, RenewalStore

logger = logging.getLogger(__name__)


def create_store(config: DatabaseConfig | None = None, *, clock: Clock | None = None) -> RenewalStore:
    """Return a SQLite store when the database answers, otherwise a memory store.

    ``backend = "memory"`` skips the connection check. ``backend = "sqlite"`` still falls
    back, but logs the failure as an error.
    """

    config = config or DatabaseConfig()
    if config.backend == "memory":
        logger.info("Using in-memory store (configured)")
        return MemoryStore(clock=clock)

    if check_connection(config.path, timeout=config.connect_timeout):
        try:
            store = SQLiteStore(
                config.path,
                pool_size=config.pool_size,
                acquire_timeout=config.acquire_timeout,
                connect_timeout=config.connect_timeout,
                clock=clock,
            )
        except StoreError:
            logger.exception("Could not initialise SQLite store at %s", config.path)
        else:
            logger.info("Using SQLite store at %s", config.path)
            return store

    log = logger.error if config.backend == "sqlite" else logger.warning
    log("Database %s unavailable; falling back to in-memory store", config.path)
    return MemoryStore(clock=clock)

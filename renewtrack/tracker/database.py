"""Database utilities for the renewal tracker."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

MEMORY_PATH = ":memory:"


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def resolve_database_uri(path: str | Path) -> str:
    """Return a URI for ``path``; ``:memory:`` becomes a named shared-cache database.

    A plain ``:memory:`` database is private to one connection, which would give
    every pooled connection its own empty schema.
    """

    if str(path) == MEMORY_PATH:
        return f"file:renewtrack-{uuid.uuid4().hex}?mode=memory&cache=shared"
    return Path(path).resolve().as_uri()


def get_connection(uri: str, *, timeout: float = 5.0) -> sqlite3.Connection:
    """Return a SQLite connection with sensible defaults.

    Connections run in autocommit mode; writers open explicit transactions.
    """

    conn = sqlite3.connect(
        uri,
        uri=True,
        timeout=timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            email TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS clients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            email TEXT NOT NULL,
            phone TEXT,
            company TEXT,
            address TEXT,
            gst TEXT,
            notes TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS services (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            default_duration INTEGER NOT NULL CHECK(default_duration >= 1),
            default_price REAL NOT NULL CHECK(default_price >= 0),
            created_at TEXT NOT NULL,
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS renewals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            client_id INTEGER NOT NULL,
            service_id INTEGER NOT NULL,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            amount REAL NOT NULL,
            is_paid INTEGER NOT NULL DEFAULT 0,
            notification_sent INTEGER NOT NULL DEFAULT 0,
            notes TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY(user_id) REFERENCES users(id),
            FOREIGN KEY(client_id) REFERENCES clients(id),
            FOREIGN KEY(service_id) REFERENCES services(id)
        );

        CREATE TABLE IF NOT EXISTS activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            type TEXT NOT NULL,
            description TEXT NOT NULL,
            metadata TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE INDEX IF NOT EXISTS idx_clients_user ON clients(user_id, name);
        CREATE INDEX IF NOT EXISTS idx_services_user ON services(user_id, name);
        CREATE INDEX IF NOT EXISTS idx_renewals_user_end ON renewals(user_id, end_date);
        CREATE INDEX IF NOT EXISTS idx_renewals_client ON renewals(client_id);
        CREATE INDEX IF NOT EXISTS idx_renewals_service ON renewals(service_id);
        CREATE INDEX IF NOT EXISTS idx_activities_user_created ON activities(user_id, created_at);
        """
    )

    set_metadata(conn, "schema_version", SCHEMA_VERSION)


def set_metadata(conn: sqlite3.Connection, key: str, value: int | str | dict | list) -> None:
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    conn.execute(
        "INSERT INTO metadata(key, value) VALUES (?, ?)\n         ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, str(value)),
    )


def get_metadata(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default


def check_connection(path: str | Path, *, timeout: float = 3.0) -> bool:
    """Return True when a SQLite database at ``path`` can be opened and queried."""

    if str(path) != MEMORY_PATH:
        parent = Path(path).resolve().parent
        if not parent.is_dir():
            logger.warning("Database directory %s does not exist", parent)
            return False
    try:
        conn = get_connection(resolve_database_uri(path), timeout=timeout)
    except sqlite3.Error as exc:
        logger.warning("Could not open database %s: %s", path, exc)
        return False
    try:
        conn.execute("SELECT 1").fetchone()
        return True
    except sqlite3.Error as exc:
        logger.warning("Database %s did not answer a test query: %s", path, exc)
        return False
    finally:
        conn.close()


@dataclass
class PoolStats:
    """Statistics for connection pool health."""

    active_connections: int
    idle_connections: int
    max_pool_size: int
    checkout_count: int = 0
    timeout_count: int = 0

    def to_dict(self) -> dict:
        return {
            "active_connections": self.active_connections,
            "idle_connections": self.idle_connections,
            "max_pool_size": self.max_pool_size,
            "checkout_count": self.checkout_count,
            "timeout_count": self.timeout_count,
        }


class ConnectionPool:
    """Bounded, thread-safe pool of SQLite connections.

    Checkouts block while every connection is in use and raise
    ``TransientStoreError`` once ``acquire_timeout`` seconds have passed.
    """

    def __init__(
        self,
        factory: Callable[[], sqlite3.Connection],
        *,
        max_size: int = 5,
        acquire_timeout: float = 5.0,
    ) -> None:
        if max_size < 1:
            raise ValueError("Pool size must be at least 1")
        self.factory = factory
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self._condition = threading.Condition()
        self._idle: list[sqlite3.Connection] = []
        self._active: set[sqlite3.Connection] = set()
        self._closed = False
        self.checkout_count = 0
        self.timeout_count = 0

    def acquire(self) -> sqlite3.Connection:
        deadline = time.monotonic() + self.acquire_timeout
        with self._condition:
            while not self._idle and len(self._active) >= self.max_size:
                if self._closed:
                    raise TransientStoreError("Connection pool is closed")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self.timeout_count += 1
                    logger.warning(
                        "Connection pool exhausted for %.1fs (size=%d)",
                        self.acquire_timeout,
                        self.max_size,
                    )
                    raise TransientStoreError(
                        f"Could not obtain a database connection within {self.acquire_timeout}s"
                    )
                self._condition.wait(remaining)
            if self._closed:
                raise TransientStoreError("Connection pool is closed")
            if self._idle:
                conn = self._idle.pop()
            else:
                try:
                    conn = self.factory()
                except sqlite3.Error as exc:
                    raise TransientStoreError(f"Could not open database connection: {exc}") from exc
            self._active.add(conn)
            self.checkout_count += 1
            logger.debug(
                "Checked out connection (active=%d, idle=%d)", len(self._active), len(self._idle)
            )
            return conn

    def release(self, conn: sqlite3.Connection) -> None:
        with self._condition:
            if conn not in self._active:
                raise RuntimeError("Connection not in active pool")
            self._active.remove(conn)
            if self._closed:
                conn.close()
            else:
                self._idle.append(conn)
            self._condition.notify()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def stats(self) -> PoolStats:
        with self._condition:
            return PoolStats(
                active_connections=len(self._active),
                idle_connections=len(self._idle),
                max_pool_size=self.max_size,
                checkout_count=self.checkout_count,
                timeout_count=self.timeout_count,
            )

    def close_all(self) -> None:
        with self._condition:
            self._closed = True
            for conn in self._idle:
                conn.close()
            self._idle.clear()
            self._condition.notify_all()

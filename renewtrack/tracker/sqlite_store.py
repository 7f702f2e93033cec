"""SQLite backed implementation of the renewal store."""

from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from . import activity
from .database import (
    MEMORY_PATH,
    ConnectionPool,
    PoolStats,
    get_connection,
    initialize_database,
    resolve_database_uri,
)
from .enrichment import enrich_renewal
from .errors import (
    ConflictError,
    StoreError,
    TrackerError,
    TransientStoreError,
    ValidationError,
)
from .store import (
    CLIENT_FIELDS,
    CLIENT_REQUIRED,
    RENEWAL_FIELDS,
    RENEWAL_REQUIRED,
    SERVICE_FIELDS,
    SERVICE_REQUIRED,
    Clock,
    RenewalStore,
    check_changes,
    check_renewal_dates,
    hash_password,
    normalize_renewal_fields,
    normalize_service_fields,
    renewal_update_activities,
)

logger = logging.getLogger(__name__)

_RELATION_COLUMNS = """
    r.*,
    c.id AS rel_client_id,
    c.name AS rel_client_name,
    c.email AS rel_client_email,
    c.company AS rel_client_company,
    s.id AS rel_service_id,
    s.name AS rel_service_name
"""

_RELATION_JOINS = """
    FROM renewals r
    LEFT JOIN clients c ON c.id = r.client_id AND c.user_id = r.user_id
    LEFT JOIN services s ON s.id = r.service_id AND s.user_id = r.user_id
"""


def _row_to_renewal(row: dict | None) -> dict | None:
    if row is None:
        return None
    row["is_paid"] = bool(row["is_paid"])
    row["notification_sent"] = bool(row["notification_sent"])
    return row


def _split_relations(row: dict) -> dict:
    client = None
    if row.pop("rel_client_id") is not None:
        client = {
            "id": row["client_id"],
            "name": row.pop("rel_client_name"),
            "email": row.pop("rel_client_email"),
            "company": row.pop("rel_client_company"),
        }
    service = None
    if row.pop("rel_service_id") is not None:
        service = {"id": row["service_id"], "name": row.pop("rel_service_name")}
    for key in [key for key in row if key.startswith("rel_")]:
        del row[key]
    return enrich_renewal(_row_to_renewal(row), client, service)


class SQLiteStore(RenewalStore):
    """Durable store on a SQLite database file.

    Every mutation runs in a ``BEGIN IMMEDIATE`` transaction together with the
    activity entry it produces, so the write lock is held from the referential
    checks through to the commit.
    """

    backend_name = "sqlite"

    def __init__(
        self,
        path: str | Path = MEMORY_PATH,
        *,
        pool_size: int = 5,
        acquire_timeout: float = 5.0,
        connect_timeout: float = 5.0,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(clock=clock)
        self.path = str(path)
        self.uri = resolve_database_uri(path)
        self._pool = ConnectionPool(
            lambda: get_connection(self.uri, timeout=connect_timeout),
            max_size=pool_size,
            acquire_timeout=acquire_timeout,
        )
        with self._transaction_errors():
            with self._pool.connection() as conn:
                initialize_database(conn)
        logger.info("Opened SQLite store at %s", self.path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _transaction_errors(self) -> Iterator[None]:
        try:
            yield
        except TrackerError:
            raise
        except sqlite3.OperationalError as exc:
            logger.exception("Database temporarily unavailable")
            raise TransientStoreError(str(exc)) from exc
        except sqlite3.Error as exc:
            logger.exception("Database write failed")
            raise StoreError(str(exc)) from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._transaction_errors():
            with self._pool.connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                else:
                    conn.execute("COMMIT")

    def _read(self, sql: str, params: tuple | list = (), *, one: bool = False) -> Any:
        try:
            with self._pool.connection() as conn:
                cur = conn.execute(sql, params)
                return cur.fetchone() if one else cur.fetchall()
        except (sqlite3.Error, TransientStoreError):
            logger.exception("Database read failed")
            return None if one else []

    def _insert_activity(self, conn: sqlite3.Connection, user_id: int, entry: dict) -> int:
        cur = conn.execute(
            """
            INSERT INTO activities(user_id, type, description, metadata, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (user_id, entry["type"], entry["description"], entry.get("metadata"), self._timestamp()),
        )
        return cur.lastrowid

    @staticmethod
    def _fetch(conn: sqlite3.Connection, table: str, user_id: int, record_id: int) -> dict | None:
        return conn.execute(
            f"SELECT * FROM {table} WHERE id = ? AND user_id = ?", (record_id, user_id)
        ).fetchone()

    def _related(
        self, conn: sqlite3.Connection, user_id: int, renewal: dict
    ) -> tuple[dict | None, dict | None]:
        return (
            self._fetch(conn, "clients", user_id, renewal["client_id"]),
            self._fetch(conn, "services", user_id, renewal["service_id"]),
        )

    @staticmethod
    def _apply_changes(
        conn: sqlite3.Connection, table: str, user_id: int, record_id: int, changes: dict
    ) -> None:
        assignments = ", ".join(f"{column} = ?" for column in changes)
        conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ? AND user_id = ?",
            [*changes.values(), record_id, user_id],
        )

    def stats(self) -> PoolStats:
        return self._pool.stats()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def register_user(self, *, username: str, email: str, password: str) -> dict:
        with self._transaction() as conn:
            try:
                cur = conn.execute(
                    """
                    INSERT INTO users(username, email, password_hash, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (username, email.lower(), hash_password(password), self._timestamp()),
                )
            except sqlite3.IntegrityError as exc:
                raise StoreError("A user with this username or email already exists") from exc
            return conn.execute("SELECT * FROM users WHERE id = ?", (cur.lastrowid,)).fetchone()

    def get_user(self, user_id: int) -> dict | None:
        return self._read("SELECT * FROM users WHERE id = ?", (user_id,), one=True)

    def get_user_by_username(self, username: str) -> dict | None:
        return self._read("SELECT * FROM users WHERE username = ?", (username,), one=True)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------
    def create_client(
        self,
        user_id: int,
        *,
        name: str,
        email: str,
        phone: str | None = None,
        company: str | None = None,
        address: str | None = None,
        gst: str | None = None,
        notes: str | None = None,
    ) -> dict:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO clients(user_id, name, email, phone, company, address, gst, notes, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, name, email, phone, company, address, gst, notes, self._timestamp()),
            )
            client = self._fetch(conn, "clients", user_id, cur.lastrowid)
            self._insert_activity(conn, user_id, activity.client_added(client))
            return client

    def get_client(self, user_id: int, client_id: int) -> dict | None:
        return self._read(
            "SELECT * FROM clients WHERE id = ? AND user_id = ?", (client_id, user_id), one=True
        )

    def list_clients(self, user_id: int) -> list[dict]:
        return self._read(
            "SELECT * FROM clients WHERE user_id = ? ORDER BY name, id", (user_id,)
        )

    def update_client(self, user_id: int, client_id: int, **changes: Any) -> dict | None:
        check_changes(changes, CLIENT_FIELDS, CLIENT_REQUIRED)
        with self._transaction() as conn:
            client = self._fetch(conn, "clients", user_id, client_id)
            if client is None or not changes:
                return client
            self._apply_changes(conn, "clients", user_id, client_id, changes)
            client = self._fetch(conn, "clients", user_id, client_id)
            self._insert_activity(conn, user_id, activity.client_updated(client, changes.keys()))
            return client

    def delete_client(self, user_id: int, client_id: int) -> bool:
        with self._transaction() as conn:
            client = self._fetch(conn, "clients", user_id, client_id)
            if client is None:
                return False
            in_use = conn.execute(
                "SELECT 1 FROM renewals WHERE client_id = ? LIMIT 1", (client_id,)
            ).fetchone()
            if in_use:
                raise ConflictError(
                    "Cannot delete client with active renewals. Please delete related renewals first."
                )
            conn.execute("DELETE FROM clients WHERE id = ? AND user_id = ?", (client_id, user_id))
            self._insert_activity(conn, user_id, activity.client_deleted(client))
            return True

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------
    def create_service(
        self,
        user_id: int,
        *,
        name: str,
        default_duration: int,
        default_price: float,
        description: str | None = None,
    ) -> dict:
        fields = normalize_service_fields(
            {"default_duration": default_duration, "default_price": default_price}
        )
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO services(user_id, name, description, default_duration, default_price, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    name,
                    description,
                    fields["default_duration"],
                    fields["default_price"],
                    self._timestamp(),
                ),
            )
            service = self._fetch(conn, "services", user_id, cur.lastrowid)
            self._insert_activity(conn, user_id, activity.service_added(service))
            return service

    def get_service(self, user_id: int, service_id: int) -> dict | None:
        return self._read(
            "SELECT * FROM services WHERE id = ? AND user_id = ?", (service_id, user_id), one=True
        )

    def list_services(self, user_id: int) -> list[dict]:
        return self._read(
            "SELECT * FROM services WHERE user_id = ? ORDER BY name, id", (user_id,)
        )

    def update_service(self, user_id: int, service_id: int, **changes: Any) -> dict | None:
        check_changes(changes, SERVICE_FIELDS, SERVICE_REQUIRED)
        changes = normalize_service_fields(changes)
        with self._transaction() as conn:
            service = self._fetch(conn, "services", user_id, service_id)
            if service is None or not changes:
                return service
            self._apply_changes(conn, "services", user_id, service_id, changes)
            service = self._fetch(conn, "services", user_id, service_id)
            self._insert_activity(conn, user_id, activity.service_updated(service, changes.keys()))
            return service

    def delete_service(self, user_id: int, service_id: int) -> bool:
        with self._transaction() as conn:
            service = self._fetch(conn, "services", user_id, service_id)
            if service is None:
                return False
            in_use = conn.execute(
                "SELECT 1 FROM renewals WHERE service_id = ? LIMIT 1", (service_id,)
            ).fetchone()
            if in_use:
                raise ConflictError(
                    "Cannot delete service with active renewals. Please delete related renewals first."
                )
            conn.execute("DELETE FROM services WHERE id = ? AND user_id = ?", (service_id, user_id))
            self._insert_activity(conn, user_id, activity.service_deleted(service))
            return True

    # ------------------------------------------------------------------
    # Renewals
    # ------------------------------------------------------------------
    def create_renewal(
        self,
        user_id: int,
        *,
        client_id: int,
        service_id: int,
        start_date: dt.date | str,
        end_date: dt.date | str,
        amount: float,
        is_paid: bool = False,
        notes: str | None = None,
    ) -> dict:
        fields = normalize_renewal_fields(
            {
                "client_id": client_id,
                "service_id": service_id,
                "start_date": start_date,
                "end_date": end_date,
                "amount": amount,
                "is_paid": is_paid,
                "notes": notes,
            }
        )
        check_renewal_dates(fields)
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO renewals(
                    user_id, client_id, service_id, start_date, end_date,
                    amount, is_paid, notes, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    fields["client_id"],
                    fields["service_id"],
                    fields["start_date"],
                    fields["end_date"],
                    fields["amount"],
                    int(fields["is_paid"]),
                    fields["notes"],
                    self._timestamp(),
                ),
            )
            renewal = _row_to_renewal(self._fetch(conn, "renewals", user_id, cur.lastrowid))
            client, service = self._related(conn, user_id, renewal)
            self._insert_activity(conn, user_id, activity.renewal_created(renewal, client, service))
            return renewal

    def get_renewal(self, user_id: int, renewal_id: int) -> dict | None:
        return _row_to_renewal(
            self._read(
                "SELECT * FROM renewals WHERE id = ? AND user_id = ?",
                (renewal_id, user_id),
                one=True,
            )
        )

    def list_renewals(self, user_id: int) -> list[dict]:
        rows = self._read(
            "SELECT * FROM renewals WHERE user_id = ? ORDER BY end_date, id", (user_id,)
        )
        return [_row_to_renewal(row) for row in rows]

    def list_renewals_for_client(self, user_id: int, client_id: int) -> list[dict]:
        rows = self._read(
            """
            SELECT * FROM renewals
            WHERE user_id = ? AND client_id = ?
            ORDER BY end_date, id
            """,
            (user_id, client_id),
        )
        return [_row_to_renewal(row) for row in rows]

    def list_renewals_for_service(self, user_id: int, service_id: int) -> list[dict]:
        rows = self._read(
            """
            SELECT * FROM renewals
            WHERE user_id = ? AND service_id = ?
            ORDER BY end_date, id
            """,
            (user_id, service_id),
        )
        return [_row_to_renewal(row) for row in rows]

    def list_renewals_with_relations(self, user_id: int) -> list[dict]:
        rows = self._read(
            f"SELECT {_RELATION_COLUMNS} {_RELATION_JOINS} WHERE r.user_id = ? ORDER BY r.end_date, r.id",
            (user_id,),
        )
        return [_split_relations(row) for row in rows]

    def get_renewal_with_relations(self, user_id: int, renewal_id: int) -> dict | None:
        row = self._read(
            f"SELECT {_RELATION_COLUMNS} {_RELATION_JOINS} WHERE r.id = ? AND r.user_id = ?",
            (renewal_id, user_id),
            one=True,
        )
        if row is None:
            return None
        return _split_relations(row)

    def update_renewal(self, user_id: int, renewal_id: int, **changes: Any) -> dict | None:
        check_changes(changes, RENEWAL_FIELDS, RENEWAL_REQUIRED)
        changes = normalize_renewal_fields(changes)
        with self._transaction() as conn:
            before = _row_to_renewal(self._fetch(conn, "renewals", user_id, renewal_id))
            if before is None or not changes:
                return before
            check_renewal_dates({**before, **changes})
            stored = dict(changes)
            if "is_paid" in stored:
                stored["is_paid"] = int(stored["is_paid"])
            self._apply_changes(conn, "renewals", user_id, renewal_id, stored)
            renewal = _row_to_renewal(self._fetch(conn, "renewals", user_id, renewal_id))
            client, service = self._related(conn, user_id, renewal)
            for entry in renewal_update_activities(before, renewal, changes, client, service):
                self._insert_activity(conn, user_id, entry)
            return renewal

    def set_notification_status(self, user_id: int, renewal_id: int, sent: bool) -> bool:
        with self._transaction() as conn:
            renewal = self._fetch(conn, "renewals", user_id, renewal_id)
            if renewal is None:
                return False
            conn.execute(
                "UPDATE renewals SET notification_sent = ? WHERE id = ? AND user_id = ?",
                (int(bool(sent)), renewal_id, user_id),
            )
            if sent:
                client, service = self._related(conn, user_id, renewal)
                self._insert_activity(
                    conn, user_id, activity.renewal_reminder(renewal, client, service)
                )
            return True

    def delete_renewal(self, user_id: int, renewal_id: int) -> bool:
        with self._transaction() as conn:
            renewal = self._fetch(conn, "renewals", user_id, renewal_id)
            if renewal is None:
                return False
            client, service = self._related(conn, user_id, renewal)
            conn.execute("DELETE FROM renewals WHERE id = ? AND user_id = ?", (renewal_id, user_id))
            self._insert_activity(conn, user_id, activity.renewal_deleted(renewal, client, service))
            return True

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------
    def create_activity(
        self,
        user_id: int,
        *,
        type: str,
        description: str,
        metadata: str | None = None,
    ) -> dict:
        if not type or not description:
            raise ValidationError("Activity type and description are required")
        with self._transaction() as conn:
            activity_id = self._insert_activity(
                conn, user_id, {"type": type, "description": description, "metadata": metadata}
            )
            return self._fetch(conn, "activities", user_id, activity_id)

    def get_activity(self, user_id: int, activity_id: int) -> dict | None:
        return self._read(
            "SELECT * FROM activities WHERE id = ? AND user_id = ?",
            (activity_id, user_id),
            one=True,
        )

    def list_activities(self, user_id: int, limit: int | None = None) -> list[dict]:
        sql = "SELECT * FROM activities WHERE user_id = ? ORDER BY created_at DESC, id DESC"
        params: list[Any] = [user_id]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return self._read(sql, params)

    def close(self) -> None:
        self._pool.close_all()
        logger.info("Closed SQLite store at %s", self.path)

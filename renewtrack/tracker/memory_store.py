"""In-memory storage backend used when the database cannot be reached."""

from __future__ import annotations

import datetime as dt
import itertools
import logging
import threading
from typing import Any

from . import activity
from .errors import ConflictError, StoreError, ValidationError
from .status import as_date
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


class MemoryStore(RenewalStore):
    """Keeps every table in process memory; nothing survives a restart.

    Each instance owns its rows and id sequences. Reads and mutations run under
    one re-entrant lock so a delete guard and the delete itself cannot
    interleave with a concurrent renewal insert, and listings never see a table
    mid-change.
    """

    backend_name = "memory"

    def __init__(self, *, clock: Clock | None = None) -> None:
        super().__init__(clock=clock)
        self._lock = threading.RLock()
        self._users: dict[int, dict] = {}
        self._clients: dict[int, dict] = {}
        self._services: dict[int, dict] = {}
        self._renewals: dict[int, dict] = {}
        self._activities: dict[int, dict] = {}
        self._sequences = {
            name: itertools.count(1)
            for name in ("users", "clients", "services", "renewals", "activities")
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _next_id(self, name: str) -> int:
        return next(self._sequences[name])

    def _require_user(self, user_id: int) -> None:
        if user_id not in self._users:
            raise StoreError(f"Unknown user {user_id}")

    @staticmethod
    def _owned(table: dict[int, dict], user_id: int, record_id: int) -> dict | None:
        record = table.get(record_id)
        if record is None or record["user_id"] != user_id:
            return None
        return record

    @staticmethod
    def _copy(record: dict | None) -> dict | None:
        return dict(record) if record is not None else None

    def _append_activity(self, user_id: int, entry: dict) -> dict:
        activity_id = self._next_id("activities")
        row = {
            "id": activity_id,
            "user_id": user_id,
            "type": entry["type"],
            "description": entry["description"],
            "metadata": entry.get("metadata"),
            "created_at": self._timestamp(),
        }
        self._activities[activity_id] = row
        return row

    def _related(self, user_id: int, renewal: dict) -> tuple[dict | None, dict | None]:
        return (
            self._owned(self._clients, user_id, renewal["client_id"]),
            self._owned(self._services, user_id, renewal["service_id"]),
        )

    def _select(self, table: dict[int, dict], **filters: Any) -> list[dict]:
        """Copy the rows of ``table`` matching every ``column=value`` filter."""

        with self._lock:
            return [
                dict(row)
                for row in table.values()
                if all(row[column] == value for column, value in filters.items())
            ]

    @staticmethod
    def _by_end_date(renewals: list[dict]) -> list[dict]:
        return sorted(
            renewals,
            key=lambda row: (as_date(row["end_date"]), row["id"]),
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def register_user(self, *, username: str, email: str, password: str) -> dict:
        with self._lock:
            for user in self._users.values():
                if user["username"] == username or user["email"] == email.lower():
                    raise StoreError("A user with this username or email already exists")
            user_id = self._next_id("users")
            self._users[user_id] = {
                "id": user_id,
                "username": username,
                "email": email.lower(),
                "password_hash": hash_password(password),
                "created_at": self._timestamp(),
            }
            return dict(self._users[user_id])

    def get_user(self, user_id: int) -> dict | None:
        with self._lock:
            return self._copy(self._users.get(user_id))

    def get_user_by_username(self, username: str) -> dict | None:
        with self._lock:
            for user in self._users.values():
                if user["username"] == username:
                    return dict(user)
            return None

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
        with self._lock:
            self._require_user(user_id)
            client_id = self._next_id("clients")
            client = {
                "id": client_id,
                "user_id": user_id,
                "name": name,
                "email": email,
                "phone": phone,
                "company": company,
                "address": address,
                "gst": gst,
                "notes": notes,
                "created_at": self._timestamp(),
            }
            self._clients[client_id] = client
            self._append_activity(user_id, activity.client_added(client))
            return dict(client)

    def get_client(self, user_id: int, client_id: int) -> dict | None:
        with self._lock:
            return self._copy(self._owned(self._clients, user_id, client_id))

    def list_clients(self, user_id: int) -> list[dict]:
        rows = self._select(self._clients, user_id=user_id)
        return sorted(rows, key=lambda row: (row["name"], row["id"]))

    def update_client(self, user_id: int, client_id: int, **changes: Any) -> dict | None:
        check_changes(changes, CLIENT_FIELDS, CLIENT_REQUIRED)
        with self._lock:
            client = self._owned(self._clients, user_id, client_id)
            if client is None:
                return None
            if not changes:
                return dict(client)
            client.update(changes)
            self._append_activity(user_id, activity.client_updated(client, changes.keys()))
            return dict(client)

    def delete_client(self, user_id: int, client_id: int) -> bool:
        with self._lock:
            client = self._owned(self._clients, user_id, client_id)
            if client is None:
                return False
            if any(row["client_id"] == client_id for row in self._renewals.values()):
                raise ConflictError(
                    "Cannot delete client with active renewals. Please delete related renewals first."
                )
            del self._clients[client_id]
            self._append_activity(user_id, activity.client_deleted(client))
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
        with self._lock:
            self._require_user(user_id)
            service_id = self._next_id("services")
            service = {
                "id": service_id,
                "user_id": user_id,
                "name": name,
                "description": description,
                "default_duration": fields["default_duration"],
                "default_price": fields["default_price"],
                "created_at": self._timestamp(),
            }
            self._services[service_id] = service
            self._append_activity(user_id, activity.service_added(service))
            return dict(service)

    def get_service(self, user_id: int, service_id: int) -> dict | None:
        with self._lock:
            return self._copy(self._owned(self._services, user_id, service_id))

    def list_services(self, user_id: int) -> list[dict]:
        rows = self._select(self._services, user_id=user_id)
        return sorted(rows, key=lambda row: (row["name"], row["id"]))

    def update_service(self, user_id: int, service_id: int, **changes: Any) -> dict | None:
        check_changes(changes, SERVICE_FIELDS, SERVICE_REQUIRED)
        changes = normalize_service_fields(changes)
        with self._lock:
            service = self._owned(self._services, user_id, service_id)
            if service is None:
                return None
            if not changes:
                return dict(service)
            service.update(changes)
            self._append_activity(user_id, activity.service_updated(service, changes.keys()))
            return dict(service)

    def delete_service(self, user_id: int, service_id: int) -> bool:
        with self._lock:
            service = self._owned(self._services, user_id, service_id)
            if service is None:
                return False
            if any(row["service_id"] == service_id for row in self._renewals.values()):
                raise ConflictError(
                    "Cannot delete service with active renewals. Please delete related renewals first."
                )
            del self._services[service_id]
            self._append_activity(user_id, activity.service_deleted(service))
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
        with self._lock:
            self._require_user(user_id)
            renewal_id = self._next_id("renewals")
            renewal = {
                "id": renewal_id,
                "user_id": user_id,
                **fields,
                "notification_sent": False,
                "created_at": self._timestamp(),
            }
            self._renewals[renewal_id] = renewal
            client, service = self._related(user_id, renewal)
            self._append_activity(user_id, activity.renewal_created(renewal, client, service))
            return dict(renewal)

    def get_renewal(self, user_id: int, renewal_id: int) -> dict | None:
        with self._lock:
            return self._copy(self._owned(self._renewals, user_id, renewal_id))

    def list_renewals(self, user_id: int) -> list[dict]:
        return self._by_end_date(self._select(self._renewals, user_id=user_id))

    def list_renewals_for_client(self, user_id: int, client_id: int) -> list[dict]:
        return self._by_end_date(
            self._select(self._renewals, user_id=user_id, client_id=client_id)
        )

    def list_renewals_for_service(self, user_id: int, service_id: int) -> list[dict]:
        return self._by_end_date(
            self._select(self._renewals, user_id=user_id, service_id=service_id)
        )

    def update_renewal(self, user_id: int, renewal_id: int, **changes: Any) -> dict | None:
        check_changes(changes, RENEWAL_FIELDS, RENEWAL_REQUIRED)
        changes = normalize_renewal_fields(changes)
        with self._lock:
            renewal = self._owned(self._renewals, user_id, renewal_id)
            if renewal is None:
                return None
            if not changes:
                return dict(renewal)
            before = dict(renewal)
            after = {**before, **changes}
            check_renewal_dates(after)
            renewal.update(changes)
            client, service = self._related(user_id, renewal)
            for entry in renewal_update_activities(before, renewal, changes, client, service):
                self._append_activity(user_id, entry)
            return dict(renewal)

    def set_notification_status(self, user_id: int, renewal_id: int, sent: bool) -> bool:
        with self._lock:
            renewal = self._owned(self._renewals, user_id, renewal_id)
            if renewal is None:
                return False
            renewal["notification_sent"] = bool(sent)
            if sent:
                client, service = self._related(user_id, renewal)
                self._append_activity(
                    user_id, activity.renewal_reminder(renewal, client, service)
                )
            return True

    def delete_renewal(self, user_id: int, renewal_id: int) -> bool:
        with self._lock:
            renewal = self._owned(self._renewals, user_id, renewal_id)
            if renewal is None:
                return False
            del self._renewals[renewal_id]
            client, service = self._related(user_id, renewal)
            self._append_activity(user_id, activity.renewal_deleted(renewal, client, service))
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
        with self._lock:
            self._require_user(user_id)
            row = self._append_activity(
                user_id, {"type": type, "description": description, "metadata": metadata}
            )
            return dict(row)

    def get_activity(self, user_id: int, activity_id: int) -> dict | None:
        with self._lock:
            return self._copy(self._owned(self._activities, user_id, activity_id))

    def list_activities(self, user_id: int, limit: int | None = None) -> list[dict]:
        rows = sorted(
            self._select(self._activities, user_id=user_id),
            key=lambda row: (row["created_at"], row["id"]),
            reverse=True,
        )
        if limit:
            return rows[:limit]
        return rows

    def close(self) -> None:
        logger.debug("Discarding in-memory store")

"""Storage contract shared by the SQLite and in-memory backends.

``RenewalStore`` declares the CRUD surface for users, clients, services,
renewals and activities, and implements everything that can be expressed on
top of those primitives: field checks, the renewal lifecycle rules, relation
enrichment and the dashboard compositions. Backends only implement
persistence.

Every method takes the owning ``user_id`` first; rows belonging to other users
are invisible.
"""

from __future__ import annotations

import abc
import datetime as dt
import hashlib
import secrets
from typing import Any, Callable, Iterable

from . import activity, dashboard
from .enrichment import enrich_all, enrich_renewal
from .errors import ValidationError
from .status import as_date

Clock = Callable[[], dt.datetime]

CLIENT_FIELDS = ("name", "email", "phone", "company", "address", "gst", "notes")
CLIENT_REQUIRED = ("name", "email")
SERVICE_FIELDS = ("name", "description", "default_duration", "default_price")
SERVICE_REQUIRED = ("name", "default_duration", "default_price")
RENEWAL_FIELDS = (
    "client_id",
    "service_id",
    "start_date",
    "end_date",
    "amount",
    "is_paid",
    "notes",
)
RENEWAL_REQUIRED = ("client_id", "service_id", "start_date", "end_date", "amount", "is_paid")


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 390000)
    return f"pbkdf2_sha256${salt}${digest.hex()}"


def check_changes(changes: dict, allowed: Iterable[str], required: Iterable[str] = ()) -> None:
    """Reject unknown fields and attempts to clear required ones."""

    unknown = sorted(set(changes) - set(allowed))
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(unknown)}")
    cleared = sorted(key for key in required if key in changes and changes[key] is None)
    if cleared:
        raise ValidationError(f"Field(s) cannot be empty: {', '.join(cleared)}")


def normalize_service_fields(fields: dict) -> dict:
    fields = dict(fields)
    if fields.get("default_duration") is not None:
        duration = int(fields["default_duration"])
        if duration < 1:
            raise ValidationError("Default duration must be at least 1 month")
        fields["default_duration"] = duration
    if fields.get("default_price") is not None:
        price = float(fields["default_price"])
        if price < 0:
            raise ValidationError("Default price cannot be negative")
        fields["default_price"] = price
    return fields


def normalize_renewal_fields(fields: dict) -> dict:
    """Coerce renewal values to their stored representation."""

    fields = dict(fields)
    for key in ("start_date", "end_date"):
        if fields.get(key) is not None:
            try:
                fields[key] = as_date(fields[key]).isoformat()
            except ValueError as exc:
                raise ValidationError(f"{key} must be an ISO date (YYYY-MM-DD)") from exc
    for key in ("client_id", "service_id"):
        if fields.get(key) is not None:
            fields[key] = int(fields[key])
    if fields.get("amount") is not None:
        fields["amount"] = float(fields["amount"])
    if "is_paid" in fields:
        fields["is_paid"] = bool(fields["is_paid"])
    return fields


def check_renewal_dates(renewal: dict) -> None:
    if as_date(renewal["end_date"]) < as_date(renewal["start_date"]):
        raise ValidationError("End date must not be before start date")


def renewal_update_activities(
    before: dict,
    after: dict,
    changes: dict,
    client: dict | None,
    service: dict | None,
) -> list[dict]:
    """Return the activity entries for a renewal update.

    A renewal that goes from unpaid to paid produces a payment entry carrying
    the amount after the update. Going from paid back to unpaid produces no
    entries at all.
    """

    if before["is_paid"] and not after["is_paid"]:
        return []
    entries = [activity.renewal_updated(after, client, service, changes.keys())]
    if after["is_paid"] and not before["is_paid"]:
        entries.append(activity.payment_received(after, client, service))
    return entries


class RenewalStore(abc.ABC):
    """Persistence contract for the renewal tracker."""

    backend_name = "abstract"

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock: Clock = clock or dt.datetime.now

    def now(self) -> dt.datetime:
        return self._clock()

    def _timestamp(self) -> str:
        return self._clock().isoformat(timespec="seconds")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    @abc.abstractmethod
    def register_user(self, *, username: str, email: str, password: str) -> dict: ...

    @abc.abstractmethod
    def get_user(self, user_id: int) -> dict | None: ...

    @abc.abstractmethod
    def get_user_by_username(self, username: str) -> dict | None: ...

    def ensure_user(self, *, username: str, email: str, password: str) -> dict:
        """Return the named user, registering it on first use."""

        user = self.get_user_by_username(username)
        if user is None:
            user = self.register_user(username=username, email=email, password=password)
        return user

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------
    @abc.abstractmethod
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
    ) -> dict: ...

    @abc.abstractmethod
    def get_client(self, user_id: int, client_id: int) -> dict | None: ...

    @abc.abstractmethod
    def list_clients(self, user_id: int) -> list[dict]: ...

    @abc.abstractmethod
    def update_client(self, user_id: int, client_id: int, **changes: Any) -> dict | None: ...

    @abc.abstractmethod
    def delete_client(self, user_id: int, client_id: int) -> bool: ...

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------
    @abc.abstractmethod
    def create_service(
        self,
        user_id: int,
        *,
        name: str,
        default_duration: int,
        default_price: float,
        description: str | None = None,
    ) -> dict: ...

    @abc.abstractmethod
    def get_service(self, user_id: int, service_id: int) -> dict | None: ...

    @abc.abstractmethod
    def list_services(self, user_id: int) -> list[dict]: ...

    @abc.abstractmethod
    def update_service(self, user_id: int, service_id: int, **changes: Any) -> dict | None: ...

    @abc.abstractmethod
    def delete_service(self, user_id: int, service_id: int) -> bool: ...

    # ------------------------------------------------------------------
    # Renewals
    # ------------------------------------------------------------------
    @abc.abstractmethod
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
    ) -> dict: ...

    @abc.abstractmethod
    def get_renewal(self, user_id: int, renewal_id: int) -> dict | None: ...

    @abc.abstractmethod
    def list_renewals(self, user_id: int) -> list[dict]: ...

    @abc.abstractmethod
    def list_renewals_for_client(self, user_id: int, client_id: int) -> list[dict]: ...

    @abc.abstractmethod
    def list_renewals_for_service(self, user_id: int, service_id: int) -> list[dict]: ...

    @abc.abstractmethod
    def update_renewal(self, user_id: int, renewal_id: int, **changes: Any) -> dict | None: ...

    @abc.abstractmethod
    def set_notification_status(self, user_id: int, renewal_id: int, sent: bool) -> bool: ...

    @abc.abstractmethod
    def delete_renewal(self, user_id: int, renewal_id: int) -> bool: ...

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------
    @abc.abstractmethod
    def create_activity(
        self,
        user_id: int,
        *,
        type: str,
        description: str,
        metadata: str | None = None,
    ) -> dict: ...

    @abc.abstractmethod
    def get_activity(self, user_id: int, activity_id: int) -> dict | None: ...

    @abc.abstractmethod
    def list_activities(self, user_id: int, limit: int | None = None) -> list[dict]: ...

    # ------------------------------------------------------------------
    # Relations & reporting
    # ------------------------------------------------------------------
    def list_renewals_with_relations(self, user_id: int) -> list[dict]:
        clients = {client["id"]: client for client in self.list_clients(user_id)}
        services = {service["id"]: service for service in self.list_services(user_id)}
        return enrich_all(self.list_renewals(user_id), clients, services)

    def get_renewal_with_relations(self, user_id: int, renewal_id: int) -> dict | None:
        renewal = self.get_renewal(user_id, renewal_id)
        if renewal is None:
            return None
        return enrich_renewal(
            renewal,
            self.get_client(user_id, renewal["client_id"]),
            self.get_service(user_id, renewal["service_id"]),
        )

    def list_upcoming_renewals(
        self, user_id: int, days: int = dashboard.UPCOMING_WINDOW_DAYS
    ) -> list[dict]:
        return dashboard.upcoming_renewals(
            self.list_renewals_with_relations(user_id), self.now().date(), days
        )

    def get_dashboard_stats(self, user_id: int) -> dict:
        return dashboard.compute_stats(
            self.list_renewals_with_relations(user_id),
            self.list_activities(user_id),
            total_clients=len(self.list_clients(user_id)),
            active_services=len(self.list_services(user_id)),
            now=self.now(),
        )

    def get_monthly_revenue(
        self, user_id: int, months: int = dashboard.DEFAULT_REVENUE_MONTHS
    ) -> list[dict]:
        return dashboard.monthly_revenue(self.list_renewals(user_id), months, self.now())

    def close(self) -> None:
        """Release backend resources."""

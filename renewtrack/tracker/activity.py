"""Activity feed entries emitted alongside every mutating store operation.

Both storage backends build their audit entries through these helpers so the
feed reads the same whichever backend is active. Each helper returns a
``dict`` with ``type``, ``description`` and ``metadata`` (a JSON string) that
the backend persists in the same unit of work as the mutation itself.
"""

from __future__ import annotations

import enum
import json
from typing import Any, Iterable


class ActivityType(str, enum.Enum):
    CLIENT_ADDED = "client_added"
    CLIENT_UPDATED = "client_updated"
    CLIENT_DELETED = "client_deleted"
    SERVICE_ADDED = "service_added"
    SERVICE_UPDATED = "service_updated"
    SERVICE_DELETED = "service_deleted"
    RENEWAL_CREATED = "renewal_created"
    RENEWAL_UPDATED = "renewal_updated"
    RENEWAL_DELETED = "renewal_deleted"
    RENEWAL_REMINDER = "renewal_reminder"
    PAYMENT_RECEIVED = "payment_received"


def format_amount(amount: float) -> str:
    return f"{amount:,.2f}"


def _entry(activity_type: ActivityType, description: str, **metadata: Any) -> dict:
    return {
        "type": activity_type.value,
        "description": description,
        "metadata": json.dumps(metadata, sort_keys=True),
    }


def _name(record: dict | None, fallback: str) -> str:
    if record and record.get("name"):
        return record["name"]
    return fallback


def client_added(client: dict) -> dict:
    return _entry(
        ActivityType.CLIENT_ADDED,
        f"Added {client['name']} to the client list",
        clientId=client["id"],
    )


def client_updated(client: dict, changes: Iterable[str]) -> dict:
    return _entry(
        ActivityType.CLIENT_UPDATED,
        f"Updated client information for {client['name']}",
        clientId=client["id"],
        changes=sorted(changes),
    )


def client_deleted(client: dict) -> dict:
    return _entry(
        ActivityType.CLIENT_DELETED,
        f"Deleted client {client['name']}",
        clientId=client["id"],
    )


def service_added(service: dict) -> dict:
    return _entry(
        ActivityType.SERVICE_ADDED,
        f"Added new service: {service['name']}",
        serviceId=service["id"],
    )


def service_updated(service: dict, changes: Iterable[str]) -> dict:
    return _entry(
        ActivityType.SERVICE_UPDATED,
        f"Updated service: {service['name']}",
        serviceId=service["id"],
        changes=sorted(changes),
    )


def service_deleted(service: dict) -> dict:
    return _entry(
        ActivityType.SERVICE_DELETED,
        f"Deleted service: {service['name']}",
        serviceId=service["id"],
    )


def renewal_created(renewal: dict, client: dict | None, service: dict | None) -> dict:
    return _entry(
        ActivityType.RENEWAL_CREATED,
        "Created renewal for {} - {}".format(
            _name(client, "unknown client"), _name(service, "unknown service")
        ),
        renewalId=renewal["id"],
        clientId=renewal["client_id"],
        serviceId=renewal["service_id"],
        amount=renewal["amount"],
    )


def renewal_updated(renewal: dict, client: dict | None, service: dict | None, changes: Iterable[str]) -> dict:
    return _entry(
        ActivityType.RENEWAL_UPDATED,
        "Updated renewal for {} - {}".format(
            _name(client, "unknown client"), _name(service, "unknown service")
        ),
        renewalId=renewal["id"],
        clientId=renewal["client_id"],
        serviceId=renewal["service_id"],
        changes=sorted(changes),
    )


def payment_received(renewal: dict, client: dict | None, service: dict | None) -> dict:
    return _entry(
        ActivityType.PAYMENT_RECEIVED,
        "Payment of {} received from {} for {}".format(
            format_amount(renewal["amount"]),
            _name(client, "unknown client"),
            _name(service, "unknown service"),
        ),
        renewalId=renewal["id"],
        clientId=renewal["client_id"],
        serviceId=renewal["service_id"],
        amount=renewal["amount"],
    )


def renewal_reminder(renewal: dict, client: dict | None, service: dict | None) -> dict:
    return _entry(
        ActivityType.RENEWAL_REMINDER,
        "Sent reminder to {} about {} due on {}".format(
            _name(client, "unknown client"),
            _name(service, "unknown service"),
            renewal["end_date"],
        ),
        renewalId=renewal["id"],
        clientId=renewal["client_id"],
        serviceId=renewal["service_id"],
    )


def renewal_deleted(renewal: dict, client: dict | None, service: dict | None) -> dict:
    return _entry(
        ActivityType.RENEWAL_DELETED,
        "Deleted renewal for {} - {}".format(
            _name(client, "unknown client"), _name(service, "unknown service")
        ),
        renewalId=renewal["id"],
        clientId=renewal["client_id"],
        serviceId=renewal["service_id"],
        amount=renewal["amount"],
    )

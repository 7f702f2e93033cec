"""Join renewals to their client and service for display."""

from __future__ import annotations

from .errors import IntegrityError


def enrich_renewal(renewal: dict, client: dict | None, service: dict | None) -> dict:
    """Return a copy of ``renewal`` with ``client`` and ``service`` summaries attached.

    Raises:
        IntegrityError: if either related record is missing.
    """

    if client is None or service is None:
        missing = "client" if client is None else "service"
        raise IntegrityError(
            f"Related {missing} not found for renewal {renewal['id']} "
            f"(client_id={renewal['client_id']}, service_id={renewal['service_id']})"
        )
    enriched = dict(renewal)
    enriched["client"] = {
        "id": client["id"],
        "name": client["name"],
        "email": client["email"],
        "company": client.get("company"),
    }
    enriched["service"] = {
        "id": service["id"],
        "name": service["name"],
    }
    return enriched


def enrich_all(renewals: list[dict], clients: dict[int, dict], services: dict[int, dict]) -> list[dict]:
    return [
        enrich_renewal(
            renewal,
            clients.get(renewal["client_id"]),
            services.get(renewal["service_id"]),
        )
        for renewal in renewals
    ]

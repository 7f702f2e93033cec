"""Flask application exposing the renewal tracker as a JSON API."""

from __future__ import annotations

import logging
from typing import Any

import pydantic
from flask import Flask, jsonify, request

from renewtrack.tracker import schemas
from renewtrack.tracker.backends import create_store
from renewtrack.tracker.config import AppConfig, load_app_config
from renewtrack.tracker.dashboard import DEFAULT_REVENUE_MONTHS, UPCOMING_WINDOW_DAYS
from renewtrack.tracker.errors import (
    ConflictError,
    IntegrityError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from renewtrack.tracker.status import classify
from renewtrack.tracker.store import RENEWAL_FIELDS, RENEWAL_REQUIRED, RenewalStore, check_changes

logger = logging.getLogger(__name__)

__all__ = ["create_app", "configure_logging"]


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(config: AppConfig | None = None, store: RenewalStore | None = None) -> Flask:
    """Create and configure the Flask application.

    ``store`` is built from ``config.database`` when not supplied. Every request
    runs as the single configured user, created on first start.
    """

    config = config or load_app_config()
    configure_logging(config.log_level)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key

    store = store or create_store(config.database)
    user = store.ensure_user(
        username=config.user.username,
        email=config.user.email,
        password=config.user.password,
    )
    user_id = user["id"]
    app.extensions["renewtrack"] = store
    logger.info("Serving user %s from the %s backend", user["username"], store.backend_name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def body() -> dict:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    def int_arg(name: str, default: int) -> int:
        raw = request.args.get(name)
        if raw is None or raw == "":
            return default
        try:
            return int(raw)
        except ValueError as exc:
            raise ValidationError(f"{name} must be an integer") from exc

    def with_relations() -> bool:
        return request.args.get("withRelations", "").lower() in ("1", "true", "yes")

    def with_status(renewal: dict) -> dict:
        status = classify(renewal["end_date"], renewal["is_paid"], store.now().date())
        return {**renewal, "status": status.to_dict()}

    def render_renewal(renewal: dict) -> dict:
        model = schemas.RenewalWithRelationsOut if "client" in renewal else schemas.RenewalOut
        return schemas.dump(model, with_status(renewal))

    def check_references(fields: dict) -> None:
        if "client_id" in fields and store.get_client(user_id, fields["client_id"]) is None:
            raise ValidationError("Client not found")
        if "service_id" in fields and store.get_service(user_id, fields["service_id"]) is None:
            raise ValidationError("Service not found")

    # ------------------------------------------------------------------
    # Error handling
    # ------------------------------------------------------------------
    @app.errorhandler(pydantic.ValidationError)
    def handle_schema_error(exc: pydantic.ValidationError) -> Any:
        return jsonify({"error": schemas.error_message(exc)}), 400

    @app.errorhandler(ValidationError)
    @app.errorhandler(ConflictError)
    def handle_bad_request(exc: Exception) -> Any:
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(NotFoundError)
    def handle_not_found(exc: NotFoundError) -> Any:
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(IntegrityError)
    @app.errorhandler(StoreError)
    def handle_store_failure(exc: Exception) -> Any:
        logger.error("Request %s %s failed: %s", request.method, request.path, exc)
        return jsonify({"error": str(exc)}), 500

    @app.errorhandler(404)
    def handle_unknown_route(exc: Exception) -> Any:
        return jsonify({"error": "Not found"}), 404

    # ------------------------------------------------------------------
    # Dashboard & reporting
    # ------------------------------------------------------------------
    @app.get("/api/dashboard")
    def dashboard() -> Any:
        stats = store.get_dashboard_stats(user_id)
        stats["upcoming_renewals"] = [with_status(r) for r in stats["upcoming_renewals"]]
        return jsonify(schemas.dump(schemas.DashboardStatsOut, stats))

    @app.get("/api/revenue/monthly")
    def monthly_revenue() -> Any:
        months = int_arg("months", DEFAULT_REVENUE_MONTHS)
        points = store.get_monthly_revenue(user_id, months)
        return jsonify([schemas.dump(schemas.MonthlyRevenueOut, point) for point in points])

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------
    @app.get("/api/clients")
    def list_clients() -> Any:
        return jsonify(
            [schemas.dump(schemas.ClientOut, client) for client in store.list_clients(user_id)]
        )

    @app.post("/api/clients")
    def create_client() -> Any:
        payload = schemas.ClientCreate.model_validate(body())
        client = store.create_client(user_id, **payload.model_dump())
        return jsonify(schemas.dump(schemas.ClientOut, client)), 201

    @app.get("/api/clients/<int:client_id>")
    def get_client(client_id: int) -> Any:
        client = store.get_client(user_id, client_id)
        if client is None:
            raise NotFoundError("Client not found")
        return jsonify(schemas.dump(schemas.ClientOut, client))

    @app.put("/api/clients/<int:client_id>")
    def update_client(client_id: int) -> Any:
        payload = schemas.ClientUpdate.model_validate(body())
        client = store.update_client(user_id, client_id, **schemas.updates(payload))
        if client is None:
            raise NotFoundError("Client not found")
        return jsonify(schemas.dump(schemas.ClientOut, client))

    @app.delete("/api/clients/<int:client_id>")
    def delete_client(client_id: int) -> Any:
        if not store.delete_client(user_id, client_id):
            raise NotFoundError("Client not found")
        return "", 204

    @app.get("/api/clients/<int:client_id>/renewals")
    def client_renewals(client_id: int) -> Any:
        if store.get_client(user_id, client_id) is None:
            raise NotFoundError("Client not found")
        renewals = store.list_renewals_for_client(user_id, client_id)
        return jsonify([render_renewal(renewal) for renewal in renewals])

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------
    @app.get("/api/services")
    def list_services() -> Any:
        return jsonify(
            [schemas.dump(schemas.ServiceOut, service) for service in store.list_services(user_id)]
        )

    @app.post("/api/services")
    def create_service() -> Any:
        payload = schemas.ServiceCreate.model_validate(body())
        service = store.create_service(user_id, **payload.model_dump())
        return jsonify(schemas.dump(schemas.ServiceOut, service)), 201

    @app.get("/api/services/<int:service_id>")
    def get_service(service_id: int) -> Any:
        service = store.get_service(user_id, service_id)
        if service is None:
            raise NotFoundError("Service not found")
        return jsonify(schemas.dump(schemas.ServiceOut, service))

    @app.put("/api/services/<int:service_id>")
    def update_service(service_id: int) -> Any:
        payload = schemas.ServiceUpdate.model_validate(body())
        service = store.update_service(user_id, service_id, **schemas.updates(payload))
        if service is None:
            raise NotFoundError("Service not found")
        return jsonify(schemas.dump(schemas.ServiceOut, service))

    @app.delete("/api/services/<int:service_id>")
    def delete_service(service_id: int) -> Any:
        if not store.delete_service(user_id, service_id):
            raise NotFoundError("Service not found")
        return "", 204

    # ------------------------------------------------------------------
    # Renewals
    # ------------------------------------------------------------------
    @app.get("/api/renewals")
    def list_renewals() -> Any:
        if with_relations():
            renewals = store.list_renewals_with_relations(user_id)
        else:
            renewals = store.list_renewals(user_id)
        return jsonify([render_renewal(renewal) for renewal in renewals])

    @app.get("/api/renewals/upcoming")
    def upcoming_renewals() -> Any:
        days = int_arg("days", UPCOMING_WINDOW_DAYS)
        renewals = store.list_upcoming_renewals(user_id, days)
        return jsonify([render_renewal(renewal) for renewal in renewals])

    @app.post("/api/renewals")
    def create_renewal() -> Any:
        payload = schemas.RenewalCreate.model_validate(body())
        fields = payload.model_dump()
        check_references(fields)
        renewal = store.create_renewal(user_id, **fields)
        return jsonify(render_renewal(renewal)), 201

    @app.get("/api/renewals/<int:renewal_id>")
    def get_renewal(renewal_id: int) -> Any:
        if with_relations():
            renewal = store.get_renewal_with_relations(user_id, renewal_id)
        else:
            renewal = store.get_renewal(user_id, renewal_id)
        if renewal is None:
            raise NotFoundError("Renewal not found")
        return jsonify(render_renewal(renewal))

    @app.put("/api/renewals/<int:renewal_id>")
    def update_renewal(renewal_id: int) -> Any:
        payload = schemas.RenewalUpdate.model_validate(body())
        changes = schemas.updates(payload)
        if store.get_renewal(user_id, renewal_id) is None:
            raise NotFoundError("Renewal not found")
        check_changes(changes, RENEWAL_FIELDS, RENEWAL_REQUIRED)
        check_references(changes)
        renewal = store.update_renewal(user_id, renewal_id, **changes)
        if renewal is None:
            raise NotFoundError("Renewal not found")
        return jsonify(render_renewal(renewal))

    @app.put("/api/renewals/<int:renewal_id>/notification")
    def set_notification(renewal_id: int) -> Any:
        payload = schemas.NotificationUpdate.model_validate(body())
        if not store.set_notification_status(user_id, renewal_id, payload.notification_sent):
            raise NotFoundError("Renewal not found")
        return "", 204

    @app.delete("/api/renewals/<int:renewal_id>")
    def delete_renewal(renewal_id: int) -> Any:
        if not store.delete_renewal(user_id, renewal_id):
            raise NotFoundError("Renewal not found")
        return "", 204

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------
    @app.get("/api/activities")
    def list_activities() -> Any:
        limit = int_arg("limit", 0)
        if limit < 0:
            raise ValidationError("limit must not be negative")
        activities = store.list_activities(user_id, limit or None)
        return jsonify([schemas.dump(schemas.ActivityOut, entry) for entry in activities])

    @app.post("/api/activities")
    def create_activity() -> Any:
        payload = schemas.ActivityCreate.model_validate(body())
        entry = store.create_activity(
            user_id,
            type=payload.type,
            description=payload.description,
            metadata=payload.metadata,
        )
        return jsonify(schemas.dump(schemas.ActivityOut, entry)), 201

    return app

"""Flask application exposing Furfolio client records and statistics as JSON."""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, jsonify, request

from furfolio.config import Config
from furfolio.grooming.system import GroomingSystem, NotFoundError, ValidationError


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def create_app(config: Config | None = None) -> Flask:
    """Create and configure the Flask application."""

    config = config or Config()
    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["FURFOLIO"] = config

    package_logger = logging.getLogger("furfolio")
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        package_logger.addHandler(handler)
    package_logger.setLevel(config.log_level)
    app.logger.setLevel(config.log_level)

    system = GroomingSystem(
        config.database_path,
        reward_threshold=config.reward_threshold,
        retention_days=config.retention_days,
        top_spender_threshold=config.top_spender_threshold,
    )
    app.extensions["furfolio"] = system

    @app.errorhandler(NotFoundError)
    def not_found(exc: NotFoundError) -> Any:
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(ValidationError)
    def invalid(exc: ValidationError) -> Any:
        app.logger.info("Rejected %s %s: %s", request.method, request.path, exc)
        return jsonify({"error": str(exc)}), 400

    @app.get("/health")
    def health() -> Any:
        return jsonify({"status": "ok"})

    @app.get("/dashboard")
    def dashboard() -> Any:
        return jsonify(system.dashboard())

    # ------------------------------------------------------------------
    # Owners
    # ------------------------------------------------------------------
    @app.route("/owners", methods=["GET", "POST"])
    def owners() -> Any:
        if request.method == "POST":
            data = _payload()
            owner = system.register_owner(
                owner_name=data.get("owner_name", ""),
                dog_name=data.get("dog_name"),
                breed=data.get("breed"),
                contact_info=data.get("contact_info"),
                address=data.get("address"),
                notes=data.get("notes"),
                birthdate=data.get("birthdate"),
            )
            return jsonify(owner), 201
        return jsonify(system.list_owners(search=request.args.get("q")))

    @app.get("/owners/<int:owner_id>")
    def owner_detail(owner_id: int) -> Any:
        owner = dict(system.get_owner(owner_id))
        owner["appointments"] = system.list_appointments(owner_id=owner_id)
        owner["charges"] = system.list_charges(owner_id=owner_id)
        owner["behavior_logs"] = system.list_behavior_logs(owner_id=owner_id)
        owner["stats"] = system.compute_stats(owner_id).to_dict()
        owner["milestones"] = system.milestones(owner_id)
        return jsonify(owner)

    @app.patch("/owners/<int:owner_id>")
    def update_owner(owner_id: int) -> Any:
        return jsonify(system.update_owner(owner_id, **_payload()))

    @app.delete("/owners/<int:owner_id>")
    def delete_owner(owner_id: int) -> Any:
        system.delete_owner(owner_id)
        return "", 204

    @app.get("/owners/<int:owner_id>/stats")
    def owner_stats(owner_id: int) -> Any:
        return jsonify(system.compute_stats(owner_id).to_dict())

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------
    @app.route("/owners/<int:owner_id>/appointments", methods=["GET", "POST"])
    def appointments(owner_id: int) -> Any:
        if request.method == "POST":
            data = _payload()
            appointment = system.schedule_appointment(
                owner_id=owner_id,
                date=data.get("date"),
                service_type=data.get("service_type"),
                notes=data.get("notes"),
                duration_minutes=data.get("duration_minutes"),
            )
            return jsonify(appointment), 201
        upcoming = request.args.get("upcoming") in ("1", "true", "yes")
        return jsonify(system.list_appointments(owner_id=owner_id, upcoming_only=upcoming))

    @app.patch("/appointments/<int:appointment_id>")
    def update_appointment(appointment_id: int) -> Any:
        return jsonify(system.update_appointment(appointment_id, **_payload()))

    @app.delete("/appointments/<int:appointment_id>")
    def delete_appointment(appointment_id: int) -> Any:
        system.delete_appointment(appointment_id)
        return "", 204

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------
    @app.route("/owners/<int:owner_id>/charges", methods=["GET", "POST"])
    def charges(owner_id: int) -> Any:
        if request.method == "POST":
            data = _payload()
            charge = system.record_charge(
                owner_id=owner_id,
                amount=data.get("amount"),
                payment_method=data.get("payment_method", "card"),
                date=data.get("date"),
                notes=data.get("notes"),
            )
            return jsonify(charge), 201
        return jsonify(system.list_charges(owner_id=owner_id))

    @app.patch("/charges/<int:charge_id>")
    def update_charge(charge_id: int) -> Any:
        return jsonify(system.update_charge(charge_id, **_payload()))

    @app.delete("/charges/<int:charge_id>")
    def delete_charge(charge_id: int) -> Any:
        system.delete_charge(charge_id)
        return "", 204

    # ------------------------------------------------------------------
    # Behaviour logs
    # ------------------------------------------------------------------
    @app.route("/owners/<int:owner_id>/behavior-logs", methods=["GET", "POST"])
    def behavior_logs(owner_id: int) -> Any:
        if request.method == "POST":
            data = _payload()
            log = system.log_behavior(
                owner_id=owner_id,
                note=data.get("note", ""),
                severity_tag=data.get("severity_tag"),
                logged_at=data.get("logged_at"),
            )
            return jsonify(log), 201
        return jsonify(system.list_behavior_logs(owner_id=owner_id))

    @app.delete("/behavior-logs/<int:log_id>")
    def delete_behavior_log(log_id: int) -> Any:
        system.delete_behavior_log(log_id)
        return "", 204

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------
    @app.get("/reports/top-clients")
    def top_clients() -> Any:
        limit = request.args.get("limit", default=5, type=int)
        return jsonify(system.top_clients(limit=limit))

    @app.get("/reports/retention")
    def retention() -> Any:
        return jsonify(system.retention_summary())

    return app


__all__ = ["create_app"]

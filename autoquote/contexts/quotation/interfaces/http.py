from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from autoquote.contexts.inventory.application.stock_monitor import StockMonitor
from autoquote.contexts.inventory.infrastructure.inventory_repository import InventoryRepository
from autoquote.contexts.quotation.domain.machine import parse_event
from autoquote.contexts.quotation.infrastructure.repositories import SettingsRepository
from autoquote.contexts.quotation.interfaces.workers.runtime import build_quotation_service, get_registry
from autoquote.errors import GuardViolation, ValidationError
from autoquote.tenant import scoped_tenant_id
from autoquote.ui_strings import success_message


quotation_bp = Blueprint("quotations", __name__, url_prefix="/api")


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError(details="Corpo JSON deve ser um objeto.")
    return body


def _service():
    return build_quotation_service(current_app, scoped_tenant_id())


def _orchestrator():
    return get_registry(current_app).get(scoped_tenant_id())


@quotation_bp.route("/quotations", methods=["GET"])
def list_quotations():
    status = (request.args.get("status") or "").strip() or None
    quotations = _service().list(status)
    return jsonify({"items": quotations, "total": len(quotations)})


@quotation_bp.route("/quotations", methods=["POST"])
def create_quotation():
    snapshot = _service().create_quotation(_json_body())
    return jsonify({"message": success_message("quotation_created"), **snapshot}), 201


@quotation_bp.route("/quotations/<quotation_id>", methods=["GET"])
def get_quotation(quotation_id: str):
    return jsonify(_service().snapshot(quotation_id).to_dict())


@quotation_bp.route("/quotations/<quotation_id>", methods=["DELETE"])
def delete_quotation(quotation_id: str):
    _service().delete(quotation_id)
    return "", 204


@quotation_bp.route("/quotations/<quotation_id>/events", methods=["POST"])
def send_quotation_event(quotation_id: str):
    body = _json_body()
    event = str(body.get("event") or "").strip()
    if parse_event(event) is None:
        raise ValidationError(details=f"evento invalido: {event or '-'}", payload={"field": "event"})
    payload = body.get("payload")
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError(payload={"field": "payload"})

    result = _service().transition(quotation_id, event, payload)
    if not result.success:
        raise GuardViolation(
            reason=result.error,
            details=result.error,
            payload={
                "event": result.event,
                "state": result.snapshot.state.value,
                "available_events": list(result.snapshot.available_events),
            },
        )
    return jsonify({"message": success_message("transition_applied"), **result.snapshot.to_dict()})


@quotation_bp.route("/auto-quotation/trigger", methods=["POST"])
def trigger_auto_quotation():
    body = _json_body()
    products = body.get("products")
    if not isinstance(products, list) or not all(isinstance(item, dict) for item in products):
        raise ValidationError(details="Informe a lista de produtos.", payload={"field": "products"})
    orchestrator = _orchestrator()
    queued = orchestrator.trigger_check(products)
    return jsonify({"queued": queued, "pending": orchestrator.get_pending_count()}), 202


@quotation_bp.route("/auto-quotation/flush", methods=["POST"])
def flush_auto_quotation():
    report = _orchestrator().flush_pending()
    return jsonify({"message": success_message("batch_flushed"), **report.to_dict()})


@quotation_bp.route("/auto-quotation/pending", methods=["GET"])
def pending_auto_quotation():
    return jsonify({"pending": _orchestrator().get_pending_count()})


@quotation_bp.route("/inventory/items/<item_id>/stock", methods=["POST"])
def update_item_stock(item_id: str):
    body = _json_body()
    if "current_stock" not in body:
        raise ValidationError(details="current_stock obrigatorio.", payload={"field": "current_stock"})
    tenant_id = scoped_tenant_id()
    # Make sure this tenant is listening before the reorder signal goes out.
    if current_app.config.get("AUTO_QUOTATION_ENABLED", True):
        get_registry(current_app).get(tenant_id)
    monitor = StockMonitor(tenant_id=tenant_id, inventory=InventoryRepository(tenant_id=tenant_id))
    return jsonify(monitor.update_stock(item_id, body.get("current_stock")))


def _settings_repository() -> SettingsRepository:
    return SettingsRepository(
        tenant_id=scoped_tenant_id(),
        default_mode=str(current_app.config.get("AUTOMATION_MODE_DEFAULT") or "auto"),
    )


@quotation_bp.route("/settings/automation-mode", methods=["GET"])
def get_automation_mode():
    return jsonify({"automation_mode": _settings_repository().automation_mode()})


@quotation_bp.route("/settings/automation-mode", methods=["PUT"])
def set_automation_mode():
    body = _json_body()
    mode = _settings_repository().set_automation_mode(str(body.get("automation_mode") or ""))
    return jsonify({"automation_mode": mode})

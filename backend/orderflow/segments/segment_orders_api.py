from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from orderflow.errors import ExternalServiceError, Forbidden, OrderflowError, Unauthorized, ValidationError
from orderflow.extensions import db
from orderflow.integrations.courier.uber_direct_provider import status_from_webhook
from orderflow.jobs.settlement_runner import run_auto_capture
from orderflow.models import WebhookEvent
from orderflow.services import container
from orderflow.services.order_lifecycle import can_manage, can_view
from orderflow.services.order_lookup import load_order
from orderflow.utils.auth import Actor, cron_authorized, current_actor
from orderflow.utils.idempotency import lookup_response, release_key, store_response
from orderflow.utils.observability import get_request_id
from orderflow.utils.timeline import order_timeline

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


_INIT_DONE = False


@orders_bp.before_app_request
def _ensure_tables_once():
    global _INIT_DONE
    if _INIT_DONE:
        return
    try:
        db.create_all()
    except Exception:
        current_app.logger.exception("create_all_failed")
        db.session.rollback()
    _INIT_DONE = True


def _require_actor() -> Actor:
    actor = current_actor()
    if actor is None:
        raise Unauthorized("authentication required")
    return actor


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _result_status(result) -> int:
    if result.ok:
        return 200
    if result.kind == ExternalServiceError.FATAL:
        return 409
    return 502


@orders_bp.post("/orders")
def create_order():
    actor = current_actor()
    payload = _payload()

    idem = lookup_response(actor.ref if actor else None, "/api/orders", payload)
    if idem and idem[0] in ("hit", "conflict"):
        return jsonify(idem[1]), idem[2]
    idem_row = idem[1] if idem and idem[0] == "miss" else None

    try:
        order = container.lifecycle().create_order(
            buyer=actor,
            items=payload.get("items"),
            delivery_method=str(payload.get("delivery_method") or "pickup"),
            payment_method=str(payload.get("payment_method") or ""),
            delivery_address=payload.get("delivery_address"),
            guest_email=payload.get("guest_email") if actor is None else None,
            customer_ref=payload.get("customer_ref"),
        )
    except Exception:
        db.session.rollback()
        if idem_row is not None:
            release_key(idem_row)
        raise

    body = {"ok": True, "order": order.to_dict()}
    if idem_row is not None:
        store_response(idem_row, body, 201)
    return jsonify(body), 201


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    actor = _require_actor()
    order = load_order(order_id)
    if not can_view(order, actor):
        raise Forbidden("not allowed to view this order")
    return jsonify({"ok": True, "order": order.to_dict(), "timeline": order_timeline(int(order.id))}), 200


@orders_bp.put("/orders/<int:order_id>/status")
def update_status(order_id: int):
    actor = _require_actor()
    payload = _payload()
    order = load_order(order_id)
    if not can_manage(order, actor):
        raise Forbidden("only the seller or an admin may update this order")
    status = str(payload.get("status") or "").strip()
    if not status:
        raise ValidationError("status is required")
    effects = container.lifecycle().transition(order.id, status, actor=actor, reason=payload.get("reason"))
    return jsonify({"ok": True, "order": load_order(order_id).to_dict(), "effects": effects}), 200


@orders_bp.put("/orders/<int:order_id>/cancel")
def cancel_order(order_id: int):
    actor = _require_actor()
    payload = _payload()
    effects = container.lifecycle().cancel_by_buyer(order_id, actor, str(payload.get("reason") or ""))
    return jsonify({"ok": True, "order": load_order(order_id).to_dict(), "effects": effects}), 200


@orders_bp.post("/orders/<int:order_id>/confirm-receipt")
def confirm_receipt(order_id: int):
    actor = _require_actor()
    effects = container.lifecycle().confirm_receipt(order_id, actor)
    return jsonify({"ok": True, "order": load_order(order_id).to_dict(), "effects": effects}), 200


@orders_bp.post("/orders/<int:order_id>/capture-payment")
def capture_payment(order_id: int):
    actor = _require_actor()
    order = load_order(order_id)
    if not can_manage(order, actor):
        raise Forbidden("only the seller or an admin may capture payment")
    result = container.settlement().capture(order.id)
    body = result.to_dict()
    body["order"] = load_order(order_id).to_dict()
    return jsonify(body), _result_status(result)


@orders_bp.post("/orders/auto-capture-payments")
def auto_capture_payments():
    if not cron_authorized():
        raise Unauthorized("invalid cron token")
    payload = _payload()
    hours = payload.get("hours")
    try:
        hours = int(hours) if hours is not None else None
        limit = int(payload.get("limit") or 100)
    except (TypeError, ValueError):
        raise ValidationError("hours and limit must be integers")
    result = run_auto_capture(hours=hours, limit=limit)
    return jsonify(result), 200


@orders_bp.post("/orders/<int:order_id>/artisan-cost-response")
def artisan_cost_response(order_id: int):
    actor = _require_actor()
    order = load_order(order_id)
    if not can_manage(order, actor):
        raise Forbidden("only the seller may respond to a delivery cost change")
    response = str(_payload().get("response") or "").strip().lower()
    result = container.lifecycle().negotiator.handle_cost_response(order.id, response)
    body = result.to_dict()
    body["order"] = load_order(order_id).to_dict()
    return jsonify(body), _result_status(result)


@orders_bp.post("/orders/<int:order_id>/sync-delivery")
def sync_delivery(order_id: int):
    actor = _require_actor()
    order = load_order(order_id)
    if not can_manage(order, actor):
        raise Forbidden("only the seller or an admin may sync delivery status")
    result = container.lifecycle().negotiator.sync_courier_status(order.id)
    body = result.to_dict()
    body["order"] = load_order(order_id).to_dict()
    return jsonify(body), _result_status(result)


def _signature_valid(raw: bytes) -> bool:
    secret = (current_app.config.get("COURIER_WEBHOOK_SECRET") or "").strip()
    if not secret:
        return not current_app.config.get("IS_PRODUCTION", False)
    sig = (request.headers.get("X-Courier-Signature") or "").strip()
    if sig.startswith("sha256="):
        sig = sig[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return bool(sig) and hmac.compare_digest(expected, sig)


@orders_bp.post("/orders/delivery-webhook")
def delivery_webhook():
    raw = request.get_data() or b""
    if not _signature_valid(raw):
        current_app.logger.warning("courier_webhook_bad_signature request_id=%s", get_request_id())
        return jsonify({"ok": False, "error": "INVALID_SIGNATURE", "message": "invalid signature"}), 401
    try:
        payload = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        return jsonify({"ok": False, "error": "INVALID_PAYLOAD", "message": "body must be JSON"}), 400
    if not isinstance(payload, dict):
        return jsonify({"ok": False, "error": "INVALID_PAYLOAD", "message": "body must be a JSON object"}), 400

    payload_hash = hashlib.sha256(raw).hexdigest()
    event_id, status = status_from_webhook(payload)
    event_id = (event_id or payload_hash)[:128]

    event = WebhookEvent(
        provider="courier",
        event_id=event_id,
        reference=status.delivery_id[:128] or None,
        status="received",
        request_id=get_request_id()[:64] or None,
        payload_hash=payload_hash,
    )
    db.session.add(event)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.info("courier_webhook_duplicate event_id=%s", event_id)
        return jsonify({"ok": True, "duplicate": True}), 200
    event_pk = int(event.id)

    outcome = "processed"
    error = None
    body: dict = {"ok": True}
    try:
        result = container.lifecycle().negotiator.handle_courier_update(
            status.delivery_id,
            status.status,
            tracking_url=status.tracking_url or None,
            courier=status.courier or None,
            pickup_eta=status.pickup_eta,
            dropoff_eta=status.dropoff_eta,
        )
        body["result"] = result.to_dict()
        if not result.ok:
            outcome = "failed"
            error = result.message or result.code
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("courier_webhook_failed event_id=%s delivery_id=%s", event_id, status.delivery_id)
        outcome = "failed"
        error = str(exc)
        body["result"] = {"ok": False, "code": "WEBHOOK_HANDLER_FAILED"}

    WebhookEvent.query.filter(WebhookEvent.id == event_pk).update(
        {
            WebhookEvent.status: outcome,
            WebhookEvent.processed_at: datetime.utcnow(),
            WebhookEvent.error: (error or "")[:1000] or None,
        },
        synchronize_session=False,
    )
    db.session.commit()
    return jsonify(body), 200


@orders_bp.errorhandler(OrderflowError)
def _orderflow_error(exc: OrderflowError):
    db.session.rollback()
    body = exc.to_dict()
    body["trace_id"] = get_request_id()
    return jsonify(body), exc.http_status

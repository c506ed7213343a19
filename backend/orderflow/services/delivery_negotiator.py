from __future__ import annotations

import json
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import or_

from orderflow.errors import ExternalServiceError, InconsistentState, InvalidTransition, SettlementResult, ValidationError
from orderflow.extensions import db
from orderflow.integrations.courier.base import CourierProvider, CourierQuote
from orderflow.models import Order
from orderflow.services import wallet_service
from orderflow.services.notification_service import Notifier
from orderflow.services.order_lookup import load_order, seller_for
from orderflow.services.platform_settings_service import get_delivery_config
from orderflow.utils.fees import money_major_to_minor, to_money
from orderflow.utils.job_runs import record_job_run
from orderflow.utils.timeline import record_order_event

PROFESSIONAL = "professionalDelivery"

IN_TRANSIT_STATUSES = ("pending", "pickup", "pickup_complete", "dropoff")
DELIVERED_STATUSES = ("delivered", "completed")
FAILED_STATUSES = ("canceled", "cancelled", "returned")

BOOKING = "booking"
BOOKING_STALE_SECONDS = 600


def _now():
    return datetime.utcnow()


def package_for(order: Order) -> dict:
    return {
        "name": f"Order #{int(order.id)}",
        "quantity": sum(int(item.quantity or 0) for item in order.items) or 1,
        "value_minor": money_major_to_minor(order.subtotal or 0),
    }


def price_with_buffer(fee, config) -> dict:
    """Buyer-facing delivery charge: the courier fee plus a clamped safety buffer."""
    fee = to_money(fee)
    buffer = to_money(fee * config.buffer_percentage / Decimal("100"))
    if buffer < config.min_buffer:
        buffer = config.min_buffer
    if config.max_buffer is not None and buffer > config.max_buffer:
        buffer = config.max_buffer
    return {
        "estimated_fee": fee,
        "buffer_percentage": config.buffer_percentage,
        "buffer_amount": buffer,
        "charged_amount": to_money(fee + buffer),
    }


class DeliveryCostNegotiator:
    """Reconciles the delivery charge taken at checkout with the live courier price."""

    def __init__(self, courier: CourierProvider, notifier: Notifier | None = None, *, lifecycle=None):
        self.courier = courier
        self.notifier = notifier
        self.lifecycle = lifecycle

    def _notify(self, user_ref, event_type: str, payload: dict) -> None:
        if self.notifier is not None:
            self.notifier.notify(user_ref, event_type, payload)

    def _record_error(self, order_id: int, kind: str, message: str) -> None:
        Order.query.filter(Order.id == int(order_id)).update(
            {Order.last_settlement_error: f"{kind}:{message}"[:1000]},
            synchronize_session=False,
        )
        db.session.commit()

    def _endpoints(self, order: Order) -> tuple[dict, dict]:
        seller = seller_for(order)
        pickup = seller.pickup() if seller is not None else {}
        dropoff = order.delivery_address()
        if "name" not in dropoff and order.guest_email:
            dropoff["name"] = order.guest_email
        return pickup, dropoff

    def quote_for_checkout(self, pickup: dict, dropoff: dict, package: dict) -> dict:
        quote = self.courier.quote(pickup=pickup, dropoff=dropoff, package=package)
        pricing = price_with_buffer(quote.fee, get_delivery_config())
        pricing.update(
            {
                "courier_quote_id": quote.quote_id,
                "courier_quote_expires_at": quote.expires_at,
                "fallback": bool(quote.fallback),
            }
        )
        return pricing

    def _fresh_quote(self, order: Order) -> CourierQuote:
        pickup, dropoff = self._endpoints(order)
        return self.courier.quote(pickup=pickup, dropoff=dropoff, package=package_for(order))

    # ready_for_delivery

    def process_ready_for_delivery(self, order_id) -> SettlementResult:
        order = load_order(order_id)
        oid = int(order.id)
        if order.delivery_method != PROFESSIONAL:
            return SettlementResult.success("not_applicable")
        if order.courier_delivery_id:
            return SettlementResult.already("already_booked", delivery_id=order.courier_delivery_id)
        if order.cost_absorption_response == "pending":
            return SettlementResult.already("awaiting_seller_response")
        if order.status != "ready_for_delivery":
            return SettlementResult.failure(
                code="not_ready_for_delivery",
                message=f"status={order.status}",
                kind=ExternalServiceError.FATAL,
            )

        try:
            quote = self._fresh_quote(order)
        except ExternalServiceError as exc:
            current_app.logger.warning("courier_quote_failed order_id=%s kind=%s error=%s", oid, exc.kind, exc.message)
            self._record_error(oid, exc.kind, exc.message)
            return SettlementResult.failure(code="courier_quote_failed", message=exc.message, kind=exc.kind)

        actual = to_money(quote.fee)
        charged = to_money(order.delivery_charged_amount if order.delivery_charged_amount is not None else order.delivery_fee)
        if actual <= charged:
            return self._book(oid, quote.quote_id, actual=actual, refund=charged - actual)

        excess = to_money(actual - charged)
        if order.cost_absorption_response == "accepted":
            # Seller already agreed to absorb; a stalled booking is retried at today's price.
            return self._book(oid, quote.quote_id, actual=actual, refund=Decimal("0.00"), absorbed=excess)

        config = get_delivery_config()
        if excess <= config.auto_approve_threshold:
            Order.query.filter(Order.id == oid).update(
                {
                    Order.cost_absorption_required: True,
                    Order.cost_absorption_excess: excess,
                    Order.cost_absorption_response: "accepted",
                    Order.cost_absorption_responded_at: _now(),
                },
                synchronize_session=False,
            )
            db.session.commit()
            record_order_event(oid, "cost_absorption_auto_accepted", metadata={"excess": excess})
            return self._book(oid, quote.quote_id, actual=actual, refund=Decimal("0.00"), absorbed=excess)

        if config.absorption_limit is not None and excess > config.absorption_limit:
            Order.query.filter(Order.id == oid).update(
                {
                    Order.cost_absorption_required: True,
                    Order.cost_absorption_excess: excess,
                    Order.cost_absorption_response: "declined",
                    Order.cost_absorption_responded_at: _now(),
                    Order.actual_delivery_fee: actual,
                },
                synchronize_session=False,
            )
            db.session.commit()
            record_order_event(oid, "cost_absorption_auto_declined", metadata={"excess": excess})
            return self._decline(oid, reason=f"delivery cost exceeds charge by {excess}")

        now = _now()
        updated = Order.query.filter(
            Order.id == oid,
            Order.courier_delivery_id.is_(None),
            or_(Order.cost_absorption_response.is_(None), Order.cost_absorption_response != "pending"),
        ).update(
            {
                Order.cost_absorption_required: True,
                Order.cost_absorption_excess: excess,
                Order.cost_absorption_response: "pending",
                Order.cost_absorption_notified_at: now,
                Order.cost_absorption_responded_at: None,
                Order.actual_delivery_fee: actual,
                Order.courier_quote_id: quote.quote_id,
                Order.courier_quote_expires_at: quote.expires_at,
            },
            synchronize_session=False,
        )
        db.session.commit()
        if updated != 1:
            return SettlementResult.already("awaiting_seller_response")

        record_order_event(oid, "cost_absorption_requested", metadata={"actual": actual, "charged": charged, "excess": excess})
        seller = seller_for(order)
        if seller is not None:
            self._notify(
                seller.owner_ref,
                "delivery_cost_absorption_required",
                {"order_id": oid, "excess_amount": float(excess), "actual_fee": float(actual), "charged_amount": float(charged)},
            )
        return SettlementResult.success("absorption_required", excess_amount=float(excess), actual_fee=float(actual))

    def _book(self, order_id: int, quote_id: str, *, actual: Decimal, refund: Decimal, absorbed: Decimal | None = None) -> SettlementResult:
        now = _now()
        stale_before = now - timedelta(seconds=BOOKING_STALE_SECONDS)
        claimed = Order.query.filter(
            Order.id == order_id,
            Order.courier_delivery_id.is_(None),
            or_(
                Order.courier_status.is_(None),
                Order.courier_status != BOOKING,
                Order.updated_at < stale_before,
            ),
        ).update({Order.courier_status: BOOKING, Order.updated_at: now}, synchronize_session=False)
        db.session.commit()
        if claimed != 1:
            return SettlementResult.already("booking_in_progress")

        order = load_order(order_id)
        pickup, dropoff = self._endpoints(order)
        try:
            delivery = self.courier.create_delivery(
                quote_id=quote_id,
                pickup=pickup,
                dropoff=dropoff,
                package=package_for(order),
                reference=f"order-{order_id}",
            )
        except ExternalServiceError as exc:
            Order.query.filter(Order.id == order_id, Order.courier_status == BOOKING).update(
                {Order.courier_status: None, Order.last_settlement_error: f"{exc.kind}:{exc.message}"[:1000]},
                synchronize_session=False,
            )
            db.session.commit()
            current_app.logger.warning("courier_booking_failed order_id=%s kind=%s error=%s", order_id, exc.kind, exc.message)
            return SettlementResult.failure(code="courier_booking_failed", message=exc.message, kind=exc.kind)

        refund = to_money(refund)
        threshold = get_delivery_config().refund_threshold
        order = load_order(order_id)
        order.courier_delivery_id = delivery.delivery_id
        order.courier_status = delivery.status or "pending"
        order.courier_tracking_url = delivery.tracking_url or None
        order.courier_info_json = json.dumps(delivery.courier or {}, default=str)
        order.courier_pickup_eta = delivery.pickup_eta
        order.courier_dropoff_eta = delivery.dropoff_eta
        order.courier_quote_id = quote_id
        order.actual_delivery_fee = to_money(delivery.fee) if delivery.fee is not None else actual
        if absorbed is not None:
            order.cost_absorption_excess = to_money(absorbed)
        order.last_settlement_error = None
        try:
            if refund > threshold and refund > 0:
                wallet_service.credit(
                    order.buyer_ref,
                    refund,
                    type="delivery_refund",
                    description=f"Delivery fee difference for order #{order_id}",
                    related_order_id=order_id,
                    reference=f"order:{order_id}:delivery_refund",
                    commit=False,
                )
                order.delivery_refund_amount = refund
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception("delivery_refund_failed order_id=%s", order_id)
            # The courier is booked either way; keep the booking and flag the refund.
            order = load_order(order_id)
            order.courier_delivery_id = delivery.delivery_id
            order.courier_status = delivery.status or "pending"
            order.courier_tracking_url = delivery.tracking_url or None
            order.actual_delivery_fee = actual
            order.last_settlement_error = f"delivery_refund_failed:{exc}"[:1000]
            db.session.commit()
            refund = Decimal("0.00")

        record_order_event(
            order_id,
            "courier_booked",
            metadata={"delivery_id": delivery.delivery_id, "actual_fee": actual, "refund": refund},
        )
        if refund > 0:
            self._notify(order.buyer_ref, "delivery_refund_issued", {"order_id": order_id, "amount": float(refund)})
        if self.lifecycle is not None:
            self.lifecycle.system_transition(order_id, "out_for_delivery", note="courier_booked")
        return SettlementResult.success(
            "booked",
            delivery_id=delivery.delivery_id,
            tracking_url=delivery.tracking_url or "",
            actual_fee=float(actual),
            refund_amount=float(refund),
        )

    def _decline(self, order_id: int, *, reason: str) -> SettlementResult:
        if self.lifecycle is None:
            return SettlementResult.failure(code="lifecycle_unavailable", kind=ExternalServiceError.FATAL)
        effects = self.lifecycle.cancel_for_delivery_cost(order_id, reason=reason)
        return SettlementResult.success("cancelled", effects=effects)

    # seller response

    def handle_cost_response(self, order_id, response: str) -> SettlementResult:
        answer = (response or "").strip().lower()
        if answer not in ("accepted", "declined"):
            raise ValidationError("response must be accepted or declined")
        order = load_order(order_id)
        oid = int(order.id)
        if not order.cost_absorption_required or order.cost_absorption_response != "pending":
            raise InvalidTransition(f"order {oid} has no pending delivery cost decision")

        claimed = Order.query.filter(Order.id == oid, Order.cost_absorption_response == "pending").update(
            {Order.cost_absorption_response: answer, Order.cost_absorption_responded_at: _now()},
            synchronize_session=False,
        )
        db.session.commit()
        if claimed != 1:
            raise InvalidTransition(f"order {oid} delivery cost decision already recorded")
        record_order_event(oid, f"cost_absorption_{answer}")

        if answer == "declined":
            return self._decline(oid, reason="seller declined the delivery cost overrun")

        order = load_order(oid)
        charged = to_money(order.delivery_charged_amount if order.delivery_charged_amount is not None else order.delivery_fee)
        quote_id = order.courier_quote_id or ""
        actual = to_money(order.actual_delivery_fee or 0)
        if not quote_id or order.courier_quote_expires_at is None or order.courier_quote_expires_at <= _now():
            try:
                quote = self._fresh_quote(order)
            except ExternalServiceError as exc:
                current_app.logger.warning("courier_requote_failed order_id=%s kind=%s error=%s", oid, exc.kind, exc.message)
                self._record_error(oid, exc.kind, exc.message)
                return SettlementResult.failure(code="courier_quote_failed", message=exc.message, kind=exc.kind)
            quote_id = quote.quote_id
            actual = to_money(quote.fee)
        if actual <= charged:
            return self._book(oid, quote_id, actual=actual, refund=charged - actual, absorbed=Decimal("0.00"))
        return self._book(oid, quote_id, actual=actual, refund=Decimal("0.00"), absorbed=actual - charged)

    # courier updates

    def handle_courier_update(
        self,
        delivery_id: str,
        status: str,
        *,
        tracking_url: str | None = None,
        courier: dict | None = None,
        pickup_eta=None,
        dropoff_eta=None,
    ) -> SettlementResult:
        order = Order.query.filter_by(courier_delivery_id=(delivery_id or "").strip()).first() if delivery_id else None
        if order is None:
            return SettlementResult.failure(code="order_not_found", message=str(delivery_id), kind=ExternalServiceError.FATAL)
        oid = int(order.id)
        courier_status = (status or "").strip().lower()

        values = {Order.courier_status: courier_status or order.courier_status}
        if tracking_url:
            values[Order.courier_tracking_url] = tracking_url
        if courier:
            values[Order.courier_info_json] = json.dumps(courier, default=str)
        if pickup_eta is not None:
            values[Order.courier_pickup_eta] = pickup_eta
        if dropoff_eta is not None:
            values[Order.courier_dropoff_eta] = dropoff_eta
        Order.query.filter(Order.id == oid).update(values, synchronize_session=False)
        db.session.commit()

        if courier_status in IN_TRANSIT_STATUSES:
            return SettlementResult.success("in_transit", courier_status=courier_status)

        if courier_status in DELIVERED_STATUSES:
            order = load_order(oid)
            if order.status in ("delivered", "completed"):
                return SettlementResult.already("already_delivered", order_status=order.status)
            if order.status != "out_for_delivery":
                exc = InconsistentState(f"courier delivered order {oid} in status {order.status}")
                current_app.logger.error("courier_delivered_unexpected order_id=%s status=%s", oid, order.status)
                self._record_error(oid, exc.code, exc.message)
                return SettlementResult.failure(code=exc.code, message=exc.message, kind=ExternalServiceError.FATAL)
            effects = self.lifecycle.courier_delivered(oid) if self.lifecycle is not None else {}
            return SettlementResult.success("delivered", order_status=load_order(oid).status, effects=effects)

        if courier_status in FAILED_STATUSES:
            exc = InconsistentState(f"courier reported {courier_status} for order {oid}")
            current_app.logger.error("courier_delivery_failed order_id=%s courier_status=%s", oid, courier_status)
            self._record_error(oid, exc.code, exc.message)
            record_order_event(oid, f"courier_{courier_status}", idempotency_key=f"order:{oid}:courier:{courier_status}")
            seller = seller_for(order)
            if seller is not None:
                self._notify(seller.owner_ref, "courier_delivery_failed", {"order_id": oid, "courier_status": courier_status})
            return SettlementResult.failure(code=exc.code, message=exc.message, kind=ExternalServiceError.FATAL)

        current_app.logger.info("courier_status_ignored order_id=%s courier_status=%s", oid, courier_status)
        return SettlementResult.success("ignored", courier_status=courier_status)

    def sync_courier_status(self, order_id) -> SettlementResult:
        order = load_order(order_id)
        if not order.courier_delivery_id:
            return SettlementResult.failure(code="no_courier_delivery", kind=ExternalServiceError.FATAL)
        try:
            status = self.courier.get_status(order.courier_delivery_id)
        except ExternalServiceError as exc:
            current_app.logger.warning("courier_status_failed order_id=%s kind=%s error=%s", order.id, exc.kind, exc.message)
            return SettlementResult.failure(code="courier_status_failed", message=exc.message, kind=exc.kind)
        return self.handle_courier_update(
            order.courier_delivery_id,
            status.status,
            tracking_url=status.tracking_url,
            courier=status.courier,
            pickup_eta=status.pickup_eta,
            dropoff_eta=status.dropoff_eta,
        )

    # sweeps

    def expire_stale_cost_responses(self, *, timeout_seconds: int | None = None, limit: int = 100) -> dict:
        started = _now()
        if timeout_seconds is None:
            timeout_seconds = get_delivery_config().response_timeout_seconds
        cutoff = started - timedelta(seconds=int(timeout_seconds))
        ids = [
            int(o.id)
            for o in Order.query.filter(
                Order.cost_absorption_response == "pending",
                Order.cost_absorption_notified_at.isnot(None),
                Order.cost_absorption_notified_at <= cutoff,
            )
            .order_by(Order.id.asc())
            .limit(int(limit))
            .all()
        ]
        expired = 0
        for oid in ids:
            claimed = Order.query.filter(Order.id == oid, Order.cost_absorption_response == "pending").update(
                {Order.cost_absorption_response: "declined", Order.cost_absorption_responded_at: _now()},
                synchronize_session=False,
            )
            db.session.commit()
            if claimed != 1:
                continue
            record_order_event(oid, "cost_absorption_expired")
            try:
                self._decline(oid, reason="seller did not respond to the delivery cost overrun")
            except Exception:
                db.session.rollback()
                current_app.logger.exception("cost_response_expiry_failed order_id=%s", oid)
                continue
            expired += 1
        record_job_run(job_name="cost_response_expiry", ok=True, started_at=started, processed=expired)
        return {"ok": True, "expired": expired, "checked": len(ids)}

    def retry_stalled_deliveries(self, *, limit: int = 50) -> dict:
        started = _now()
        ids = [
            int(o.id)
            for o in Order.query.filter(
                Order.status == "ready_for_delivery",
                Order.delivery_method == PROFESSIONAL,
                Order.courier_delivery_id.is_(None),
                or_(Order.cost_absorption_response.is_(None), Order.cost_absorption_response == "accepted"),
            )
            .order_by(Order.id.asc())
            .limit(int(limit))
            .all()
        ]
        outcomes: dict[str, int] = {}
        for oid in ids:
            try:
                result = self.process_ready_for_delivery(oid)
                key = result.status
            except Exception:
                db.session.rollback()
                current_app.logger.exception("stalled_delivery_retry_failed order_id=%s", oid)
                key = "error"
            outcomes[key] = outcomes.get(key, 0) + 1
        record_job_run(
            job_name="stalled_delivery_retry",
            ok="error" not in outcomes,
            started_at=started,
            processed=outcomes.get("booked", 0),
        )
        return {"ok": True, "checked": len(ids), "outcomes": outcomes}

    def poll_active_deliveries(self, *, limit: int = 100) -> dict:
        started = _now()
        ids = [
            int(o.id)
            for o in Order.query.filter(
                Order.status == "out_for_delivery",
                Order.courier_delivery_id.isnot(None),
            )
            .order_by(Order.id.asc())
            .limit(int(limit))
            .all()
        ]
        delivered = 0
        for oid in ids:
            try:
                result = self.sync_courier_status(oid)
            except Exception:
                db.session.rollback()
                current_app.logger.exception("courier_poll_failed order_id=%s", oid)
                continue
            if result.ok and result.status == "delivered":
                delivered += 1
        record_job_run(job_name="courier_poll", ok=True, started_at=started, processed=delivered)
        return {"ok": True, "checked": len(ids), "delivered": delivered}

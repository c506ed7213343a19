from __future__ import annotations

import json
import uuid
from datetime import datetime
from decimal import Decimal

from flask import current_app

from orderflow.errors import (
    ExternalServiceError,
    Forbidden,
    InconsistentState,
    InsufficientFunds,
    InvalidTransition,
    ValidationError,
)
from orderflow.extensions import db
from orderflow.models import Order, OrderItem, Product, SellerAccount
from orderflow.services import inventory_service, wallet_service
from orderflow.services.delivery_negotiator import DeliveryCostNegotiator
from orderflow.services.notification_service import Notifier
from orderflow.services.order_lookup import load_order, seller_for
from orderflow.services.settlement_service import CARD, WALLET, SettlementCoordinator
from orderflow.utils.auth import Actor
from orderflow.utils.fees import money_major_to_minor, to_money
from orderflow.utils.timeline import record_order_event


class OrderStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    READY_FOR_DELIVERY = "ready_for_delivery"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    PICKED_UP = "picked_up"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"


TRANSITIONS = {
    "pending": ("confirmed", "declined", "cancelled"),
    "confirmed": ("preparing",),
    "preparing": ("ready_for_pickup", "ready_for_delivery"),
    "ready_for_pickup": ("picked_up",),
    "ready_for_delivery": ("out_for_delivery",),
    "out_for_delivery": ("delivered",),
    "delivered": ("completed",),
    "picked_up": ("completed",),
    "completed": (),
    "cancelled": (),
    "declined": (),
}
STATUSES = tuple(TRANSITIONS.keys())
TERMINAL_STATUSES = ("completed", "cancelled", "declined")

# Reachable only from inside the service, never from a status update request.
SYSTEM_TRANSITIONS = {("ready_for_delivery", "cancelled")}

DELIVERY_METHODS = ("pickup", "personalDelivery", "professionalDelivery")
PAYMENT_METHODS = (CARD, WALLET)

_BUYER_EVENTS = {
    "confirmed": "order_confirmed",
    "declined": "order_declined",
    "cancelled": "order_cancelled",
    "preparing": "order_preparing",
    "ready_for_pickup": "order_ready_for_pickup",
    "ready_for_delivery": "order_ready_for_delivery",
    "out_for_delivery": "order_out_for_delivery",
    "delivered": "order_delivered",
    "picked_up": "order_picked_up",
    "completed": "order_completed",
}
_SELLER_EVENTS = {
    "cancelled": "order_cancelled",
    "completed": "order_completed",
}


def _now():
    return datetime.utcnow()


def _positive_int(value, field: str) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer")
    if parsed <= 0:
        raise ValidationError(f"{field} must be positive")
    return parsed


def seller_account_for(actor: Actor | None) -> SellerAccount | None:
    if actor is None:
        return None
    return SellerAccount.query.filter_by(user_id=int(actor.user_id)).first()


def can_manage(order: Order, actor: Actor | None) -> bool:
    """Admins, or the seller who owns the order."""
    if actor is None:
        return False
    if actor.is_admin:
        return True
    seller = seller_account_for(actor)
    return seller is not None and order.seller_id is not None and int(order.seller_id) == int(seller.id)


def can_view(order: Order, actor: Actor | None) -> bool:
    if actor is None:
        return False
    return order.buyer_ref == actor.ref or can_manage(order, actor)


class OrderLifecycle:
    """Status machine for orders, sequencing inventory, payment, ledger and delivery effects."""

    def __init__(self, settlement: SettlementCoordinator, courier, notifier: Notifier | None = None):
        self.settlement = settlement
        self.notifier = notifier
        self.negotiator = DeliveryCostNegotiator(courier, notifier, lifecycle=self)

    def _notify(self, user_ref, event_type: str, payload: dict) -> None:
        if self.notifier is not None:
            self.notifier.notify(user_ref, event_type, payload)

    # checkout

    def _validate_cart(self, items) -> tuple[SellerAccount, list[tuple[Product, int]]]:
        if not isinstance(items, list) or not items:
            raise ValidationError("items must be a non-empty list")
        lines: list[tuple[Product, int]] = []
        seen: dict[int, int] = {}
        for raw in items:
            if not isinstance(raw, dict):
                raise ValidationError("each item must be an object")
            product_id = _positive_int(raw.get("product_id"), "product_id")
            quantity = _positive_int(raw.get("quantity", 1), "quantity")
            seen[product_id] = seen.get(product_id, 0) + quantity
        for product_id, quantity in seen.items():
            product = db.session.get(Product, product_id)
            if product is None or product.status == "draft":
                raise ValidationError(f"product {product_id} is not available", code="PRODUCT_UNAVAILABLE")
            lines.append((product, quantity))
        seller_ids = {int(p.seller_id) for p, _ in lines}
        if len(seller_ids) != 1:
            raise ValidationError("an order may contain products from one seller only", code="MULTIPLE_SELLERS")
        seller = db.session.get(SellerAccount, seller_ids.pop())
        if seller is None:
            raise ValidationError("seller not found", code="SELLER_NOT_FOUND")
        return seller, lines

    def create_order(
        self,
        *,
        buyer: Actor | None,
        items,
        delivery_method: str,
        payment_method: str,
        delivery_address: dict | None = None,
        guest_email: str | None = None,
        customer_ref: str | None = None,
    ) -> Order:
        """Reserve, pay, then persist. Each failure undoes the steps before it."""
        delivery_method = (delivery_method or "").strip()
        if delivery_method not in DELIVERY_METHODS:
            raise ValidationError(f"delivery_method must be one of {', '.join(DELIVERY_METHODS)}")
        payment_method = (payment_method or "").strip()
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")

        email = (guest_email or "").strip().lower()
        is_guest = buyer is None
        if is_guest:
            if not email or "@" not in email:
                raise ValidationError("guest checkout requires an email")
            if payment_method == WALLET:
                raise ValidationError("guest checkout requires card payment")
            buyer_ref = f"guest:{email}"
        else:
            buyer_ref = buyer.ref

        address = delivery_address if isinstance(delivery_address, dict) else {}
        if delivery_method != "pickup" and not (address.get("address") or "").strip():
            raise ValidationError("delivery_address.address is required for delivery")

        seller, lines = self._validate_cart(items)
        subtotal = to_money(sum((to_money(p.price) * qty for p, qty in lines), Decimal("0.00")))

        pricing = None
        if delivery_method == "pickup":
            delivery_fee = Decimal("0.00")
        elif delivery_method == "personalDelivery":
            delivery_fee = to_money(seller.personal_delivery_fee or 0)
        else:
            package = {
                "name": "Order",
                "quantity": sum(qty for _, qty in lines),
                "value_minor": money_major_to_minor(subtotal),
            }
            pricing = self.negotiator.quote_for_checkout(seller.pickup(), address, package)
            delivery_fee = to_money(pricing["charged_amount"])

        total = to_money(subtotal + delivery_fee)
        if money_major_to_minor(subtotal) + money_major_to_minor(delivery_fee) != money_major_to_minor(total):
            raise InconsistentState("subtotal and delivery fee do not add up to the total")
        if total <= 0:
            raise ValidationError("order total must be positive")

        reserved = inventory_service.reserve_items([(int(p.id), qty) for p, qty in lines])

        checkout_ref = f"checkout:{uuid.uuid4().hex}"
        hold = None
        if payment_method == WALLET:
            try:
                wallet_service.debit(
                    buyer_ref,
                    total,
                    type="order_payment",
                    description=f"Order payment to {seller.display_name or 'seller'}",
                    reference=checkout_ref,
                )
            except InsufficientFunds:
                db.session.rollback()
                inventory_service.restore_items(reserved)
                raise
            payment_status = "paid"
        else:
            result = self.settlement.authorize(
                amount=total,
                customer_ref=customer_ref or buyer_ref,
                guest=is_guest,
                metadata={"checkout_ref": checkout_ref, "seller_id": int(seller.id)},
            )
            if not result.ok:
                inventory_service.restore_items(reserved)
                raise ExternalServiceError(
                    result.message or "payment authorization failed",
                    kind=result.kind,
                    service="payments",
                    code="PAYMENT_AUTHORIZATION_FAILED",
                )
            hold = result.data
            payment_status = result.status

        try:
            order = Order(
                buyer_ref=buyer_ref,
                is_guest=is_guest,
                guest_email=email or None,
                seller_id=int(seller.id),
                status="pending",
                payment_method=payment_method,
                payment_status=payment_status,
                customer_ref=customer_ref or None,
                subtotal=subtotal,
                delivery_fee=delivery_fee,
                total_amount=total,
                currency=current_app.config.get("CURRENCY", "CAD"),
                delivery_method=delivery_method,
                delivery_address_json=json.dumps(address) if address else None,
            )
            if hold is not None:
                order.hold_ref = hold["hold_ref"]
                order.hold_status = hold["hold_status"]
                order.hold_authorized_at = hold["authorized_at"]
                order.hold_expires_at = hold["expires_at"]
                order.hold_amount = total
                if payment_status == "captured":
                    order.captured_at = hold["authorized_at"]
            if pricing is not None:
                order.estimated_delivery_fee = pricing["estimated_fee"]
                order.delivery_buffer_percentage = pricing["buffer_percentage"]
                order.delivery_charged_amount = pricing["charged_amount"]
                order.courier_quote_id = pricing["courier_quote_id"]
                order.courier_quote_expires_at = pricing["courier_quote_expires_at"]
            for position, (product, qty) in enumerate(lines):
                order.items.append(
                    OrderItem(
                        position=position,
                        product_id=int(product.id),
                        seller_id=int(product.seller_id),
                        quantity=qty,
                        unit_price=to_money(product.price),
                        fulfillment_type=product.fulfillment_type,
                        product_name=product.name,
                    )
                )
            db.session.add(order)
            db.session.commit()
        except Exception:
            db.session.rollback()
            current_app.logger.exception("order_write_failed buyer_ref=%s checkout_ref=%s", buyer_ref, checkout_ref)
            if payment_method == WALLET:
                wallet_service.credit(
                    buyer_ref,
                    total,
                    type="order_payment_reversal",
                    description="Reversal of payment for an order that was not created",
                    reference=checkout_ref,
                )
            elif hold is not None:
                current_app.logger.warning("orphan_hold hold_ref=%s checkout_ref=%s", hold["hold_ref"], checkout_ref)
            inventory_service.restore_items(reserved)
            raise

        oid = int(order.id)
        record_order_event(
            oid,
            "order_created",
            to_status="pending",
            actor=buyer,
            metadata={"total": total, "payment_method": payment_method, "checkout_ref": checkout_ref},
        )
        self._notify(seller.owner_ref, "order_received", {"order_id": oid, "total": float(total)})
        self._notify(buyer_ref, "order_placed", {"order_id": oid, "total": float(total)})
        return load_order(oid)

    # transitions

    def transition(self, order_id, to_status: str, *, actor: Actor | None = None, reason: str | None = None) -> dict:
        to_status = (to_status or "").strip()
        if to_status not in STATUSES:
            raise ValidationError(f"unknown status {to_status!r}")
        order = load_order(order_id)
        from_status = order.status
        if to_status not in TRANSITIONS.get(from_status, ()):
            raise InvalidTransition(f"cannot move order {order.id} from {from_status} to {to_status}")
        reason = (reason or "").strip()
        if to_status == "declined" and not reason:
            raise ValidationError("a reason is required to decline an order")
        if to_status == "ready_for_pickup" and order.delivery_method != "pickup":
            raise ValidationError("ready_for_pickup requires pickup delivery")
        if to_status == "ready_for_delivery" and order.delivery_method not in ("personalDelivery", "professionalDelivery"):
            raise ValidationError("ready_for_delivery requires a delivery method")
        return self._apply(order, to_status, actor=actor, reason=reason)

    def system_transition(self, order_id, to_status: str, *, note: str = "", reason: str = "") -> dict:
        order = load_order(order_id)
        from_status = order.status
        if to_status not in TRANSITIONS.get(from_status, ()) and (from_status, to_status) not in SYSTEM_TRANSITIONS:
            raise InvalidTransition(f"cannot move order {order.id} from {from_status} to {to_status}")
        return self._apply(order, to_status, reason=reason, note=note)

    def _apply(self, order: Order, to_status: str, *, actor: Actor | None = None, reason: str = "", note: str = "") -> dict:
        oid = int(order.id)
        from_status = order.status
        now = _now()
        values = {Order.status: to_status, Order.updated_at: now}
        if to_status == "declined":
            values[Order.decline_reason] = reason[:500]
        if to_status == "cancelled" and reason:
            values[Order.cancellation_reason] = reason[:500]
        if to_status in ("delivered", "picked_up"):
            values[Order.actual_delivery_time] = now
        updated = Order.query.filter(Order.id == oid, Order.status == from_status).update(values, synchronize_session=False)
        db.session.commit()
        if updated != 1:
            raise InvalidTransition(f"order {oid} changed status concurrently")

        record_order_event(
            oid,
            f"status_{to_status}",
            idempotency_key=f"order:{oid}:status:{from_status}:{to_status}",
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            note=reason or note,
        )
        current_app.logger.info("order_transition order_id=%s from=%s to=%s", oid, from_status, to_status)

        effects = self._run_side_effects(oid, from_status, to_status, reason=reason)
        self._notify_transition(oid, to_status)

        # Booking moves the order on to out_for_delivery, so it runs after this
        # transition has been announced.
        if to_status == "ready_for_delivery" and order.delivery_method == "professionalDelivery":
            effects["delivery"] = self._negotiate_delivery(oid)

        fresh = load_order(oid)
        if fresh.is_guest and fresh.status in ("delivered", "picked_up"):
            effects["auto_complete"] = self._apply(fresh, "completed", note="guest_auto_complete")
        return effects

    def _run_side_effects(self, order_id: int, from_status: str, to_status: str, *, reason: str = "") -> dict:
        effects: dict = {}

        def guarded(name, fn):
            try:
                result = fn()
            except Exception as exc:
                db.session.rollback()
                current_app.logger.exception("transition_side_effect_failed order_id=%s effect=%s", order_id, name)
                self.settlement.record_error(order_id, name, str(exc))
                effects[name] = {"ok": False, "error": str(exc)}
                return None
            if hasattr(result, "to_dict"):
                effects[name] = result.to_dict()
                if not result.ok:
                    current_app.logger.warning(
                        "transition_side_effect_incomplete order_id=%s effect=%s code=%s", order_id, name, result.code
                    )
            elif result is not None:
                effects[name] = result
            return result

        order = load_order(order_id)
        lines = [(int(i.product_id), int(i.quantity)) for i in order.items]

        if from_status == "pending" and to_status == "confirmed":
            guarded("sold_count", lambda: inventory_service.increment_sold_count(lines))

        if to_status in ("delivered", "picked_up") and order.payment_method == CARD and order.payment_status == "authorized":
            guarded("capture", lambda: self.settlement.capture(order_id))

        if to_status in ("declined", "cancelled"):
            guarded("inventory_restore", lambda: {"restored": inventory_service.restore_items(lines)})
            guarded("refund", lambda: self.settlement.refund(order_id, reason))

        if to_status == "completed":
            order = load_order(order_id)
            if order.payment_method == CARD and order.payment_status == "authorized":
                guarded("capture", lambda: self.settlement.capture(order_id))
            else:
                guarded("revenue", lambda: self.settlement.recognize_revenue(order_id))

        return effects

    def _negotiate_delivery(self, order_id: int) -> dict:
        try:
            result = self.negotiator.process_ready_for_delivery(order_id)
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception("transition_side_effect_failed order_id=%s effect=delivery", order_id)
            self.settlement.record_error(order_id, "delivery", str(exc))
            return {"ok": False, "error": str(exc)}
        if not result.ok:
            current_app.logger.warning(
                "transition_side_effect_incomplete order_id=%s effect=delivery code=%s", order_id, result.code
            )
        return result.to_dict()

    def _notify_transition(self, order_id: int, to_status: str) -> None:
        order = load_order(order_id)
        payload = {"order_id": order_id, "status": to_status}
        if to_status in _BUYER_EVENTS:
            self._notify(order.buyer_ref, _BUYER_EVENTS[to_status], payload)
        if to_status in _SELLER_EVENTS:
            seller = seller_for(order)
            if seller is not None:
                self._notify(seller.owner_ref, _SELLER_EVENTS[to_status], payload)

    # entry points

    def cancel_by_buyer(self, order_id, actor: Actor, reason: str = "") -> dict:
        order = load_order(order_id)
        if order.buyer_ref != actor.ref and not actor.is_admin:
            raise Forbidden("only the buyer may cancel this order")
        if order.status != "pending":
            raise InvalidTransition(f"order {order.id} can only be cancelled while pending")
        return self.transition(order.id, "cancelled", actor=actor, reason=reason or "cancelled by buyer")

    def confirm_receipt(self, order_id, actor: Actor) -> dict:
        order = load_order(order_id)
        if order.buyer_ref != actor.ref and not actor.is_admin:
            raise Forbidden("only the buyer may confirm receipt")
        if order.status not in ("delivered", "picked_up"):
            raise InvalidTransition(f"order {order.id} has not been delivered")
        Order.query.filter(Order.id == order.id, Order.receipt_confirmed_at.is_(None)).update(
            {Order.receipt_confirmed_at: _now()},
            synchronize_session=False,
        )
        db.session.commit()
        return self.transition(order.id, "completed", actor=actor)

    def cancel_for_delivery_cost(self, order_id, *, reason: str) -> dict:
        return self.system_transition(order_id, "cancelled", reason=reason, note="delivery_cost_declined")

    def courier_delivered(self, order_id) -> dict:
        """Courier drop-off: delivered, then completed with no buyer confirmation."""
        effects = self.system_transition(order_id, "delivered", note="courier_confirmed")
        fresh = load_order(order_id)
        if fresh.status == "delivered":
            effects["auto_complete"] = self._apply(fresh, "completed", note="courier_confirmed")
        return effects

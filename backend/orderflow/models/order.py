import json
from datetime import datetime

from orderflow.extensions import db


def _money(value):
    if value is None:
        return None
    return round(float(value), 2)


def _iso(value):
    return value.isoformat() if value else None


def _load_json(raw):
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    buyer_ref = db.Column(db.String(160), nullable=False, index=True)
    is_guest = db.Column(db.Boolean, nullable=False, default=False)
    guest_email = db.Column(db.String(200), nullable=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("seller_accounts.id"), nullable=True, index=True)

    status = db.Column(db.String(32), nullable=False, default="pending", index=True)
    payment_method = db.Column(db.String(32), nullable=False, default="processor_card")
    payment_status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    customer_ref = db.Column(db.String(120), nullable=True)

    # Processor-side hold, card orders only.
    hold_ref = db.Column(db.String(120), nullable=True, index=True)
    hold_status = db.Column(db.String(16), nullable=True)  # held | captured | released
    hold_authorized_at = db.Column(db.DateTime, nullable=True)
    hold_expires_at = db.Column(db.DateTime, nullable=True)
    hold_amount = db.Column(db.Numeric(12, 2), nullable=True)
    captured_at = db.Column(db.DateTime, nullable=True)
    capture_claim_token = db.Column(db.String(64), nullable=True)
    capture_claimed_at = db.Column(db.DateTime, nullable=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    delivery_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="CAD")

    delivery_method = db.Column(db.String(32), nullable=False, default="pickup")
    delivery_address_json = db.Column(db.Text, nullable=True)

    # Professional delivery pricing taken at checkout.
    estimated_delivery_fee = db.Column(db.Numeric(12, 2), nullable=True)
    delivery_buffer_percentage = db.Column(db.Numeric(6, 2), nullable=True)
    delivery_charged_amount = db.Column(db.Numeric(12, 2), nullable=True)
    courier_quote_id = db.Column(db.String(120), nullable=True)
    courier_quote_expires_at = db.Column(db.DateTime, nullable=True)
    actual_delivery_fee = db.Column(db.Numeric(12, 2), nullable=True)
    delivery_refund_amount = db.Column(db.Numeric(12, 2), nullable=True)

    cost_absorption_required = db.Column(db.Boolean, nullable=False, default=False)
    cost_absorption_excess = db.Column(db.Numeric(12, 2), nullable=True)
    cost_absorption_response = db.Column(db.String(16), nullable=True)  # pending | accepted | declined
    cost_absorption_notified_at = db.Column(db.DateTime, nullable=True)
    cost_absorption_responded_at = db.Column(db.DateTime, nullable=True)

    courier_delivery_id = db.Column(db.String(120), nullable=True, index=True)
    courier_status = db.Column(db.String(32), nullable=True)
    courier_tracking_url = db.Column(db.String(500), nullable=True)
    courier_info_json = db.Column(db.Text, nullable=True)
    courier_pickup_eta = db.Column(db.DateTime, nullable=True)
    courier_dropoff_eta = db.Column(db.DateTime, nullable=True)

    commission_rate = db.Column(db.Numeric(6, 2), nullable=True)
    platform_fee = db.Column(db.Numeric(12, 2), nullable=True)
    processing_fee = db.Column(db.Numeric(12, 2), nullable=True)
    net_amount = db.Column(db.Numeric(12, 2), nullable=True)

    last_settlement_error = db.Column(db.Text, nullable=True)
    decline_reason = db.Column(db.String(500), nullable=True)
    cancellation_reason = db.Column(db.String(500), nullable=True)
    receipt_confirmed_at = db.Column(db.DateTime, nullable=True)
    actual_delivery_time = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )

    def delivery_address(self) -> dict:
        return _load_json(self.delivery_address_json)

    def courier_info(self) -> dict:
        return _load_json(self.courier_info_json)

    def payment_hold_dict(self):
        if not self.hold_ref:
            return None
        return {
            "ref": self.hold_ref,
            "status": self.hold_status or "held",
            "authorized_at": _iso(self.hold_authorized_at),
            "expires_at": _iso(self.hold_expires_at),
            "amount": _money(self.hold_amount),
        }

    def delivery_pricing_dict(self):
        if self.delivery_method != "professionalDelivery" or self.delivery_charged_amount is None:
            return None
        return {
            "estimated_fee": _money(self.estimated_delivery_fee),
            "buffer_percentage": _money(self.delivery_buffer_percentage),
            "charged_amount": _money(self.delivery_charged_amount),
            "courier_quote_id": self.courier_quote_id or "",
            "courier_quote_expiry": _iso(self.courier_quote_expires_at),
            "actual_fee": _money(self.actual_delivery_fee),
            "refund_amount": _money(self.delivery_refund_amount),
        }

    def cost_absorption_dict(self):
        if not self.cost_absorption_required and not self.cost_absorption_response:
            return None
        return {
            "required": bool(self.cost_absorption_required),
            "excess_amount": _money(self.cost_absorption_excess),
            "artisan_response": self.cost_absorption_response or "pending",
            "notified_at": _iso(self.cost_absorption_notified_at),
            "responded_at": _iso(self.cost_absorption_responded_at),
        }

    def courier_delivery_dict(self):
        if not self.courier_delivery_id:
            return None
        return {
            "provider_id": self.courier_delivery_id,
            "status": self.courier_status or "",
            "tracking_ref": self.courier_tracking_url or "",
            "courier": self.courier_info(),
            "etas": {
                "pickup": _iso(self.courier_pickup_eta),
                "dropoff": _iso(self.courier_dropoff_eta),
            },
        }

    def to_dict(self):
        return {
            "id": int(self.id),
            "buyer_ref": self.buyer_ref,
            "is_guest": bool(self.is_guest),
            "seller_id": int(self.seller_id) if self.seller_id is not None else None,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "payment_hold": self.payment_hold_dict(),
            "items": [item.to_dict() for item in self.items],
            "subtotal": _money(self.subtotal),
            "delivery_fee": _money(self.delivery_fee),
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
            "delivery_method": self.delivery_method,
            "delivery_address": self.delivery_address(),
            "delivery_pricing": self.delivery_pricing_dict(),
            "cost_absorption": self.cost_absorption_dict(),
            "courier_delivery": self.courier_delivery_dict(),
            "commission_rate": _money(self.commission_rate),
            "platform_fee": _money(self.platform_fee),
            "processing_fee": _money(self.processing_fee),
            "net_amount": _money(self.net_amount),
            "last_settlement_error": self.last_settlement_error or None,
            "decline_reason": self.decline_reason or None,
            "cancellation_reason": self.cancellation_reason or None,
            "receipt_confirmed_at": _iso(self.receipt_confirmed_at),
            "actual_delivery_time": _iso(self.actual_delivery_time),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    seller_id = db.Column(db.Integer, nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    fulfillment_type = db.Column(db.String(32), nullable=False, default="ready_to_ship")
    product_name = db.Column(db.String(200), nullable=True)

    def line_total(self):
        return self.unit_price * int(self.quantity or 0)

    def to_dict(self):
        return {
            "product_id": int(self.product_id),
            "seller_id": int(self.seller_id) if self.seller_id is not None else None,
            "quantity": int(self.quantity or 0),
            "unit_price": _money(self.unit_price),
            "fulfillment_type": self.fulfillment_type,
            "name": self.product_name or "",
        }

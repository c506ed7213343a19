from __future__ import annotations

import calendar
from datetime import datetime, timedelta

from flask import current_app

from orderflow.errors import NotFound, ValidationError
from orderflow.extensions import db
from orderflow.models import Product

READY_TO_SHIP = "ready_to_ship"
MADE_TO_ORDER = "made_to_order"
SCHEDULED_ORDER = "scheduled_order"
FULFILLMENT_TYPES = (READY_TO_SHIP, MADE_TO_ORDER, SCHEDULED_ORDER)


def _now():
    return datetime.utcnow()


def _qty(quantity) -> int:
    try:
        value = int(quantity)
    except (TypeError, ValueError):
        raise ValidationError("quantity must be an integer")
    if value <= 0:
        raise ValidationError("quantity must be positive")
    return value


def available(product: Product) -> int:
    """Units a buyer can order right now, by the product's governing counter."""
    ftype = product.fulfillment_type or READY_TO_SHIP
    if ftype == MADE_TO_ORDER:
        return max(0, int(product.remaining_capacity or 0))
    if ftype == SCHEDULED_ORDER:
        return max(0, int(product.available_quantity or 0))
    return max(0, min(int(product.stock or 0), int(product.available_quantity or 0)))


def _load(product_id: int) -> Product:
    product = db.session.get(Product, int(product_id))
    if product is None:
        raise NotFound(f"product {product_id} not found")
    return product


def reserve(product_id: int, quantity, *, commit: bool = True) -> Product:
    qty = _qty(quantity)
    product = _load(product_id)
    if (product.status or "") == "draft":
        raise ValidationError(f"product {product.id} is not for sale")
    ftype = product.fulfillment_type or READY_TO_SHIP
    if ftype not in FULFILLMENT_TYPES:
        raise ValidationError(f"unknown fulfillment type {ftype}")

    q = Product.query.filter(Product.id == product.id)
    if ftype == READY_TO_SHIP:
        values = {
            Product.stock: Product.stock - qty,
            Product.available_quantity: Product.available_quantity - qty,
        }
        q = q.filter(Product.stock >= qty, Product.available_quantity >= qty)
    elif ftype == MADE_TO_ORDER:
        values = {Product.remaining_capacity: Product.remaining_capacity - qty}
        q = q.filter(Product.remaining_capacity >= qty)
    else:
        values = {Product.available_quantity: Product.available_quantity - qty}
        q = q.filter(Product.available_quantity >= qty)
    values[Product.updated_at] = _now()

    if q.update(values, synchronize_session=False) != 1:
        raise ValidationError(
            f"insufficient inventory for product {product.id}: requested {qty}, available {available(product)}",
            code="INSUFFICIENT_INVENTORY",
        )
    db.session.refresh(product)
    if available(product) <= 0 and product.status == "active":
        product.status = "out_of_stock"
    if commit:
        db.session.commit()
    return product


def restore(product_id: int, quantity, *, commit: bool = True) -> Product:
    """Inverse of ``reserve``. Not idempotent: callers restore once per order."""
    qty = _qty(quantity)
    product = _load(product_id)
    ftype = product.fulfillment_type or READY_TO_SHIP
    if ftype == READY_TO_SHIP:
        values = {
            Product.stock: Product.stock + qty,
            Product.available_quantity: Product.available_quantity + qty,
        }
    elif ftype == MADE_TO_ORDER:
        values = {Product.remaining_capacity: Product.remaining_capacity + qty}
    else:
        values = {Product.available_quantity: Product.available_quantity + qty}
    values[Product.updated_at] = _now()
    Product.query.filter(Product.id == product.id).update(values, synchronize_session=False)
    db.session.refresh(product)
    if product.status == "out_of_stock" and available(product) > 0:
        product.status = "active"
    if commit:
        db.session.commit()
    return product


def reserve_items(items: list[tuple[int, int]]) -> list[tuple[int, int]]:
    """Reserve every line or none: lines reserved before a failure are restored."""
    done: list[tuple[int, int]] = []
    try:
        for product_id, quantity in items:
            reserve(product_id, quantity)
            done.append((int(product_id), int(quantity)))
    except Exception:
        db.session.rollback()
        restore_items(done)
        raise
    return done


def restore_items(items: list[tuple[int, int]]) -> int:
    restored = 0
    for product_id, quantity in items:
        try:
            restore(product_id, quantity)
            restored += 1
        except Exception:
            db.session.rollback()
            current_app.logger.exception("inventory_restore_failed product_id=%s qty=%s", product_id, quantity)
    return restored


def increment_sold_count(items: list[tuple[int, int]]) -> None:
    for product_id, quantity in items:
        Product.query.filter(Product.id == int(product_id)).update(
            {Product.sold_count: Product.sold_count + int(quantity)},
            synchronize_session=False,
        )
    db.session.commit()


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance_period(value: datetime, period: str | None) -> datetime | None:
    period = (period or "").strip().lower()
    if period == "daily":
        return value + timedelta(days=1)
    if period == "weekly":
        return value + timedelta(weeks=1)
    if period == "monthly":
        return _add_months(value, 1)
    return None


def run_inventory_restoration(*, now: datetime | None = None) -> dict:
    """Refill made-to-order capacity and scheduled production whose period has elapsed."""
    now = now or _now()
    capacity_restored = 0
    schedules_restored = 0

    rows = Product.query.filter(
        Product.fulfillment_type == MADE_TO_ORDER,
        Product.capacity_period.isnot(None),
        Product.total_capacity.isnot(None),
    ).all()
    for product in rows:
        anchor = product.last_capacity_restore or product.created_at or now
        due = advance_period(anchor, product.capacity_period)
        if due is None or due > now:
            continue
        product.remaining_capacity = int(product.total_capacity or 0)
        product.last_capacity_restore = now
        if product.status == "out_of_stock" and product.remaining_capacity > 0:
            product.status = "active"
        product.updated_at = now
        capacity_restored += 1

    rows = Product.query.filter(
        Product.fulfillment_type == SCHEDULED_ORDER,
        Product.next_available_date.isnot(None),
        Product.next_available_date <= now,
        Product.total_production_quantity.isnot(None),
    ).all()
    for product in rows:
        product.available_quantity = int(product.total_production_quantity or 0)
        product.last_schedule_restore = now
        nxt = product.next_available_date
        # Skip missed periods so the next date is always in the future.
        while nxt is not None and nxt <= now:
            nxt = advance_period(nxt, product.schedule_type)
        product.next_available_date = nxt
        if product.status == "out_of_stock" and product.available_quantity > 0:
            product.status = "active"
        product.updated_at = now
        schedules_restored += 1

    db.session.commit()
    return {
        "ok": True,
        "capacity_restored": capacity_restored,
        "schedules_restored": schedules_restored,
        "processed": capacity_restored + schedules_restored,
    }

from __future__ import annotations

from flask import current_app

from orderflow.errors import InconsistentState, NotFound
from orderflow.extensions import db
from orderflow.models import Order, SellerAccount


def load_order(order_id, *, required: bool = True) -> Order | None:
    """Fresh read of an order with its owning seller resolved.

    Rows written before ``seller_id`` was stored carry the seller only on their
    items; the first read copies it onto the order. Items from more than one seller
    are rejected.
    """
    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        if required:
            raise NotFound(f"order {order_id} not found")
        return None
    order = db.session.get(Order, oid, populate_existing=True)
    if order is None:
        if required:
            raise NotFound(f"order {oid} not found")
        return None
    if order.seller_id is None:
        seller_ids = {int(item.seller_id) for item in order.items if item.seller_id is not None}
        if len(seller_ids) > 1:
            raise InconsistentState(f"order {oid} spans sellers {sorted(seller_ids)}")
        if seller_ids:
            order.seller_id = seller_ids.pop()
            db.session.commit()
            current_app.logger.info("order_seller_normalized order_id=%s seller_id=%s", oid, order.seller_id)
    return order


def seller_for(order: Order) -> SellerAccount | None:
    if order.seller_id is None:
        return None
    return db.session.get(SellerAccount, int(order.seller_id))

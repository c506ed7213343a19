from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError

from orderflow.extensions import db
from orderflow.models import OrderEvent


def _safe_value(value: Any):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def record_order_event(
    order_id: int,
    event: str,
    *,
    idempotency_key: str | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    actor=None,
    note: str = "",
    metadata: dict | None = None,
) -> OrderEvent | None:
    """Best-effort timeline entry; never raises to the caller.

    The idempotency key defaults to ``order:<id>:<event>`` so repeated settlement
    events collapse into one row.
    """
    key = (idempotency_key or f"order:{int(order_id)}:{event}")[:160]
    try:
        existing = OrderEvent.query.filter_by(idempotency_key=key).first()
        if existing:
            return existing
        row = OrderEvent(
            order_id=int(order_id),
            event=(event or "unknown")[:64],
            from_status=from_status,
            to_status=to_status,
            actor_type=(getattr(actor, "role", None) or "system")[:32],
            actor_id=getattr(actor, "user_id", None),
            note=(note or "")[:240] or None,
            idempotency_key=key,
            metadata_json=json.dumps(_safe_value(metadata or {}), separators=(",", ":")),
        )
        db.session.add(row)
        db.session.commit()
        return row
    except IntegrityError:
        db.session.rollback()
        return OrderEvent.query.filter_by(idempotency_key=key).first()
    except Exception:
        db.session.rollback()
        return None


def order_timeline(order_id: int) -> list[dict]:
    rows = OrderEvent.query.filter_by(order_id=int(order_id)).order_by(OrderEvent.id.asc()).all()
    return [row.to_dict() for row in rows]

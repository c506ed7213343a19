from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from orderflow.errors import OrderflowError, Unauthorized
from orderflow.extensions import db
from orderflow.services import wallet_service
from orderflow.utils.auth import current_actor
from orderflow.utils.observability import get_request_id

wallets_bp = Blueprint("wallets_bp", __name__, url_prefix="/api")


def _owner_ref() -> str:
    actor = current_actor()
    if actor is None:
        raise Unauthorized("authentication required")
    return actor.ref


@wallets_bp.get("/wallet")
def get_wallet():
    owner_ref = _owner_ref()
    return jsonify(
        {
            "ok": True,
            "owner_ref": owner_ref,
            "balance": float(wallet_service.get_balance(owner_ref)),
            "currency": current_app.config.get("CURRENCY", "CAD"),
        }
    ), 200


@wallets_bp.get("/wallet/transactions")
def get_wallet_transactions():
    owner_ref = _owner_ref()
    try:
        limit = int(request.args.get("limit") or 50)
    except ValueError:
        limit = 50
    rows = wallet_service.list_transactions(owner_ref, limit=limit)
    return jsonify({"ok": True, "items": [row.to_dict() for row in rows]}), 200


@wallets_bp.errorhandler(OrderflowError)
def _orderflow_error(exc: OrderflowError):
    db.session.rollback()
    body = exc.to_dict()
    body["trace_id"] = get_request_id()
    return jsonify(body), exc.http_status

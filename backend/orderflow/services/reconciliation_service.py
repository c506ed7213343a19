from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func

from orderflow.extensions import db
from orderflow.models import Order, RevenueRecord, WalletAccount, WalletTransaction
from orderflow.utils.fees import to_money


def recompute_wallet_balances(*, tolerance="0.01") -> dict:
    """Compare each stored balance with the sum of its ledger rows."""
    tolerance = to_money(tolerance)
    sums = dict(
        db.session.query(WalletTransaction.account_id, func.coalesce(func.sum(WalletTransaction.amount), 0))
        .group_by(WalletTransaction.account_id)
        .all()
    )
    accounts = WalletAccount.query.order_by(WalletAccount.id.asc()).all()
    drift_items = []
    negative = []
    for acct in accounts:
        stored = to_money(acct.balance or 0)
        computed = to_money(sums.get(acct.id, 0) or 0)
        drift = stored - computed
        if abs(drift) > tolerance:
            drift_items.append(
                {
                    "account_id": int(acct.id),
                    "owner_ref": acct.owner_ref,
                    "stored_balance": float(stored),
                    "computed_balance": float(computed),
                    "drift": float(drift),
                }
            )
        if stored < Decimal("0"):
            negative.append({"account_id": int(acct.id), "owner_ref": acct.owner_ref, "balance": float(stored)})

    return {
        "ok": not drift_items and not negative,
        "scope": "wallet_ledger",
        "account_count": len(accounts),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "negative_balances": negative,
        "generated_at": datetime.utcnow().isoformat(),
    }


def orders_missing_revenue(*, limit: int = 200) -> list[int]:
    rows = (
        db.session.query(Order.id)
        .outerjoin(RevenueRecord, RevenueRecord.order_id == Order.id)
        .filter(
            Order.status == "completed",
            Order.payment_status.in_(("captured", "paid")),
            RevenueRecord.id.is_(None),
        )
        .order_by(Order.id.asc())
        .limit(int(limit))
        .all()
    )
    return [int(r[0]) for r in rows]

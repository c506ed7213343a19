from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from orderflow.errors import InsufficientFunds, ValidationError
from orderflow.extensions import db
from orderflow.models import WalletAccount, WalletTransaction
from orderflow.utils.fees import to_money

PLATFORM_ACCOUNT = "platform"

# Numeric columns may round-trip through binary floats on SQLite.
_BALANCE_TOLERANCE = Decimal("0.005")


def _now():
    return datetime.utcnow()


def _positive(amount) -> Decimal:
    try:
        value = to_money(amount)
    except ValueError as exc:
        raise ValidationError(str(exc))
    if value <= 0:
        raise ValidationError("amount must be positive")
    return value


def _read_balance(account_id: int) -> Decimal:
    raw = db.session.query(WalletAccount.balance).filter(WalletAccount.id == int(account_id)).scalar()
    return to_money(raw or 0)


def ensure_account(owner_ref: str) -> WalletAccount:
    ref = (owner_ref or "").strip()
    if not ref:
        raise ValidationError("wallet owner required")
    acct = WalletAccount.query.filter_by(owner_ref=ref).first()
    if acct is not None:
        return acct
    acct = WalletAccount(
        owner_ref=ref,
        balance=Decimal("0.00"),
        currency=current_app.config.get("CURRENCY", "CAD"),
    )
    db.session.add(acct)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        acct = WalletAccount.query.filter_by(owner_ref=ref).first()
    return acct


def get_balance(owner_ref: str) -> Decimal:
    acct = WalletAccount.query.filter_by(owner_ref=owner_ref).first()
    if acct is None:
        return Decimal("0.00")
    return _read_balance(acct.id)


def _append(acct: WalletAccount, *, signed: Decimal, after: Decimal, type: str, description: str,
            related_order_id, reference, metadata) -> WalletTransaction:
    txn = WalletTransaction(
        account_id=int(acct.id),
        type=(type or "adjustment")[:40],
        amount=signed,
        balance_before=after - signed,
        balance_after=after,
        description=(description or "")[:300] or None,
        related_order_id=int(related_order_id) if related_order_id is not None else None,
        reference=(reference or "")[:160] or None,
        metadata_json=json.dumps(metadata, default=str) if metadata else None,
        created_at=_now(),
    )
    db.session.add(txn)
    db.session.expire(acct, ["balance"])
    return txn


def credit(
    owner_ref: str,
    amount,
    *,
    type: str,
    description: str = "",
    related_order_id: int | None = None,
    reference: str | None = None,
    metadata: dict | None = None,
    commit: bool = True,
) -> WalletTransaction:
    value = _positive(amount)
    acct = ensure_account(owner_ref)
    WalletAccount.query.filter(WalletAccount.id == acct.id).update(
        {WalletAccount.balance: WalletAccount.balance + value, WalletAccount.updated_at: _now()},
        synchronize_session=False,
    )
    after = _read_balance(acct.id)
    txn = _append(
        acct,
        signed=value,
        after=after,
        type=type,
        description=description,
        related_order_id=related_order_id,
        reference=reference,
        metadata=metadata,
    )
    if commit:
        db.session.commit()
    return txn


def debit(
    owner_ref: str,
    amount,
    *,
    type: str,
    description: str = "",
    related_order_id: int | None = None,
    reference: str | None = None,
    metadata: dict | None = None,
    commit: bool = True,
) -> WalletTransaction:
    value = _positive(amount)
    acct = ensure_account(owner_ref)
    current = _read_balance(acct.id)
    if value > current:
        raise InsufficientFunds(f"balance {current} is below {value}")
    updated = WalletAccount.query.filter(
        WalletAccount.id == acct.id,
        WalletAccount.balance >= value - _BALANCE_TOLERANCE,
    ).update(
        {WalletAccount.balance: WalletAccount.balance - value, WalletAccount.updated_at: _now()},
        synchronize_session=False,
    )
    if updated != 1:
        raise InsufficientFunds(f"balance changed below {value}")
    after = _read_balance(acct.id)
    txn = _append(
        acct,
        signed=-value,
        after=after,
        type=type,
        description=description,
        related_order_id=related_order_id,
        reference=reference,
        metadata=metadata,
    )
    if commit:
        db.session.commit()
    return txn


def transfer(
    from_ref: str,
    to_ref: str,
    amount,
    *,
    type: str = "transfer",
    description: str = "",
    related_order_id: int | None = None,
    reference: str | None = None,
) -> tuple[WalletTransaction, WalletTransaction]:
    """Debit then credit; a failed credit is compensated with a reversing credit."""
    value = _positive(amount)
    out_txn = debit(
        from_ref,
        value,
        type=f"{type}_out",
        description=description,
        related_order_id=related_order_id,
        reference=reference,
    )
    try:
        in_txn = credit(
            to_ref,
            value,
            type=f"{type}_in",
            description=description,
            related_order_id=related_order_id,
            reference=reference,
        )
    except Exception:
        db.session.rollback()
        current_app.logger.exception("wallet_transfer_credit_failed from=%s to=%s amount=%s", from_ref, to_ref, value)
        credit(
            from_ref,
            value,
            type="transfer_reversal",
            description=f"Reversal of failed transfer to {to_ref}",
            related_order_id=related_order_id,
            reference=reference,
        )
        raise
    return out_txn, in_txn


def list_transactions(owner_ref: str, *, limit: int = 100) -> list[WalletTransaction]:
    acct = WalletAccount.query.filter_by(owner_ref=owner_ref).first()
    if acct is None:
        return []
    return (
        WalletTransaction.query.filter_by(account_id=int(acct.id))
        .order_by(WalletTransaction.id.desc())
        .limit(max(1, min(int(limit), 500)))
        .all()
    )


def transactions_for_order(order_id: int, *, type: str | None = None) -> list[WalletTransaction]:
    q = WalletTransaction.query.filter_by(related_order_id=int(order_id))
    if type:
        q = q.filter_by(type=type)
    return q.order_by(WalletTransaction.id.asc()).all()

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_money(amount) -> Decimal:
    """Coerce to a two-decimal Decimal, rounding half-up."""
    if isinstance(amount, Decimal):
        parsed = amount
    else:
        try:
            parsed = Decimal(str(amount if amount is not None else 0))
        except (InvalidOperation, TypeError, ValueError):
            raise ValueError(f"invalid money amount: {amount!r}")
    if not parsed.is_finite():
        raise ValueError(f"invalid money amount: {amount!r}")
    return parsed.quantize(CENT, rounding=ROUND_HALF_UP)


def to_percent(rate) -> Decimal:
    try:
        parsed = Decimal(str(rate if rate is not None else 0))
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"invalid percentage: {rate!r}")
    if not parsed.is_finite() or parsed < 0:
        raise ValueError(f"invalid percentage: {rate!r}")
    return parsed


def money_major_to_minor(amount) -> int:
    return int((to_money(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def money_minor_to_major(minor) -> Decimal:
    return to_money(Decimal(int(minor or 0)) / Decimal("100"))


def _percent_of_minor_half_up(amount_minor: int, percent: Decimal) -> int:
    raw = (Decimal(int(amount_minor)) * percent) / Decimal("100")
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    commission_rate: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    net_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "amount": float(self.amount),
            "commission_rate": float(self.commission_rate),
            "platform_fee": float(self.platform_fee),
            "processing_fee": float(self.processing_fee),
            "net_amount": float(self.net_amount),
        }


def calculate_fee(amount, commission_rate_percent, processing_fee_rate_percent, processing_fee_fixed) -> FeeBreakdown:
    """Split ``amount`` into platform fee, processing fee and the payee's net.

    Fees are rounded half-up to the cent individually and the net is the remainder,
    so the three parts always sum back to ``amount``.
    """
    amount_minor = money_major_to_minor(amount)
    if amount_minor < 0:
        raise ValueError("amount must not be negative")
    commission = to_percent(commission_rate_percent)
    processing_rate = to_percent(processing_fee_rate_percent)
    fixed_minor = money_major_to_minor(processing_fee_fixed)
    if fixed_minor < 0:
        raise ValueError("processing_fee_fixed must not be negative")

    platform_minor = _percent_of_minor_half_up(amount_minor, commission)
    processing_minor = _percent_of_minor_half_up(amount_minor, processing_rate) + fixed_minor
    net_minor = amount_minor - platform_minor - processing_minor

    return FeeBreakdown(
        amount=money_minor_to_major(amount_minor),
        commission_rate=commission,
        platform_fee=money_minor_to_major(platform_minor),
        processing_fee=money_minor_to_major(processing_minor),
        net_amount=money_minor_to_major(net_minor),
    )

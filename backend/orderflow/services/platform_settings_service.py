from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from orderflow.extensions import db
from orderflow.models import PlatformSettings, SellerAccount
from orderflow.utils.fees import to_money, to_percent


@dataclass(frozen=True)
class FeeSchedule:
    platform_fee_percentage: Decimal
    processing_rate_percent: Decimal
    processing_fixed: Decimal
    auto_capture_hours: int


@dataclass(frozen=True)
class DeliveryConfig:
    buffer_percentage: Decimal
    min_buffer: Decimal
    max_buffer: Decimal | None
    auto_approve_threshold: Decimal
    absorption_limit: Decimal | None
    refund_threshold: Decimal
    response_timeout_seconds: int


def get_settings() -> PlatformSettings:
    row = PlatformSettings.query.order_by(PlatformSettings.id.asc()).first()
    if row is None:
        row = PlatformSettings()
        db.session.add(row)
        db.session.commit()
    return row


def _pick(row_value, config_key: str):
    if row_value is not None:
        return row_value
    return current_app.config.get(config_key)


def get_fee_schedule() -> FeeSchedule:
    row = get_settings()
    return FeeSchedule(
        platform_fee_percentage=to_percent(_pick(row.platform_fee_percentage, "PLATFORM_FEE_PERCENTAGE")),
        processing_rate_percent=to_percent(_pick(row.payment_processing_fee, "PAYMENT_PROCESSING_FEE")),
        processing_fixed=to_money(_pick(row.payment_processing_fee_fixed, "PAYMENT_PROCESSING_FEE_FIXED")),
        auto_capture_hours=int(_pick(row.auto_capture_hours, "AUTO_CAPTURE_HOURS")),
    )


def get_commission_rate(seller: SellerAccount | int | None) -> Decimal:
    """Seller override when set, else the platform default."""
    if seller is not None and not isinstance(seller, SellerAccount):
        seller = db.session.get(SellerAccount, int(seller))
    if seller is not None and seller.commission_rate is not None:
        return to_percent(seller.commission_rate)
    return get_fee_schedule().platform_fee_percentage


def get_delivery_config() -> DeliveryConfig:
    row = get_settings()
    cfg = current_app.config
    max_buffer = cfg.get("DELIVERY_MAX_BUFFER")
    limit = cfg.get("DELIVERY_ABSORPTION_LIMIT")
    return DeliveryConfig(
        buffer_percentage=to_percent(_pick(row.delivery_buffer_percentage, "DELIVERY_BUFFER_PERCENTAGE")),
        min_buffer=to_money(cfg.get("DELIVERY_MIN_BUFFER") or 0),
        max_buffer=to_money(max_buffer) if max_buffer is not None else None,
        auto_approve_threshold=to_money(cfg.get("DELIVERY_AUTO_APPROVE_THRESHOLD") or 0),
        absorption_limit=to_money(limit) if limit is not None else None,
        refund_threshold=to_money(cfg.get("DELIVERY_REFUND_THRESHOLD") or 0),
        response_timeout_seconds=int(cfg.get("ARTISAN_RESPONSE_TIMEOUT_SECONDS") or 7200),
    )

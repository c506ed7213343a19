from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal


@dataclass
class CourierQuote:
    fee: Decimal
    quote_id: str
    expires_at: datetime | None
    currency: str = "CAD"
    fallback: bool = False
    raw: dict | None = None


@dataclass
class CourierDelivery:
    delivery_id: str
    tracking_url: str
    status: str
    fee: Decimal | None = None
    courier: dict = field(default_factory=dict)
    pickup_eta: datetime | None = None
    dropoff_eta: datetime | None = None
    raw: dict | None = None


@dataclass
class CourierStatus:
    delivery_id: str
    status: str
    tracking_url: str = ""
    courier: dict = field(default_factory=dict)
    pickup_eta: datetime | None = None
    dropoff_eta: datetime | None = None
    raw: dict | None = None


class CourierProvider:
    name = "unknown"

    def quote(self, *, pickup: dict, dropoff: dict, package: dict) -> CourierQuote:
        raise NotImplementedError

    def create_delivery(self, *, quote_id: str, pickup: dict, dropoff: dict, package: dict, reference: str) -> CourierDelivery:
        raise NotImplementedError

    def get_status(self, delivery_id: str) -> CourierStatus:
        raise NotImplementedError

    def cancel(self, delivery_id: str) -> CourierStatus:
        raise NotImplementedError


def haversine_km(lat1, lng1, lat2, lng2) -> float:
    r = 6371.0
    d_lat = math.radians(float(lat2) - float(lat1))
    d_lng = math.radians(float(lng2) - float(lng1))
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(float(lat1))) * math.cos(math.radians(float(lat2))) * math.sin(d_lng / 2) ** 2
    )
    return r * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_km(pickup: dict, dropoff: dict, *, default_km: float = 10.0) -> float:
    coords = (pickup.get("lat"), pickup.get("lng"), dropoff.get("lat"), dropoff.get("lng"))
    if any(c is None for c in coords):
        return default_km
    try:
        return haversine_km(*coords)
    except (TypeError, ValueError):
        return default_km

from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import requests

from orderflow.errors import ExternalServiceError
from orderflow.integrations.common import DEFAULT_TIMEOUT, kind_for_status, raise_for_network, response_json
from orderflow.integrations.courier.base import (
    CourierDelivery,
    CourierProvider,
    CourierQuote,
    CourierStatus,
    distance_km,
)
from orderflow.utils.fees import money_minor_to_major, to_money

FALLBACK_BASE_FEE = Decimal("8.00")
FALLBACK_PER_KM = Decimal("1.50")
QUOTE_VALIDITY = timedelta(minutes=15)


def _parse_ts(value) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def fallback_quote(pickup: dict, dropoff: dict) -> CourierQuote:
    km = Decimal(str(round(distance_km(pickup, dropoff), 3)))
    return CourierQuote(
        fee=to_money(FALLBACK_BASE_FEE + km * FALLBACK_PER_KM),
        quote_id=f"fallback_{uuid.uuid4().hex[:12]}",
        expires_at=datetime.utcnow() + QUOTE_VALIDITY,
        fallback=True,
        raw={"distance_km": float(km)},
    )


def status_from_webhook(payload: dict) -> tuple[str, CourierStatus]:
    """Event id and delivery status from a courier push.

    Accepts both the flat shape and the ``{"data": {...}}`` envelope.
    """
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    delivery_id = str(payload.get("delivery_id") or data.get("id") or data.get("delivery_id") or "").strip()
    event_id = str(payload.get("id") or payload.get("event_id") or "").strip()
    return event_id, CourierStatus(
        delivery_id=delivery_id,
        status=str(payload.get("status") or data.get("status") or "").strip().lower(),
        tracking_url=str(data.get("tracking_url") or payload.get("tracking_url") or ""),
        courier=data.get("courier") or {},
        pickup_eta=_parse_ts(data.get("pickup_eta")),
        dropoff_eta=_parse_ts(data.get("dropoff_eta")),
        raw=payload,
    )


class UberDirectCourierProvider(CourierProvider):
    name = "uber_direct"

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        customer_id: str,
        api_url: str = "https://api.uber.com",
        auth_url: str = "https://login.uber.com/oauth/v2/token",
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.customer_id = customer_id
        self.api_url = api_url.rstrip("/")
        self.auth_url = auth_url
        self._token = ""
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and time.time() < self._token_expires_at - 60:
            return self._token
        try:
            r = requests.post(
                self.auth_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "client_credentials",
                    "scope": "eats.deliveries",
                },
                timeout=DEFAULT_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise_for_network(exc, service="courier", code="UBER_AUTH_FAILED")
        j = response_json(r)
        if r.status_code < 200 or r.status_code >= 300 or not j.get("access_token"):
            raise ExternalServiceError(
                f"UBER_AUTH_FAILED:HTTP {r.status_code}",
                kind=kind_for_status(r.status_code),
                service="courier",
            )
        self._token = str(j["access_token"])
        self._token_expires_at = time.time() + float(j.get("expires_in") or 3600)
        return self._token

    def _request(self, method: str, path: str, *, code: str, payload: dict | None = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        url = f"{self.api_url}/v1/customers/{self.customer_id}{path}"
        try:
            r = requests.request(method, url, headers=headers, json=payload, timeout=DEFAULT_TIMEOUT)
        except requests.RequestException as exc:
            raise_for_network(exc, service="courier", code=code)
        j = response_json(r)
        if r.status_code < 200 or r.status_code >= 300:
            msg = (j.get("message") or j.get("code") or f"HTTP {r.status_code}")
            raise ExternalServiceError(f"{code}:{msg}", kind=kind_for_status(r.status_code), service="courier", code=code)
        return j

    @staticmethod
    def _locations(pickup: dict, dropoff: dict) -> dict:
        return {
            "pickup_address": pickup.get("address") or "",
            "pickup_name": pickup.get("name") or "",
            "pickup_phone_number": pickup.get("phone") or "",
            "pickup_latitude": pickup.get("lat"),
            "pickup_longitude": pickup.get("lng"),
            "dropoff_address": dropoff.get("address") or "",
            "dropoff_name": dropoff.get("name") or "",
            "dropoff_phone_number": dropoff.get("phone") or "",
            "dropoff_latitude": dropoff.get("lat"),
            "dropoff_longitude": dropoff.get("lng"),
        }

    @staticmethod
    def _manifest(package: dict) -> list[dict]:
        return [
            {
                "name": package.get("name") or "Order",
                "quantity": int(package.get("quantity") or 1),
                "size": package.get("size") or "small",
                "price": int(package.get("value_minor") or 0),
            }
        ]

    def quote(self, *, pickup: dict, dropoff: dict, package: dict) -> CourierQuote:
        payload = self._locations(pickup, dropoff)
        payload["manifest_items"] = self._manifest(package)
        j = self._request("POST", "/delivery_quotes", code="UBER_QUOTE_FAILED", payload=payload)
        return CourierQuote(
            fee=money_minor_to_major(j.get("fee") or 0),
            quote_id=str(j.get("id") or ""),
            expires_at=_parse_ts(j.get("expires")) or datetime.utcnow() + QUOTE_VALIDITY,
            currency=str(j.get("currency") or "cad").upper(),
            raw=j,
        )

    def create_delivery(self, *, quote_id: str, pickup: dict, dropoff: dict, package: dict, reference: str) -> CourierDelivery:
        payload = self._locations(pickup, dropoff)
        payload["manifest_items"] = self._manifest(package)
        payload["manifest_reference"] = reference
        payload["external_id"] = reference
        if quote_id and not quote_id.startswith("fallback_"):
            payload["quote_id"] = quote_id
        j = self._request("POST", "/deliveries", code="UBER_CREATE_DELIVERY_FAILED", payload=payload)
        return CourierDelivery(
            delivery_id=str(j.get("id") or ""),
            tracking_url=str(j.get("tracking_url") or ""),
            status=str(j.get("status") or "pending"),
            fee=money_minor_to_major(j["fee"]) if j.get("fee") is not None else None,
            courier=j.get("courier") or {},
            pickup_eta=_parse_ts(j.get("pickup_eta")),
            dropoff_eta=_parse_ts(j.get("dropoff_eta")),
            raw=j,
        )

    def get_status(self, delivery_id: str) -> CourierStatus:
        j = self._request("GET", f"/deliveries/{delivery_id}", code="UBER_STATUS_FAILED")
        return CourierStatus(
            delivery_id=delivery_id,
            status=str(j.get("status") or ""),
            tracking_url=str(j.get("tracking_url") or ""),
            courier=j.get("courier") or {},
            pickup_eta=_parse_ts(j.get("pickup_eta")),
            dropoff_eta=_parse_ts(j.get("dropoff_eta")),
            raw=j,
        )

    def cancel(self, delivery_id: str) -> CourierStatus:
        j = self._request("POST", f"/deliveries/{delivery_id}/cancel", code="UBER_CANCEL_FAILED", payload={})
        return CourierStatus(delivery_id=delivery_id, status=str(j.get("status") or "canceled"), raw=j)


class FallbackCourierProvider(CourierProvider):
    """Quotes by distance when courier credentials are absent; cannot book."""

    name = "fallback"

    def quote(self, *, pickup: dict, dropoff: dict, package: dict) -> CourierQuote:
        return fallback_quote(pickup, dropoff)

    def create_delivery(self, *, quote_id: str, pickup: dict, dropoff: dict, package: dict, reference: str) -> CourierDelivery:
        raise ExternalServiceError("COURIER_NOT_CONFIGURED", kind=ExternalServiceError.FATAL, service="courier")

    def get_status(self, delivery_id: str) -> CourierStatus:
        raise ExternalServiceError("COURIER_NOT_CONFIGURED", kind=ExternalServiceError.FATAL, service="courier")

    def cancel(self, delivery_id: str) -> CourierStatus:
        raise ExternalServiceError("COURIER_NOT_CONFIGURED", kind=ExternalServiceError.FATAL, service="courier")

from __future__ import annotations

from decimal import Decimal

import requests

from orderflow.errors import ExternalServiceError
from orderflow.integrations.common import DEFAULT_TIMEOUT, kind_for_status, raise_for_network, response_json
from orderflow.integrations.payments.base import CaptureResult, HoldResult, HoldStatus, PaymentProcessor, TransferResult
from orderflow.utils.fees import money_major_to_minor

_HOLD_STATUS = {
    "requires_capture": "held",
    "succeeded": "captured",
    "canceled": "released",
}


class StripePaymentProcessor(PaymentProcessor):
    name = "stripe"

    def __init__(self, secret_key: str, *, api_base: str = "https://api.stripe.com/v1"):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")

    def _headers(self, idempotency_key: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(self, method: str, path: str, *, code: str, data: dict | None = None, idempotency_key: str | None = None) -> dict:
        try:
            r = requests.request(
                method,
                f"{self.api_base}{path}",
                headers=self._headers(idempotency_key),
                data=data,
                timeout=DEFAULT_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise_for_network(exc, service="payments", code=code)
        j = response_json(r)
        if 200 <= r.status_code < 300:
            return j
        err = j.get("error") or {}
        msg = (err.get("message") or f"HTTP {r.status_code}").strip()
        kind = kind_for_status(r.status_code)
        if err.get("code") == "payment_intent_unexpected_state" and "captured" in msg.lower():
            kind = ExternalServiceError.ALREADY_DONE
        raise ExternalServiceError(f"{code}:{msg}", kind=kind, service="payments", code=code)

    def authorize(self, *, amount: Decimal, currency: str, customer_ref: str, capture: bool = False, metadata: dict | None = None) -> HoldResult:
        data = {
            "amount": money_major_to_minor(amount),
            "currency": (currency or "cad").lower(),
            "customer": customer_ref,
            "capture_method": "automatic" if capture else "manual",
            "confirm": "true",
            "off_session": "true",
        }
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)
        j = self._request("POST", "/payment_intents", code="STRIPE_AUTHORIZE_FAILED", data=data)
        status = _HOLD_STATUS.get(str(j.get("status") or ""), "")
        if status not in ("held", "captured"):
            raise ExternalServiceError(
                f"STRIPE_AUTHORIZE_FAILED:unexpected status {j.get('status')}",
                kind=ExternalServiceError.FATAL,
                service="payments",
            )
        return HoldResult(
            hold_ref=str(j.get("id") or ""),
            status=status,
            amount=Decimal(amount),
            currency=currency,
            raw=j,
        )

    def capture(self, hold_ref: str) -> CaptureResult:
        j = self._request(
            "POST",
            f"/payment_intents/{hold_ref}/capture",
            code="STRIPE_CAPTURE_FAILED",
            idempotency_key=f"capture:{hold_ref}",
        )
        return CaptureResult(hold_ref=hold_ref, status=_HOLD_STATUS.get(str(j.get("status") or ""), "captured"), raw=j)

    def transfer(self, *, amount: Decimal, currency: str, destination: str, reference: str) -> TransferResult:
        data = {
            "amount": money_major_to_minor(amount),
            "currency": (currency or "cad").lower(),
            "destination": destination,
            "transfer_group": reference,
        }
        j = self._request(
            "POST",
            "/transfers",
            code="STRIPE_TRANSFER_FAILED",
            data=data,
            idempotency_key=f"transfer:{reference}",
        )
        return TransferResult(transfer_ref=str(j.get("id") or ""), status="sent", raw=j)

    def retrieve(self, hold_ref: str) -> HoldStatus:
        j = self._request("GET", f"/payment_intents/{hold_ref}", code="STRIPE_RETRIEVE_FAILED")
        return HoldStatus(hold_ref=hold_ref, status=_HOLD_STATUS.get(str(j.get("status") or ""), "unknown"), raw=j)

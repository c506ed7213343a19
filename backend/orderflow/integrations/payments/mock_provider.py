from __future__ import annotations

import uuid
from decimal import Decimal

from orderflow.errors import ExternalServiceError
from orderflow.integrations.payments.base import CaptureResult, HoldResult, HoldStatus, PaymentProcessor, TransferResult


class MockPaymentProcessor(PaymentProcessor):
    """In-memory processor for local runs and tests.

    ``fail_next(op, kind)`` queues one failure for the next call of ``op``.
    """

    name = "mock"

    def __init__(self):
        self.holds: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.transfers: list[dict] = []
        self._failures: dict[str, list[str]] = {}

    def fail_next(self, op: str, kind: str = ExternalServiceError.RETRYABLE) -> None:
        self._failures.setdefault(op, []).append(kind)

    def _maybe_fail(self, op: str) -> None:
        queued = self._failures.get(op) or []
        if queued:
            kind = queued.pop(0)
            raise ExternalServiceError(f"MOCK_{op.upper()}_FAILED", kind=kind, service="payments")

    def call_count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    def authorize(self, *, amount: Decimal, currency: str, customer_ref: str, capture: bool = False, metadata: dict | None = None) -> HoldResult:
        self.calls.append(("authorize", customer_ref))
        self._maybe_fail("authorize")
        ref = f"mock_hold_{uuid.uuid4().hex[:16]}"
        status = "captured" if capture else "held"
        self.holds[ref] = {"amount": Decimal(amount), "currency": currency, "status": status}
        return HoldResult(hold_ref=ref, status=status, amount=Decimal(amount), currency=currency, raw={"provider": self.name})

    def capture(self, hold_ref: str) -> CaptureResult:
        self.calls.append(("capture", hold_ref))
        self._maybe_fail("capture")
        hold = self.holds.get(hold_ref)
        if hold is None:
            raise ExternalServiceError(f"MOCK_HOLD_NOT_FOUND:{hold_ref}", kind=ExternalServiceError.FATAL, service="payments")
        if hold["status"] == "captured":
            raise ExternalServiceError("MOCK_ALREADY_CAPTURED", kind=ExternalServiceError.ALREADY_DONE, service="payments")
        hold["status"] = "captured"
        return CaptureResult(hold_ref=hold_ref, status="captured", raw={"provider": self.name})

    def transfer(self, *, amount: Decimal, currency: str, destination: str, reference: str) -> TransferResult:
        self.calls.append(("transfer", reference))
        self._maybe_fail("transfer")
        for existing in self.transfers:
            if existing["reference"] == reference:
                return TransferResult(transfer_ref=existing["transfer_ref"], status="sent", raw=existing)
        row = {
            "transfer_ref": f"mock_tr_{uuid.uuid4().hex[:16]}",
            "amount": Decimal(amount),
            "currency": currency,
            "destination": destination,
            "reference": reference,
        }
        self.transfers.append(row)
        return TransferResult(transfer_ref=row["transfer_ref"], status="sent", raw=row)

    def retrieve(self, hold_ref: str) -> HoldStatus:
        self.calls.append(("retrieve", hold_ref))
        self._maybe_fail("retrieve")
        hold = self.holds.get(hold_ref)
        return HoldStatus(hold_ref=hold_ref, status=(hold or {}).get("status", "unknown"), raw={"provider": self.name})

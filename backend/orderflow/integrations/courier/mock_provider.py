from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from orderflow.errors import ExternalServiceError
from orderflow.integrations.courier.base import CourierDelivery, CourierProvider, CourierQuote, CourierStatus
from orderflow.utils.fees import to_money


class MockCourierProvider(CourierProvider):
    """Deterministic courier: every quote costs ``next_fee`` until changed."""

    name = "mock"

    def __init__(self, fee="10.00"):
        self.next_fee = to_money(fee)
        self.deliveries: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, list[str]] = {}

    def fail_next(self, op: str, kind: str = ExternalServiceError.RETRYABLE) -> None:
        self._failures.setdefault(op, []).append(kind)

    def _maybe_fail(self, op: str) -> None:
        queued = self._failures.get(op) or []
        if queued:
            raise ExternalServiceError(f"MOCK_COURIER_{op.upper()}_FAILED", kind=queued.pop(0), service="courier")

    def call_count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    def set_status(self, delivery_id: str, status: str) -> None:
        self.deliveries[delivery_id]["status"] = status

    def quote(self, *, pickup: dict, dropoff: dict, package: dict) -> CourierQuote:
        self.calls.append(("quote", ""))
        self._maybe_fail("quote")
        return CourierQuote(
            fee=Decimal(self.next_fee),
            quote_id=f"mock_dqt_{uuid.uuid4().hex[:12]}",
            expires_at=datetime.utcnow() + timedelta(minutes=15),
            raw={"provider": self.name},
        )

    def create_delivery(self, *, quote_id: str, pickup: dict, dropoff: dict, package: dict, reference: str) -> CourierDelivery:
        self.calls.append(("create_delivery", reference))
        self._maybe_fail("create_delivery")
        delivery_id = f"mock_del_{uuid.uuid4().hex[:12]}"
        self.deliveries[delivery_id] = {"status": "pending", "quote_id": quote_id, "reference": reference}
        return CourierDelivery(
            delivery_id=delivery_id,
            tracking_url=f"https://example.com/track/{delivery_id}",
            status="pending",
            fee=Decimal(self.next_fee),
            courier={"name": "Mock Courier"},
            pickup_eta=datetime.utcnow() + timedelta(minutes=15),
            dropoff_eta=datetime.utcnow() + timedelta(minutes=45),
        )

    def get_status(self, delivery_id: str) -> CourierStatus:
        self.calls.append(("get_status", delivery_id))
        self._maybe_fail("get_status")
        row = self.deliveries.get(delivery_id)
        if row is None:
            raise ExternalServiceError(f"MOCK_DELIVERY_NOT_FOUND:{delivery_id}", kind=ExternalServiceError.FATAL, service="courier")
        return CourierStatus(delivery_id=delivery_id, status=row["status"], tracking_url=f"https://example.com/track/{delivery_id}")

    def cancel(self, delivery_id: str) -> CourierStatus:
        self.calls.append(("cancel", delivery_id))
        row = self.deliveries.get(delivery_id) or {}
        row["status"] = "canceled"
        return CourierStatus(delivery_id=delivery_id, status="canceled")

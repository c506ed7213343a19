from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass
class HoldResult:
    hold_ref: str
    status: str  # held | captured
    amount: Decimal
    currency: str
    raw: dict | None = None


@dataclass
class CaptureResult:
    hold_ref: str
    status: str
    raw: dict | None = None


@dataclass
class TransferResult:
    transfer_ref: str
    status: str
    raw: dict | None = None


@dataclass
class HoldStatus:
    hold_ref: str
    status: str  # held | captured | released | unknown
    raw: dict | None = None


class PaymentProcessor:
    """Card processor with deferred capture.

    Implementations raise ``ExternalServiceError`` with ``kind="already_done"`` when a
    capture targets a hold that was already captured.
    """

    name = "unknown"

    def authorize(self, *, amount: Decimal, currency: str, customer_ref: str, capture: bool = False, metadata: dict | None = None) -> HoldResult:
        raise NotImplementedError

    def capture(self, hold_ref: str) -> CaptureResult:
        raise NotImplementedError

    def transfer(self, *, amount: Decimal, currency: str, destination: str, reference: str) -> TransferResult:
        raise NotImplementedError

    def retrieve(self, hold_ref: str) -> HoldStatus:
        raise NotImplementedError

from __future__ import annotations

from dataclasses import dataclass, field


class OrderflowError(Exception):
    code = "ORDERFLOW_ERROR"
    http_status = 500

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.code, "message": self.message}


class ValidationError(OrderflowError):
    code = "VALIDATION_ERROR"
    http_status = 400


class InsufficientFunds(OrderflowError):
    code = "INSUFFICIENT_FUNDS"
    http_status = 402


class InvalidTransition(OrderflowError):
    code = "INVALID_TRANSITION"
    http_status = 409


class Unauthorized(OrderflowError):
    code = "UNAUTHORIZED"
    http_status = 401


class Forbidden(OrderflowError):
    code = "FORBIDDEN"
    http_status = 403


class NotFound(OrderflowError):
    code = "NOT_FOUND"
    http_status = 404


class InconsistentState(OrderflowError):
    code = "INCONSISTENT_STATE"
    http_status = 500


class ExternalServiceError(OrderflowError):
    """Processor, courier or notification failure.

    ``kind`` is one of ``already_done``, ``retryable`` or ``fatal``. Callers treat
    ``already_done`` as success.
    """

    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502

    ALREADY_DONE = "already_done"
    RETRYABLE = "retryable"
    FATAL = "fatal"

    def __init__(self, message: str = "", *, kind: str = "retryable", service: str = "", code: str | None = None):
        super().__init__(message, code=code)
        self.kind = kind if kind in (self.ALREADY_DONE, self.RETRYABLE, self.FATAL) else self.RETRYABLE
        self.service = service

    @property
    def already_done(self) -> bool:
        return self.kind == self.ALREADY_DONE

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["kind"] = self.kind
        if self.service:
            out["service"] = self.service
        return out


@dataclass
class SettlementResult:
    ok: bool
    status: str
    code: str = ""
    message: str = ""
    kind: str = ""
    data: dict = field(default_factory=dict)

    @classmethod
    def success(cls, status: str, *, code: str = "", message: str = "", **data) -> "SettlementResult":
        return cls(ok=True, status=status, code=code or status, message=message, data=data)

    @classmethod
    def already(cls, status: str, *, code: str = "", message: str = "", **data) -> "SettlementResult":
        return cls(
            ok=True,
            status=status,
            code=code or status,
            message=message,
            kind=ExternalServiceError.ALREADY_DONE,
            data=data,
        )

    @classmethod
    def failure(cls, *, code: str, message: str = "", kind: str = "retryable", **data) -> "SettlementResult":
        return cls(ok=False, status="failed", code=code, message=message, kind=kind, data=data)

    def to_dict(self) -> dict:
        out = {"ok": bool(self.ok), "status": self.status, "code": self.code}
        if self.message:
            out["message"] = self.message
        if self.kind:
            out["kind"] = self.kind
        if self.data:
            out.update(self.data)
        return out

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class NotificationResult:
    ok: bool
    code: str = ""
    message: str = ""
    raw: dict | None = None


class NotificationProvider:
    name = "unknown"

    def send(self, *, user_ref: str, event_type: str, payload: dict) -> NotificationResult:
        raise NotImplementedError

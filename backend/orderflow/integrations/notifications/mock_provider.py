from __future__ import annotations

from orderflow.integrations.notifications.base import NotificationProvider, NotificationResult


class MockNotificationProvider(NotificationProvider):
    name = "mock"

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent: list[dict] = []

    def events_for(self, user_ref: str) -> list[str]:
        return [row["event_type"] for row in self.sent if row["user_ref"] == user_ref]

    def send(self, *, user_ref: str, event_type: str, payload: dict) -> NotificationResult:
        if self.fail:
            raise RuntimeError("mock notification provider down")
        self.sent.append({"user_ref": user_ref, "event_type": event_type, "payload": dict(payload or {})})
        return NotificationResult(ok=True, code="OK", message="mock_sent")

from __future__ import annotations

import json

import requests

from orderflow.integrations.notifications.base import NotificationProvider, NotificationResult


class WebhookNotificationProvider(NotificationProvider):
    """Posts events to the notification service, which renders and delivers them."""

    name = "webhook"

    def __init__(self, *, url: str, token: str = ""):
        self.url = url
        self.token = token

    def send(self, *, user_ref: str, event_type: str, payload: dict) -> NotificationResult:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        body = json.dumps({"user_ref": user_ref, "type": event_type, "payload": payload}, default=str)
        r = requests.post(self.url, data=body, headers=headers, timeout=12)
        if 200 <= r.status_code < 300:
            return NotificationResult(ok=True, code="OK", message="sent")
        return NotificationResult(ok=False, code="NOTIFY_HTTP_ERROR", message=f"HTTP {r.status_code}")

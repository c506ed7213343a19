from __future__ import annotations

import json
import logging

from orderflow.integrations.notifications.base import NotificationProvider, NotificationResult

logger = logging.getLogger("orderflow.notifications")


class LogNotificationProvider(NotificationProvider):
    name = "log"

    def send(self, *, user_ref: str, event_type: str, payload: dict) -> NotificationResult:
        logger.info(json.dumps({"event": "notification", "user_ref": user_ref, "type": event_type, "payload": payload}, default=str))
        return NotificationResult(ok=True, code="OK", message="logged")

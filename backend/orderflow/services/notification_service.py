from __future__ import annotations

from flask import current_app

from orderflow.integrations.notifications.base import NotificationProvider


class Notifier:
    """Fire-and-forget wrapper: a failed notification is logged, never raised."""

    def __init__(self, provider: NotificationProvider):
        self.provider = provider

    def notify(self, user_ref: str | None, event_type: str, payload: dict | None = None) -> bool:
        if not user_ref:
            return False
        try:
            result = self.provider.send(user_ref=user_ref, event_type=event_type, payload=payload or {})
        except Exception:
            current_app.logger.exception(
                "notification_failed provider=%s user_ref=%s event=%s",
                getattr(self.provider, "name", "unknown"),
                user_ref,
                event_type,
            )
            return False
        if not result.ok:
            current_app.logger.warning(
                "notification_rejected provider=%s event=%s code=%s",
                getattr(self.provider, "name", "unknown"),
                event_type,
                result.code,
            )
        return bool(result.ok)

from __future__ import annotations

from orderflow.integrations.common import IntegrationMisconfiguredError
from orderflow.integrations.notifications.base import NotificationProvider
from orderflow.integrations.notifications.log_provider import LogNotificationProvider
from orderflow.integrations.notifications.webhook_provider import WebhookNotificationProvider


def build_notification_provider(config) -> NotificationProvider:
    provider = (config.get("NOTIFICATIONS_PROVIDER") or "log").strip().lower()
    if provider == "log":
        return LogNotificationProvider()
    if provider != "webhook":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:notifications_provider={provider}")
    url = (config.get("NOTIFY_WEBHOOK_URL") or "").strip()
    if not url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing NOTIFY_WEBHOOK_URL")
    return WebhookNotificationProvider(url=url, token=(config.get("NOTIFY_WEBHOOK_TOKEN") or "").strip())

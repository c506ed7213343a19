from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from orderflow.integrations.courier.base import CourierProvider
from orderflow.integrations.courier.factory import build_courier_provider
from orderflow.integrations.notifications.base import NotificationProvider
from orderflow.integrations.notifications.factory import build_notification_provider
from orderflow.integrations.payments.base import PaymentProcessor
from orderflow.integrations.payments.factory import build_payment_processor
from orderflow.services.notification_service import Notifier
from orderflow.services.order_lifecycle import OrderLifecycle
from orderflow.services.settlement_service import SettlementCoordinator

EXTENSION_KEY = "orderflow"


@dataclass
class Collaborators:
    processor: PaymentProcessor
    courier: CourierProvider
    notifications: NotificationProvider


def build_collaborators(config, *, payment_processor=None, courier=None, notifier=None) -> Collaborators:
    """Env-driven providers unless the caller injects its own."""
    return Collaborators(
        processor=payment_processor if payment_processor is not None else build_payment_processor(config),
        courier=courier if courier is not None else build_courier_provider(config),
        notifications=notifier if notifier is not None else build_notification_provider(config),
    )


def collaborators() -> Collaborators:
    return current_app.extensions[EXTENSION_KEY]


def settlement() -> SettlementCoordinator:
    c = collaborators()
    return SettlementCoordinator(c.processor, Notifier(c.notifications))


def lifecycle() -> OrderLifecycle:
    c = collaborators()
    notifier = Notifier(c.notifications)
    return OrderLifecycle(SettlementCoordinator(c.processor, notifier), c.courier, notifier)

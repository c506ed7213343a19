from __future__ import annotations

from orderflow.integrations.common import IntegrationMisconfiguredError
from orderflow.integrations.payments.base import PaymentProcessor
from orderflow.integrations.payments.mock_provider import MockPaymentProcessor
from orderflow.integrations.payments.stripe_provider import StripePaymentProcessor


def build_payment_processor(config) -> PaymentProcessor:
    provider = (config.get("PAYMENTS_PROVIDER") or "mock").strip().lower()
    if provider == "mock":
        if config.get("IS_PRODUCTION"):
            raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:mock payments in production")
        return MockPaymentProcessor()
    if provider != "stripe":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (config.get("STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_SECRET_KEY")
    return StripePaymentProcessor(secret_key=secret_key)


def payment_health(config) -> dict:
    provider = (config.get("PAYMENTS_PROVIDER") or "mock").strip().lower()
    missing = []
    if provider == "stripe" and not (config.get("STRIPE_SECRET_KEY") or "").strip():
        missing.append("STRIPE_SECRET_KEY")
    return {
        "provider": provider,
        "status": "misconfigured" if missing else "configured",
        "missing": missing,
    }

from __future__ import annotations

from orderflow.integrations.common import IntegrationMisconfiguredError
from orderflow.integrations.courier.base import CourierProvider
from orderflow.integrations.courier.mock_provider import MockCourierProvider
from orderflow.integrations.courier.uber_direct_provider import FallbackCourierProvider, UberDirectCourierProvider


def build_courier_provider(config) -> CourierProvider:
    provider = (config.get("COURIER_PROVIDER") or "mock").strip().lower()
    if provider == "mock":
        return MockCourierProvider()
    if provider != "uber_direct":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:courier_provider={provider}")

    client_id = (config.get("UBER_DIRECT_CLIENT_ID") or "").strip()
    client_secret = (config.get("UBER_DIRECT_CLIENT_SECRET") or "").strip()
    customer_id = (config.get("UBER_DIRECT_CUSTOMER_ID") or "").strip()
    if not (client_id and client_secret and customer_id):
        return FallbackCourierProvider()
    return UberDirectCourierProvider(
        client_id=client_id,
        client_secret=client_secret,
        customer_id=customer_id,
        api_url=config.get("UBER_DIRECT_API_URL") or "https://api.uber.com",
        auth_url=config.get("UBER_DIRECT_AUTH_URL") or "https://login.uber.com/oauth/v2/token",
    )

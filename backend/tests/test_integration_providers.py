from __future__ import annotations

import unittest
from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests

from orderflow.errors import ExternalServiceError
from orderflow.integrations.common import IntegrationMisconfiguredError
from orderflow.integrations.courier.factory import build_courier_provider
from orderflow.integrations.courier.mock_provider import MockCourierProvider
from orderflow.integrations.courier.uber_direct_provider import (
    FallbackCourierProvider,
    UberDirectCourierProvider,
    status_from_webhook,
)
from orderflow.integrations.notifications.factory import build_notification_provider
from orderflow.integrations.notifications.log_provider import LogNotificationProvider
from orderflow.integrations.notifications.webhook_provider import WebhookNotificationProvider
from orderflow.integrations.payments.factory import build_payment_processor, payment_health
from orderflow.integrations.payments.mock_provider import MockPaymentProcessor
from orderflow.integrations.payments.stripe_provider import StripePaymentProcessor


def _response(status_code: int, payload=None):
    r = MagicMock()
    r.status_code = status_code
    r.content = b"{}" if payload is not None else b""
    r.json.return_value = payload
    r.text = ""
    return r


class StripeProcessorTestCase(unittest.TestCase):
    def setUp(self):
        self.processor = StripePaymentProcessor("sk_test_123")

    def test_authorize_places_manual_capture_hold(self):
        with patch("requests.request", return_value=_response(200, {"id": "pi_1", "status": "requires_capture"})) as req:
            hold = self.processor.authorize(amount=Decimal("62.00"), currency="CAD", customer_ref="cus_1", metadata={"seller_id": 7})
        self.assertEqual(hold.hold_ref, "pi_1")
        self.assertEqual(hold.status, "held")
        method, url = req.call_args.args
        data = req.call_args.kwargs["data"]
        self.assertEqual(method, "POST")
        self.assertTrue(url.endswith("/payment_intents"))
        self.assertEqual(data["amount"], 6200)
        self.assertEqual(data["currency"], "cad")
        self.assertEqual(data["capture_method"], "manual")
        self.assertEqual(data["metadata[seller_id]"], "7")
        self.assertEqual(req.call_args.kwargs["headers"]["Authorization"], "Bearer sk_test_123")

    def test_guest_authorize_captures_immediately(self):
        with patch("requests.request", return_value=_response(200, {"id": "pi_2", "status": "succeeded"})) as req:
            hold = self.processor.authorize(amount=Decimal("10.00"), currency="CAD", customer_ref="guest", capture=True)
        self.assertEqual(hold.status, "captured")
        self.assertEqual(req.call_args.kwargs["data"]["capture_method"], "automatic")

    def test_capture_sends_idempotency_key(self):
        with patch("requests.request", return_value=_response(200, {"id": "pi_1", "status": "succeeded"})) as req:
            result = self.processor.capture("pi_1")
        self.assertEqual(result.status, "captured")
        self.assertEqual(req.call_args.kwargs["headers"]["Idempotency-Key"], "capture:pi_1")

    def test_already_captured_maps_to_already_done(self):
        body = {"error": {"code": "payment_intent_unexpected_state", "message": "This PaymentIntent has already been captured."}}
        with patch("requests.request", return_value=_response(400, body)):
            with self.assertRaises(ExternalServiceError) as ctx:
                self.processor.capture("pi_1")
        self.assertTrue(ctx.exception.already_done)

    def test_error_kinds_follow_http_status(self):
        with patch("requests.request", return_value=_response(503, {"error": {"message": "down"}})):
            with self.assertRaises(ExternalServiceError) as ctx:
                self.processor.capture("pi_1")
        self.assertEqual(ctx.exception.kind, ExternalServiceError.RETRYABLE)

        with patch("requests.request", return_value=_response(402, {"error": {"message": "card declined"}})):
            with self.assertRaises(ExternalServiceError) as ctx:
                self.processor.authorize(amount=Decimal("5.00"), currency="CAD", customer_ref="cus_1")
        self.assertEqual(ctx.exception.kind, ExternalServiceError.FATAL)

        with patch("requests.request", side_effect=requests.ConnectionError("reset")):
            with self.assertRaises(ExternalServiceError) as ctx:
                self.processor.retrieve("pi_1")
        self.assertEqual(ctx.exception.kind, ExternalServiceError.RETRYABLE)

    def test_transfer_uses_reference_as_idempotency_key(self):
        with patch("requests.request", return_value=_response(200, {"id": "tr_1"})) as req:
            result = self.processor.transfer(
                amount=Decimal("40.75"), currency="CAD", destination="acct_1", reference="payout:order:9"
            )
        self.assertEqual(result.transfer_ref, "tr_1")
        self.assertEqual(req.call_args.kwargs["data"]["amount"], 4075)
        self.assertEqual(req.call_args.kwargs["headers"]["Idempotency-Key"], "transfer:payout:order:9")


class UberDirectProviderTestCase(unittest.TestCase):
    def setUp(self):
        self.provider = UberDirectCourierProvider(client_id="cid", client_secret="secret", customer_id="cust_1")

    def test_quote_fetches_token_once_and_converts_minor_units(self):
        token = _response(200, {"access_token": "tok", "expires_in": 3600})
        quote = _response(200, {"id": "dqt_1", "fee": 1234, "currency": "cad", "expires": "2026-10-19T12:15:00Z"})
        with patch("requests.post", return_value=token) as post, patch("requests.request", return_value=quote) as req:
            first = self.provider.quote(pickup={"address": "a"}, dropoff={"address": "b"}, package={"value_minor": 5000})
            self.provider.quote(pickup={"address": "a"}, dropoff={"address": "b"}, package={})
        self.assertEqual(post.call_count, 1)
        self.assertEqual(req.call_count, 2)
        self.assertEqual(first.fee, Decimal("12.34"))
        self.assertEqual(first.quote_id, "dqt_1")
        self.assertEqual(first.currency, "CAD")
        self.assertEqual(first.expires_at.minute, 15)
        url = req.call_args.args[1]
        self.assertEqual(url, "https://api.uber.com/v1/customers/cust_1/delivery_quotes")
        self.assertEqual(req.call_args.kwargs["headers"]["Authorization"], "Bearer tok")

    def test_auth_failure_is_reported(self):
        with patch("requests.post", return_value=_response(401, {})):
            with self.assertRaises(ExternalServiceError) as ctx:
                self.provider.get_status("del_1")
        self.assertEqual(ctx.exception.kind, ExternalServiceError.FATAL)

    def test_create_delivery_skips_fallback_quote_id(self):
        token = _response(200, {"access_token": "tok"})
        body = {"id": "del_1", "status": "pending", "tracking_url": "https://t/1", "fee": 900}
        with patch("requests.post", return_value=token), patch("requests.request", return_value=_response(200, body)) as req:
            delivery = self.provider.create_delivery(
                quote_id="fallback_abc", pickup={}, dropoff={}, package={"quantity": 2}, reference="order-5"
            )
        payload = req.call_args.kwargs["json"]
        self.assertNotIn("quote_id", payload)
        self.assertEqual(payload["external_id"], "order-5")
        self.assertEqual(payload["manifest_items"][0]["quantity"], 2)
        self.assertEqual(delivery.delivery_id, "del_1")
        self.assertEqual(delivery.fee, Decimal("9.00"))

    def test_status_from_webhook_reads_both_shapes(self):
        event_id, flat = status_from_webhook({"id": "evt_1", "delivery_id": "del_1", "status": "DELIVERED"})
        self.assertEqual((event_id, flat.delivery_id, flat.status), ("evt_1", "del_1", "delivered"))
        event_id, nested = status_from_webhook({"event_id": "evt_2", "data": {"id": "del_2", "status": "pickup"}})
        self.assertEqual((event_id, nested.delivery_id, nested.status), ("evt_2", "del_2", "pickup"))

    def test_fallback_quotes_by_distance_and_refuses_booking(self):
        fallback = FallbackCourierProvider()
        quote = fallback.quote(pickup={}, dropoff={}, package={})
        # No coordinates: default 10 km at 1.50/km on top of the 8.00 base.
        self.assertEqual(quote.fee, Decimal("23.00"))
        self.assertTrue(quote.fallback)
        with self.assertRaises(ExternalServiceError):
            fallback.create_delivery(quote_id=quote.quote_id, pickup={}, dropoff={}, package={}, reference="order-1")


class WebhookNotifierTestCase(unittest.TestCase):
    def test_posts_event_with_bearer_token(self):
        provider = WebhookNotificationProvider(url="https://notify.example.com/events", token="ntok")
        with patch("requests.post", return_value=_response(202, {})) as post:
            result = provider.send(user_ref="user:1", event_type="order_confirmed", payload={"order_id": 3})
        self.assertTrue(result.ok)
        self.assertEqual(post.call_args.args[0], "https://notify.example.com/events")
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer ntok")
        self.assertIn('"order_confirmed"', post.call_args.kwargs["data"])

    def test_http_error_is_a_result_not_an_exception(self):
        provider = WebhookNotificationProvider(url="https://notify.example.com/events")
        with patch("requests.post", return_value=_response(500, {})):
            result = provider.send(user_ref="user:1", event_type="x", payload={})
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "NOTIFY_HTTP_ERROR")


class ProviderFactoryTestCase(unittest.TestCase):
    def test_payment_processor_selection(self):
        self.assertIsInstance(build_payment_processor({}), MockPaymentProcessor)
        self.assertIsInstance(
            build_payment_processor({"PAYMENTS_PROVIDER": "stripe", "STRIPE_SECRET_KEY": "sk"}), StripePaymentProcessor
        )
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payment_processor({"PAYMENTS_PROVIDER": "stripe"})
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payment_processor({"IS_PRODUCTION": True})
        with self.assertRaises(IntegrationMisconfiguredError):
            build_payment_processor({"PAYMENTS_PROVIDER": "paypal"})
        self.assertEqual(payment_health({"PAYMENTS_PROVIDER": "stripe"})["missing"], ["STRIPE_SECRET_KEY"])

    def test_courier_selection(self):
        self.assertIsInstance(build_courier_provider({}), MockCourierProvider)
        self.assertIsInstance(build_courier_provider({"COURIER_PROVIDER": "uber_direct"}), FallbackCourierProvider)
        full = {
            "COURIER_PROVIDER": "uber_direct",
            "UBER_DIRECT_CLIENT_ID": "a",
            "UBER_DIRECT_CLIENT_SECRET": "b",
            "UBER_DIRECT_CUSTOMER_ID": "c",
        }
        self.assertIsInstance(build_courier_provider(full), UberDirectCourierProvider)

    def test_notification_selection(self):
        self.assertIsInstance(build_notification_provider({}), LogNotificationProvider)
        self.assertIsInstance(
            build_notification_provider({"NOTIFICATIONS_PROVIDER": "webhook", "NOTIFY_WEBHOOK_URL": "https://n"}),
            WebhookNotificationProvider,
        )
        with self.assertRaises(IntegrationMisconfiguredError):
            build_notification_provider({"NOTIFICATIONS_PROVIDER": "webhook"})


if __name__ == "__main__":
    unittest.main()

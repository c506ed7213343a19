from __future__ import annotations

import unittest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from orderflow.errors import ExternalServiceError
from orderflow.extensions import db
from orderflow.models import JobRun, Order, RevenueRecord, SellerAccount
from orderflow.services import container, wallet_service

from order_fixtures import BUYER_ID, SELLER_USER_ID, OrderflowTestCase


class SettlementCaptureBase(OrderflowTestCase):
    def setUp(self):
        super().setUp()
        self.seller_id = self.make_seller(commission_rate="15.00")
        self.product_id = self.make_product(self.seller_id, price="50.00", stock=10)
        self.seller_ref = f"user:{SELLER_USER_ID}"

    def _order(self, order_id: int) -> Order:
        return db.session.get(Order, order_id, populate_existing=True)

    def _new_order(self, **kwargs) -> int:
        res = self.place_order(self.product_id, **kwargs)
        self.assertEqual(res.status_code, 201, res.get_json())
        return int(res.get_json()["order"]["id"])

    def _claim(self, order_id: int, token: str, *, age_seconds: int = 0) -> None:
        Order.query.filter(Order.id == order_id).update(
            {
                Order.capture_claim_token: token,
                Order.capture_claimed_at: datetime.utcnow() - timedelta(seconds=age_seconds),
            },
            synchronize_session=False,
        )
        db.session.commit()


class SettlementCaptureTestCase(SettlementCaptureBase):
    def test_fifty_dollar_sale_credits_seller_forty_seventy_five(self):
        oid = self._new_order()
        self.walk(oid, "confirmed", "preparing", "ready_for_pickup", "picked_up")

        record = RevenueRecord.query.filter_by(order_id=oid).one()
        self.assertEqual(Decimal(str(record.platform_fee)), Decimal("7.50"))
        self.assertEqual(Decimal(str(record.processing_fee)), Decimal("1.75"))
        self.assertEqual(Decimal(str(record.net_amount)), Decimal("40.75"))
        self.assertEqual(wallet_service.get_balance(self.seller_ref), Decimal("40.75"))
        self.assertEqual(wallet_service.get_balance(wallet_service.PLATFORM_ACCOUNT), Decimal("7.50"))

        order = self._order(oid)
        self.assertEqual(Decimal(str(order.net_amount)), Decimal("40.75"))
        self.assertEqual(Decimal(str(order.commission_rate)), Decimal("15.00"))

    def test_every_capture_trigger_settles_once(self):
        oid = self._new_order()
        self.walk(oid, "confirmed", "preparing", "ready_for_pickup", "picked_up")

        res = self.client.post(f"/api/orders/{oid}/capture-payment", headers=self.seller_headers())
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["status"], "already_captured")

        res = self.client.post("/api/orders/auto-capture-payments", json={"hours": 0})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["captured_count"], 0)

        settlement = container.settlement()
        self.assertTrue(settlement.capture(oid).ok)
        self.assertEqual(settlement.recognize_revenue(oid).status, "already_recognized")

        res = self.client.post(f"/api/orders/{oid}/confirm-receipt", headers=self.buyer_headers())
        self.assertEqual(res.status_code, 200, res.get_json())

        self.assertEqual(self.processor.call_count("capture"), 1)
        self.assertEqual(RevenueRecord.query.filter_by(order_id=oid).count(), 1)
        self.assertEqual(wallet_service.get_balance(self.seller_ref), Decimal("40.75"))

    def test_capture_already_done_at_processor_counts_as_success(self):
        oid = self._new_order()
        self.walk(oid, "confirmed", "preparing", "ready_for_pickup")
        self.processor.fail_next("capture", ExternalServiceError.ALREADY_DONE)
        self.walk(oid, "picked_up")
        order = self._order(oid)
        self.assertEqual(order.payment_status, "captured")
        self.assertIsNone(order.capture_claim_token)
        self.assertEqual(RevenueRecord.query.filter_by(order_id=oid).count(), 1)

    def test_failed_capture_is_retried_by_the_sweep(self):
        oid = self._new_order()
        self.walk(oid, "confirmed", "preparing", "ready_for_pickup")
        self.processor.fail_next("capture")
        self.walk(oid, "picked_up")

        order = self._order(oid)
        self.assertEqual(order.status, "picked_up")
        self.assertEqual(order.payment_status, "authorized")
        self.assertIsNone(order.capture_claim_token)
        self.assertIn("retryable", order.last_settlement_error or "")

        res = self.client.post("/api/orders/auto-capture-payments", json={"hours": 0})
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["captured_count"], 1)
        self.assertEqual(body["failed"], 0)

        order = self._order(oid)
        self.assertEqual(order.payment_status, "captured")
        self.assertIsNone(order.last_settlement_error)
        self.assertEqual(RevenueRecord.query.filter_by(order_id=oid).count(), 1)
        self.assertEqual(JobRun.query.filter_by(job_name="auto_capture").count(), 1)

    def test_sweep_skips_recent_orders(self):
        oid = self._new_order()
        self.processor.fail_next("capture")
        self.walk(oid, "confirmed", "preparing", "ready_for_pickup", "picked_up")
        res = self.client.post("/api/orders/auto-capture-payments", json={})
        self.assertEqual(res.get_json()["captured_count"], 0)
        self.assertEqual(self._order(oid).payment_status, "authorized")

    def test_manual_capture_before_delivery_defers_revenue(self):
        oid = self._new_order()
        res = self.client.post(f"/api/orders/{oid}/capture-payment", headers=self.admin_headers())
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["status"], "captured")
        self.assertEqual(RevenueRecord.query.filter_by(order_id=oid).count(), 0)

        self.fund(f"user:{BUYER_ID}", "50.00")
        wallet_oid = self._new_order(payment_method="internal_wallet")
        res = self.client.post(f"/api/orders/{wallet_oid}/capture-payment", headers=self.seller_headers())
        self.assertEqual(res.get_json()["status"], "already_captured")

    def test_capture_endpoint_requires_seller_or_admin(self):
        oid = self._new_order()
        res = self.client.post(f"/api/orders/{oid}/capture-payment", headers=self.buyer_headers())
        self.assertEqual(res.status_code, 403)

    def test_refunded_order_is_not_capturable(self):
        oid = self._new_order()
        self.set_status(oid, "declined", reason="no stock")
        result = container.settlement().capture(oid)
        self.assertTrue(result.ok)
        self.assertEqual(result.status, "already_captured")
        self.assertEqual(self.processor.call_count("capture"), 0)


class CaptureContentionTestCase(SettlementCaptureBase):
    def test_concurrent_capture_calls_processor_once(self):
        oid = self._new_order()
        self.walk(oid, "confirmed", "preparing", "ready_for_pickup")
        settlement = container.settlement()
        racing = []
        original = self.processor.capture

        def capture_with_rival(hold_ref):
            racing.append(settlement.capture(oid))
            return original(hold_ref)

        with patch.object(self.processor, "capture", side_effect=capture_with_rival):
            result = settlement.capture(oid)

        self.assertEqual(result.status, "captured")
        self.assertEqual(len(racing), 1)
        self.assertTrue(racing[0].ok)
        self.assertEqual(racing[0].code, "capture_in_progress")
        self.assertEqual(self.processor.call_count("capture"), 1)
        self.assertEqual(self._order(oid).payment_status, "captured")

    def test_live_claim_blocks_and_stale_claim_is_taken_over(self):
        oid = self._new_order()
        self.walk(oid, "confirmed", "preparing", "ready_for_pickup")
        settlement = container.settlement()

        self._claim(oid, "worker-a")
        blocked = settlement.capture(oid)
        self.assertEqual(blocked.code, "capture_in_progress")
        self.assertEqual(self.processor.call_count("capture"), 0)

        self._claim(oid, "worker-a", age_seconds=3600)
        taken = settlement.capture(oid)
        self.assertEqual(taken.status, "captured")
        self.assertEqual(self.processor.call_count("capture"), 1)
        self.assertIsNone(self._order(oid).capture_claim_token)

        # The original claimant finishing late must not write a second capture.
        late = settlement._finish_capture(oid, "worker-a")
        self.assertEqual(late.code, "capture_claim_lost")
        self.assertEqual(self.processor.call_count("capture"), 1)

    def test_revenue_keeps_commission_rate_snapshotted_at_capture(self):
        oid = self._new_order()
        res = self.client.post(f"/api/orders/{oid}/capture-payment", headers=self.admin_headers())
        self.assertEqual(res.get_json()["status"], "captured")

        seller = db.session.get(SellerAccount, self.seller_id)
        seller.commission_rate = "30.00"
        db.session.commit()

        self.walk(oid, "confirmed", "preparing", "ready_for_pickup", "picked_up", "completed")
        record = RevenueRecord.query.filter_by(order_id=oid).one()
        self.assertEqual(Decimal(str(record.commission_rate)), Decimal("15.00"))
        self.assertEqual(Decimal(str(record.platform_fee)), Decimal("7.50"))
        self.assertEqual(Decimal(str(record.net_amount)), Decimal("40.75"))
        self.assertEqual(wallet_service.get_balance(self.seller_ref), Decimal("40.75"))


class CancelDuringCaptureTestCase(SettlementCaptureBase):
    buyer_ref = f"user:{BUYER_ID}"

    def _cancel(self, order_id: int):
        res = self.client.put(f"/api/orders/{order_id}/cancel", json={}, headers=self.buyer_headers())
        self.assertEqual(res.status_code, 200, res.get_json())
        return res.get_json()["effects"]["refund"]

    def test_capture_finishing_after_cancel_refunds_buyer(self):
        oid = self._new_order()
        self._claim(oid, "in-flight")

        refund = self._cancel(oid)
        self.assertFalse(refund["ok"])
        self.assertEqual(refund["code"], "capture_in_progress")
        order = self._order(oid)
        self.assertEqual(order.status, "cancelled")
        self.assertIn("capture_in_progress", order.last_settlement_error or "")

        result = container.settlement()._finish_capture(oid, "in-flight")
        self.assertTrue(result.ok)
        self.assertEqual(result.data["refund"]["status"], "refunded")

        order = self._order(oid)
        self.assertEqual(order.status, "cancelled")
        self.assertEqual(order.payment_status, "refunded")
        self.assertIsNone(order.last_settlement_error)
        self.assertEqual(wallet_service.get_balance(self.buyer_ref), Decimal("50.00"))
        self.assertEqual(RevenueRecord.query.filter_by(order_id=oid).count(), 0)

    def test_cancelled_order_cannot_be_claimed_for_capture(self):
        oid = self._new_order()
        self._cancel(oid)
        Order.query.filter(Order.id == oid).update({Order.payment_status: "authorized"}, synchronize_session=False)
        db.session.commit()

        result = container.settlement().capture(oid)
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "not_capturable")
        self.assertIsNone(self._order(oid).capture_claim_token)
        self.assertEqual(self.processor.call_count("capture"), 0)

    def test_sweep_releases_hold_left_by_failed_capture(self):
        oid = self._new_order()
        self._claim(oid, "in-flight")
        self._cancel(oid)
        # The in-flight capture failed and gave its claim back.
        Order.query.filter(Order.id == oid).update(
            {Order.capture_claim_token: None, Order.capture_claimed_at: None},
            synchronize_session=False,
        )
        db.session.commit()

        res = self.client.post("/api/orders/auto-capture-payments", json={"hours": 0})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["refunds_retried"], 1)
        order = self._order(oid)
        self.assertEqual(order.payment_status, "refunded")
        self.assertEqual(order.hold_status, "released")
        self.assertEqual(self.processor.call_count("capture"), 0)


class RefundRetryTestCase(SettlementCaptureBase):
    def test_failed_wallet_refund_is_retried_by_the_sweep(self):
        buyer_ref = f"user:{BUYER_ID}"
        self.fund(buyer_ref, "50.00")
        oid = self._new_order(payment_method="internal_wallet")
        self.assertEqual(wallet_service.get_balance(buyer_ref), Decimal("0.00"))

        with patch("orderflow.services.wallet_service.credit", side_effect=RuntimeError("db blip")):
            res = self.set_status(oid, "declined", reason="out of walnut")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["effects"]["refund"]["code"], "refund_failed")
        order = self._order(oid)
        self.assertEqual(order.status, "declined")
        self.assertEqual(order.payment_status, "paid")
        self.assertIn("refund_failed", order.last_settlement_error or "")

        res = self.client.post("/api/orders/auto-capture-payments", json={"hours": 0})
        body = res.get_json()
        self.assertEqual(body["refunds_retried"], 1)
        self.assertEqual(body["failed"], 0)

        order = self._order(oid)
        self.assertEqual(order.payment_status, "refunded")
        self.assertIsNone(order.last_settlement_error)
        self.assertEqual(wallet_service.get_balance(buyer_ref), Decimal("50.00"))

        again = self.client.post("/api/orders/auto-capture-payments", json={"hours": 0}).get_json()
        self.assertEqual(again["refunds_retried"], 0)
        self.assertEqual(wallet_service.get_balance(buyer_ref), Decimal("50.00"))


class AutoCaptureAuthTestCase(OrderflowTestCase):
    config = {"CRON_SECRET": "cron-test-secret"}

    def test_sweep_requires_bearer_secret(self):
        res = self.client.post("/api/orders/auto-capture-payments", json={})
        self.assertEqual(res.status_code, 401)
        res = self.client.post(
            "/api/orders/auto-capture-payments",
            json={},
            headers={"Authorization": "Bearer wrong"},
        )
        self.assertEqual(res.status_code, 401)
        res = self.client.post(
            "/api/orders/auto-capture-payments",
            json={},
            headers={"Authorization": "Bearer cron-test-secret"},
        )
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["ok"])


class ProductionAutoCaptureAuthTestCase(OrderflowTestCase):
    config = {"IS_PRODUCTION": True, "CRON_SECRET": ""}

    def test_unset_secret_closes_the_sweep_in_production(self):
        res = self.client.post("/api/orders/auto-capture-payments", json={})
        self.assertEqual(res.status_code, 401)


if __name__ == "__main__":
    unittest.main()

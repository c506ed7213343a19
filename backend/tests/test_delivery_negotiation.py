from __future__ import annotations

import unittest
from decimal import Decimal

from orderflow.extensions import db
from orderflow.models import Order, Product, RevenueRecord, WalletTransaction
from orderflow.services import container, wallet_service

from order_fixtures import BUYER_ID, OTHER_SELLER_USER_ID, SELLER_USER_ID, OrderflowTestCase


class DeliveryNegotiationBase(OrderflowTestCase):
    def setUp(self):
        super().setUp()
        self.seller_id = self.make_seller()
        self.product_id = self.make_product(self.seller_id, price="50.00", stock=5)
        self.buyer_ref = f"user:{BUYER_ID}"
        self.seller_ref = f"user:{SELLER_USER_ID}"

    def _order(self, order_id: int) -> Order:
        return db.session.get(Order, order_id, populate_existing=True)

    def _ready_order(self) -> int:
        res = self.place_order(self.product_id, delivery_method="professionalDelivery")
        self.assertEqual(res.status_code, 201, res.get_json())
        oid = int(res.get_json()["order"]["id"])
        self.walk(oid, "confirmed", "preparing")
        return oid

    def _respond(self, order_id: int, response: str, headers=None):
        return self.client.post(
            f"/api/orders/{order_id}/artisan-cost-response",
            json={"response": response},
            headers=self.seller_headers() if headers is None else headers,
        )


class DeliveryRefundTestCase(DeliveryNegotiationBase):
    def test_cheaper_courier_refunds_buyer_and_books(self):
        oid = self._ready_order()
        self.courier.next_fee = Decimal("8.00")

        res = self.set_status(oid, "ready_for_delivery")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["effects"]["delivery"]["status"], "booked")

        order = self._order(oid)
        self.assertEqual(order.status, "out_for_delivery")
        self.assertIsNotNone(order.courier_delivery_id)
        self.assertEqual(Decimal(str(order.actual_delivery_fee)), Decimal("8.00"))
        self.assertEqual(Decimal(str(order.delivery_refund_amount)), Decimal("4.00"))
        self.assertEqual(wallet_service.get_balance(self.buyer_ref), Decimal("4.00"))
        rows = WalletTransaction.query.filter_by(related_order_id=oid, type="delivery_refund").all()
        self.assertEqual(len(rows), 1)
        self.assertIn("delivery_refund_issued", self.notifications.events_for(self.buyer_ref))

    def test_buyer_hears_ready_before_out_for_delivery(self):
        oid = self._ready_order()
        self.walk(oid, "ready_for_delivery")
        self.assertEqual(self._order(oid).status, "out_for_delivery")
        events = self.notifications.events_for(self.buyer_ref)
        self.assertLess(events.index("order_ready_for_delivery"), events.index("order_out_for_delivery"))

    def test_refund_below_threshold_is_kept(self):
        self.app.config["DELIVERY_REFUND_THRESHOLD"] = "5.00"
        oid = self._ready_order()
        self.courier.next_fee = Decimal("8.00")
        self.walk(oid, "ready_for_delivery")
        order = self._order(oid)
        self.assertEqual(order.status, "out_for_delivery")
        self.assertIsNone(order.delivery_refund_amount)
        self.assertEqual(wallet_service.get_balance(self.buyer_ref), Decimal("0.00"))

    def test_failed_booking_is_retried_by_the_sweep(self):
        oid = self._ready_order()
        self.courier.fail_next("create_delivery")
        res = self.set_status(oid, "ready_for_delivery")
        self.assertEqual(res.status_code, 200)
        self.assertFalse(res.get_json()["effects"]["delivery"]["ok"])

        order = self._order(oid)
        self.assertEqual(order.status, "ready_for_delivery")
        self.assertIsNone(order.courier_delivery_id)
        self.assertIsNone(order.courier_status)

        summary = container.lifecycle().negotiator.retry_stalled_deliveries()
        self.assertEqual(summary["outcomes"], {"booked": 1})
        self.assertEqual(self._order(oid).status, "out_for_delivery")
        self.assertEqual(self.courier.call_count("create_delivery"), 2)


class CostAbsorptionTestCase(DeliveryNegotiationBase):
    def _pending_absorption(self) -> int:
        oid = self._ready_order()
        self.courier.next_fee = Decimal("15.00")
        res = self.set_status(oid, "ready_for_delivery")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["effects"]["delivery"]["status"], "absorption_required")
        return oid

    def test_costlier_courier_asks_seller_to_absorb(self):
        oid = self._pending_absorption()
        order = self._order(oid)
        self.assertEqual(order.status, "ready_for_delivery")
        self.assertTrue(order.cost_absorption_required)
        self.assertEqual(order.cost_absorption_response, "pending")
        self.assertEqual(Decimal(str(order.cost_absorption_excess)), Decimal("3.00"))
        self.assertIsNone(order.courier_delivery_id)
        self.assertIn("delivery_cost_absorption_required", self.notifications.events_for(self.seller_ref))

    def test_accepted_absorption_books_and_reduces_revenue(self):
        oid = self._pending_absorption()
        res = self._respond(oid, "accepted")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["status"], "booked")

        order = self._order(oid)
        self.assertEqual(order.status, "out_for_delivery")
        self.assertEqual(order.cost_absorption_response, "accepted")
        self.assertEqual(Decimal(str(order.actual_delivery_fee)), Decimal("15.00"))

        self.walk(oid, "delivered")
        record = RevenueRecord.query.filter_by(order_id=oid).one()
        self.assertEqual(Decimal(str(record.absorbed_delivery_cost)), Decimal("3.00"))
        self.assertEqual(Decimal(str(record.platform_fee)), Decimal("7.50"))
        self.assertEqual(Decimal(str(record.net_amount)), Decimal("37.75"))
        self.assertEqual(wallet_service.get_balance(self.seller_ref), Decimal("37.75"))

    def test_declined_absorption_cancels_and_restores(self):
        oid = self._pending_absorption()
        res = self._respond(oid, "declined")
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["status"], "cancelled")

        order = self._order(oid)
        self.assertEqual(order.status, "cancelled")
        self.assertEqual(order.payment_status, "refunded")
        self.assertEqual(order.hold_status, "released")
        self.assertEqual(db.session.get(Product, self.product_id, populate_existing=True).stock, 5)
        self.assertEqual(self.courier.call_count("create_delivery"), 0)
        self.assertEqual(self.processor.call_count("capture"), 0)

    def test_response_is_validated(self):
        oid = self._ready_order()
        self.assertEqual(self._respond(oid, "accepted").status_code, 409)

        self.courier.next_fee = Decimal("15.00")
        self.walk(oid, "ready_for_delivery")
        self.assertEqual(self._respond(oid, "maybe").status_code, 400)
        self.make_seller(OTHER_SELLER_USER_ID)
        res = self._respond(oid, "accepted", headers=self.seller_headers(OTHER_SELLER_USER_ID))
        self.assertEqual(res.status_code, 403)

        self.assertEqual(self._respond(oid, "accepted").status_code, 200)
        self.assertEqual(self._respond(oid, "declined").status_code, 409)

    def test_unanswered_request_expires_to_decline(self):
        oid = self._pending_absorption()
        summary = container.lifecycle().negotiator.expire_stale_cost_responses(timeout_seconds=0)
        self.assertEqual(summary["expired"], 1)
        order = self._order(oid)
        self.assertEqual(order.cost_absorption_response, "declined")
        self.assertEqual(order.status, "cancelled")


class AutoApproveAbsorptionTestCase(DeliveryNegotiationBase):
    config = {"DELIVERY_AUTO_APPROVE_THRESHOLD": "5.00"}

    def test_small_overrun_is_absorbed_without_asking(self):
        oid = self._ready_order()
        self.courier.next_fee = Decimal("15.00")
        self.walk(oid, "ready_for_delivery")
        order = self._order(oid)
        self.assertEqual(order.status, "out_for_delivery")
        self.assertEqual(order.cost_absorption_response, "accepted")
        self.assertEqual(Decimal(str(order.cost_absorption_excess)), Decimal("3.00"))
        self.assertNotIn("delivery_cost_absorption_required", self.notifications.events_for(self.seller_ref))


class AbsorptionLimitTestCase(DeliveryNegotiationBase):
    config = {"DELIVERY_ABSORPTION_LIMIT": "2.00"}

    def test_overrun_beyond_limit_cancels(self):
        oid = self._ready_order()
        self.courier.next_fee = Decimal("15.00")
        self.walk(oid, "ready_for_delivery")
        order = self._order(oid)
        self.assertEqual(order.status, "cancelled")
        self.assertEqual(order.cost_absorption_response, "declined")
        self.assertEqual(order.payment_status, "refunded")


if __name__ == "__main__":
    unittest.main()

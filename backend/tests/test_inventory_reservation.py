from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from orderflow.errors import ValidationError
from orderflow.extensions import db
from orderflow.models import Product
from orderflow.services import inventory_service
from orderflow.services.inventory_service import advance_period

from order_fixtures import OrderflowTestCase


class InventoryReservationTestCase(OrderflowTestCase):
    def setUp(self):
        super().setUp()
        self.seller_id = self.make_seller()

    def _product(self, product_id: int) -> Product:
        return db.session.get(Product, product_id, populate_existing=True)

    def test_ready_to_ship_reserve_and_restore_are_inverse(self):
        pid = self.make_product(self.seller_id, stock=3)
        inventory_service.reserve(pid, 2)
        p = self._product(pid)
        self.assertEqual((p.stock, p.available_quantity, p.status), (1, 1, "active"))

        inventory_service.reserve(pid, 1)
        p = self._product(pid)
        self.assertEqual((p.stock, p.available_quantity, p.status), (0, 0, "out_of_stock"))

        inventory_service.restore(pid, 1)
        inventory_service.restore(pid, 2)
        p = self._product(pid)
        self.assertEqual((p.stock, p.available_quantity, p.status), (3, 3, "active"))

    def test_reserve_beyond_stock_fails_without_change(self):
        pid = self.make_product(self.seller_id, stock=1)
        with self.assertRaises(ValidationError) as ctx:
            inventory_service.reserve(pid, 2)
        self.assertEqual(ctx.exception.code, "INSUFFICIENT_INVENTORY")
        db.session.rollback()
        self.assertEqual(self._product(pid).stock, 1)

    def test_made_to_order_uses_capacity(self):
        pid = self.make_product(
            self.seller_id,
            stock=0,
            fulfillment_type="made_to_order",
            remaining_capacity=2,
            total_capacity=2,
            capacity_period="weekly",
        )
        inventory_service.reserve(pid, 2)
        p = self._product(pid)
        self.assertEqual(p.remaining_capacity, 0)
        self.assertEqual(p.status, "out_of_stock")
        inventory_service.restore(pid, 2)
        self.assertEqual(self._product(pid).remaining_capacity, 2)

    def test_scheduled_order_uses_available_quantity(self):
        pid = self.make_product(
            self.seller_id,
            stock=0,
            available_quantity=4,
            fulfillment_type="scheduled_order",
            total_production_quantity=4,
            schedule_type="daily",
        )
        inventory_service.reserve(pid, 3)
        self.assertEqual(self._product(pid).available_quantity, 1)

    def test_draft_products_cannot_be_reserved(self):
        pid = self.make_product(self.seller_id, stock=3, status="draft")
        with self.assertRaises(ValidationError):
            inventory_service.reserve(pid, 1)

    def test_reserve_items_is_all_or_nothing(self):
        first = self.make_product(self.seller_id, stock=5)
        second = self.make_product(self.seller_id, stock=1, name="Linen napkins")
        with self.assertRaises(ValidationError):
            inventory_service.reserve_items([(first, 2), (second, 3)])
        self.assertEqual(self._product(first).stock, 5)
        self.assertEqual(self._product(second).stock, 1)

    def test_restoration_refills_elapsed_periods(self):
        now = datetime.utcnow()
        mto = self.make_product(
            self.seller_id,
            stock=0,
            fulfillment_type="made_to_order",
            status="out_of_stock",
            remaining_capacity=0,
            total_capacity=6,
            capacity_period="daily",
            last_capacity_restore=now - timedelta(days=2),
        )
        fresh = self.make_product(
            self.seller_id,
            stock=0,
            fulfillment_type="made_to_order",
            remaining_capacity=1,
            total_capacity=6,
            capacity_period="weekly",
            last_capacity_restore=now - timedelta(days=1),
        )
        scheduled = self.make_product(
            self.seller_id,
            stock=0,
            available_quantity=0,
            fulfillment_type="scheduled_order",
            status="out_of_stock",
            total_production_quantity=10,
            schedule_type="weekly",
            next_available_date=now - timedelta(days=15),
        )

        result = inventory_service.run_inventory_restoration(now=now)
        self.assertEqual(result["capacity_restored"], 1)
        self.assertEqual(result["schedules_restored"], 1)

        p = self._product(mto)
        self.assertEqual((p.remaining_capacity, p.status), (6, "active"))
        self.assertEqual(self._product(fresh).remaining_capacity, 1)
        s = self._product(scheduled)
        self.assertEqual((s.available_quantity, s.status), (10, "active"))
        self.assertGreater(s.next_available_date, now)

    def test_advance_period_clamps_month_end(self):
        self.assertEqual(advance_period(datetime(2026, 1, 31), "monthly"), datetime(2026, 2, 28))
        self.assertEqual(advance_period(datetime(2026, 1, 1), "weekly"), datetime(2026, 1, 8))
        self.assertIsNone(advance_period(datetime(2026, 1, 1), "hourly"))


if __name__ == "__main__":
    unittest.main()

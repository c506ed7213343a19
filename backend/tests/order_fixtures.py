from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from orderflow import create_app
from orderflow.extensions import db
from orderflow.integrations.courier.mock_provider import MockCourierProvider
from orderflow.integrations.notifications.mock_provider import MockNotificationProvider
from orderflow.integrations.payments.mock_provider import MockPaymentProcessor
from orderflow.models import Product, SellerAccount
from orderflow.services import wallet_service
from orderflow.utils.auth import create_access_token

BUYER_ID = 101
SELLER_USER_ID = 202
OTHER_SELLER_USER_ID = 303
ADMIN_ID = 909


class OrderflowTestCase(unittest.TestCase):
    """Fresh in-memory database and mock collaborators per test."""

    config: dict = {}

    def setUp(self):
        db_uri = "sqlite:///:memory:"
        self._env = patch.dict(
            os.environ,
            {
                "SQLALCHEMY_DATABASE_URI": db_uri,
                "DATABASE_URL": db_uri,
                "ORDERFLOW_ENV": "test",
                "SENTRY_DSN": "",
                "CRON_SECRET": "",
                "COURIER_WEBHOOK_SECRET": "",
            },
            clear=False,
        )
        self._env.start()
        self.processor = MockPaymentProcessor()
        self.courier = MockCourierProvider(fee="10.00")
        self.notifications = MockNotificationProvider()
        self.app = create_app(
            dict(self.config),
            payment_processor=self.processor,
            courier=self.courier,
            notifier=self.notifications,
        )
        self.app.config.update(TESTING=True)
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.create_all()
        self.client = self.app.test_client()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.ctx.pop()
        self._env.stop()

    # data

    def make_seller(self, user_id: int = SELLER_USER_ID, *, commission_rate="15.00", payout_destination=None, personal_delivery_fee="5.00") -> int:
        seller = SellerAccount(
            user_id=user_id,
            display_name=f"Seller {user_id}",
            commission_rate=commission_rate,
            payout_destination=payout_destination,
            personal_delivery_fee=personal_delivery_fee,
            pickup_address="12 Workshop Lane",
            pickup_lat=43.6532,
            pickup_lng=-79.3832,
            phone="+14165550100",
        )
        db.session.add(seller)
        db.session.commit()
        return int(seller.id)

    def make_product(self, seller_id: int, *, price="50.00", stock=5, fulfillment_type="ready_to_ship", **extra) -> int:
        product = Product(
            seller_id=seller_id,
            name=extra.pop("name", "Walnut serving board"),
            price=price,
            fulfillment_type=fulfillment_type,
            status=extra.pop("status", "active"),
            stock=stock,
            available_quantity=extra.pop("available_quantity", stock),
            **extra,
        )
        db.session.add(product)
        db.session.commit()
        return int(product.id)

    def fund(self, owner_ref: str, amount) -> None:
        wallet_service.credit(owner_ref, amount, type="top_up", description="test top up")

    # http

    def auth(self, user_id: int, role: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}

    def buyer_headers(self) -> dict:
        return self.auth(BUYER_ID, "buyer")

    def seller_headers(self, user_id: int = SELLER_USER_ID) -> dict:
        return self.auth(user_id, "seller")

    def admin_headers(self) -> dict:
        return self.auth(ADMIN_ID, "admin")

    def place_order(self, product_id: int, *, quantity=1, payment_method="processor_card", delivery_method="pickup", headers=None, **extra):
        payload = {
            "items": [{"product_id": product_id, "quantity": quantity}],
            "payment_method": payment_method,
            "delivery_method": delivery_method,
        }
        if delivery_method != "pickup":
            payload["delivery_address"] = {"address": "99 Queen St W", "lat": 43.6525, "lng": -79.3839}
        payload.update(extra)
        return self.client.post("/api/orders", json=payload, headers=self.buyer_headers() if headers is None else headers)

    def set_status(self, order_id: int, status: str, *, reason=None, headers=None):
        body = {"status": status}
        if reason is not None:
            body["reason"] = reason
        return self.client.put(
            f"/api/orders/{order_id}/status",
            json=body,
            headers=self.seller_headers() if headers is None else headers,
        )

    def walk(self, order_id: int, *statuses: str) -> None:
        for status in statuses:
            res = self.set_status(order_id, status)
            self.assertEqual(res.status_code, 200, res.get_json())

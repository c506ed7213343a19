from __future__ import annotations

import io
import json
import unittest
from contextlib import redirect_stdout
from decimal import Decimal
from unittest.mock import patch

from orderflow.errors import InsufficientFunds, ValidationError
from orderflow.extensions import db
from orderflow.models import WalletAccount, WalletTransaction
from orderflow.services import wallet_service
from orderflow.services.reconciliation_service import recompute_wallet_balances

from ops import reconcile_ledger
from order_fixtures import BUYER_ID, OrderflowTestCase


class WalletLedgerTestCase(OrderflowTestCase):
    def _ledger_sum(self, owner_ref: str) -> Decimal:
        acct = WalletAccount.query.filter_by(owner_ref=owner_ref).first()
        rows = WalletTransaction.query.filter_by(account_id=int(acct.id)).all()
        return sum((Decimal(str(r.amount)) for r in rows), Decimal("0.00"))

    def test_credit_and_debit_keep_balance_equal_to_ledger(self):
        ref = "user:1"
        wallet_service.credit(ref, "100.00", type="top_up")
        wallet_service.debit(ref, "35.55", type="order_payment")
        wallet_service.credit(ref, "0.05", type="adjustment")

        self.assertEqual(wallet_service.get_balance(ref), Decimal("64.50"))
        self.assertEqual(self._ledger_sum(ref), Decimal("64.50"))

        rows = wallet_service.list_transactions(ref)
        self.assertEqual([r.type for r in rows], ["adjustment", "order_payment", "top_up"])
        debit_row = rows[1]
        self.assertEqual(Decimal(str(debit_row.amount)), Decimal("-35.55"))
        self.assertEqual(Decimal(str(debit_row.balance_before)), Decimal("100.00"))
        self.assertEqual(Decimal(str(debit_row.balance_after)), Decimal("64.45"))

    def test_debit_beyond_balance_is_rejected(self):
        ref = "user:2"
        wallet_service.credit(ref, "10.00", type="top_up")
        with self.assertRaises(InsufficientFunds):
            wallet_service.debit(ref, "10.01", type="order_payment")
        db.session.rollback()
        self.assertEqual(wallet_service.get_balance(ref), Decimal("10.00"))
        self.assertEqual(len(wallet_service.list_transactions(ref)), 1)

    def test_debit_to_exactly_zero(self):
        ref = "user:3"
        wallet_service.credit(ref, "19.99", type="top_up")
        wallet_service.debit(ref, "19.99", type="order_payment")
        self.assertEqual(wallet_service.get_balance(ref), Decimal("0.00"))

    def test_non_positive_amounts_are_rejected(self):
        with self.assertRaises(ValidationError):
            wallet_service.credit("user:4", "0", type="top_up")
        with self.assertRaises(ValidationError):
            wallet_service.debit("user:4", "-5", type="order_payment")

    def test_transfer_moves_funds_between_accounts(self):
        wallet_service.credit("user:5", "40.00", type="top_up")
        out_txn, in_txn = wallet_service.transfer("user:5", "user:6", "15.00", type="gift")
        self.assertEqual(out_txn.type, "gift_out")
        self.assertEqual(in_txn.type, "gift_in")
        self.assertEqual(wallet_service.get_balance("user:5"), Decimal("25.00"))
        self.assertEqual(wallet_service.get_balance("user:6"), Decimal("15.00"))

    def test_failed_transfer_credit_is_compensated(self):
        wallet_service.credit("user:7", "40.00", type="top_up")
        with self.assertRaises(ValidationError):
            wallet_service.transfer("user:7", "", "15.00")
        self.assertEqual(wallet_service.get_balance("user:7"), Decimal("40.00"))
        types = [r.type for r in wallet_service.list_transactions("user:7")]
        self.assertIn("transfer_reversal", types)
        self.assertEqual(self._ledger_sum("user:7"), Decimal("40.00"))

    def test_reconciliation_reports_drift(self):
        wallet_service.credit("user:8", "20.00", type="top_up")
        summary = recompute_wallet_balances()
        self.assertTrue(summary["ok"])
        self.assertEqual(summary["drift_count"], 0)

        WalletAccount.query.filter_by(owner_ref="user:8").update({WalletAccount.balance: Decimal("25.00")})
        db.session.commit()
        summary = recompute_wallet_balances()
        self.assertFalse(summary["ok"])
        self.assertEqual(summary["drift_count"], 1)
        self.assertEqual(summary["drift_items"][0]["owner_ref"], "user:8")
        self.assertAlmostEqual(summary["drift_items"][0]["drift"], 5.0)

    def test_reconcile_command_exits_nonzero_on_drift(self):
        wallet_service.credit("user:9", "20.00", type="top_up")
        out = io.StringIO()
        with patch.object(reconcile_ledger, "_bootstrap_app"), redirect_stdout(out):
            code = reconcile_ledger.main(["--missing-revenue"])
        self.assertEqual(code, 0)
        report = json.loads(out.getvalue())
        self.assertEqual(report["orders_missing_revenue"], [])

        WalletAccount.query.filter_by(owner_ref="user:9").update({WalletAccount.balance: Decimal("1.00")})
        db.session.commit()
        with patch.object(reconcile_ledger, "_bootstrap_app"), redirect_stdout(io.StringIO()):
            self.assertEqual(reconcile_ledger.main([]), 2)

    def test_wallet_endpoints_require_auth_and_list_rows(self):
        res = self.client.get("/api/wallet")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["error"], "UNAUTHORIZED")

        self.fund(f"user:{BUYER_ID}", "12.00")
        res = self.client.get("/api/wallet", headers=self.buyer_headers())
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["balance"], 12.0)

        res = self.client.get("/api/wallet/transactions", headers=self.buyer_headers())
        self.assertEqual(res.status_code, 200)
        items = res.get_json()["items"]
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["type"], "top_up")


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import argparse
import json
import sys


def _bootstrap_app():
    from orderflow import create_app

    app = create_app()
    app.app_context().push()
    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description="Recompute wallet balances from the ledger and report drift.")
    parser.add_argument("--tolerance", default="0.01", help="Allowed drift per account.")
    parser.add_argument("--missing-revenue", action="store_true", help="Also list completed orders without revenue.")
    args = parser.parse_args(argv)

    _bootstrap_app()
    from orderflow.services.reconciliation_service import orders_missing_revenue, recompute_wallet_balances

    summary = recompute_wallet_balances(tolerance=args.tolerance)
    if args.missing_revenue:
        summary["orders_missing_revenue"] = orders_missing_revenue()

    print(json.dumps(summary, indent=2))
    return 0 if summary.get("ok") else 2


if __name__ == "__main__":
    sys.exit(main())

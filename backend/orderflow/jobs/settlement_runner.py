from __future__ import annotations

from datetime import datetime

from orderflow.extensions import db
from orderflow.services import container, inventory_service
from orderflow.utils.job_runs import record_job_run


def _now():
    return datetime.utcnow()


def run_auto_capture(*, hours: int | None = None, limit: int = 100) -> dict:
    return container.settlement().run_auto_capture(hours=hours, limit=max(1, min(int(limit), 500)))


def expire_cost_responses(*, limit: int = 100) -> dict:
    return container.lifecycle().negotiator.expire_stale_cost_responses(limit=max(1, min(int(limit), 500)))


def retry_stalled_deliveries(*, limit: int = 50) -> dict:
    return container.lifecycle().negotiator.retry_stalled_deliveries(limit=max(1, min(int(limit), 500)))


def poll_courier_deliveries(*, limit: int = 100) -> dict:
    return container.lifecycle().negotiator.poll_active_deliveries(limit=max(1, min(int(limit), 500)))


def run_inventory_restoration() -> dict:
    started = _now()
    try:
        result = inventory_service.run_inventory_restoration(now=started)
    except Exception as exc:
        db.session.rollback()
        record_job_run(job_name="inventory_restoration", ok=False, started_at=started, error=str(exc))
        raise
    record_job_run(
        job_name="inventory_restoration",
        ok=True,
        started_at=started,
        processed=int(result.get("processed") or 0),
    )
    return result


def execute_payout_transfer(transfer_id: int) -> dict:
    return container.settlement().execute_payout_transfer(int(transfer_id)).to_dict()

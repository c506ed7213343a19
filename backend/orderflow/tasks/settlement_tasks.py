from __future__ import annotations

import json
import os
import time
from datetime import datetime

from celery import shared_task
from flask import current_app


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    try:
        current_app.logger.info(json.dumps(payload, default=str))
    except Exception:
        pass


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _env_limit(name: str, default: int) -> int:
    try:
        value = int((os.getenv(name) or str(default)).strip() or default)
    except ValueError:
        value = default
    return max(1, min(value, 500))


def _run_sweep(task, task_name: str, fn, *, trace_id: str = "", **kwargs):
    started = time.perf_counter()
    try:
        result = fn(**kwargs)
        _task_log(task_name, status="ok" if bool(result.get("ok")) else "failed", started_at=started, trace_id=trace_id, **kwargs)
        return result
    except Exception as exc:
        if int(task.request.retries or 0) < int(task.max_retries or 0):
            countdown = _retry_countdown(int(task.request.retries or 0))
            _task_log(task_name, status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown)
            raise task.retry(exc=exc, countdown=countdown)
        _task_log(task_name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise


@shared_task(bind=True, name="orderflow.tasks.settlement_tasks.run_auto_capture_sweep", max_retries=3)
def run_auto_capture_sweep(self, *, trace_id: str = ""):
    from orderflow.jobs.settlement_runner import run_auto_capture

    return _run_sweep(self, "run_auto_capture_sweep", run_auto_capture, trace_id=trace_id, limit=_env_limit("AUTO_CAPTURE_LIMIT", 100))


@shared_task(bind=True, name="orderflow.tasks.settlement_tasks.expire_cost_responses", max_retries=3)
def expire_cost_responses(self, *, trace_id: str = ""):
    from orderflow.jobs.settlement_runner import expire_cost_responses as run

    return _run_sweep(self, "expire_cost_responses", run, trace_id=trace_id)


@shared_task(bind=True, name="orderflow.tasks.settlement_tasks.retry_stalled_deliveries", max_retries=3)
def retry_stalled_deliveries(self, *, trace_id: str = ""):
    from orderflow.jobs.settlement_runner import retry_stalled_deliveries as run

    return _run_sweep(self, "retry_stalled_deliveries", run, trace_id=trace_id)


@shared_task(bind=True, name="orderflow.tasks.settlement_tasks.poll_courier_deliveries", max_retries=3)
def poll_courier_deliveries(self, *, trace_id: str = ""):
    from orderflow.jobs.settlement_runner import poll_courier_deliveries as run

    return _run_sweep(self, "poll_courier_deliveries", run, trace_id=trace_id)


@shared_task(bind=True, name="orderflow.tasks.settlement_tasks.run_inventory_restoration", max_retries=3)
def run_inventory_restoration(self, *, trace_id: str = ""):
    from orderflow.jobs.settlement_runner import run_inventory_restoration as run

    return _run_sweep(self, "run_inventory_restoration", run, trace_id=trace_id)


@shared_task(bind=True, name="orderflow.tasks.settlement_tasks.execute_payout_transfer", max_retries=6)
def execute_payout_transfer_task(self, transfer_id: int, *, trace_id: str = ""):
    started = time.perf_counter()
    from orderflow.jobs.settlement_runner import execute_payout_transfer

    result = execute_payout_transfer(int(transfer_id))
    if result.get("ok"):
        _task_log("execute_payout_transfer", status="ok", started_at=started, trace_id=trace_id, transfer_id=transfer_id)
        return result
    if result.get("kind") == "retryable" and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log(
            "execute_payout_transfer",
            status="retrying",
            started_at=started,
            trace_id=trace_id,
            transfer_id=transfer_id,
            detail=str(result.get("message") or ""),
            countdown=countdown,
        )
        raise self.retry(exc=RuntimeError(str(result.get("code") or "transfer_failed")), countdown=countdown)
    _task_log(
        "execute_payout_transfer",
        status="failed",
        started_at=started,
        trace_id=trace_id,
        transfer_id=transfer_id,
        detail=str(result.get("message") or ""),
    )
    return result

from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry


_SIGNALS_BOUND = False


def _broker_url() -> str:
    return (
        (os.getenv("CELERY_BROKER_URL") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or "redis://localhost:6379/0"
    )


def _result_backend(broker_url: str) -> str:
    return (
        (os.getenv("CELERY_RESULT_BACKEND") or "").strip()
        or (os.getenv("REDIS_URL") or "").strip()
        or broker_url
    )


def _interval_seconds(name: str, default: int) -> int:
    raw = (os.getenv(name) or str(default)).strip()
    try:
        value = int(raw)
    except Exception:
        value = default
    if value < 30:
        value = 30
    return value


def _extract_trace_id(args, kwargs) -> str:
    try:
        if isinstance(kwargs, dict):
            trace_id = str(kwargs.get("trace_id") or "").strip()
            if trace_id:
                return trace_id
    except Exception:
        pass
    return ""


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_failure",
            "task_name": getattr(sender, "name", "") if sender is not None else "",
            "task_id": str(task_id or ""),
            "trace_id": _extract_trace_id(args, kwargs),
            "exception": str(exception or ""),
            "timestamp": datetime.utcnow().isoformat(),
        }
        if einfo is not None:
            payload["einfo"] = str(einfo)
        try:
            flask_app.logger.error(json.dumps(payload))
        except Exception:
            pass

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        payload = {
            "event": "celery_task_retry",
            "task_name": str(getattr(request, "task", "") or ""),
            "task_id": str(getattr(request, "id", "") or ""),
            "trace_id": _extract_trace_id(getattr(request, "args", None), getattr(request, "kwargs", None)),
            "reason": str(reason or ""),
            "retry_count": int(getattr(request, "retries", 0) or 0),
            "timestamp": datetime.utcnow().isoformat(),
        }
        try:
            flask_app.logger.warning(json.dumps(payload))
        except Exception:
            pass

    _SIGNALS_BOUND = True


def beat_schedule() -> dict:
    prefix = "orderflow.tasks.settlement_tasks"
    return {
        "auto-capture-sweep": {
            "task": f"{prefix}.run_auto_capture_sweep",
            "schedule": float(_interval_seconds("AUTO_CAPTURE_INTERVAL_SECONDS", 900)),
        },
        "cost-response-expiry": {
            "task": f"{prefix}.expire_cost_responses",
            "schedule": float(_interval_seconds("COST_RESPONSE_EXPIRY_INTERVAL_SECONDS", 600)),
        },
        "stalled-delivery-retry": {
            "task": f"{prefix}.retry_stalled_deliveries",
            "schedule": float(_interval_seconds("STALLED_DELIVERY_INTERVAL_SECONDS", 600)),
        },
        "courier-poll": {
            "task": f"{prefix}.poll_courier_deliveries",
            "schedule": float(_interval_seconds("COURIER_POLL_INTERVAL_SECONDS", 300)),
        },
        "inventory-restoration": {
            "task": f"{prefix}.run_inventory_restoration",
            "schedule": float(_interval_seconds("INVENTORY_RESTORATION_INTERVAL_SECONDS", 3600)),
        },
    }


def create_celery_app(flask_app) -> Celery:
    broker = _broker_url()
    backend = _result_backend(broker)
    celery = Celery(flask_app.import_name, broker=broker, backend=backend)
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        beat_schedule=beat_schedule(),
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.set_default()
    celery.autodiscover_tasks(["orderflow.tasks"], related_name="settlement_tasks")
    _bind_task_observers(flask_app)
    return celery

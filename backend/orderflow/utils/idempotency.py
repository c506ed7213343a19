from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from orderflow.extensions import db
from orderflow.models import IdempotencyKey


def _canonical_json(payload: Any) -> str:
    try:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except Exception:
        return str(payload)


def _hash_request(*, scope: str, payload: Any) -> str:
    raw = f"{scope.strip()}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _reuse_conflict_response() -> tuple[str, dict, int]:
    return (
        "conflict",
        {
            "ok": False,
            "error": "IDEMPOTENCY_KEY_REUSE",
            "message": "This Idempotency-Key was already used with a different request payload.",
        },
        409,
    )


def lookup_response(actor_ref: str | None, scope: str, payload: Any, *, idempotency_key: str | None = None):
    """Look up a stored response for the caller's Idempotency-Key.

    Returns None when no key was sent, ``("hit", body, status)`` for a replay,
    ``("conflict", body, 409)`` for a key reused with another payload, and
    ``("miss", row, 0)`` when the caller should proceed and then ``store_response``.
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not k:
        return None

    # Keys are per caller; another caller's key never replays a stored body.
    scope_key = f"{(scope or '').strip()}|{(actor_ref or 'anonymous').strip()}"[:128]
    req_hash = _hash_request(scope=scope_key, payload=payload)
    row = IdempotencyKey.query.filter_by(scope=scope_key, key=k).first()
    if row:
        if (row.request_hash or "").strip() and row.request_hash != req_hash:
            return _reuse_conflict_response()
        if row.response_json:
            try:
                return ("hit", json.loads(row.response_json), int(row.response_code or 200))
            except Exception:
                return ("hit", {"ok": True}, int(row.response_code or 200))
        return (
            "conflict",
            {"ok": False, "error": "IDEMPOTENCY_IN_PROGRESS", "message": "A request with this key is in progress."},
            409,
        )

    row = IdempotencyKey(
        key=k,
        scope=scope_key,
        actor_ref=(actor_ref or "")[:160] or None,
        request_hash=req_hash,
        response_json=None,
        response_code=200,
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return lookup_response(actor_ref, scope, payload, idempotency_key=k)
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    try:
        row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    except Exception:
        row.response_json = json.dumps({"ok": True})
    row.response_code = int(status_code or 200)
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Drop a key whose request failed validation so the caller may retry it."""
    try:
        db.session.delete(row)
        db.session.commit()
    except Exception:
        db.session.rollback()

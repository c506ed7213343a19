from __future__ import annotations

import hmac
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from flask import current_app, g, request

logger = logging.getLogger(__name__)

ROLES = ("buyer", "seller", "admin")


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: str

    @property
    def ref(self) -> str:
        return f"user:{int(self.user_id)}"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _secret() -> str:
    try:
        return current_app.config.get("SECRET_KEY") or "dev-secret-change-me"
    except RuntimeError:
        return os.getenv("SECRET_KEY") or "dev-secret-change-me"


def create_access_token(user_id: int, role: str = "buyer", ttl_seconds: int = 60 * 60 * 24) -> str:
    """Issue a token in the shape the upstream auth service signs."""
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": now,
        "exp": now + ttl_seconds,
        "type": "access",
    }
    return jwt.encode(payload, _secret(), algorithm="HS256")


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, _secret(), algorithms=["HS256"])
    except jwt.PyJWTError:
        return None


def bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header.replace("Bearer ", "", 1).strip() or None


def current_actor() -> Actor | None:
    token = bearer_token()
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    role = str(payload.get("role") or "buyer").strip().lower()
    if role not in ROLES:
        logger.warning("unknown_token_role role=%s", role)
        role = "buyer"
    actor = Actor(user_id=uid, role=role)
    g.actor = actor
    return actor


def cron_authorized() -> bool:
    """Bearer CRON_SECRET check for scheduled endpoints.

    Outside production an unset secret leaves the endpoint open.
    """
    secret = (current_app.config.get("CRON_SECRET") or "").strip()
    if not secret:
        return not current_app.config.get("IS_PRODUCTION", False)
    token = bearer_token() or ""
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))

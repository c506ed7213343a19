from __future__ import annotations

import requests

from orderflow.errors import ExternalServiceError

DEFAULT_TIMEOUT = 25


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


def kind_for_status(status_code: int) -> str:
    if status_code == 429 or status_code >= 500:
        return ExternalServiceError.RETRYABLE
    return ExternalServiceError.FATAL


def response_json(r: requests.Response) -> dict:
    if not r.content:
        return {}
    try:
        data = r.json()
    except ValueError:
        return {"raw": r.text[:500]}
    return data if isinstance(data, dict) else {"payload": data}


def raise_for_network(exc: requests.RequestException, *, service: str, code: str) -> None:
    raise ExternalServiceError(f"{code}:{exc}", kind=ExternalServiceError.RETRYABLE, service=service, code=code) from exc

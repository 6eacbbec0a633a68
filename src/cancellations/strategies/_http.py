from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from cancellations.engine.errors import ExternalApiError
from core.observability import inject_trace_context

# Responses meaning "the channel refused": mapped to cannot_cancel by callers.
REFUSED_STATUS_CODES = frozenset({400, 409, 422})


def is_retryable_status(status_code: int) -> bool:
    return status_code in (408, 429) or status_code >= 500


def send(
    method: str,
    url: str,
    *,
    service: str,
    client: Optional[httpx.Client] = None,
    timeout: float = 30.0,
    headers: Optional[Dict[str, str]] = None,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one request; transport failures become retryable ExternalApiErrors."""
    merged = inject_trace_context(dict(headers or {}))
    try:
        if client is not None:
            return client.request(method, url, headers=merged, timeout=timeout, **kwargs)
        with httpx.Client(timeout=timeout) as owned:
            return owned.request(method, url, headers=merged, **kwargs)
    except httpx.TimeoutException as e:
        raise ExternalApiError(f"{service} request timed out", retryable=True, code=f"{service}_timeout") from e
    except httpx.HTTPError as e:
        raise ExternalApiError(f"{service} unreachable: {e}", retryable=True, code=f"{service}_unreachable") from e


def raise_for_failure(resp: httpx.Response, *, service: str) -> None:
    """Raise a classified ExternalApiError for any non-2xx response."""
    status = resp.status_code
    if 200 <= status < 300:
        return
    body = resp.text[:500]
    if is_retryable_status(status):
        raise ExternalApiError(
            f"{service} temporarily unavailable: HTTP {status}",
            retryable=True,
            code=f"{service}_unavailable",
            status_code=status,
            details={"body": body},
        )
    if status in (401, 403):
        raise ExternalApiError(
            f"{service} rejected credentials: HTTP {status}",
            retryable=False,
            code=f"{service}_auth_failed",
            status_code=status,
            details={"body": body},
        )
    if status == 404:
        raise ExternalApiError(
            f"{service} resource not found",
            retryable=False,
            code=f"{service}_not_found",
            status_code=status,
            details={"body": body},
        )
    raise ExternalApiError(
        f"{service} request failed: HTTP {status}",
        retryable=False,
        code=f"{service}_error",
        status_code=status,
        details={"body": body},
    )


def json_body(resp: httpx.Response, *, service: str) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError as e:
        raise ExternalApiError(f"{service} returned invalid JSON", retryable=True, code=f"{service}_bad_response") from e

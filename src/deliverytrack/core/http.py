"""
HTTP helpers.

Async JSON helpers shared by the OpenRouteService client:
- a default User-Agent and `Accept: application/json` on every request,
- one `httpx.AsyncClient` per call (provider calls are sparse and rate limited),
- non-2xx responses raise, so the provider wrappers decide how to degrade.
"""

from __future__ import annotations

from typing import Any

import httpx

DEFAULT_USER_AGENT = "deliverytrack/0.1.0 (+https://local)"


def _headers(extra: dict[str, str] | None) -> dict[str, str]:
    headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"}
    if extra:
        headers.update(extra)
    return headers


async def _request_json(method: str, url: str, *, timeout_seconds: float, **kwargs: Any) -> Any:
    async with httpx.AsyncClient(timeout=timeout_seconds) as client:
        resp = await client.request(method, url, **kwargs)
        resp.raise_for_status()
        return resp.json()


async def get_json(
    url: str,
    *,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 15,
) -> Any:
    """GET `url` and return the decoded JSON body.

    Raises:
        httpx.HTTPError: On transport errors or non-2xx status codes.
        ValueError: If the body is not valid JSON.
    """
    return await _request_json(
        "GET", url, params=params, headers=_headers(headers), timeout_seconds=timeout_seconds
    )


async def post_json(
    url: str,
    *,
    payload: dict[str, Any],
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 15,
) -> Any:
    """POST `payload` as JSON and return the decoded JSON body (ORS directions)."""
    return await _request_json(
        "POST", url, json=payload, headers=_headers(headers), timeout_seconds=timeout_seconds
    )

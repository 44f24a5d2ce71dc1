from __future__ import annotations

import asyncio
from typing import Any

import httpx

from ...settings import settings
from .base import ProviderUnavailable

_clients: dict[str, httpx.AsyncClient] = {}
_client_lock = asyncio.Lock()


async def get_client(base_url: str) -> httpx.AsyncClient:
    """Return a pooled client per upstream base URL."""
    key = base_url.rstrip("/")
    client = _clients.get(key)
    if client is None:
        async with _client_lock:
            client = _clients.get(key)
            if client is None:
                timeout = httpx.Timeout(
                    settings.PROVIDER_GENERATION_TIMEOUT_SECONDS,
                    connect=settings.PROVIDER_CONNECT_TIMEOUT_SECONDS,
                )
                client = httpx.AsyncClient(base_url=key, timeout=timeout)
                _clients[key] = client
    return client


async def post_json(
    client: httpx.AsyncClient,
    path: str,
    payload: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
    timeout: float | None = None,
    provider: str = "provider",
) -> dict[str, Any]:
    try:
        response = await client.post(path, json=payload, headers=headers, timeout=timeout)
    except httpx.HTTPError as exc:
        raise ProviderUnavailable(f"{provider} request failed: {exc}") from exc
    if response.status_code >= 400:
        raise ProviderUnavailable(
            f"{provider} error {response.status_code}: {response.text[:200]}"
        )
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderUnavailable(f"Invalid JSON from {provider}") from exc
    if not isinstance(body, dict):
        raise ProviderUnavailable(f"Unexpected payload from {provider}")
    return body


async def get_ok(
    client: httpx.AsyncClient,
    path: str,
    *,
    headers: dict[str, str] | None = None,
    timeout: float | None = None,
) -> httpx.Response | None:
    """GET used by availability probes; network errors become None."""
    try:
        response = await client.get(path, headers=headers, timeout=timeout)
    except httpx.HTTPError:
        return None
    return response if response.status_code < 400 else None


async def close_clients() -> None:
    async with _client_lock:
        clients = list(_clients.values())
        _clients.clear()
    for client in clients:
        await client.aclose()

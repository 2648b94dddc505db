from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from .config import settings

logger = logging.getLogger(__name__)


class RemoteApiError(Exception):
    """A well-formed HTTP error answered by the remote Messages API."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"remote API returned HTTP {status}: {body[:500]}")
        self.status = status
        self.body = body

    @property
    def is_auth_error(self) -> bool:
        return self.status == 401

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    @property
    def is_overloaded(self) -> bool:
        return self.status == 529

    def json_body(self) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(self.body)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None


def remote_auth_headers(x_api_key: Optional[str] = None, authorization: Optional[str] = None) -> Optional[Dict[str, str]]:
    """Auth for the remote API: configured key, then inbound x-api-key, then inbound bearer.

    Returns None when no credential is available at all.
    """
    headers: Dict[str, str] = {
        "content-type": "application/json",
        "anthropic-version": settings.anthropic_version,
    }
    api_key = settings.remote_api_key or x_api_key
    if api_key:
        headers["x-api-key"] = api_key
        return headers
    if authorization:
        token = authorization.split(" ", 1)[1] if authorization.lower().startswith("bearer ") else authorization
        if token.strip():
            headers["Authorization"] = f"Bearer {token.strip()}"
            return headers
    return None


def _messages_url() -> str:
    return f"{settings.remote_base_url.rstrip('/')}/v1/messages"


async def relay_messages(
    client: httpx.AsyncClient,
    body: Dict[str, Any],
    model: str,
    headers: Dict[str, str],
) -> Tuple[int, Dict[str, Any]]:
    """Forward a non-streaming Messages request with ``model`` swapped in."""
    resp = await client.post(_messages_url(), json={**body, "model": model, "stream": False}, headers=headers, timeout=None)
    if resp.status_code >= 400:
        raise RemoteApiError(resp.status_code, resp.text)
    try:
        return resp.status_code, resp.json()
    except ValueError as e:
        # Not an API answer (captive portal, proxy page): treat like a dropped connection
        raise httpx.DecodingError(f"remote API returned non-JSON body: {e}", request=resp.request) from e


async def open_relay_stream(
    client: httpx.AsyncClient,
    body: Dict[str, Any],
    model: str,
    headers: Dict[str, str],
) -> httpx.Response:
    """Open a streaming Messages request; the caller relays the raw SSE bytes and closes it."""
    req = client.build_request(
        "POST",
        _messages_url(),
        json={**body, "model": model, "stream": True},
        headers={**headers, "Accept": "text/event-stream"},
        timeout=None,
    )
    resp = await client.send(req, stream=True)
    if resp.status_code >= 400:
        try:
            text = (await resp.aread()).decode("utf-8", errors="ignore")
        finally:
            await resp.aclose()
        raise RemoteApiError(resp.status_code, text)
    return resp

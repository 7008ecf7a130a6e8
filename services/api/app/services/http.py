from __future__ import annotations

import http.client
import json
import urllib.error
import urllib.request
from typing import Any


class ProviderHTTPError(Exception):
    """The provider answered with a non-2xx status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body[:500]}")
        self.status = status
        self.body = body

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500 and self.status not in (408, 429)


class ProviderTransportError(Exception):
    """The provider could not be reached or timed out."""


def _error_body(error: urllib.error.HTTPError) -> str:
    try:
        return error.read().decode("utf-8", errors="replace")
    except (http.client.HTTPException, OSError):
        return ""


def send_json(
    method: str,
    url: str,
    *,
    body: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout: float,
) -> dict[str, Any]:
    req = urllib.request.Request(url, method=method)
    req.add_header("Content-Type", "application/json")
    req.add_header("Accept", "application/json")
    for key, value in (headers or {}).items():
        req.add_header(key, value)

    data = json.dumps(body).encode("utf-8") if body is not None else None

    try:
        with urllib.request.urlopen(req, data=data, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        raise ProviderHTTPError(e.code, _error_body(e)) from e
    except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
        # URLError, timeouts, resets and truncated bodies (IncompleteRead) all land here.
        raise ProviderTransportError(f"{method} {url} failed: {e}") from e

    if not raw.strip():
        return {}

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProviderTransportError(f"Unexpected non-JSON response from {url}") from e

    if not isinstance(payload, dict):
        raise ProviderTransportError(f"Unexpected response shape from {url}: {payload!r}")
    return payload

"""Minimal HTTP JSON helpers for provider clients and identity lookups."""

from __future__ import annotations

import json
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen


def _send(request: Request, url: str, timeout_sec: float) -> dict[str, Any]:
    try:
        with urlopen(request, timeout=timeout_sec) as response:
            raw = response.read().decode("utf-8")
            return json.loads(raw) if raw else {}
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"HTTP {exc.code} from {url}: {detail}") from exc
    except URLError as exc:
        raise RuntimeError(f"Network error calling {url}: {exc.reason}") from exc


def post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout_sec: float = 60.0) -> dict[str, Any]:
    """POST a JSON payload and decode the JSON response."""
    request = Request(url=url, data=json.dumps(payload).encode("utf-8"), method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    return _send(request, url, timeout_sec)


def get_json(url: str, headers: dict[str, str], timeout_sec: float = 10.0) -> dict[str, Any]:
    """GET a URL and decode the JSON response."""
    request = Request(url=url, method="GET")
    request.add_header("Accept", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    return _send(request, url, timeout_sec)

from __future__ import annotations

import json
import urllib.parse
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import CdpConnectionError


class HttpClientError(CdpConnectionError):
    """HTTP call to the debugging endpoint failed.

    `status` is set when the endpoint answered with an HTTP error code and is
    None when it could not be reached at all.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _build_request(url: str, method: str) -> Request:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https are supported")
    return Request(url, method=method, headers={"User-Agent": "comet-bridge/1.0"})


def http_json(url: str, *, method: str = "GET", timeout: float = 2.0) -> Any:
    """Call a debugging-endpoint route and decode its body.

    The discovery routes answer JSON, except `/json/close` and
    `/json/activate` which answer plain text; non-JSON bodies come back as str.
    """
    req = _build_request(url, method)
    try:
        with urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode(errors="replace")
    except HTTPError as exc:
        raise HttpClientError(f"{method} {url} -> HTTP {exc.code}", status=exc.code) from exc
    except (TimeoutError, URLError, OSError) as exc:
        raise HttpClientError(f"{method} {url} unreachable: {exc}") from exc
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        return body


__all__ = ["HttpClientError", "http_json"]

# === NAVMAP v1 ===
# {
#   "module": "ParamFetch.net",
#   "purpose": "Provide the shared HTTPX client used for gateway downloads",
#   "sections": [
#     {"id": "constants", "name": "Constants & globals", "anchor": "CONST", "kind": "constants"},
#     {"id": "helpers", "name": "Client construction helpers", "anchor": "HELP", "kind": "helpers"},
#     {"id": "api", "name": "Public API", "anchor": "API", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Shared HTTPX client used for parameter downloads.

The client is created lazily on first use and reused by every fetcher in the
process.  Responses are always streamed; parameter files are far too large to
buffer and are never cached at the HTTP layer.
"""

from __future__ import annotations

import contextlib
import logging
import ssl
import threading
import time
from typing import Callable, Optional

import certifi
import httpx

from . import __version__
from .settings import FetchSettings, get_settings

LOGGER = logging.getLogger(__name__)

# --- Constants & globals -------------------------------------------------------

USER_AGENT = f"ParamFetch/{__version__}"
_CLIENT_LOCK = threading.RLock()
_HTTP_CLIENT: Optional[httpx.Client] = None
_CLIENT_FACTORY: Optional[Callable[[], httpx.Client]] = None

# --- Client construction helpers ----------------------------------------------


def _build_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    return context


def _request_hook(request: httpx.Request) -> None:
    request.extensions["paramfetch_start"] = time.perf_counter()


def _response_hook(response: httpx.Response) -> None:
    start = response.request.extensions.get("paramfetch_start")
    elapsed = time.perf_counter() - start if isinstance(start, float) else None
    LOGGER.debug(
        "gateway response",
        extra={
            "stage": "download",
            "url": str(response.request.url),
            "status": response.status_code,
            "range": response.request.headers.get("Range"),
            "elapsed_sec": round(elapsed, 3) if elapsed is not None else None,
        },
    )


def _build_http_client(settings: FetchSettings) -> httpx.Client:
    return httpx.Client(
        transport=httpx.HTTPTransport(retries=0, verify=_build_ssl_context()),
        timeout=settings.http_timeout(),
        headers={"User-Agent": USER_AGENT},
        trust_env=True,
        follow_redirects=True,
        event_hooks={"request": [_request_hook], "response": [_response_hook]},
    )


def _close_client_unlocked() -> None:
    global _HTTP_CLIENT
    if _HTTP_CLIENT is not None:
        with contextlib.suppress(Exception):
            _HTTP_CLIENT.close()
    _HTTP_CLIENT = None


# --- Public API ----------------------------------------------------------------


def configure_http_client(
    client: Optional[httpx.Client] = None,
    *,
    factory: Optional[Callable[[], httpx.Client]] = None,
) -> None:
    """Override the shared HTTPX client or register a factory for tests."""

    if client is not None and factory is not None:
        raise ValueError("provide either a client or factory, not both")

    global _HTTP_CLIENT, _CLIENT_FACTORY
    with _CLIENT_LOCK:
        if client is None or _HTTP_CLIENT is not client:
            _close_client_unlocked()
        if client is not None:
            _HTTP_CLIENT = client
        _CLIENT_FACTORY = factory


def get_http_client(settings: Optional[FetchSettings] = None) -> httpx.Client:
    """Return the shared HTTPX client, creating it if necessary.

    ``settings`` only matters for the call that creates the client.
    """

    global _HTTP_CLIENT
    with _CLIENT_LOCK:
        if _HTTP_CLIENT is not None:
            return _HTTP_CLIENT

        if _CLIENT_FACTORY is not None:
            candidate = _CLIENT_FACTORY()
            if not isinstance(candidate, httpx.Client):
                raise TypeError("client factory must return an httpx.Client")
            _HTTP_CLIENT = candidate
            return candidate

        _HTTP_CLIENT = _build_http_client(settings or get_settings())
        LOGGER.debug("HTTP client initialized", extra={"stage": "download"})
        return _HTTP_CLIENT


def close_http_client() -> None:
    """Close the shared client; safe to call when none exists."""

    with _CLIENT_LOCK:
        _close_client_unlocked()


def reset_http_client() -> None:
    """Drop any override or factory and close the shared client (test helper)."""

    global _CLIENT_FACTORY
    with _CLIENT_LOCK:
        _CLIENT_FACTORY = None
        _close_client_unlocked()


__all__ = [
    "USER_AGENT",
    "close_http_client",
    "configure_http_client",
    "get_http_client",
    "reset_http_client",
]

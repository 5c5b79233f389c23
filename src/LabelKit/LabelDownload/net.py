# === NAVMAP v1 ===
# {
#   "module": "LabelKit.LabelDownload.net",
#   "purpose": "Provide the shared HTTPX client used for installer downloads",
#   "sections": [
#     {"id": "constants", "name": "Constants & globals", "anchor": "CONST", "kind": "constants"},
#     {"id": "helpers", "name": "Client construction helpers", "anchor": "HELP", "kind": "helpers"},
#     {"id": "api", "name": "Public API", "anchor": "API", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Shared HTTPX client used by the download coordinator.

Installer downloads are large, one-shot transfers, so the client carries no
response cache.  Redirects are followed by the client itself so the final URL
is available for filename derivation.
"""

from __future__ import annotations

import logging
import ssl
import threading
import time
from typing import Optional

import certifi
import httpx

from .settings import HttpSettings, get_default_config

LOGGER = logging.getLogger("LabelKit.LabelDownload.net")

__all__ = ["configure_http_client", "get_http_client", "reset_http_client"]

# --- Constants & globals -------------------------------------------------------

_CLIENT_LOCK = threading.RLock()
_HTTP_CLIENT: Optional[httpx.Client] = None

# --- Client construction helpers ----------------------------------------------


def _build_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    return context


def _timeout_for(settings: HttpSettings) -> httpx.Timeout:
    return httpx.Timeout(
        connect=settings.timeout_connect,
        read=settings.timeout_read,
        write=settings.timeout_read,
        pool=settings.timeout_connect,
    )


def _request_hook(request: httpx.Request) -> None:
    request.extensions.setdefault("labelfetch_meta", {})["start_time"] = time.perf_counter()


def _response_hook(response: httpx.Response) -> None:
    meta = response.request.extensions.get("labelfetch_meta") or {}
    start = meta.get("start_time")
    elapsed_ms = None
    if isinstance(start, (int, float)):
        elapsed_ms = round((time.perf_counter() - start) * 1000, 1)
    LOGGER.debug(
        "download-http-response",
        extra={
            "stage": "download",
            "status": response.status_code,
            "elapsed_ms": elapsed_ms,
        },
    )


def _build_http_client(settings: HttpSettings) -> httpx.Client:
    return httpx.Client(
        timeout=_timeout_for(settings),
        verify=_build_ssl_context(),
        trust_env=True,
        follow_redirects=True,
        headers={"User-Agent": settings.user_agent},
        event_hooks={"request": [_request_hook], "response": [_response_hook]},
    )


def _close_client_unlocked() -> None:
    global _HTTP_CLIENT
    if _HTTP_CLIENT is not None:
        _HTTP_CLIENT.close()
    _HTTP_CLIENT = None


# --- Public API ----------------------------------------------------------------


def configure_http_client(client: Optional[httpx.Client] = None) -> None:
    """Install ``client`` as the shared client, or drop the current one when ``None``."""

    global _HTTP_CLIENT
    with _CLIENT_LOCK:
        if client is None or _HTTP_CLIENT is not client:
            _close_client_unlocked()
        _HTTP_CLIENT = client


def reset_http_client() -> None:
    """Close the shared client so the next call rebuilds it from settings."""

    with _CLIENT_LOCK:
        _close_client_unlocked()


def get_http_client(settings: Optional[HttpSettings] = None) -> httpx.Client:
    """Return the shared HTTPX client, creating it if necessary."""

    global _HTTP_CLIENT
    with _CLIENT_LOCK:
        if _HTTP_CLIENT is None:
            _HTTP_CLIENT = _build_http_client(settings or get_default_config().http)
        return _HTTP_CLIENT

"""Shared HTTP request settings and typed fetch errors."""

from __future__ import annotations

from typing import Optional

import httpx

from shopcrawl.config import settings

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.RemoteProtocolError,
)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


class FetchError(RuntimeError):
    """Base class for fatal page fetch failures."""

    def __init__(self, url: str, message: str):
        super().__init__(message)
        self.url = url


class FetchTimeoutError(FetchError):
    """Raised when every attempt timed out."""
    pass


class ConnectionFailedError(FetchError):
    """Raised when the remote site (or browser endpoint) could not be reached."""
    pass


class InvalidContentError(FetchError):
    """Raised when the response is not an HTML document."""
    pass


class UnexpectedStatusError(FetchError):
    """Raised for non-2xx statuses that are not treated as blocked."""

    def __init__(self, url: str, status_code: int):
        super().__init__(url, f"HTTP {status_code} for {url}")
        self.status_code = status_code


def default_headers() -> dict[str, str]:
    """Configured browser-like header set (User-Agent, Accept-Language, Referer)."""
    return dict(settings.headers)


def default_timeout(
    request_timeout: Optional[float] = None,
    connect_timeout: Optional[float] = None,
) -> httpx.Timeout:
    """Fixed connect/request timeout for page fetches."""
    return httpx.Timeout(
        request_timeout or settings.request_timeout_seconds,
        connect=connect_timeout or settings.connect_timeout_seconds,
    )


def is_html_response(response: httpx.Response) -> bool:
    """True when the response declares an HTML content type (or none at all)."""
    content_type = response.headers.get("content-type", "")
    if not content_type:
        return True
    return any(ct in content_type.lower() for ct in HTML_CONTENT_TYPES)


def detect_challenge(html: str, markers: Optional[list[str]] = None) -> Optional[str]:
    """Return the first anti-bot interstitial marker found in the markup."""
    if not html:
        return None
    for marker in markers if markers is not None else settings.challenge_markers:
        if marker in html:
            return marker
    return None

"""Plain HTTP fetcher for server-rendered category pages."""

import asyncio
import logging
import time
from typing import Optional

import httpx

from shopcrawl.config import settings
from shopcrawl.ingest.base import BaseFetcher, FetchResult
from shopcrawl.ingest.http_client import (
    RETRYABLE_EXC,
    ConnectionFailedError,
    FetchTimeoutError,
    InvalidContentError,
    UnexpectedStatusError,
    default_headers,
    default_timeout,
    detect_challenge,
    is_html_response,
)
from shopcrawl import metrics

logger = logging.getLogger(__name__)


class HttpPageFetcher(BaseFetcher):
    """Fetcher for static HTML pages with a persistent cookie jar."""

    backend_name = "http"

    def __init__(
        self,
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[httpx.Timeout] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        blocked_status_codes: Optional[list[int]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize HTTP fetcher.

        Args:
            headers: Request headers (defaults to settings.headers)
            timeout: httpx timeout (defaults to the configured connect/request timeout)
            retries: Extra attempts for transient transport failures
            retry_delay: Fixed seconds to wait between attempts
            blocked_status_codes: Statuses that mean "blocked by anti-bot"
            transport: Optional httpx transport (used by tests)
        """
        self.headers = headers or default_headers()
        self.timeout = timeout or default_timeout()
        self.retries = settings.fetch_retries if retries is None else retries
        self.retry_delay = (
            settings.fetch_retry_delay_seconds if retry_delay is None else retry_delay
        )
        self.blocked_status_codes = set(
            blocked_status_codes if blocked_status_codes is not None else settings.blocked_status_codes
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared client; its cookie jar persists across calls."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    @property
    def cookies(self) -> httpx.Cookies:
        return self._get_client().cookies

    async def close(self):
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a page with bounded retries on transport failures.

        Returns:
            FetchResult; blocked responses return an empty, blocked result

        Raises:
            FetchTimeoutError: All attempts timed out
            ConnectionFailedError: All attempts failed to connect
            UnexpectedStatusError: Non-2xx status that is not a block
            InvalidContentError: Response is not HTML
        """
        client = self._get_client()
        max_attempts = self.retries + 1
        last_exc: Optional[Exception] = None
        start = time.monotonic()

        for attempt in range(1, max_attempts + 1):
            try:
                response = await client.get(url)
            except RETRYABLE_EXC as e:
                last_exc = e
                if attempt < max_attempts:
                    logger.warning(
                        f"Transient error fetching {url}: {type(e).__name__}, "
                        f"retrying in {self.retry_delay:.1f}s (attempt {attempt}/{max_attempts})"
                    )
                    await asyncio.sleep(self.retry_delay)
                    continue
                break
            except httpx.HTTPError as e:
                raise ConnectionFailedError(url, f"Request to {url} failed: {e}") from e

            elapsed = time.monotonic() - start
            metrics.record_fetch_duration(self.backend_name, elapsed)
            return self._handle_response(url, response, elapsed)

        if isinstance(last_exc, httpx.TimeoutException):
            raise FetchTimeoutError(
                url, f"Timed out fetching {url} after {max_attempts} attempts"
            ) from last_exc
        raise ConnectionFailedError(
            url, f"Could not connect to {url} after {max_attempts} attempts: {last_exc}"
        ) from last_exc

    def _handle_response(self, url: str, response: httpx.Response, elapsed: float) -> FetchResult:
        status = response.status_code

        if status in self.blocked_status_codes:
            logger.warning(f"Request blocked by anti-bot protection ({status}): {url}")
            return FetchResult.blocked_result(url, elapsed, status_code=status)

        if not 200 <= status < 300:
            raise UnexpectedStatusError(url, status)

        if not is_html_response(response):
            raise InvalidContentError(
                url, f"Expected HTML from {url}, got {response.headers.get('content-type')}"
            )

        html = response.text
        marker = detect_challenge(html)
        if marker:
            logger.warning(f"Anti-bot challenge marker {marker!r} detected on {url}")

        return FetchResult(html=html, url=url, elapsed=elapsed, status_code=status)

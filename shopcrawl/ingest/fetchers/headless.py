"""Headless browser fetcher for JavaScript-rendered category pages."""

import asyncio
import logging
import time
from typing import Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from shopcrawl.config import settings
from shopcrawl.ingest.base import BaseFetcher, FetchResult
from shopcrawl.ingest.http_client import (
    ConnectionFailedError,
    FetchTimeoutError,
    UnexpectedStatusError,
    default_headers,
    detect_challenge,
)
from shopcrawl import metrics

logger = logging.getLogger(__name__)

# Browser launch args for a local headless Chromium
BROWSER_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
]


class BrowserPageFetcher(BaseFetcher):
    """Fetcher that renders pages in a (remote or local) headless Chromium."""

    backend_name = "browser"

    def __init__(
        self,
        ws_endpoint: Optional[str] = None,
        connect_timeout_ms: Optional[int] = None,
        request_timeout_ms: Optional[int] = None,
        wait_timeout_ms: Optional[int] = None,
        settle_delay: Optional[float] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        blocked_status_codes: Optional[list[int]] = None,
    ):
        """
        Initialize headless browser fetcher.

        Args:
            ws_endpoint: Remote browser websocket endpoint; empty launches locally
            connect_timeout_ms: Timeout for connecting to the browser endpoint
            request_timeout_ms: Navigation timeout per page
            wait_timeout_ms: Timeout waiting for the document body
            settle_delay: Seconds to let client-side rendering settle
            retries: Extra attempts after a navigation timeout
            retry_delay: Fixed seconds between attempts
            blocked_status_codes: Statuses that mean "blocked by anti-bot"
        """
        self.ws_endpoint = settings.browser_ws_endpoint if ws_endpoint is None else ws_endpoint
        self.connect_timeout_ms = connect_timeout_ms or settings.browser_connect_timeout_ms
        self.request_timeout_ms = request_timeout_ms or settings.browser_request_timeout_ms
        self.wait_timeout_ms = wait_timeout_ms or settings.browser_wait_timeout_ms
        self.settle_delay = (
            settings.browser_settle_delay_seconds if settle_delay is None else settle_delay
        )
        self.retries = settings.fetch_retries if retries is None else retries
        self.retry_delay = (
            settings.fetch_retry_delay_seconds if retry_delay is None else retry_delay
        )
        self.blocked_status_codes = set(
            blocked_status_codes if blocked_status_codes is not None else settings.blocked_status_codes
        )

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._init_lock = asyncio.Lock()

    async def _ensure_context(self) -> BrowserContext:
        """Start the browser session once; the context keeps cookies between pages."""
        async with self._init_lock:
            if self._context is not None:
                return self._context

            if self._playwright is None:
                self._playwright = await async_playwright().start()

            if self._browser is None:
                if self.ws_endpoint:
                    logger.info(f"Connecting to remote browser at {self.ws_endpoint}")
                    self._browser = await self._playwright.chromium.connect(
                        self.ws_endpoint, timeout=self.connect_timeout_ms
                    )
                else:
                    self._browser = await self._playwright.chromium.launch(
                        headless=True,
                        args=BROWSER_ARGS,
                        timeout=self.connect_timeout_ms,
                    )

            headers = default_headers()
            user_agent = headers.pop("User-Agent", None)
            self._context = await self._browser.new_context(
                user_agent=user_agent,
                extra_http_headers=headers,
                locale="sl-SI",
            )
            return self._context

    async def close(self):
        """Close browser session and cleanup."""
        if self._context is not None:
            try:
                await self._context.close()
            except PlaywrightError as e:
                logger.error(f"Error closing browser context: {e}")
            self._context = None

        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.error(f"Error closing browser: {e}")
            self._browser = None

        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def _close_page(self, page):
        try:
            await page.close()
        except PlaywrightError as e:
            logger.error(f"Error closing browser page: {e}")

    async def fetch(self, url: str) -> FetchResult:
        """
        Navigate to a page and return the rendered HTML.

        Raises:
            FetchTimeoutError: Navigation timed out on every attempt
            ConnectionFailedError: Browser endpoint or navigation failed
            UnexpectedStatusError: Non-2xx status that is not a block
        """
        max_attempts = self.retries + 1
        last_exc: Optional[Exception] = None
        start = time.monotonic()

        for attempt in range(1, max_attempts + 1):
            try:
                context = await self._ensure_context()
                page = await context.new_page()
            except PlaywrightError as e:
                raise ConnectionFailedError(url, f"Browser session unavailable: {e}") from e

            try:
                response = await page.goto(
                    url, timeout=self.request_timeout_ms, wait_until="domcontentloaded"
                )
                status = response.status if response is not None else None

                if status in self.blocked_status_codes:
                    elapsed = time.monotonic() - start
                    logger.warning(f"Request blocked by anti-bot protection ({status}): {url}")
                    return FetchResult.blocked_result(url, elapsed, status_code=status)

                if status is not None and not 200 <= status < 300:
                    raise UnexpectedStatusError(url, status)

                # Minimal DOM-ready signal plus a short settle for client-side rendering
                await page.wait_for_selector("body", state="attached", timeout=self.wait_timeout_ms)
                await asyncio.sleep(self.settle_delay)

                html = await page.content()
                marker = detect_challenge(html)
                if marker:
                    logger.warning(f"Anti-bot challenge marker {marker!r} detected on {url}")

                elapsed = time.monotonic() - start
                metrics.record_fetch_duration(self.backend_name, elapsed)
                return FetchResult(html=html, url=url, elapsed=elapsed, status_code=status)

            except PlaywrightTimeoutError as e:
                last_exc = e
                if attempt < max_attempts:
                    logger.warning(
                        f"Browser timeout on {url}, retrying in {self.retry_delay:.1f}s "
                        f"(attempt {attempt}/{max_attempts})"
                    )
                    await asyncio.sleep(self.retry_delay)
                    continue
            except PlaywrightError as e:
                raise ConnectionFailedError(url, f"Browser navigation to {url} failed: {e}") from e
            finally:
                await self._close_page(page)

        raise FetchTimeoutError(
            url, f"Timed out rendering {url} after {max_attempts} attempts"
        ) from last_exc

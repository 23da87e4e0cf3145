"""Tests for the headless browser fetcher (browser session mocked)."""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from shopcrawl.ingest.fetchers import headless
from shopcrawl.ingest.fetchers.headless import BrowserPageFetcher
from shopcrawl.ingest.http_client import (
    ConnectionFailedError,
    FetchTimeoutError,
    UnexpectedStatusError,
)

URL = "https://www.shoptok.si/televizorji/cene/206"


def make_page(status: int = 200, html: str = "<html><body>ok</body></html>") -> AsyncMock:
    page = AsyncMock()
    page.goto.return_value = MagicMock(status=status)
    page.content.return_value = html
    return page


def make_fetcher(page: AsyncMock, **kwargs) -> BrowserPageFetcher:
    kwargs.setdefault("retries", 1)
    kwargs.setdefault("retry_delay", 0)
    kwargs.setdefault("settle_delay", 0)
    fetcher = BrowserPageFetcher(**kwargs)
    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    # An existing context short-circuits browser startup
    fetcher._context = context
    return fetcher


@pytest.mark.asyncio
async def test_returns_rendered_html_after_body_wait(monkeypatch):
    calls = []
    page = make_page()
    page.wait_for_selector.side_effect = lambda *args, **kwargs: calls.append("wait_for_body")

    async def fake_sleep(seconds):
        calls.append("settle")

    monkeypatch.setattr(headless.asyncio, "sleep", fake_sleep)
    fetcher = make_fetcher(page, settle_delay=0.5)

    result = await fetcher.fetch(URL)

    assert result.html == "<html><body>ok</body></html>"
    assert result.status_code == 200
    assert not result.blocked
    assert calls == ["wait_for_body", "settle"]
    assert page.wait_for_selector.await_args.args == ("body",)
    assert page.wait_for_selector.await_args.kwargs["state"] == "attached"
    page.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_blocked_status_returns_blocked_result():
    page = make_page(status=403)
    fetcher = make_fetcher(page)

    result = await fetcher.fetch(URL)

    assert result.blocked
    assert result.is_empty
    assert result.status_code == 403
    page.wait_for_selector.assert_not_awaited()
    page.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_unexpected_status_raises():
    fetcher = make_fetcher(make_page(status=500))

    with pytest.raises(UnexpectedStatusError) as exc_info:
        await fetcher.fetch(URL)

    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_timeouts_are_retried_then_raised():
    page = make_page()
    page.goto.side_effect = PlaywrightTimeoutError("Timeout 45000ms exceeded")
    fetcher = make_fetcher(page, retries=2)

    with pytest.raises(FetchTimeoutError):
        await fetcher.fetch(URL)

    assert page.goto.await_count == 3
    assert page.close.await_count == 3


@pytest.mark.asyncio
async def test_timeout_after_a_retry_succeeds():
    page = make_page()
    page.goto.side_effect = [PlaywrightTimeoutError("Timeout 45000ms exceeded"), MagicMock(status=200)]
    fetcher = make_fetcher(page, retries=1)

    result = await fetcher.fetch(URL)

    assert result.status_code == 200
    assert page.goto.await_count == 2


@pytest.mark.asyncio
async def test_navigation_error_raises_connection_failed():
    page = make_page()
    page.goto.side_effect = PlaywrightError("net::ERR_CONNECTION_RESET")
    fetcher = make_fetcher(page)

    with pytest.raises(ConnectionFailedError):
        await fetcher.fetch(URL)


@pytest.mark.asyncio
async def test_page_close_failure_does_not_mask_fetch_error():
    page = make_page()
    page.goto.side_effect = PlaywrightTimeoutError("Timeout 45000ms exceeded")
    page.close.side_effect = PlaywrightError("Target page, context or browser has been closed")
    fetcher = make_fetcher(page, retries=0)

    with pytest.raises(FetchTimeoutError):
        await fetcher.fetch(URL)


@pytest.mark.asyncio
async def test_challenge_marker_is_logged_not_fatal(caplog):
    html = "<html><head><title>Just a moment...</title></head></html>"
    fetcher = make_fetcher(make_page(html=html))

    with caplog.at_level(logging.WARNING, logger=headless.__name__):
        result = await fetcher.fetch(URL)

    assert result.html == html
    assert not result.blocked
    assert "Just a moment..." in caplog.text

"""Tests for the extractor registry and the generic reference extractor."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError

from marketpulse.core.exceptions import (
    ErrorKind,
    ProxyFault,
    RateLimitedFault,
    ScrapeFault,
    ValidationFault,
)
from marketpulse.extractors import ExtractorRegistry, load_builtin_extractors
from marketpulse.extractors.generic import GenericExtractor, parse_page
from marketpulse.services.retry import classify

HTML = """
<html>
  <head>
    <title> Widget Store </title>
    <meta name="description" content="Widgets for everyone">
    <script>var tracking = 1;</script>
  </head>
  <body>
    <h1>Widgets</h1>
    <a href="/w/1">One</a>
    <a href="/w/1#reviews">One again</a>
    <a href="https://other.test/x">Elsewhere</a>
    <a href="mailto:sales@shop.test">Mail</a>
  </body>
</html>
"""


def make_page(status=200, html=HTML, url="https://shop.test/"):
    page = MagicMock()
    page.url = url
    response = MagicMock(status=status) if status is not None else None
    page.goto = AsyncMock(return_value=response)
    page.content = AsyncMock(return_value=html)
    return page


class TestRegistry:
    def test_register_and_get_case_insensitive(self):
        registry = ExtractorRegistry()
        extractor = GenericExtractor()
        registry.register("Reddit", extractor)
        assert registry.get("reddit") is extractor
        assert " REDDIT " in registry
        assert registry.sources() == ["reddit"]

    def test_missing(self):
        assert ExtractorRegistry().get("amazon") is None

    def test_builtin_generic_registered(self):
        assert "generic" in load_builtin_extractors()


class TestParsePage:
    def test_metadata_and_links(self):
        data = parse_page(HTML, "https://shop.test/")
        assert data["title"] == "Widget Store"
        assert data["description"] == "Widgets for everyone"
        assert data["links"] == ["https://shop.test/w/1", "https://other.test/x"]
        assert "Widgets" in data["text"]
        assert "tracking" not in data["text"]


class TestGenericExtractor:
    @pytest.mark.asyncio
    async def test_scrape(self):
        page = make_page()
        payload = await GenericExtractor().scrape(page, {"url": "https://shop.test/"})
        assert payload["title"] == "Widget Store"
        assert payload["statusCode"] == 200
        assert "html" not in payload

    @pytest.mark.asyncio
    async def test_include_html(self):
        payload = await GenericExtractor().scrape(
            make_page(), {"url": "https://shop.test/", "includeHtml": True}
        )
        assert payload["html"] == HTML

    @pytest.mark.asyncio
    async def test_missing_url(self):
        with pytest.raises(ValidationFault):
            await GenericExtractor().scrape(make_page(), {})

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error",
        [(429, RateLimitedFault), (503, RateLimitedFault), (403, ProxyFault), (404, ScrapeFault)],
    )
    async def test_status_mapping(self, status, error):
        with pytest.raises(error):
            await GenericExtractor().scrape(make_page(status=status), {"url": "https://shop.test/"})

    @pytest.mark.asyncio
    async def test_navigation_retried_on_same_page(self):
        page = make_page()
        response = page.goto.return_value
        page.goto = AsyncMock(side_effect=[PlaywrightError("net::ERR_TIMED_OUT"), response])

        with patch("marketpulse.services.browser.asyncio.sleep", new=AsyncMock()) as sleep:
            payload = await GenericExtractor().scrape(page, {"url": "https://shop.test/"})

        assert payload["statusCode"] == 200
        assert page.goto.await_count == 2
        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_navigation_failure_reaches_job_retry_as_transient(self):
        page = make_page()
        page.goto = AsyncMock(side_effect=PlaywrightError("net::ERR_CONNECTION_RESET"))

        with patch("marketpulse.services.browser.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(PlaywrightError) as exc_info:
                await GenericExtractor().scrape(
                    page, {"url": "https://shop.test/", "navigationRetries": 2}
                )

        assert page.goto.await_count == 2
        assert classify(exc_info.value) == ErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_delay_ms_pauses_before_reading(self):
        with patch("marketpulse.services.browser.asyncio.sleep", new=AsyncMock()) as sleep:
            await GenericExtractor().scrape(
                make_page(), {"url": "https://shop.test/", "delayMs": [300, 300]}
            )
        sleep.assert_awaited_once_with(0.3)

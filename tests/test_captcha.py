"""Unit tests for marketpulse.services.captcha: sitekey detection and 2captcha flow."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from marketpulse.services.captcha import TwoCaptchaSolver, build_solver, find_challenge

RECAPTCHA_HTML = '<div class="g-recaptcha" data-sitekey="6Lc_site_key"></div>'
HCAPTCHA_HTML = '<div class="h-captcha" data-sitekey="hc-key"></div>'


def twocaptcha_transport(results: list[dict], submit: dict | None = None, seen: list | None = None):
    results = list(results)

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path == "/in.php":
            return httpx.Response(200, json=submit or {"status": 1, "request": "42"})
        return httpx.Response(200, json=results.pop(0))

    return httpx.MockTransport(handler)


def make_page(html: str):
    page = MagicMock()
    page.url = "https://shop.test/login"
    page.content = AsyncMock(return_value=html)
    page.evaluate = AsyncMock(return_value=True)
    return page


class TestFindChallenge:
    def test_recaptcha(self):
        assert find_challenge(RECAPTCHA_HTML) == ("userrecaptcha", "6Lc_site_key")

    def test_hcaptcha(self):
        assert find_challenge(HCAPTCHA_HTML) == ("hcaptcha", "hc-key")

    def test_recaptcha_render_param(self):
        html = '<script src="https://www.google.com/recaptcha/api.js?render=6Lc_render"></script>'
        assert find_challenge(html) == ("userrecaptcha", "6Lc_render")

    def test_nothing_found(self):
        assert find_challenge("<h1>Products</h1>") is None


class TestTwoCaptchaSolver:
    @pytest.mark.asyncio
    async def test_polls_until_ready_and_injects_token(self):
        seen = []
        transport = twocaptcha_transport(
            [{"status": 0, "request": "CAPCHA_NOT_READY"}, {"status": 1, "request": "TOKEN"}],
            seen=seen,
        )
        solver = TwoCaptchaSolver("api-key", poll_interval=0.01, transport=transport)
        page = make_page(RECAPTCHA_HTML)

        assert await solver.solve(page) is True
        page.evaluate.assert_awaited_once()
        assert page.evaluate.call_args[0][1] == "TOKEN"
        submit = seen[0]
        assert b"googlekey=6Lc_site_key" in submit.content
        assert b"method=userrecaptcha" in submit.content

    @pytest.mark.asyncio
    async def test_submit_error_returns_false(self):
        transport = twocaptcha_transport([], submit={"status": 0, "request": "ERROR_ZERO_BALANCE"})
        solver = TwoCaptchaSolver("api-key", poll_interval=0.01, transport=transport)
        page = make_page(RECAPTCHA_HTML)

        assert await solver.solve(page) is False
        page.evaluate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsolvable_returns_false(self):
        transport = twocaptcha_transport([{"status": 0, "request": "ERROR_CAPTCHA_UNSOLVABLE"}])
        solver = TwoCaptchaSolver("api-key", poll_interval=0.01, transport=transport)
        assert await solver.solve(make_page(HCAPTCHA_HTML)) is False

    @pytest.mark.asyncio
    async def test_page_without_widget(self):
        solver = TwoCaptchaSolver("api-key", transport=twocaptcha_transport([]))
        assert await solver.solve(make_page("<p>blocked</p>")) is False


class TestBuildSolver:
    def test_disabled_without_token(self):
        settings = SimpleNamespace(CHALLENGE_SOLVER_PROVIDER="2captcha", CHALLENGE_SOLVER_TOKEN="")
        assert build_solver(settings) is None

    def test_two_captcha(self):
        settings = SimpleNamespace(CHALLENGE_SOLVER_PROVIDER="2Captcha", CHALLENGE_SOLVER_TOKEN="k")
        assert isinstance(build_solver(settings), TwoCaptchaSolver)

    def test_unknown_provider(self):
        settings = SimpleNamespace(CHALLENGE_SOLVER_PROVIDER="magic", CHALLENGE_SOLVER_TOKEN="k")
        assert build_solver(settings) is None

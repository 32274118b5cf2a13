"""Optional CAPTCHA solving through the 2captcha HTTP API."""

import asyncio
import logging
import re
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

_SITEKEY_RE = re.compile(r'data-sitekey=["\']([^"\']+)["\']')
_RENDER_RE = re.compile(r'recaptcha[^"\']*render=([^&\'"\s]+)')

_INJECT_TOKEN_JS = """
(token) => {
    for (const name of ['g-recaptcha-response', 'h-captcha-response']) {
        document.querySelectorAll(`[name="${name}"], #${name}`).forEach((el) => {
            el.style.display = '';
            el.value = token;
            el.innerHTML = token;
        });
    }
    return true;
}
"""


class ChallengeSolver(Protocol):
    async def solve(self, page) -> bool: ...


def find_challenge(html: str) -> tuple[str, str] | None:
    """Return ``(method, sitekey)`` for a reCAPTCHA/hCaptcha widget, if any."""
    lowered = html.lower()
    if "h-captcha" in lowered or "hcaptcha.com" in lowered:
        method = "hcaptcha"
    elif "g-recaptcha" in lowered or "google.com/recaptcha" in lowered:
        method = "userrecaptcha"
    else:
        return None

    match = _SITEKEY_RE.search(html)
    if not match and method == "userrecaptcha":
        match = _RENDER_RE.search(html)
    if not match:
        return None
    return method, match.group(1)


class TwoCaptchaSolver:
    """Submits the page's sitekey, polls for the token and injects it."""

    BASE_URL = "https://2captcha.com"

    def __init__(
        self,
        api_key: str,
        timeout: int = 120,
        poll_interval: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._transport = transport

    async def request_token(self, method: str, sitekey: str, page_url: str) -> str | None:
        async with httpx.AsyncClient(
            base_url=self.BASE_URL, timeout=30, transport=self._transport
        ) as client:
            resp = await client.post(
                "/in.php",
                data={
                    "key": self._api_key,
                    "method": method,
                    "googlekey" if method == "userrecaptcha" else "sitekey": sitekey,
                    "pageurl": page_url,
                    "json": 1,
                },
            )
            resp.raise_for_status()
            submitted = resp.json()
            if submitted.get("status") != 1:
                logger.error(f"2captcha submit error: {submitted.get('request')}")
                return None
            captcha_id = submitted["request"]

            for _ in range(max(1, int(self._timeout // self._poll_interval))):
                await asyncio.sleep(self._poll_interval)
                resp = await client.get(
                    "/res.php",
                    params={"key": self._api_key, "action": "get", "id": captcha_id, "json": 1},
                )
                resp.raise_for_status()
                result = resp.json()
                if result.get("status") == 1:
                    return result["request"]
                if result.get("request") != "CAPCHA_NOT_READY":
                    logger.error(f"2captcha error: {result.get('request')}")
                    return None

        logger.warning("2captcha timed out")
        return None

    async def solve(self, page) -> bool:
        found = find_challenge(await page.content())
        if found is None:
            logger.warning("No solvable challenge widget found on page")
            return False
        method, sitekey = found
        logger.info(f"Solving {method} challenge on {page.url}")
        try:
            token = await self.request_token(method, sitekey, page.url)
        except httpx.HTTPError as e:
            logger.error(f"2captcha request failed: {e}")
            return False
        if not token:
            return False
        await page.evaluate(_INJECT_TOKEN_JS, token)
        return True


def build_solver(settings) -> ChallengeSolver | None:
    provider = settings.CHALLENGE_SOLVER_PROVIDER.lower()
    if not provider or not settings.CHALLENGE_SOLVER_TOKEN:
        return None
    if provider == "2captcha":
        return TwoCaptchaSolver(settings.CHALLENGE_SOLVER_TOKEN)
    logger.warning(f"Unknown challenge solver provider: {provider}")
    return None

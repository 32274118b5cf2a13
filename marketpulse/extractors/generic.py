"""Reference extractor: loads ``params["url"]`` and returns page metadata."""

import logging
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from marketpulse.core.exceptions import (
    ProxyFault,
    RateLimitedFault,
    ScrapeFault,
    ValidationFault,
)
from marketpulse.extractors import register
from marketpulse.services.browser import goto_with_retry, random_delay

logger = logging.getLogger(__name__)

_RATE_LIMIT_STATUSES = {429, 502, 503, 504}
_BLOCKED_STATUSES = {403, 407}


def parse_page(html: str, base_url: str, max_links: int = 200) -> dict:
    """Title, description, visible text and absolute links of an HTML page."""
    soup = BeautifulSoup(html, "lxml")

    title = ""
    title_tag = soup.find("title")
    if title_tag:
        title = title_tag.get_text(strip=True)

    description = ""
    for attrs in ({"name": "description"}, {"property": "og:description"}):
        meta = soup.find("meta", attrs=attrs)
        if meta and meta.get("content"):
            description = meta["content"].strip()
            break

    links: list[str] = []
    seen = set()
    for a_tag in soup.find_all("a", href=True):
        href = a_tag["href"].strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
            continue
        absolute = urlparse(urljoin(base_url, href))._replace(fragment="").geturl()
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
        if len(links) >= max_links:
            break

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    text = " ".join(soup.get_text(separator=" ").split())

    return {
        "title": title,
        "description": description,
        "text": text,
        "links": links,
    }


@register("generic")
class GenericExtractor:
    async def scrape(self, page, params: dict) -> dict:
        url = params.get("url")
        if not url or not urlparse(url).scheme.startswith("http"):
            raise ValidationFault("generic source requires an http(s) 'url' param")

        # Navigation errors that survive the page-level retries go to the job-level classifier
        response = await goto_with_retry(
            page,
            url,
            max_retries=int(params.get("navigationRetries", 3)),
            wait_until=params.get("waitUntil", "domcontentloaded"),
        )
        status = response.status if response is not None else None
        if status in _RATE_LIMIT_STATUSES:
            raise RateLimitedFault(status=status)
        if status in _BLOCKED_STATUSES:
            raise ProxyFault(f"Target refused egress (HTTP {status})")
        if status is not None and status >= 400:
            raise ScrapeFault(f"HTTP {status} for {url}")

        delay = params.get("delayMs")
        if isinstance(delay, (list, tuple)) and len(delay) == 2:
            await random_delay(int(delay[0]), int(delay[1]))

        html = await page.content()
        payload = parse_page(html, page.url or url)
        payload["url"] = page.url or url
        payload["statusCode"] = status
        if params.get("includeHtml"):
            payload["html"] = html
        logger.info(f"Extracted {len(payload['links'])} links from {payload['url']}")
        return payload

"""Extractor contract and registry.

An extractor does the site-specific work for one platform: navigate, parse,
paginate. It receives a ready page (proxy, fingerprint and stealth already
applied) plus the job's ``params`` and returns a JSON-serializable dict.
Anti-detection, retries and persistence stay in the worker.

Raise the typed faults from ``marketpulse.core.exceptions`` (``ProxyFault``,
``RateLimitedFault``, ``TransientFault``...) when the cause is known; anything
else is classified from its message.
"""

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    async def scrape(self, page, params: dict[str, Any]) -> dict[str, Any]: ...


class ExtractorRegistry:
    """Maps a job ``source`` to the extractor that handles it."""

    def __init__(self):
        self._extractors: dict[str, Extractor] = {}

    def register(self, source: str, extractor: Extractor) -> None:
        key = source.strip().lower()
        if key in self._extractors:
            logger.warning(f"Replacing extractor for source '{key}'")
        self._extractors[key] = extractor

    def get(self, source: str) -> Extractor | None:
        return self._extractors.get(source.strip().lower())

    def sources(self) -> list[str]:
        return sorted(self._extractors)

    def __contains__(self, source: str) -> bool:
        return self.get(source) is not None

    def __len__(self) -> int:
        return len(self._extractors)


registry = ExtractorRegistry()


def register(source: str):
    """Class decorator registering an extractor instance in the default registry."""

    def decorator(cls):
        registry.register(source, cls())
        return cls

    return decorator


def load_builtin_extractors() -> ExtractorRegistry:
    from marketpulse.extractors import generic  # noqa: F401

    return registry

"""Classification-driven retry with exponential backoff and jitter.

``classify`` is a pure function from an exception to an ``ErrorKind``; it
never touches the proxy pool or the browser. Whatever has to happen because
of a kind (evicting a proxy, rotating the session) is the caller's job and
runs before the next attempt.

Backoff for 0-based attempt ``k``::

    delay = min(initial_delay * factor ** k, max_delay)
    delay = int(delay * uniform(0.7, 1.3))      # when jitter is on
"""

import asyncio
import logging
import random
import re
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, TypeVar

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from marketpulse.core.exceptions import ErrorKind, MarketPulseError, ScrapeFault

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.TRANSIENT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.PROXY_FAULT,
        ErrorKind.PROTOCOL_FAULT,
    }
)

_PROXY_MARKERS = (
    "proxy",
    "err_proxy_connection_failed",
    "err_tunnel_connection_failed",
)
_PROTOCOL_MARKERS = (
    "protocol error",
    "target closed",
    "session closed",
    "browser has disconnected",
    "browser has been closed",
    "target page, context or browser has been closed",
    "connection closed",
    "page crashed",
)
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "etimedout",
    "network error",
    "net::err_",
    "failed to load",
)
_RATE_LIMIT_STATUSES = frozenset({429, 502, 503, 504})
_PROXY_STATUSES = frozenset({403, 407})
_STATUS_RE = re.compile(r"\b(403|407|429|502|503|504)\b")


@dataclass(frozen=True)
class RetryConfig:
    """Retry bounds. Delays are in milliseconds."""

    max_retries: int = 3
    initial_delay: int = 1000
    max_delay: int = 30000
    factor: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings, **overrides) -> "RetryConfig":
        config = cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            initial_delay=settings.RETRY_INITIAL_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            factor=settings.RETRY_FACTOR,
            jitter=settings.RETRY_JITTER,
        )
        return replace(config, **overrides) if overrides else config


def _status_of(error: BaseException) -> int | None:
    for attr in ("status", "status_code", "statusCode"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def classify(error: BaseException) -> ErrorKind:
    """Map an exception to the kind that decides retry/rotate/abort."""
    if isinstance(error, ScrapeFault):
        return error.kind
    if isinstance(error, MarketPulseError):
        # Infrastructure errors (pool exhausted, provider down) are not retried here
        return ErrorKind.FATAL

    message = str(error).lower()
    status = _status_of(error)
    if status is None:
        match = _STATUS_RE.search(message)
        if match:
            status = int(match.group(1))

    if any(marker in message for marker in _PROXY_MARKERS) or status in _PROXY_STATUSES:
        return ErrorKind.PROXY_FAULT
    if status in _RATE_LIMIT_STATUSES:
        return ErrorKind.RATE_LIMITED
    if any(marker in message for marker in _PROTOCOL_MARKERS):
        return ErrorKind.PROTOCOL_FAULT

    if isinstance(error, (PlaywrightTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TRANSIENT
    if isinstance(error, (ConnectionError, httpx.TransportError)):
        return ErrorKind.TRANSIENT
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    if isinstance(error, PlaywrightError) and "net::" in message:
        return ErrorKind.TRANSIENT

    return ErrorKind.FATAL


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


def compute_backoff(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> int:
    """Delay in milliseconds before the attempt following ``attempt``."""
    delay = min(config.initial_delay * (config.factor ** attempt), config.max_delay)
    if config.jitter:
        delay *= (rng or random).uniform(0.7, 1.3)
    return int(delay)


OnRetry = Callable[[BaseException, int, int], Awaitable[None] | None]


async def with_retry(
    attempt_fn: Callable[[int], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    classify_fn: Callable[[BaseException], ErrorKind] = classify,
    on_retry: OnRetry | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``attempt_fn(attempt)`` until it succeeds or the budget runs out.

    At most ``max_retries + 1`` attempts are made. A non-retryable kind stops
    the loop immediately. ``on_retry(error, attempt, delay_ms)`` runs before
    each sleep; its own failures are logged and ignored. The last error is
    re-raised unchanged.
    """
    config = config or RetryConfig()
    attempt = 0

    while True:
        try:
            return await attempt_fn(attempt)
        except Exception as error:
            kind = classify_fn(error)
            if not is_retryable(kind) or attempt >= config.max_retries:
                logger.error(
                    f"Giving up after attempt {attempt + 1}/{config.max_retries + 1} "
                    f"({kind.value}): {error}"
                )
                raise

            delay = compute_backoff(attempt, config)
            logger.warning(
                f"Attempt {attempt + 1}/{config.max_retries + 1} failed "
                f"({kind.value}): {error}. Retrying in {delay}ms"
            )

            if on_retry is not None:
                try:
                    result = on_retry(error, attempt, delay)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as callback_error:
                    logger.error(f"on_retry callback failed: {callback_error}")

            await sleep(delay / 1000)
            attempt += 1

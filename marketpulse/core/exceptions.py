"""Exception hierarchy shared by the API and the scraping pipeline.

API-facing errors carry an HTTP status and an error code and are rendered by
the handlers registered in ``marketpulse.main``. Pipeline faults carry an
``ErrorKind`` that the retry classifier trusts over message sniffing.
"""

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PROXY_FAULT = "proxy_fault"
    PROTOCOL_FAULT = "protocol_fault"
    CHALLENGE_WALL = "challenge_wall"
    VALIDATION_FAULT = "validation_fault"
    FATAL = "fatal"


class MarketPulseError(Exception):
    """Base error. ``status_code``/``error_code`` are used by the API layer."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", status_code: int | None = None, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


class BadRequestError(MarketPulseError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class ServiceUnavailableError(MarketPulseError):
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


# ---------------------------------------------------------------------------
# Pipeline faults
# ---------------------------------------------------------------------------


class ScrapeFault(MarketPulseError):
    """A failure raised while processing a job. Subclasses pin the kind."""

    kind = ErrorKind.FATAL


class ValidationFault(ScrapeFault, BadRequestError):
    """Malformed job: missing or unknown source. Never retried."""

    kind = ErrorKind.VALIDATION_FAULT


class TransientFault(ScrapeFault):
    kind = ErrorKind.TRANSIENT


class RateLimitedFault(ScrapeFault):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "", status: int = 429):
        super().__init__(message or f"Rate limited (HTTP {status})")
        self.status = status


class ProxyFault(ScrapeFault):
    kind = ErrorKind.PROXY_FAULT


class ProtocolFault(ScrapeFault):
    kind = ErrorKind.PROTOCOL_FAULT


class ChallengeWallError(ScrapeFault):
    """Bot challenge still present after the session was already rotated."""

    kind = ErrorKind.CHALLENGE_WALL


class StorageFault(ScrapeFault):
    """Result or error artifact could not be persisted."""


# ---------------------------------------------------------------------------
# Infrastructure errors
# ---------------------------------------------------------------------------


class PoolExhausted(ServiceUnavailableError):
    """No proxy left to select, filtered or not."""

    error_code = "PROXY_POOL_EXHAUSTED"


class ProxyProviderError(ServiceUnavailableError):
    """Proxy provider unavailable and no cached batch to fall back on."""

    error_code = "PROXY_PROVIDER_ERROR"


class QueueError(ServiceUnavailableError):
    error_code = "QUEUE_ERROR"

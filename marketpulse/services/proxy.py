"""Rotating pool of anonymizing egress proxies.

The pool is fetched in bulk from a proxy-provider API and cached for
``PROXY_CACHE_TTL`` seconds. Selection is least-recently-used; a proxy that
causes a proxy fault is evicted and stays out until the next wholesale
refresh.

Pool state lives in a ``ProxyStore``. ``MemoryProxyStore`` is per worker
process, so under horizontal scale-out each worker evicts independently and
relies on a short TTL. ``RedisProxyStore`` shares one pool between workers:
eviction is a single ``HDEL`` (atomic remove-if-present) and a refresh swaps
the whole hash inside a MULTI/EXEC transaction.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Protocol
from urllib.parse import urlparse, urlunparse

import httpx

from marketpulse.core.exceptions import PoolExhausted, ProxyProviderError
from marketpulse.core.metrics import (
    proxy_evictions_total,
    proxy_pool_size,
    proxy_refresh_total,
)

logger = logging.getLogger(__name__)

_DEFAULT_CACHE_TTL = 30 * 60
_PROVIDER_TIMEOUT = 10.0
# Seconds before the provider is asked again after a failed refetch
_PROVIDER_RETRY_AFTER = 60

# Returned in development when the provider is unreachable and nothing is cached
_LOOPBACK_STUB = {
    "host": "localhost",
    "port": 8888,
    "username": "user",
    "password": "pass",
    "region": "local",
}


@dataclass
class Proxy:
    host: str
    port: int
    username: str | None = None
    password: str | None = None
    region: str | None = None
    protocol: str = "http"
    last_used_at: float | None = None

    @classmethod
    def from_url(cls, url: str, region: str | None = None) -> "Proxy":
        """Parse a proxy URL into a Proxy object."""
        parsed = urlparse(url)
        return cls(
            protocol=parsed.scheme or "http",
            host=parsed.hostname or "",
            port=parsed.port or 8080,
            username=parsed.username,
            password=parsed.password,
            region=region,
        )

    @classmethod
    def from_provider_item(
        cls,
        item: dict,
        default_username: str | None = None,
        default_password: str | None = None,
    ) -> "Proxy | None":
        """Build a Proxy from one provider entry, or None if it is unusable."""
        host = item.get("ip") or item.get("host") or ""
        port = item.get("port")
        if not host or not port:
            return None
        try:
            port = int(port)
        except (TypeError, ValueError):
            return None

        protocols = item.get("protocols")
        if isinstance(protocols, list) and protocols:
            protocol = protocols[0]
        else:
            protocol = item.get("protocol") or item.get("type") or "http"

        return cls(
            host=host,
            port=port,
            username=item.get("username") or default_username or None,
            password=item.get("password") or default_password or None,
            region=item.get("country") or item.get("region"),
            protocol=protocol,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "Proxy":
        return cls(**data)

    def to_dict(self) -> dict:
        return asdict(self)

    def to_playwright(self) -> dict:
        """Playwright proxy settings. Credentials are sent to the proxy only."""
        result = {"server": f"{self.protocol}://{self.host}:{self.port}"}
        if self.username:
            result["username"] = self.username
        if self.password:
            result["password"] = self.password
        return result

    def to_httpx(self) -> str:
        if self.username and self.password:
            return f"{self.protocol}://{self.username}:{self.password}@{self.host}:{self.port}"
        return f"{self.protocol}://{self.host}:{self.port}"

    def masked(self) -> str:
        """Proxy URL with credentials masked, safe for logs."""
        return mask_url(self.to_httpx())


def mask_url(url: str) -> str:
    """Mask credentials in a proxy URL for display."""
    parsed = urlparse(url)
    if parsed.username:
        masked_user = parsed.username[:2] + "***"
        masked_pass = "***" if parsed.password else ""
        netloc = f"{masked_user}:{masked_pass}@{parsed.hostname}"
        if parsed.port:
            netloc += f":{parsed.port}"
        return urlunparse((parsed.scheme, netloc, parsed.path, "", "", ""))
    return url


# ---------------------------------------------------------------------------
# Pool state stores
# ---------------------------------------------------------------------------


class ProxyStore(Protocol):
    async def load(self) -> tuple[list[Proxy], float | None]: ...

    async def replace(self, proxies: list[Proxy], fetched_at: float) -> None: ...

    async def mark_fetched(self, fetched_at: float) -> None: ...

    async def remove(self, host: str) -> bool: ...

    async def touch(self, host: str, used_at: float) -> None: ...


class MemoryProxyStore:
    """Process-local pool state. Not shared between worker processes."""

    def __init__(self):
        self._proxies: list[Proxy] = []
        self._fetched_at: float | None = None

    async def load(self) -> tuple[list[Proxy], float | None]:
        return list(self._proxies), self._fetched_at

    async def replace(self, proxies: list[Proxy], fetched_at: float) -> None:
        self._proxies = list(proxies)
        self._fetched_at = fetched_at

    async def mark_fetched(self, fetched_at: float) -> None:
        self._fetched_at = fetched_at

    async def remove(self, host: str) -> bool:
        before = len(self._proxies)
        self._proxies = [p for p in self._proxies if p.host != host]
        return len(self._proxies) < before

    async def touch(self, host: str, used_at: float) -> None:
        for p in self._proxies:
            if p.host == host:
                p.last_used_at = used_at


class RedisProxyStore:
    """Pool state shared by every worker through Redis.

    Keys (``prefix`` defaults to ``proxy:pool``):
    - ``{prefix}`` hash: host -> proxy JSON
    - ``{prefix}:used`` sorted set: host -> last used timestamp
    - ``{prefix}:fetched_at``: epoch seconds of the last provider fetch
    """

    def __init__(self, redis, prefix: str = "proxy:pool"):
        self._redis = redis
        self._key = prefix
        self._used_key = f"{prefix}:used"
        self._fetched_key = f"{prefix}:fetched_at"

    async def load(self) -> tuple[list[Proxy], float | None]:
        raw = await self._redis.hgetall(self._key)
        used = dict(await self._redis.zrange(self._used_key, 0, -1, withscores=True))
        fetched_at = await self._redis.get(self._fetched_key)

        proxies = []
        for host, blob in raw.items():
            proxy = Proxy.from_dict(json.loads(blob))
            proxy.last_used_at = used.get(host)
            proxies.append(proxy)
        return proxies, float(fetched_at) if fetched_at else None

    async def replace(self, proxies: list[Proxy], fetched_at: float) -> None:
        mapping = {p.host: json.dumps({**p.to_dict(), "last_used_at": None}) for p in proxies}
        pipe = self._redis.pipeline(transaction=True)
        pipe.delete(self._key, self._used_key)
        if mapping:
            pipe.hset(self._key, mapping=mapping)
        pipe.set(self._fetched_key, str(fetched_at))
        await pipe.execute()

    async def mark_fetched(self, fetched_at: float) -> None:
        await self._redis.set(self._fetched_key, str(fetched_at))

    async def remove(self, host: str) -> bool:
        removed = await self._redis.hdel(self._key, host)
        await self._redis.zrem(self._used_key, host)
        return bool(removed)

    async def touch(self, host: str, used_at: float) -> None:
        await self._redis.zadd(self._used_key, {host: used_at})


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class ProxyPool:
    """Fetches, caches, selects and evicts proxies."""

    def __init__(
        self,
        store: ProxyStore | None = None,
        *,
        api_key: str = "",
        service_url: str = "",
        default_username: str = "",
        default_password: str = "",
        static_urls: list[str] | None = None,
        cache_ttl: int = _DEFAULT_CACHE_TTL,
        development: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._store = store or MemoryProxyStore()
        self._api_key = api_key
        self._service_url = service_url
        self._default_username = default_username
        self._default_password = default_password
        self._static_urls = [u.strip() for u in (static_urls or []) if u.strip()]
        self._cache_ttl = cache_ttl
        self._development = development
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "ProxyPool":
        if settings.PROXY_POOL_BACKEND == "redis":
            from marketpulse.core.redis import get_redis

            store: ProxyStore = RedisProxyStore(get_redis())
        else:
            store = MemoryProxyStore()
        return cls(
            store,
            api_key=settings.PROXY_API_KEY,
            service_url=settings.PROXY_SERVICE_URL,
            default_username=settings.PROXY_USERNAME,
            default_password=settings.PROXY_PASSWORD,
            static_urls=settings.PROXY_URLS.split(","),
            cache_ttl=settings.PROXY_CACHE_TTL,
            development=settings.is_development,
        )

    async def refresh(self, force: bool = False) -> list[Proxy]:
        """Return the live batch, refetching it when absent or expired.

        Falls back to the last cached batch when the provider fails and holds
        off the next fetch for ``_PROVIDER_RETRY_AFTER`` seconds. With no cache
        it raises ProxyProviderError, or yields a loopback stub in development
        mode.
        """
        cached, fetched_at = await self._store.load()
        now = time.time()
        if (
            cached
            and not force
            and fetched_at is not None
            and (now - fetched_at) < self._cache_ttl
        ):
            logger.debug(f"Using {len(cached)} cached proxies")
            return cached

        try:
            fresh = await self._fetch()
        except ProxyProviderError as e:
            proxy_refresh_total.labels(status="failure").inc()
            logger.error(f"Failed to fetch proxies: {e}")
            if cached:
                retry_after = min(_PROVIDER_RETRY_AFTER, self._cache_ttl)
                logger.warning(
                    f"Falling back to {len(cached)} cached proxies, "
                    f"retrying the provider in {retry_after}s"
                )
                await self._store.mark_fetched(now - self._cache_ttl + retry_after)
                return cached
            if self._development:
                logger.warning("Using loopback proxy stub for local development")
                stub = [Proxy(**_LOOPBACK_STUB)]
                # fetched_at=0 keeps the stub expired so the provider is retried next time
                await self._store.replace(stub, 0.0)
                return stub
            raise

        proxy_refresh_total.labels(status="success").inc()
        await self._store.replace(fresh, now)
        proxy_pool_size.set(len(fresh))
        logger.info(f"Fetched {len(fresh)} new proxies")
        return fresh

    async def _fetch(self) -> list[Proxy]:
        if self._static_urls:
            return [Proxy.from_url(u) for u in self._static_urls]

        if not self._api_key or not self._service_url:
            raise ProxyProviderError(
                "Proxy API configuration missing. Set PROXY_API_KEY and PROXY_SERVICE_URL."
            )

        params = {
            "api_key": self._api_key,
            "protocol": "http",
            "country": "all",
            "status": "active",
            "format": "json",
        }
        try:
            async with httpx.AsyncClient(
                timeout=_PROVIDER_TIMEOUT, transport=self._transport
            ) as client:
                resp = await client.get(self._service_url, params=params)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProxyProviderError(f"Proxy provider request failed: {e}") from e

        if isinstance(data, dict):
            items = data.get("proxies", data.get("data"))
        else:
            items = data
        if not isinstance(items, list):
            raise ProxyProviderError("Invalid response from proxy provider")

        proxies = []
        for item in items:
            if not isinstance(item, dict):
                continue
            proxy = Proxy.from_provider_item(
                item, self._default_username, self._default_password
            )
            if proxy:
                proxies.append(proxy)

        if not proxies:
            raise ProxyProviderError("Proxy provider returned no usable proxies")
        return proxies

    async def select(self, region: str | None = None, exclude: str | None = None) -> Proxy:
        """Return the least-recently-used proxy matching the filters.

        Falls back to the unfiltered pool when nothing matches; raises
        PoolExhausted when the pool itself is empty.
        """
        try:
            proxies = await self.refresh()
        except ProxyProviderError as e:
            _, fetched_at = await self._store.load()
            if fetched_at is None:
                raise
            # A batch existed but every entry has been evicted
            raise PoolExhausted(f"No proxies available: {e}") from e

        candidates = proxies
        if region:
            candidates = [
                p for p in candidates if p.region and p.region.lower() == region.lower()
            ]
        if exclude:
            candidates = [p for p in candidates if p.host != exclude]

        if not candidates:
            if proxies:
                logger.warning("No proxies match the filter criteria, using full pool")
            candidates = proxies

        if not candidates:
            raise PoolExhausted("No proxies available")

        candidates = sorted(
            candidates,
            key=lambda p: (p.last_used_at is not None, p.last_used_at or 0.0),
        )
        selected = candidates[0]
        selected.last_used_at = time.time()
        await self._store.touch(selected.host, selected.last_used_at)

        logger.info(
            f"Proxy selected: {selected.host}:{selected.port} "
            f"({selected.region or 'unknown region'})"
        )
        return selected

    async def mark_failed(self, host: str) -> bool:
        """Evict every entry for ``host`` until the next refresh."""
        if not host:
            return False
        removed = await self._store.remove(host)
        if removed:
            proxy_evictions_total.inc()
            logger.info(f"Proxy {host} marked as failed and removed from pool")
        return removed

    async def size(self) -> int:
        proxies, _ = await self._store.load()
        return len(proxies)

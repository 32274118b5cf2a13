"""Runs one Job from queue message to stored artifact.

Lifecycle of an invocation::

    Received -> Validated -> SessionAcquired -> Attempting(k) -> Succeeded | FailedFatal

A proxy fault evicts the proxy as soon as it is seen. Before every attempt
after the first, the previous error kind decides what happens to the browser
session (rotate, or probe and keep). Those decisions are made here, never
inside ``classify`` or the retry hook.
"""

import asyncio
import logging
import time
from typing import Any

from marketpulse.core.context import job_id_var
from marketpulse.core.exceptions import (
    ChallengeWallError,
    ErrorKind,
    ScrapeFault,
    StorageFault,
    TransientFault,
    ValidationFault,
)
from marketpulse.core.metrics import (
    job_attempt_failures_total,
    session_rotations_total,
    worker_active_tasks,
    worker_task_duration_seconds,
    worker_task_total,
)
from marketpulse.extractors import Extractor, ExtractorRegistry
from marketpulse.schemas.job import Job, ScrapeResult
from marketpulse.services.browser import BrowserSession, BrowserSessionManager
from marketpulse.services.proxy import ProxyPool
from marketpulse.services.queue import parse_job
from marketpulse.services.retry import RetryConfig, classify, with_retry
from marketpulse.services.storage import ResultStore

logger = logging.getLogger(__name__)


def _peek(raw, field: str):
    if isinstance(raw, Job):
        return getattr(raw, field)
    if isinstance(raw, dict):
        return raw.get(field)
    return None


class _JobRun:
    """Per-invocation state: the current session and what the last failure was."""

    def __init__(self, processor: "JobProcessor", job: Job, extractor: Extractor):
        self._processor = processor
        self._job = job
        self._extractor = extractor
        self.session: BrowserSession | None = None
        self.last_kind: ErrorKind | None = None
        self.challenge_seen = False
        self.rotated_for_challenge = False

    @property
    def _region(self) -> str | None:
        return self._job.params.get("region")

    async def acquire(self, exclude: str | None = None) -> None:
        proxy = await self._processor.pool.select(region=self._region, exclude=exclude)
        self.session = await self._processor.browsers.launch(proxy)

    async def rotate(self, reason: str) -> None:
        old_host = None
        if self.session is not None:
            old_host = self.session.proxy.host if self.session.proxy else None
            await self.session.close()
            self.session = None
        logger.info(f"Rotating session ({reason}), excluding {old_host or 'none'}")
        session_rotations_total.inc()
        await self.acquire(exclude=old_host)

    async def _prepare(self, attempt: int) -> None:
        if self.session is None:
            await self.acquire()
            return
        if attempt == 0:
            return

        # The proxy behind a proxy fault was already evicted when the fault was seen
        kind = self.last_kind
        if kind == ErrorKind.PROXY_FAULT:
            await self.rotate("proxy fault")
        elif kind == ErrorKind.PROTOCOL_FAULT:
            await self.rotate("protocol fault")
        elif self.challenge_seen:
            self.rotated_for_challenge = True
            await self.rotate("bot challenge")
        elif not await self.session.is_healthy():
            await self.rotate("session degraded")

    async def _record_failure(self, error: BaseException) -> None:
        self.last_kind = classify(error)
        if self.last_kind != ErrorKind.PROXY_FAULT:
            return
        if self.session is None or self.session.proxy is None:
            return
        host = self.session.proxy.host
        try:
            await self._processor.pool.mark_failed(host)
        except Exception as e:
            logger.warning(f"Could not evict proxy {host}: {e}")

    async def _challenged(self, page, error: BaseException) -> bool:
        """True when ``error`` came with a bot challenge on the page."""
        if isinstance(error, ScrapeFault) and not isinstance(error, TransientFault):
            return False
        return await self._processor.browsers.detect_challenge(page)

    async def _scrape(self, page) -> dict[str, Any]:
        browsers = self._processor.browsers
        params = self._job.params
        try:
            return await self._extractor.scrape(page, params)
        except Exception as error:
            if not await self._challenged(page, error):
                raise
            challenge = error

        if await browsers.solve_challenge(page):
            # Rerun on the solved page
            try:
                return await self._extractor.scrape(page, params)
            except Exception as error:
                if not await self._challenged(page, error):
                    raise
                challenge = error
            logger.warning("Bot challenge persists after solving")

        if self.rotated_for_challenge:
            raise ChallengeWallError(
                "Bot challenge persists after rotating proxy and session"
            ) from challenge
        self.challenge_seen = True
        raise TransientFault("Bot challenge detected") from challenge

    async def attempt(self, attempt: int) -> dict[str, Any]:
        try:
            await self._prepare(attempt)
            self.challenge_seen = False
            page = await self.session.new_page()
            try:
                return await self._scrape(page)
            finally:
                await self.session.close_page(page)
        except Exception as error:
            await self._record_failure(error)
            raise

    def note_failure(self, error: BaseException, attempt: int, delay_ms: int) -> None:
        job_attempt_failures_total.labels(kind=classify(error).value).inc()

    async def close(self) -> None:
        if self.session is not None:
            try:
                await self.session.close()
            except Exception as e:
                logger.warning(f"Error closing browser session: {e}")
            self.session = None


class JobProcessor:
    """Validates a job, drives extractor attempts under retry, stores the outcome."""

    def __init__(
        self,
        pool: ProxyPool,
        browsers: BrowserSessionManager,
        store: ResultStore,
        extractors: ExtractorRegistry,
        retry_config: RetryConfig | None = None,
        sleep=asyncio.sleep,
    ):
        self.pool = pool
        self.browsers = browsers
        self.store = store
        self.extractors = extractors
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep

    def validate(self, raw: Job | dict[str, Any]) -> tuple[Job, Extractor]:
        job = parse_job(raw)
        extractor = self.extractors.get(job.source)
        if extractor is None:
            raise ValidationFault(f"Unsupported source: {job.source}")
        return job, extractor

    async def _store_error(self, job_id: str, platform: str, error: BaseException) -> None:
        try:
            key = await self.store.put_error(job_id, platform, error)
            logger.info(f"Error record stored at {key}")
        except StorageFault as e:
            logger.error(f"Could not store error record for job {job_id}: {e}")

    async def process(self, raw: Job | dict[str, Any]) -> ScrapeResult:
        """Process one job. Re-raises the original error after recording it."""
        raw_id = _peek(raw, "id")
        platform = str(_peek(raw, "source") or "unknown").strip() or "unknown"

        token = job_id_var.set(str(raw_id or ""))
        worker_active_tasks.inc()
        start = time.monotonic()
        try:
            try:
                job, extractor = self.validate(raw)
            except ValidationFault as e:
                logger.error(f"Invalid job: {e}")
                worker_task_total.labels(platform=platform, status="invalid").inc()
                if raw_id:
                    await self._store_error(str(raw_id), platform, e)
                raise

            platform = job.source
            job_id_var.set(job.id)
            logger.info(f"Processing job {job.id} ({job.source})")

            run = _JobRun(self, job, extractor)
            try:
                payload = await with_retry(
                    run.attempt,
                    self.retry_config,
                    on_retry=run.note_failure,
                    sleep=self._sleep,
                )
            except Exception as e:
                job_attempt_failures_total.labels(kind=classify(e).value).inc()
                worker_task_total.labels(platform=platform, status="failure").inc()
                logger.error(f"Job {job.id} failed: {e}")
                await self._store_error(job.id, platform, e)
                raise
            finally:
                await run.close()

            if not isinstance(payload, dict):
                error = ScrapeFault(
                    f"Extractor for {platform} returned {type(payload).__name__}, expected an object"
                )
                worker_task_total.labels(platform=platform, status="failure").inc()
                await self._store_error(job.id, platform, error)
                raise error

            try:
                result = await self.store.put_result(job.id, platform, payload)
            except StorageFault as e:
                # No rescrape here; redelivery runs the job again
                worker_task_total.labels(platform=platform, status="failure").inc()
                logger.error(f"Job {job.id} scraped but result not stored: {e}")
                await self._store_error(job.id, platform, e)
                raise
            worker_task_total.labels(platform=platform, status="success").inc()
            logger.info(f"Job {job.id} succeeded: {result.resultKey}")
            return result
        finally:
            worker_active_tasks.dec()
            worker_task_duration_seconds.labels(platform=platform).observe(
                time.monotonic() - start
            )
            job_id_var.reset(token)

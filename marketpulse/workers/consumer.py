"""Queue consumers.

Two ways to drive the JobProcessor:

- ``lambda_handler`` / ``handle_event``: one queue-triggered invocation, one
  job (the first record of the event). Raising hands the message back to the
  queue's redelivery and dead-letter policy.
- ``run_worker``: a long-poll loop for long-running containers. A message is
  deleted only after its job succeeded; failed messages are left to
  reappear when their visibility timeout expires.
"""

import asyncio
import json
import logging
import signal
import time

import sentry_sdk

from marketpulse.config import settings
from marketpulse.core.exceptions import QueueError, ValidationFault
from marketpulse.extractors import load_builtin_extractors
from marketpulse.schemas.job import ScrapeResult
from marketpulse.services.browser import BrowserSessionManager
from marketpulse.services.captcha import build_solver
from marketpulse.services.proxy import ProxyPool
from marketpulse.services.queue import QueueClient
from marketpulse.services.retry import RetryConfig
from marketpulse.services.storage import ResultStore
from marketpulse.workers.processor import JobProcessor

logger = logging.getLogger(__name__)

_RECEIVE_ERROR_BACKOFF = 5.0


def init_sentry() -> None:
    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            environment=settings.SENTRY_ENVIRONMENT,
            release=f"marketpulse-scraper@{settings.APP_VERSION}",
        )


def build_processor() -> JobProcessor:
    """Wire a JobProcessor from settings."""
    return JobProcessor(
        pool=ProxyPool.from_settings(settings),
        browsers=BrowserSessionManager.from_settings(settings, solver=build_solver(settings)),
        store=ResultStore.from_settings(settings),
        extractors=load_builtin_extractors(),
        retry_config=RetryConfig.from_settings(settings),
    )


def decode_body(body) -> dict:
    if isinstance(body, dict):
        return body
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as e:
        raise ValidationFault(f"Message body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationFault("Message body must be a JSON object")
    return data


async def handle_record(record: dict, processor: JobProcessor) -> ScrapeResult:
    """Process one queue record (``body`` or SQS ``Body``)."""
    body = record.get("body", record.get("Body"))
    return await processor.process(decode_body(body))


async def handle_event(event: dict, processor: JobProcessor) -> dict:
    """Queue-triggered invocation: exactly one job, the first record."""
    records = event.get("Records") or []
    if not records:
        raise ValidationFault("Event contains no records")
    if len(records) > 1:
        logger.warning(f"Event carries {len(records)} records, processing only the first")

    result = await handle_record(records[0], processor)
    return {
        "statusCode": 200,
        "body": json.dumps(
            {
                "message": "Scraping completed successfully",
                "jobId": result.jobId,
                "resultKey": result.resultKey,
            }
        ),
    }


def _run_async(coro, processor: JobProcessor):
    """Run a coroutine on a fresh event loop, closing browsers afterwards."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        try:
            loop.run_until_complete(processor.browsers.close_all())
        except Exception as e:
            logger.warning(f"Browser cleanup failed: {e}")
        loop.close()


def lambda_handler(event, context=None):
    """Entry point for a queue-triggered function runtime."""
    init_sentry()
    processor = build_processor()
    return _run_async(handle_event(event, processor), processor)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Not supported on this platform's event loop
            pass


async def run_worker(
    processor: JobProcessor | None = None,
    queue: QueueClient | None = None,
    max_messages: int | None = None,
    stop: asyncio.Event | None = None,
    install_signal_handlers: bool = False,
) -> int:
    """Long-poll the queue and process one message at a time.

    Returns the number of messages handled (succeeded or failed). Stops after
    ``max_messages`` or when ``stop`` is set (SIGINT/SIGTERM when signal
    handlers are installed).
    """
    processor = processor or build_processor()
    queue = queue or QueueClient.from_settings(settings)
    stop = stop or asyncio.Event()
    if install_signal_handlers:
        _install_signal_handlers(stop)

    handled = 0
    logger.info("Worker started")
    try:
        while not stop.is_set() and (max_messages is None or handled < max_messages):
            try:
                messages = await queue.receive(
                    max_messages=1,
                    wait_seconds=settings.SQS_WAIT_SECONDS,
                    visibility_timeout=settings.SQS_VISIBILITY_TIMEOUT,
                )
            except QueueError as e:
                logger.error(f"Failed to receive messages: {e}")
                try:
                    await asyncio.wait_for(stop.wait(), timeout=_RECEIVE_ERROR_BACKOFF)
                except asyncio.TimeoutError:
                    pass
                continue

            for message in messages:
                handled += 1
                start = time.monotonic()
                try:
                    result = await handle_record(message, processor)
                except Exception as e:
                    logger.error(
                        f"Message {message.get('MessageId')} failed, "
                        f"leaving it for redelivery: {e}"
                    )
                    continue

                try:
                    await queue.delete(message["ReceiptHandle"])
                except QueueError as e:
                    logger.error(f"Failed to delete message {message.get('MessageId')}: {e}")
                logger.info(
                    f"Job {result.jobId} done in {time.monotonic() - start:.1f}s"
                )
    finally:
        await processor.browsers.close_all()
        logger.info(f"Worker stopped after {handled} messages")
    return handled

"""Durable job queue client (Amazon SQS).

SQS delivers at least once: a received message stays invisible for the
visibility timeout and reappears unless it is deleted. Workers therefore
delete only after a job reached a terminal, persisted outcome, and leave
failures to the queue's redrive (dead-letter) policy.
"""

import asyncio
import json
import logging
from typing import Any, Iterable

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from marketpulse.core.exceptions import QueueError, ValidationFault
from marketpulse.core.metrics import jobs_enqueued_total, queue_batch_calls_total
from marketpulse.schemas.job import BatchEnqueueResult, EnqueuedJob, FailedJob, Job

logger = logging.getLogger(__name__)

SQS_MAX_BATCH = 10


def parse_job(raw: Job | dict[str, Any]) -> Job:
    if isinstance(raw, Job):
        return raw
    if not isinstance(raw, dict) or not str(raw.get("source") or "").strip():
        raise ValidationFault("Invalid job: source is required")
    try:
        return Job.model_validate(raw)
    except ValidationError as e:
        raise ValidationFault(f"Invalid job: {e.errors()[0]['msg']}") from e


def chunked(items: list, size: int) -> Iterable[list]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class QueueClient:
    """Validates, batches and submits jobs; receives and acknowledges them."""

    def __init__(self, queue_url: str, client=None, batch_limit: int = SQS_MAX_BATCH):
        self._queue_url = queue_url
        self._client = client
        self._batch_limit = max(1, min(batch_limit, SQS_MAX_BATCH))

    @classmethod
    def from_settings(cls, settings) -> "QueueClient":
        kwargs = {"region_name": settings.AWS_REGION}
        endpoint = settings.SQS_ENDPOINT_URL or settings.AWS_ENDPOINT_URL
        if endpoint:
            kwargs["endpoint_url"] = endpoint
        if not settings.SQS_QUEUE_URL:
            logger.error("SQS_QUEUE_URL is not configured")
        return cls(
            settings.SQS_QUEUE_URL,
            boto3.client("sqs", **kwargs),
            batch_limit=settings.SQS_BATCH_LIMIT,
        )

    def _require_queue(self) -> None:
        if not self._queue_url:
            raise QueueError("SQS_QUEUE_URL is not configured")

    @staticmethod
    def _entry(job: Job) -> dict:
        return {
            "MessageBody": json.dumps(job.to_message(), default=str),
            "DelaySeconds": job.delay_seconds,
            "MessageAttributes": {
                "source": {"DataType": "String", "StringValue": job.source}
            },
        }

    async def _call(self, method: str, **kwargs) -> dict:
        try:
            return await asyncio.to_thread(getattr(self._client, method), **kwargs)
        except (BotoCoreError, ClientError) as e:
            raise QueueError(f"SQS {method} failed: {e}") from e

    async def enqueue(self, raw: Job | dict[str, Any]) -> EnqueuedJob:
        """Submit one job, assigning id/createdAt when absent."""
        job = parse_job(raw)
        self._require_queue()

        logger.info(f"Adding job to queue: {job.source} ({job.id})")
        try:
            result = await self._call(
                "send_message", QueueUrl=self._queue_url, **self._entry(job)
            )
        except QueueError:
            jobs_enqueued_total.labels(source=job.source, status="failure").inc()
            raise
        jobs_enqueued_total.labels(source=job.source, status="success").inc()
        logger.info(f"Job queued: {result['MessageId']}")
        return EnqueuedJob(jobId=job.id, messageId=result["MessageId"])

    async def enqueue_batch(self, raws: list[Job | dict[str, Any]]) -> BatchEnqueueResult:
        """Submit many jobs in provider-sized chunks.

        Every entry is validated before the first provider call. Entries
        rejected by SQS, or belonging to a chunk whose call failed outright,
        come back in ``failed``; QueueError is raised only when nothing was
        accepted at all.
        """
        if not raws:
            raise ValidationFault("Invalid jobs: at least one job is required")
        jobs = [parse_job(raw) for raw in raws]
        self._require_queue()

        batches = list(chunked(jobs, self._batch_limit))
        logger.info(f"Submitting {len(jobs)} jobs in {len(batches)} batches")

        result = BatchEnqueueResult()
        last_error: QueueError | None = None

        for batch in batches:
            entries = [{"Id": str(i), **self._entry(job)} for i, job in enumerate(batch)]
            try:
                resp = await self._call(
                    "send_message_batch", QueueUrl=self._queue_url, Entries=entries
                )
            except QueueError as e:
                last_error = e
                queue_batch_calls_total.labels(status="failure").inc()
                logger.error(f"Batch of {len(batch)} jobs rejected: {e}")
                result.failed.extend(
                    FailedJob(
                        jobId=job.id,
                        code="BatchRequestFailed",
                        message=str(e),
                        senderFault=False,
                    )
                    for job in batch
                )
                continue

            queue_batch_calls_total.labels(status="success").inc()
            for ok in resp.get("Successful", []):
                job = batch[int(ok["Id"])]
                result.successful.append(EnqueuedJob(jobId=job.id, messageId=ok["MessageId"]))
                jobs_enqueued_total.labels(source=job.source, status="success").inc()

            failed = resp.get("Failed", [])
            if failed:
                logger.warning(f"{len(failed)} jobs could not be added to the queue")
                logger.debug(f"Failed entries: {failed}")
            for bad in failed:
                job = batch[int(bad["Id"])]
                result.failed.append(
                    FailedJob(
                        jobId=job.id,
                        code=bad.get("Code", "Unknown"),
                        message=bad.get("Message", ""),
                        senderFault=bool(bad.get("SenderFault", False)),
                    )
                )
                jobs_enqueued_total.labels(source=job.source, status="failure").inc()

        if not result.successful and last_error is not None:
            raise last_error

        logger.info(
            f"{len(result.successful)} jobs queued, {len(result.failed)} failed"
        )
        return result

    async def receive(
        self,
        max_messages: int = 1,
        wait_seconds: int = 20,
        visibility_timeout: int | None = None,
    ) -> list[dict]:
        """Long-poll for messages. Each has ``Body`` and ``ReceiptHandle``."""
        self._require_queue()
        kwargs: dict[str, Any] = {
            "QueueUrl": self._queue_url,
            "MaxNumberOfMessages": max(1, min(max_messages, SQS_MAX_BATCH)),
            "WaitTimeSeconds": wait_seconds,
            "MessageAttributeNames": ["All"],
            "AttributeNames": ["ApproximateReceiveCount"],
        }
        if visibility_timeout is not None:
            kwargs["VisibilityTimeout"] = visibility_timeout
        resp = await self._call("receive_message", **kwargs)
        return resp.get("Messages", [])

    async def delete(self, receipt_handle: str) -> None:
        """Acknowledge a message so it is not redelivered."""
        self._require_queue()
        await self._call(
            "delete_message", QueueUrl=self._queue_url, ReceiptHandle=receipt_handle
        )

    async def get_queue_attributes(self) -> dict:
        self._require_queue()
        resp = await self._call(
            "get_queue_attributes", QueueUrl=self._queue_url, AttributeNames=["All"]
        )
        return resp.get("Attributes", {})

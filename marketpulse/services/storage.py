"""Durable artifact storage (S3).

Key scheme, fixed so consumers can find artifacts without an index:

- results: ``{platform}/{job_id}/{iso_timestamp}.json``
- errors:  ``errors/{platform}/{job_id}/{iso_timestamp}.json``

Keys are timestamp-suffixed, so a job redelivered after a crash writes a
second artifact rather than overwriting the first.
"""

import asyncio
import json
import logging
import traceback
from datetime import datetime, timezone

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from marketpulse.core.exceptions import StorageFault
from marketpulse.core.metrics import artifacts_written_total
from marketpulse.schemas.job import ErrorRecord, ScrapeResult

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-05-01T10:00:00.123Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def result_key(platform: str, job_id: str, timestamp: str) -> str:
    return f"{platform}/{job_id}/{timestamp}.json"


def error_key(platform: str, job_id: str, timestamp: str) -> str:
    return f"errors/{platform}/{job_id}/{timestamp}.json"


def format_stack(error: BaseException) -> str:
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


class ResultStore:
    """Writes JSON artifacts to a bucket. boto3 calls run in a worker thread."""

    def __init__(self, bucket: str, client=None):
        self._bucket = bucket
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "ResultStore":
        kwargs = {"region_name": settings.AWS_REGION}
        if settings.AWS_ENDPOINT_URL:
            kwargs["endpoint_url"] = settings.AWS_ENDPOINT_URL
        return cls(settings.SCRAPED_DATA_BUCKET, boto3.client("s3", **kwargs))

    @property
    def bucket(self) -> str:
        return self._bucket

    async def put(self, key: str, payload: dict) -> None:
        body = json.dumps(payload, indent=2, default=str, ensure_ascii=False)
        logger.info(f"Storing artifact s3://{self._bucket}/{key}")
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=body.encode("utf-8"),
                ContentType="application/json",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to store artifact {key}: {e}")
            raise StorageFault(f"Failed to store {key}: {e}") from e

    async def put_result(self, job_id: str, platform: str, payload: dict) -> ScrapeResult:
        """Persist a successful scrape and return its envelope."""
        timestamp = utc_timestamp()
        key = result_key(platform, job_id, timestamp)
        envelope = ScrapeResult(
            jobId=job_id, platform=platform, resultKey=key, timestamp=timestamp
        )
        try:
            await self.put(key, {**payload, **envelope.model_dump()})
        except StorageFault:
            artifacts_written_total.labels(kind="result", status="failure").inc()
            raise
        artifacts_written_total.labels(kind="result", status="success").inc()
        return envelope

    async def put_error(self, job_id: str, platform: str, error: BaseException) -> str:
        """Persist an error record for later inspection and return its key."""
        timestamp = utc_timestamp()
        key = error_key(platform, job_id, timestamp)
        record = ErrorRecord(
            error=str(error),
            stack=format_stack(error),
            jobId=job_id,
            platform=platform,
            timestamp=timestamp,
        )
        try:
            await self.put(key, record.model_dump())
        except StorageFault:
            artifacts_written_total.labels(kind="error", status="failure").inc()
            raise
        artifacts_written_total.labels(kind="error", status="success").inc()
        return key

    async def get(self, key: str) -> dict:
        try:
            obj = await asyncio.to_thread(
                self._client.get_object, Bucket=self._bucket, Key=key
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageFault(f"Failed to read {key}: {e}") from e
        return json.loads(obj["Body"].read())

    async def list_keys(self, prefix: str) -> list[str]:
        """All keys under ``prefix`` (follows continuation tokens)."""
        keys: list[str] = []
        token = None
        while True:
            kwargs = {"Bucket": self._bucket, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            try:
                resp = await asyncio.to_thread(self._client.list_objects_v2, **kwargs)
            except (BotoCoreError, ClientError) as e:
                raise StorageFault(f"Failed to list {prefix}: {e}") from e
            keys.extend(item["Key"] for item in resp.get("Contents", []))
            if not resp.get("IsTruncated"):
                return keys
            token = resp.get("NextContinuationToken")

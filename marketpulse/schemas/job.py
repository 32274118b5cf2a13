from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Job(BaseModel):
    """One unit of scrape work, serialized as the queue message body.

    Field names follow the wire format (``delaySeconds``, ``createdAt``);
    unknown keys are kept so producers can attach extra metadata.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(default_factory=lambda: str(uuid4()))
    source: str
    params: dict[str, Any] = Field(default_factory=dict)
    delay_seconds: int = Field(default=0, alias="delaySeconds", ge=0, le=900)
    created_at: str = Field(default_factory=_now_iso, alias="createdAt")

    @field_validator("source")
    @classmethod
    def _source_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("source is required")
        return v

    @field_validator("id", mode="before")
    @classmethod
    def _id_default(cls, v):
        return v or str(uuid4())

    def to_message(self) -> dict:
        return self.model_dump(by_alias=True)


class JobIn(BaseModel):
    """A job as submitted to the enqueue API (id/createdAt optional)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str | None = None
    source: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    delay_seconds: int = Field(default=0, alias="delaySeconds", ge=0, le=900)
    created_at: str | None = Field(default=None, alias="createdAt")


class BatchEnqueueRequest(BaseModel):
    jobs: list[JobIn] | None = None


class EnqueuedJob(BaseModel):
    jobId: str
    messageId: str


class FailedJob(BaseModel):
    jobId: str
    code: str
    message: str
    senderFault: bool = False


class EnqueueResponse(BaseModel):
    success: bool = True
    jobId: str
    messageId: str


class BatchEnqueueResponse(BaseModel):
    success: bool
    total: int
    successful: list[EnqueuedJob] = []
    failed: list[FailedJob] = []


class BatchEnqueueResult(BaseModel):
    """What QueueClient.enqueue_batch returns."""

    successful: list[EnqueuedJob] = []
    failed: list[FailedJob] = []

    @property
    def partial(self) -> bool:
        return bool(self.successful) and bool(self.failed)


class ScrapeResult(BaseModel):
    """Envelope written alongside the extractor payload for a successful job."""

    jobId: str
    platform: str
    status: str = "success"
    resultKey: str
    timestamp: str


class ErrorRecord(BaseModel):
    error: str
    stack: str
    jobId: str
    platform: str
    timestamp: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    error_code: str

import logging

from fastapi import APIRouter, Depends

from marketpulse.api.deps import get_queue
from marketpulse.core.exceptions import BadRequestError
from marketpulse.schemas.job import (
    BatchEnqueueRequest,
    BatchEnqueueResponse,
    EnqueueResponse,
    JobIn,
)
from marketpulse.services.queue import QueueClient

router = APIRouter()
logger = logging.getLogger(__name__)


def _as_message(job: JobIn) -> dict:
    return job.model_dump(by_alias=True, exclude_none=True)


@router.post(
    "",
    status_code=202,
    response_model=EnqueueResponse,
    summary="Enqueue a scrape job",
    description="Validate a single job and submit it to the durable queue. "
    "An id and createdAt are assigned when absent.",
)
async def enqueue_job(job: JobIn, queue: QueueClient = Depends(get_queue)):
    queued = await queue.enqueue(_as_message(job))
    return EnqueueResponse(jobId=queued.jobId, messageId=queued.messageId)


@router.post(
    "/batch",
    status_code=202,
    response_model=BatchEnqueueResponse,
    summary="Enqueue scrape jobs in bulk",
    description="Validate every job, then submit them in batches of at most 10. "
    "Entries the queue rejects are reported under `failed`; the request as a "
    "whole is rejected with 400 before any submission if any job is invalid.",
)
async def enqueue_jobs(request: BatchEnqueueRequest, queue: QueueClient = Depends(get_queue)):
    if not request.jobs:
        raise BadRequestError("Invalid jobs array")
    for index, job in enumerate(request.jobs):
        if not (job.source or "").strip():
            raise BadRequestError(f"Invalid job at index {index}: source is required")

    result = await queue.enqueue_batch([_as_message(job) for job in request.jobs])
    return BatchEnqueueResponse(
        success=bool(result.successful),
        total=len(request.jobs),
        successful=result.successful,
        failed=result.failed,
    )


@router.get(
    "/queue",
    summary="Queue attributes",
    description="Approximate message counts and configuration of the job queue.",
)
async def queue_attributes(queue: QueueClient = Depends(get_queue)):
    return {"attributes": await queue.get_queue_attributes()}

from fastapi import APIRouter

from marketpulse.api.v1 import jobs

api_router = APIRouter(prefix="/v1")

api_router.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])

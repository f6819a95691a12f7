from fastapi import APIRouter

from bidscout_api.api.routes import health, ingest, jobs, matching

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(ingest.router, prefix="/ingest", tags=["ingest"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["worker"])
api_router.include_router(matching.router, tags=["matching"])

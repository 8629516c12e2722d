"""FastAPI dependency injection — shared pipeline services built in the lifespan."""
from fastapi import HTTPException, Request, status

from shelfmatch.services.batch_jobs import BatchJobs
from shelfmatch.services.result_store import ResultStore


def get_jobs(request: Request) -> BatchJobs:
    jobs = getattr(request.app.state, "jobs", None)
    if jobs is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not initialised")
    return jobs


def get_store(request: Request) -> ResultStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Store not initialised")
    return store

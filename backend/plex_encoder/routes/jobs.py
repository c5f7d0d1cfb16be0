"""Encoding queue API endpoints."""

import logging

from fastapi import APIRouter, HTTPException, Query
from plex_encoder.exceptions import InvalidJobStateError, JobNotFoundError
from plex_encoder.models.schemas import ConcurrencyUpdate, JobResponse, QueueSnapshot
from plex_encoder.services.dispatch import dispatch_engine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/queue", response_model=QueueSnapshot)
async def get_queue():
    """
    Get the current queue snapshot.

    Returns:
        Processing, queued, the last 10 completed and failed jobs, plus the
        pause flag and concurrency limit
    """
    try:
        return await dispatch_engine.get_queue_snapshot()
    except Exception as e:
        logger.error(f"Error reading queue: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/search", response_model=list[JobResponse])
async def search_jobs(
    q: str = Query(..., min_length=1, description="Title, episode, path or status"),
    limit: int = Query(50, ge=1, le=500),
):
    """Search jobs by media title, episode name, file path or status."""
    try:
        return await dispatch_engine.search_jobs(q, limit)
    except Exception as e:
        logger.error(f"Error searching jobs: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/pause")
async def pause_queue():
    """Stop starting new jobs; running jobs finish."""
    return dispatch_engine.pause()


@router.post("/resume")
async def resume_queue():
    """Resume starting jobs."""
    return dispatch_engine.resume()


@router.put("/concurrency")
async def set_concurrency(data: ConcurrencyUpdate):
    """Set the maximum number of parallel jobs (minimum 1)."""
    return {"max_parallel_jobs": dispatch_engine.set_concurrency_limit(data.max_parallel_jobs)}


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: int):
    """
    Get job details by ID.

    Args:
        job_id: Job ID

    Returns:
        Job details
    """
    job = await dispatch_engine.store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/{job_id}/restart", response_model=JobResponse)
async def restart_job(job_id: int):
    """Requeue a failed job."""
    try:
        return await dispatch_engine.restart_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=400, detail=str(e))

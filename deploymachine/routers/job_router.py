# routers/job_router.py

"""
Job Status API Routes
"""

import logging
from fastapi import APIRouter, HTTPException, Request

from deploymachine.models.job import Job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])


@router.get("")
async def get_queue_status(request: Request):
    """Number of jobs currently running"""
    queue = request.app.state.queue
    return {
        "running": queue.running_count(),
        "max_running": queue.max_items
    }


@router.get("/{job_id}", response_model=Job, response_model_by_alias=True, response_model_exclude_none=True)
async def get_job_status(job_id: str, request: Request):
    """Get the stored record of a job"""
    job = await request.app.state.queue.get(job_id)

    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    return job

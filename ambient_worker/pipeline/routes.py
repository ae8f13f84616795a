"""
FastAPI routes for the ambient video pipeline.

Pipeline Endpoints:
  POST /pipeline/run              — Create a job and start the pipeline
  POST /pipeline/{id}/resume      — Resume a failed or stalled job
  GET  /pipeline/status/{id}      — Job status surface
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException

from .errors import JobNotFoundError
from .models import (
    JobStatus,
    PipelineResumeRequest,
    PipelineRunRequest,
    PipelineStatusResponse,
)
from .orchestrator import PipelineController

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Pipeline Router
# ═════════════════════════════════════════════════════════════════════════════

pipeline_router = APIRouter(prefix="/pipeline", tags=["pipeline"])

# Set by the app at startup (main.lifespan) or by tests
_controller: Optional[PipelineController] = None
# Called with (job_id, task_type) when a queue is available; None → run in-process
_enqueue = None


def configure(controller: PipelineController, enqueue=None):
    global _controller, _enqueue
    _controller = controller
    _enqueue = enqueue


def _get_controller() -> PipelineController:
    if _controller is None:
        raise HTTPException(status_code=503, detail="Pipeline not configured")
    return _controller


def _status_response(job_id: str) -> PipelineStatusResponse:
    surface = _get_controller().get_status(job_id)
    return PipelineStatusResponse(job_id=job_id, **surface)


@pipeline_router.post("/run", response_model=PipelineStatusResponse)
async def run_pipeline(request: PipelineRunRequest, background_tasks: BackgroundTasks):
    """Create the job and start the pipeline (async)."""
    controller = _get_controller()
    try:
        job = controller.create_job(request.brief, request.settings, request.user_id)
    except Exception as e:
        logger.error(f"Job creation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    if _enqueue is not None:
        _enqueue(job.id, "pipeline_run")
    else:
        background_tasks.add_task(controller.continue_job, job.id)

    return _status_response(job.id)


@pipeline_router.post("/{job_id}/resume", response_model=PipelineStatusResponse)
async def resume_pipeline(
    job_id: str,
    request: PipelineResumeRequest,
    background_tasks: BackgroundTasks,
):
    """Resume a failed or stalled job from its failed step (or an explicit step)."""
    controller = _get_controller()
    try:
        job = controller.store.get_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

    if job.status == JobStatus.COMPLETED:
        raise HTTPException(status_code=409, detail="Job already completed")
    if job.status == JobStatus.IN_PROGRESS:
        if controller.is_running(job_id):
            raise HTTPException(status_code=409, detail="Job is already running")
        # Nothing holds the job; the run that set in_progress died mid-way.
        logger.warning(f"[{job_id}] Resuming stale in_progress job from step {job.current_step}")

    step = request.resume_from_step or job.failed_step or job.current_step
    background_tasks.add_task(
        controller.run, job.brief, job.settings, job.user_id,
        resume_from_step=step, job_id=job_id,
    )
    return _status_response(job_id)


@pipeline_router.get("/status/{job_id}", response_model=PipelineStatusResponse)
async def get_pipeline_status(job_id: str):
    """Get the current status of a pipeline job."""
    try:
        return _status_response(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

"""
Step 7: Export — submit the timeline to the renderer and wait for the video.

Polling is bounded: POLL_INTERVAL × MAX_POLL_ATTEMPTS. A failed render or
an exhausted budget raises RenderError, which fails the job at this step.
Without a renderer configured the export is left pending for a manual run.
"""

import os
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import RenderError
from .job_store import JobStore
from .models import ExportData, GenerationJob, PipelineStep, PreviewData, StepResult
from .providers import Collaborators, ObjectStore
from .storage import build_media_path, download_bytes

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

POLL_INTERVAL = float(os.getenv("RENDER_POLL_INTERVAL", "5"))  # seconds
MAX_POLL_ATTEMPTS = int(os.getenv("RENDER_MAX_POLL_ATTEMPTS", "120"))  # 10 minutes max


async def wait_for_render(
    providers: Collaborators,
    render_id: str,
    poll_interval: Optional[float] = None,
    max_attempts: Optional[int] = None,
):
    """
    Poll the renderer until the render is done.

    Returns:
        RenderStatus with a URL.

    Raises:
        RenderError: render failed, or no result within the attempt budget.
    """
    interval = POLL_INTERVAL if poll_interval is None else poll_interval
    attempts = MAX_POLL_ATTEMPTS if max_attempts is None else max_attempts

    for attempt in range(attempts):
        status = await providers.renderer.poll_render_status(render_id)
        logger.info(f"Render poll #{attempt + 1}: id={render_id} status={status.status}")

        if status.status == "done":
            if not status.url:
                raise RenderError(f"Render {render_id} finished without a video URL")
            return status
        if status.status == "failed":
            raise RenderError(f"Render {render_id} failed: {status.error or 'unknown error'}")

        await asyncio.sleep(interval)

    raise RenderError(f"Render {render_id} timed out after {attempts * interval:.0f}s")


async def rehost(
    store: Optional[ObjectStore],
    url: Optional[str],
    path: str,
    mime_type: str,
) -> Optional[str]:
    """Copy a renderer-hosted file to our CDN; fall back to the original URL."""
    if store is None or not url:
        return url
    try:
        data = await download_bytes(url)
        return await asyncio.to_thread(store.store_object, path, data, mime_type)
    except Exception as e:
        logger.warning(f"Re-hosting {url} failed, keeping renderer URL: {e}")
        return url


async def run(job: GenerationJob, store: JobStore, providers: Collaborators) -> StepResult:
    preview = store.get_step_data(job.id, PipelineStep.PREVIEW, PreviewData)
    if preview is None:
        raise ValueError("Export needs Preview data")

    if providers.renderer is None:
        logger.warning(f"[{job.id}] No renderer configured — export left pending")
        return StepResult(data=ExportData(render_status="pending"))

    timeline = preview.timeline.model_dump(mode="json")
    timeline["aspect_ratio"] = job.settings.aspect_ratio

    render_id = await providers.renderer.submit_render(timeline)
    logger.info(f"[{job.id}] Render submitted: {render_id}")

    status = await wait_for_render(providers, render_id)

    export_url = await rehost(
        providers.object_store, status.url,
        build_media_path(job.user_id, job.id, "final", "video.mp4"), "video/mp4",
    )
    thumbnail_url = await rehost(
        providers.object_store, status.thumbnail_url,
        build_media_path(job.user_id, job.id, "thumbnail", "thumbnail.jpg"), "image/jpeg",
    )

    logger.info(f"[{job.id}] Export complete: {export_url}")
    return StepResult(data=ExportData(
        render_status="done",
        render_id=render_id,
        export_url=export_url,
        thumbnail_url=thumbnail_url,
        completed_at=datetime.now(timezone.utc).isoformat(),
    ))

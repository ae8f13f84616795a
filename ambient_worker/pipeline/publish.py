"""
Step 8: Publish — post the exported video to social platforms.

Best-effort: nothing in here can fail the job. Every error is logged and the
stage reports a non-fatal outcome.
"""

import json
import logging
from typing import Optional

from .errors import PublishError
from .job_store import JobStore
from .models import (
    AtmosphereData,
    ExportData,
    GenerationJob,
    PipelineStep,
    PublishData,
    StepResult,
)
from .providers import Collaborators

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = ("youtube", "tiktok", "instagram", "facebook")

METADATA_SYSTEM_PROMPT = """You write social media metadata for relaxing ambient videos.
Return JSON only."""

YOUTUBE_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "tags": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["title", "description"],
}

CAPTION_SCHEMA = {
    "type": "object",
    "properties": {
        "caption": {"type": "string"},
        "hashtags": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["caption"],
}


def _as_dict(output) -> dict:
    return output if isinstance(output, dict) else json.loads(output)


def resolve_schedule(job: GenerationJob) -> Optional[str]:
    """ISO timestamp for scheduled posting, or None to post immediately."""
    pub = job.settings.publishing
    if pub.schedule_mode in ("scheduled", "continuous") and pub.scheduled_for:
        return pub.scheduled_for
    return None


async def build_metadata(
    job: GenerationJob,
    platforms: list[str],
    atmosphere: Optional[AtmosphereData],
    providers: Collaborators,
) -> tuple[dict, float]:
    """Per-platform metadata. A platform whose metadata fails is left out."""
    context = "\n".join([
        f"Brief: {job.brief}",
        f"Mood: {job.settings.mood}, theme: {job.settings.theme}",
        f"Atmosphere: {atmosphere.mood_description if atmosphere else ''}",
    ])
    metadata: dict = {}
    cost = 0.0

    for platform in platforms:
        schema = YOUTUBE_SCHEMA if platform == "youtube" else CAPTION_SCHEMA
        try:
            result = await providers.text.generate_text(
                system_prompt=METADATA_SYSTEM_PROMPT,
                user_prompt=f"Platform: {platform}\n{context}",
                output_schema=schema,
                model=job.settings.models.text_model,
            )
            cost += result.cost
            fields = _as_dict(result.output)
        except Exception as e:
            logger.warning(f"[{job.id}] Metadata for {platform} failed: {e}")
            continue

        if platform == "youtube":
            metadata["youtube"] = {
                "title": fields.get("title", "")[:100],
                "description": fields.get("description", ""),
                "tags": fields.get("tags", []),
                "visibility": job.settings.publishing.youtube_visibility,
            }
        else:
            metadata[platform] = {
                "caption": fields.get("caption", ""),
                "hashtags": fields.get("hashtags", []),
            }

    return metadata, cost


async def run(job: GenerationJob, store: JobStore, providers: Collaborators) -> StepResult:
    try:
        return await _publish(job, store, providers)
    except Exception as e:
        logger.error(f"[{job.id}] Publishing failed (job continues): {e}", exc_info=True)
        return StepResult(non_fatal=True, error=str(e), data=PublishData(error=str(e)))


async def _publish(job: GenerationJob, store: JobStore, providers: Collaborators) -> StepResult:
    pub = job.settings.publishing
    if not pub.enabled:
        return StepResult(data=PublishData(skipped=True, reason="disabled"))
    if providers.publisher is None:
        logger.warning(f"[{job.id}] Publishing enabled but no publisher configured")
        return StepResult(non_fatal=True, data=PublishData(skipped=True, reason="no publisher configured"))

    export = store.get_step_data(job.id, PipelineStep.EXPORT, ExportData)
    if export is None or not export.export_url:
        return StepResult(data=PublishData(skipped=True, reason="no export url"))

    platforms = [p for p in pub.platforms if p in SUPPORTED_PLATFORMS]
    if not platforms:
        return StepResult(data=PublishData(skipped=True, reason="no supported platforms"))

    atmosphere = store.get_step_data(job.id, PipelineStep.ATMOSPHERE, AtmosphereData)
    metadata, cost = await build_metadata(job, platforms, atmosphere, providers)
    scheduled_for = resolve_schedule(job)

    try:
        receipt = await providers.publisher.publish(
            video_url=export.export_url,
            platforms=platforms,
            metadata=metadata,
            scheduled_for=scheduled_for,
        )
    except PublishError as e:
        logger.error(f"[{job.id}] Publisher rejected post: {e}")
        return StepResult(cost=cost, non_fatal=True, error=str(e), data=PublishData(error=str(e), platforms=platforms))

    logger.info(
        f"[{job.id}] Published to {', '.join(platforms)}: post={receipt.post_id} "
        f"status={receipt.status}" + (f" scheduled_for={scheduled_for}" if scheduled_for else "")
    )
    return StepResult(cost=cost, data=PublishData(
        post_id=receipt.post_id,
        status=receipt.status,
        platforms=platforms,
        scheduled_for=scheduled_for,
    ))

"""
Step 4: Composition — prompts, keyframes and clips for every shot.

  Phase 1: Prompts (one text call per shot, playback order)
  Phase 2: Keyframes via the batch scheduler (continuity-aware)
  Phase 3: Clips (video-animation only)

Every run appends a new ShotVersion per shot. Frames already present on the
latest version from an earlier run are reused at zero cost.
"""

import os
import json
import asyncio
import logging
from typing import Any, Optional

from . import continuity
from .batch import process_all
from .job_store import JobStore
from .models import (
    AnimationMode,
    CompositionData,
    FlowDesignData,
    FrameMode,
    GenerationJob,
    PipelineStep,
    Scene,
    Shot,
    ShotContinuity,
    ShotRequest,
    ShotResult,
    ShotVersion,
    ShotVersionStatus,
    StepResult,
    VisualWorldData,
    AtmosphereData,
)
from .providers import Collaborators

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
CLIP_RETRY_DELAY = float(os.getenv("CLIP_RETRY_DELAY", "2.0"))


PROMPT_SYSTEM_PROMPT = """You write image and video generation prompts for one shot of an
ambient video. Keep every prompt under 80 words, concrete and visual. Return JSON only."""

PROMPT_SCHEMA = {
    "type": "object",
    "properties": {
        "image_prompt": {"type": "string"},
        "start_frame_prompt": {"type": "string"},
        "end_frame_prompt": {"type": "string"},
        "video_prompt": {"type": "string"},
    },
    "required": ["image_prompt", "video_prompt"],
}


def _as_dict(output: Any) -> dict:
    if isinstance(output, dict):
        return output
    return json.loads(output)


def latest_versions(shot_versions: dict[str, list[ShotVersion]]) -> dict[str, ShotVersion]:
    """shot_id → highest-numbered version."""
    return {
        shot_id: max(versions, key=lambda v: v.version_number)
        for shot_id, versions in shot_versions.items()
        if versions
    }


def _ordered(flow: FlowDesignData) -> list[tuple[Scene, Shot]]:
    pairs = []
    for scene in sorted(flow.scenes, key=lambda s: s.scene_number):
        for shot in sorted(flow.shots.get(scene.id, []), key=lambda s: s.shot_number):
            pairs.append((scene, shot))
    return pairs


# ═════════════════════════════════════════════════════════════════════════════
# Phase 1: Prompts
# ═════════════════════════════════════════════════════════════════════════════

async def generate_prompts(
    job: GenerationJob,
    ordered: list[tuple[Scene, Shot]],
    inheritance: dict[str, ShotContinuity],
    previous: dict[str, ShotVersion],
    atmosphere: AtmosphereData,
    visual_world: VisualWorldData,
    providers: Collaborators,
) -> tuple[dict[str, ShotVersion], float]:
    """
    Create the new version for every shot with its prompts filled in.

    An inheriting shot's start-frame prompt is its predecessor's end-frame
    prompt, so the two frames describe the same moment.
    """
    s = job.settings
    versions: dict[str, ShotVersion] = {}
    cost = 0.0

    for scene, shot in ordered:
        prior = previous.get(shot.id)
        version = ShotVersion(
            shot_id=shot.id,
            version_number=(prior.version_number + 1) if prior else 1,
        )

        if prior and prior.image_prompt and prior.video_prompt:
            version.image_prompt = prior.image_prompt
            version.start_frame_prompt = prior.start_frame_prompt
            version.end_frame_prompt = prior.end_frame_prompt
            version.video_prompt = prior.video_prompt
        else:
            user_prompt = "\n".join([
                f"Atmosphere: {atmosphere.mood_description}",
                f"Art style: {visual_world.art_style}; rhythm: {visual_world.visual_rhythm}",
                f"Segment {scene.scene_number}: {scene.title} — {scene.description}",
                f"Shot {shot.shot_number}: {shot.shot_type}, {shot.camera_movement}, {shot.duration}s",
                shot.description,
                f"Animation: {s.animation_mode.value}; frames: {s.frame_mode.value}",
            ])
            if visual_world.image_custom_instructions:
                user_prompt += f"\nAlways: {visual_world.image_custom_instructions}"

            result = await providers.text.generate_text(
                system_prompt=PROMPT_SYSTEM_PROMPT,
                user_prompt=user_prompt,
                output_schema=PROMPT_SCHEMA,
                model=s.models.text_model,
            )
            cost += result.cost
            prompts = _as_dict(result.output)
            version.image_prompt = prompts.get("image_prompt")
            version.start_frame_prompt = prompts.get("start_frame_prompt") or version.image_prompt
            version.end_frame_prompt = prompts.get("end_frame_prompt")
            version.video_prompt = prompts.get("video_prompt")

        link = inheritance.get(shot.id)
        if link and not link.is_first and link.previous_shot_id in versions:
            version.start_frame_prompt = versions[link.previous_shot_id].end_frame_prompt

        versions[shot.id] = version

    return versions, cost


# ═════════════════════════════════════════════════════════════════════════════
# Phase 2: Keyframes
# ═════════════════════════════════════════════════════════════════════════════

def make_keyframe_generator(
    job: GenerationJob,
    versions: dict[str, ShotVersion],
    previous: dict[str, ShotVersion],
    visual_world: VisualWorldData,
    providers: Collaborators,
):
    """Build the per-shot callable handed to the batch scheduler."""
    s = job.settings
    model = s.models.image_model
    resolution = s.models.image_resolution
    references = visual_world.reference_images or None

    async def _image(prompt: Optional[str], refs: Optional[list[str]]):
        if not prompt:
            raise ValueError("Missing image prompt")
        return await providers.images.generate_image(
            prompt=prompt,
            reference_images=refs,
            aspect_ratio=s.aspect_ratio,
            model=model,
            resolution=resolution,
        )

    async def generate(request: ShotRequest, inherited_start: Optional[str]) -> ShotResult:
        shot_id = request.shot.id
        version = versions[shot_id]
        prior = previous.get(shot_id)
        cost = 0.0

        if s.animation_mode == AnimationMode.IMAGE_TRANSITIONS:
            if prior and prior.image_url:
                return ShotResult(shot_id=shot_id, success=True, image_url=prior.image_url)
            image = await _image(version.image_prompt, references)
            return ShotResult(shot_id=shot_id, success=True, image_url=image.url, cost=image.cost)

        # Start frame: inherited > reused > generated.
        if inherited_start:
            start_url = inherited_start
        elif prior and prior.start_frame_url and not prior.start_frame_inherited:
            start_url = prior.start_frame_url
        else:
            start = await _image(version.start_frame_prompt, references)
            start_url, cost = start.url, cost + start.cost

        if s.frame_mode == FrameMode.IMAGE_REFERENCE:
            return ShotResult(shot_id=shot_id, success=True, start_frame_url=start_url, cost=cost)

        if prior and prior.end_frame_url and prior.start_frame_url == start_url:
            end_url = prior.end_frame_url
        else:
            end = await _image(version.end_frame_prompt or version.image_prompt, [start_url])
            end_url, cost = end.url, cost + end.cost

        return ShotResult(
            shot_id=shot_id,
            success=True,
            start_frame_url=start_url,
            end_frame_url=end_url,
            cost=cost,
        )

    return generate


def _apply_frames(version: ShotVersion, result: ShotResult, mode: AnimationMode) -> None:
    if not result.success:
        version.status = ShotVersionStatus.FAILED
        version.error_message = result.error
        return
    version.image_url = result.image_url
    version.start_frame_url = result.start_frame_url
    version.end_frame_url = result.end_frame_url
    version.start_frame_inherited = result.start_frame_inherited
    version.status = (
        ShotVersionStatus.COMPLETED
        if mode == AnimationMode.IMAGE_TRANSITIONS
        else ShotVersionStatus.IMAGES_GENERATED
    )


# ═════════════════════════════════════════════════════════════════════════════
# Phase 3: Clips
# ═════════════════════════════════════════════════════════════════════════════

async def generate_clips(
    job: GenerationJob,
    ordered: list[tuple[Scene, Shot]],
    versions: dict[str, ShotVersion],
    providers: Collaborators,
    retry_delay: Optional[float] = None,
) -> tuple[int, float]:
    """
    Animate every shot that has a start frame, sequentially.

    Returns:
        (clips generated, cost)
    """
    s = job.settings
    retry_delay = CLIP_RETRY_DELAY if retry_delay is None else retry_delay
    generated, cost = 0, 0.0

    for scene, shot in ordered:
        version = versions[shot.id]
        if version.status == ShotVersionStatus.FAILED or not version.start_frame_url:
            logger.warning(f"[{job.id}] Shot {scene.scene_number}.{shot.shot_number}: no start frame, skipping clip")
            continue

        end_frame = version.end_frame_url if s.frame_mode == FrameMode.START_END_FRAME else None
        prompt = version.video_prompt or shot.description
        if s.motion_prompt:
            prompt = f"{prompt}. {s.motion_prompt}"

        last_error = None
        for attempt in range(2):
            try:
                clip = await providers.clips.generate_clip(
                    start_frame=version.start_frame_url,
                    end_frame=end_frame,
                    prompt=prompt,
                    duration=shot.duration,
                    aspect_ratio=s.aspect_ratio,
                    model=s.models.video_model,
                    resolution=s.models.video_resolution,
                )
                cost += clip.cost
                version.video_url = clip.url
                version.video_duration = clip.duration or shot.duration
                version.status = ShotVersionStatus.COMPLETED
                generated += 1
                last_error = None
                break
            except Exception as e:
                last_error = str(e)
                logger.warning(f"[{job.id}] Clip for shot {shot.id} failed (attempt {attempt + 1}): {e}")
                if attempt == 0 and retry_delay > 0:
                    await asyncio.sleep(retry_delay)

        if last_error is not None:
            version.status = ShotVersionStatus.FAILED
            version.error_message = last_error

    return generated, cost


# ═════════════════════════════════════════════════════════════════════════════
# Stage entry
# ═════════════════════════════════════════════════════════════════════════════

async def run(job: GenerationJob, store: JobStore, providers: Collaborators) -> StepResult:
    atmosphere = store.get_step_data(job.id, PipelineStep.ATMOSPHERE, AtmosphereData)
    visual_world = store.get_step_data(job.id, PipelineStep.VISUAL_WORLD, VisualWorldData)
    flow = store.get_step_data(job.id, PipelineStep.FLOW_DESIGN, FlowDesignData)
    if atmosphere is None or visual_world is None or flow is None:
        raise ValueError("Composition needs Atmosphere, Visual World and Flow Design data")

    prior_data = store.get_step_data(job.id, PipelineStep.COMPOSITION, CompositionData)
    history = dict(prior_data.shot_versions) if prior_data else {}
    previous = latest_versions(history)

    ordered = _ordered(flow)
    scene_numbers = {scene.id: scene.scene_number for scene in flow.scenes}

    groups = [g for scene_groups in flow.continuity_groups.values() for g in scene_groups]
    inheritance = continuity.resolve(flow.shots, groups)

    # Phase 1
    versions, cost = await generate_prompts(
        job, ordered, inheritance, previous, atmosphere, visual_world, providers,
    )
    logger.info(f"[{job.id}] Prompts ready for {len(versions)} shots")

    # Phase 2
    requests = [
        ShotRequest(shot=shot, scene_number=scene_numbers[shot.scene_id], version=versions[shot.id])
        for _, shot in ordered
    ]
    existing = {
        shot_id: v.end_frame_url
        for shot_id, v in previous.items()
        if v.end_frame_url
    }
    generator = make_keyframe_generator(job, versions, previous, visual_world, providers)
    batch = await process_all(requests, inheritance, existing, generator)
    cost += batch.total_cost

    mode = job.settings.animation_mode
    for result in batch.results:
        _apply_frames(versions[result.shot_id], result, mode)

    # Phase 3
    videos = 0
    if mode == AnimationMode.VIDEO_ANIMATION:
        videos, clip_cost = await generate_clips(job, ordered, versions, providers)
        cost += clip_cost

    for shot_id, version in versions.items():
        history[shot_id] = list(history.get(shot_id, [])) + [version]

    failures = sum(1 for v in versions.values() if v.status == ShotVersionStatus.FAILED)
    logger.info(
        f"[{job.id}] Composition: {batch.success_count} keyframe sets, "
        f"{videos} clips, {failures} failed shots"
    )
    return StepResult(
        cost=cost,
        data=CompositionData(
            shot_versions=history,
            images_generated=batch.success_count,
            videos_generated=videos,
            failures=failures,
        ),
    )

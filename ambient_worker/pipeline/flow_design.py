"""
Step 3: Flow Design — scenes, shots and continuity groups.

  3a. Scene generation: one structured text call sized by pacing.
  3b. Shot composition: one call per scene, all scenes concurrently.
  3c. Continuity proposal (start-end-frame only): validated and auto-approved.

Durations are normalized here so scenes sum exactly to the chosen length
and shots sum exactly to their scene.
"""

import json
import asyncio
import logging
from typing import Any

from .continuity import validate_groups
from .job_store import JobStore
from .models import (
    AnimationMode,
    AtmosphereData,
    CAMERA_MOVEMENTS,
    ContinuityGroup,
    ContinuityStatus,
    FlowDesignData,
    FrameMode,
    GenerationJob,
    PipelineStep,
    Scene,
    SHOT_TYPES,
    Shot,
    StepResult,
    TRANSITION_TYPES,
    VisualWorldData,
)
from .pacing import (
    MAX_SCENES,
    MAX_SCENE_DURATION,
    MAX_SHOTS_PER_SCENE,
    MAX_SHOT_DURATION,
    MIN_SCENE_DURATION,
    MIN_SHOT_DURATION,
    normalize_durations,
    optimal_segment_count,
    optimal_shot_count,
    pacing_category,
    parse_duration_to_seconds,
    scene_loop_count,
    segment_count_bounds,
    shot_loop_count,
)
from .providers import Collaborators

logger = logging.getLogger(__name__)


# ── Prompts & Schemas ────────────────────────────────────────────────────────

SCENE_SYSTEM_PROMPT = """You break an ambient mood description into visual segments.
Each segment is a continuous place or moment with its own light and weather.
Return JSON only."""

SHOT_SYSTEM_PROMPT = """You compose the individual shots of one ambient video segment.
Shots are slow, contemplative and mostly free of people. Return JSON only."""

CONTINUITY_SYSTEM_PROMPT = """You decide which consecutive shots should connect seamlessly,
with each shot starting exactly where the previous one ended. Groups are 2-5 consecutive
shots inside one segment. Return JSON only."""

SCENE_SCHEMA = {
    "type": "object",
    "properties": {
        "scenes": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "duration": {"type": "number"},
                    "lighting": {"type": "string"},
                    "weather": {"type": "string"},
                },
                "required": ["title", "description", "duration"],
            },
        }
    },
    "required": ["scenes"],
}

SHOT_SCHEMA = {
    "type": "object",
    "properties": {
        "shots": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "shot_type": {"type": "string", "enum": list(SHOT_TYPES)},
                    "camera_movement": {"type": "string"},
                    "duration": {"type": "number"},
                    "description": {"type": "string"},
                },
                "required": ["shot_type", "duration", "description"],
            },
        }
    },
    "required": ["shots"],
}

CONTINUITY_SCHEMA = {
    "type": "object",
    "properties": {
        "groups": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "scene_number": {"type": "integer"},
                    "shot_numbers": {"type": "array", "items": {"type": "integer"}},
                    "transition_type": {"type": "string", "enum": list(TRANSITION_TYPES)},
                    "description": {"type": "string"},
                },
                "required": ["scene_number", "shot_numbers"],
            },
        }
    },
    "required": ["groups"],
}


def _as_dict(output: Any) -> dict:
    if isinstance(output, dict):
        return output
    if isinstance(output, str):
        return json.loads(output)
    raise ValueError(f"Expected JSON output, got {type(output).__name__}")


# ═════════════════════════════════════════════════════════════════════════════
# 3a. Scenes
# ═════════════════════════════════════════════════════════════════════════════

async def generate_scenes(
    job: GenerationJob,
    atmosphere: AtmosphereData,
    visual_world: VisualWorldData,
    providers: Collaborators,
) -> tuple[list[Scene], float]:
    """
    Generate scenes whose durations sum exactly to the chosen length.

    Returns:
        (scenes, cost)
    """
    s = job.settings
    total_seconds = parse_duration_to_seconds(s.duration)
    target = optimal_segment_count(total_seconds, s.pacing, s.segment_count)

    user_prompt = "\n".join([
        f"Mood description:\n{atmosphere.mood_description}",
        f"Theme: {s.theme}, time: {s.time_context}, season: {s.season}",
        f"Art style: {visual_world.art_style}",
        f"Key elements: {', '.join(visual_world.visual_elements) or 'none'}",
        f"Pacing: {pacing_category(s.pacing)} ({s.pacing}/100)",
        f"Total duration: {total_seconds} seconds",
        f"Create EXACTLY {target} segments whose durations sum to {total_seconds}.",
    ])

    result = await providers.text.generate_text(
        system_prompt=SCENE_SYSTEM_PROMPT,
        user_prompt=user_prompt,
        output_schema=SCENE_SCHEMA,
        model=s.models.text_model,
    )
    raw_scenes = _as_dict(result.output).get("scenes") or []
    if not raw_scenes:
        raise ValueError("Scene generator returned no scenes")

    # Trim to the requested count; an auto count is held to the pacing bound.
    if s.segment_count == "auto":
        lo, hi = segment_count_bounds(total_seconds, s.pacing)
        limit = hi
        if len(raw_scenes) < lo:
            logger.warning(
                f"[{job.id}] Scene generator returned {len(raw_scenes)} scenes, "
                f"below the {pacing_category(s.pacing)} minimum of {lo}"
            )
    else:
        limit = target
    # Every scene needs at least one second.
    raw_scenes = raw_scenes[:min(limit, MAX_SCENES, total_seconds)]

    durations = normalize_durations(
        [float(r.get("duration") or 0) for r in raw_scenes],
        total_seconds,
        MIN_SCENE_DURATION,
        MAX_SCENE_DURATION,
    )

    scenes = [
        Scene(
            scene_number=i + 1,
            title=str(raw.get("title") or f"Segment {i + 1}"),
            description=str(raw.get("description") or ""),
            duration=durations[i],
            lighting=raw.get("lighting"),
            weather=raw.get("weather"),
            loop_count=scene_loop_count(s.loops),
        )
        for i, raw in enumerate(raw_scenes)
    ]

    logger.info(
        f"[{job.id}] Scenes: {len(scenes)} (target {target}), "
        f"durations {durations} = {sum(durations)}s"
    )
    return scenes, result.cost


# ═════════════════════════════════════════════════════════════════════════════
# 3b. Shots
# ═════════════════════════════════════════════════════════════════════════════

async def compose_shots(
    job: GenerationJob,
    scene: Scene,
    scene_count: int,
    providers: Collaborators,
) -> tuple[list[Shot], float]:
    """Compose one scene's shots; durations sum exactly to the scene."""
    s = job.settings
    target = min(optimal_shot_count(scene.duration, s.pacing, s.shots_per_segment), scene.duration)
    movements = CAMERA_MOVEMENTS[s.animation_mode]

    user_prompt = "\n".join([
        f"Segment {scene.scene_number} of {scene_count}: {scene.title}",
        scene.description,
        f"Lighting: {scene.lighting or 'natural'}; weather: {scene.weather or 'clear'}",
        f"Segment duration: {scene.duration} seconds",
        f"Shot count: {target}",
        f"Allowed camera movements: {', '.join(movements)}",
    ])
    if s.motion_prompt:
        user_prompt += f"\nMotion direction: {s.motion_prompt}"

    result = await providers.text.generate_text(
        system_prompt=SHOT_SYSTEM_PROMPT,
        user_prompt=user_prompt,
        output_schema=SHOT_SCHEMA,
        model=s.models.text_model,
    )
    raw_shots = (_as_dict(result.output).get("shots") or [])[:MAX_SHOTS_PER_SCENE]
    if s.shots_per_segment != "auto":
        raw_shots = raw_shots[:target]
    if not raw_shots:
        logger.warning(f"[{job.id}] Scene {scene.scene_number}: no shots returned, using one wide shot")
        raw_shots = [{"shot_type": "Wide Shot", "duration": scene.duration, "description": scene.description}]
    if len(raw_shots) > scene.duration:
        logger.warning(
            f"[{job.id}] Scene {scene.scene_number}: trimming {len(raw_shots)} shots "
            f"to fit {scene.duration}s"
        )
        raw_shots = raw_shots[:scene.duration]

    durations = normalize_durations(
        [float(r.get("duration") or 0) for r in raw_shots],
        scene.duration,
        MIN_SHOT_DURATION,
        MAX_SHOT_DURATION,
    )

    shots = []
    for i, raw in enumerate(raw_shots):
        shot_type = raw.get("shot_type")
        movement = raw.get("camera_movement")
        shots.append(Shot(
            scene_id=scene.id,
            shot_number=i + 1,
            shot_type=shot_type if shot_type in SHOT_TYPES else "Wide Shot",
            camera_movement=movement if movement in movements else "static",
            duration=durations[i],
            description=str(raw.get("description") or ""),
            loop_count=shot_loop_count(s.loops),
        ))
    return shots, result.cost


# ═════════════════════════════════════════════════════════════════════════════
# 3c. Continuity
# ═════════════════════════════════════════════════════════════════════════════

async def propose_continuity(
    job: GenerationJob,
    scenes: list[Scene],
    shots_by_scene: dict[str, list[Shot]],
    providers: Collaborators,
) -> tuple[dict[str, list[ContinuityGroup]], float]:
    """
    Ask for continuity groups, validate them, and auto-approve survivors.

    Returns:
        (scene_id → approved groups, cost)
    """
    outline = []
    for scene in scenes:
        outline.append(f"Segment {scene.scene_number}: {scene.title}")
        for shot in shots_by_scene[scene.id]:
            outline.append(
                f"  Shot {shot.shot_number} ({shot.shot_type}, {shot.camera_movement}, "
                f"{shot.duration}s): {shot.description}"
            )

    result = await providers.text.generate_text(
        system_prompt=CONTINUITY_SYSTEM_PROMPT,
        user_prompt="\n".join(outline),
        output_schema=CONTINUITY_SCHEMA,
        model=job.settings.models.text_model,
    )
    raw_groups = _as_dict(result.output).get("groups") or []

    by_number = {scene.scene_number: scene for scene in scenes}
    proposed: list[ContinuityGroup] = []
    for raw in raw_groups:
        scene = by_number.get(raw.get("scene_number"))
        if scene is None:
            continue
        numbered = {shot.shot_number: shot.id for shot in shots_by_scene[scene.id]}
        proposed.append(ContinuityGroup(
            scene_id=scene.id,
            # Unknown shot numbers become ids that validation will discard.
            shot_ids=[numbered.get(n, f"missing-{scene.id}-{n}") for n in raw.get("shot_numbers") or []],
            transition_type=str(raw.get("transition_type") or ""),
            description=str(raw.get("description") or ""),
        ))

    groups: dict[str, list[ContinuityGroup]] = {scene.id: [] for scene in scenes}
    for group in validate_groups(shots_by_scene, proposed):
        scene_groups = groups[group.scene_id]
        scene_groups.append(group.model_copy(update={
            "group_number": len(scene_groups) + 1,
            "status": ContinuityStatus.APPROVED,
        }))

    approved = sum(len(g) for g in groups.values())
    logger.info(f"[{job.id}] Continuity: {approved}/{len(raw_groups)} group(s) approved")
    return groups, result.cost


# ═════════════════════════════════════════════════════════════════════════════
# Stage entry
# ═════════════════════════════════════════════════════════════════════════════

async def run(job: GenerationJob, store: JobStore, providers: Collaborators) -> StepResult:
    atmosphere = store.get_step_data(job.id, PipelineStep.ATMOSPHERE, AtmosphereData)
    visual_world = store.get_step_data(job.id, PipelineStep.VISUAL_WORLD, VisualWorldData)
    if atmosphere is None or visual_world is None:
        raise ValueError("Flow Design needs Atmosphere and Visual World data")

    scenes, cost = await generate_scenes(job, atmosphere, visual_world, providers)

    composed = await asyncio.gather(*[
        compose_shots(job, scene, len(scenes), providers) for scene in scenes
    ])
    shots_by_scene: dict[str, list[Shot]] = {}
    for scene, (shots, shot_cost) in zip(scenes, composed):
        shots_by_scene[scene.id] = shots
        cost += shot_cost

    data = FlowDesignData(scenes=scenes, shots=shots_by_scene)

    s = job.settings
    if s.animation_mode == AnimationMode.VIDEO_ANIMATION and s.frame_mode == FrameMode.START_END_FRAME:
        groups, continuity_cost = await propose_continuity(job, scenes, shots_by_scene, providers)
        data.continuity_groups = groups
        data.continuity_locked = True
        cost += continuity_cost

    total_shots = sum(len(v) for v in shots_by_scene.values())
    logger.info(f"[{job.id}] Flow design: {len(scenes)} scenes, {total_shots} shots")
    return StepResult(cost=cost, data=data)

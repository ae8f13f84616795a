"""
Step 5: Soundscape — voiceover, background music, per-shot sound effects.

Voiceover and music are independent and run concurrently; either failing
fails the stage. Sound effects run one shot at a time and a failed effect
is logged and skipped.
"""

import logging
from typing import Optional
import asyncio

from .composition import latest_versions
from .job_store import JobStore
from .models import (
    AnimationMode,
    AtmosphereData,
    AudioAssets,
    CompositionData,
    FlowDesignData,
    GenerationJob,
    MusicAsset,
    PipelineStep,
    SoundEffectAsset,
    StepResult,
    VisualWorldData,
    VoiceoverAsset,
)
from .pacing import total_duration_with_loops
from .providers import Collaborators

logger = logging.getLogger(__name__)


VOICEOVER_SYSTEM_PROMPT = """You write calm, sparse voiceover narration for ambient videos.
Long pauses are welcome. Plain text only, no stage directions."""

SFX_SYSTEM_PROMPT = """You describe the natural ambient sound of a video shot in one
sentence for a sound-effect generator. No music, no speech."""


# ── Voiceover ────────────────────────────────────────────────────────────────

async def generate_voiceover(
    job: GenerationJob,
    atmosphere: AtmosphereData,
    total_duration: float,
    providers: Collaborators,
) -> tuple[Optional[VoiceoverAsset], float]:
    sound = job.settings.soundscape
    if not (sound.voiceover_enabled and sound.voiceover_story and sound.voice_id):
        return None, 0.0

    # ~2.5 words/second with generous pauses
    word_budget = int(total_duration * 1.5)
    script = await providers.text.generate_text(
        system_prompt=VOICEOVER_SYSTEM_PROMPT,
        user_prompt=(
            f"Story: {sound.voiceover_story}\n"
            f"Atmosphere: {atmosphere.mood_description}\n"
            f"Language: {job.settings.language}\n"
            f"At most {word_budget} words for {int(total_duration)} seconds."
        ),
        model=job.settings.models.text_model,
    )
    speech = await providers.speech.generate_speech(
        script=str(script.output),
        voice_id=sound.voice_id,
        language=job.settings.language,
    )
    logger.info(f"[{job.id}] Voiceover: {speech.duration:.1f}s")
    asset = VoiceoverAsset(script=str(script.output), audio_url=speech.url, duration=speech.duration)
    return asset, script.cost + speech.cost


# ── Music ────────────────────────────────────────────────────────────────────

async def generate_music(
    job: GenerationJob,
    visual_world: VisualWorldData,
    total_duration: float,
    providers: Collaborators,
) -> tuple[Optional[MusicAsset], float]:
    sound = job.settings.soundscape
    style = visual_world.music_style or sound.music_style
    if not (sound.background_music_enabled and style):
        return None, 0.0

    prompt = sound.custom_music_prompt or (
        f"{style} ambient music, {job.settings.mood} mood, {job.settings.theme} theme, "
        f"{job.settings.time_context}, seamless and unobtrusive"
    )
    music = await providers.music.generate_music(prompt=prompt, duration=total_duration)
    logger.info(f"[{job.id}] Music: {music.duration:.1f}s ({style})")
    return MusicAsset(music_url=music.url, duration=music.duration, style=style), music.cost


# ── Sound effects ────────────────────────────────────────────────────────────

async def generate_sound_effects(
    job: GenerationJob,
    flow: FlowDesignData,
    composition: CompositionData,
    providers: Collaborators,
) -> tuple[list[SoundEffectAsset], float]:
    if job.settings.animation_mode != AnimationMode.VIDEO_ANIMATION:
        return [], 0.0

    latest = latest_versions(composition.shot_versions)
    effects: list[SoundEffectAsset] = []
    cost = 0.0

    for scene in sorted(flow.scenes, key=lambda s: s.scene_number):
        for shot in sorted(flow.shots.get(scene.id, []), key=lambda s: s.shot_number):
            version = latest.get(shot.id)
            if version is None or not version.video_url:
                continue
            try:
                description = await providers.text.generate_text(
                    system_prompt=SFX_SYSTEM_PROMPT,
                    user_prompt=f"{scene.title}: {shot.description} ({scene.weather or 'clear'})",
                    model=job.settings.models.text_model,
                )
                cost += description.cost
                sfx = await providers.sound_effects.generate_sound_effect(
                    video_url=version.video_url,
                    prompt=str(description.output),
                    duration=shot.duration,
                )
                cost += sfx.cost
                effects.append(SoundEffectAsset(
                    shot_id=shot.id,
                    scene_id=scene.id,
                    prompt=str(description.output),
                    audio_url=sfx.url,
                    duration=shot.duration,
                ))
            except Exception as e:
                logger.warning(f"[{job.id}] SFX for shot {shot.id} skipped: {e}")

    logger.info(f"[{job.id}] Sound effects: {len(effects)}")
    return effects, cost


# ── Stage entry ──────────────────────────────────────────────────────────────

async def run(job: GenerationJob, store: JobStore, providers: Collaborators) -> StepResult:
    atmosphere = store.get_step_data(job.id, PipelineStep.ATMOSPHERE, AtmosphereData)
    visual_world = store.get_step_data(job.id, PipelineStep.VISUAL_WORLD, VisualWorldData)
    flow = store.get_step_data(job.id, PipelineStep.FLOW_DESIGN, FlowDesignData)
    composition = store.get_step_data(job.id, PipelineStep.COMPOSITION, CompositionData)
    if flow is None or composition is None or atmosphere is None or visual_world is None:
        raise ValueError("Soundscape needs Atmosphere, Visual World, Flow Design and Composition data")

    total_duration = total_duration_with_loops(flow.scenes, flow.shots)

    (voiceover, vo_cost), (music, music_cost) = await asyncio.gather(
        generate_voiceover(job, atmosphere, total_duration, providers),
        generate_music(job, visual_world, total_duration, providers),
    )
    effects, sfx_cost = await generate_sound_effects(job, flow, composition, providers)

    return StepResult(
        cost=vo_cost + music_cost + sfx_cost,
        data=AudioAssets(voiceover=voiceover, music=music, sound_effects=effects),
    )

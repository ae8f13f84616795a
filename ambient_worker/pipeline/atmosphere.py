"""
Step 1: Atmosphere — turn the brief and mood settings into a mood description.
"""

import logging

from .models import AtmosphereData, GenerationJob, StepResult
from .pacing import parse_duration_to_seconds
from .providers import Collaborators
from .job_store import JobStore

logger = logging.getLogger(__name__)


ATMOSPHERE_SYSTEM_PROMPT = """You write mood descriptions for long-form ambient videos.
Describe the atmosphere in 2-3 evocative paragraphs: light, colour, texture, sound
and the emotional arc. No camera directions, no shot lists, no dialogue."""


def build_atmosphere_prompt(brief: str, job: GenerationJob) -> str:
    s = job.settings
    seconds = parse_duration_to_seconds(s.duration)
    lines = [
        f"Brief: {brief}",
        f"Mood: {s.mood}",
        f"Theme: {s.theme}",
        f"Time of day: {s.time_context}",
        f"Season: {s.season}",
        f"Length: {seconds // 60} minutes",
        f"Animation: {s.animation_mode.value}",
    ]
    if s.loops.loop_mode:
        lines.append("The piece will be looped; the ending should flow back into the opening.")
    return "\n".join(lines)


async def run(job: GenerationJob, store: JobStore, providers: Collaborators) -> StepResult:
    s = job.settings
    result = await providers.text.generate_text(
        system_prompt=ATMOSPHERE_SYSTEM_PROMPT,
        user_prompt=build_atmosphere_prompt(job.brief, job),
        model=s.models.text_model,
    )
    mood_description = str(result.output).strip()
    if not mood_description:
        raise ValueError("Mood description came back empty")

    logger.info(f"[{job.id}] Mood description: {len(mood_description)} chars")

    return StepResult(
        cost=result.cost,
        data=AtmosphereData(
            brief=job.brief,
            mood=s.mood,
            theme=s.theme,
            time_context=s.time_context,
            season=s.season,
            duration=s.duration,
            aspect_ratio=s.aspect_ratio,
            language=s.language,
            animation_mode=s.animation_mode,
            frame_mode=s.frame_mode,
            loops=s.loops,
            mood_description=mood_description,
        ),
    )

"""
Step 6: Preview — assemble the timeline from everything generated so far.
"""

import logging

from .composition import latest_versions
from .job_store import JobStore
from .models import (
    AudioAssets,
    CompositionData,
    FlowDesignData,
    GenerationJob,
    PipelineStep,
    PreviewData,
    StepResult,
)
from .providers import Collaborators
from .timeline import assemble

logger = logging.getLogger(__name__)


async def run(job: GenerationJob, store: JobStore, providers: Collaborators) -> StepResult:
    flow = store.get_step_data(job.id, PipelineStep.FLOW_DESIGN, FlowDesignData)
    composition = store.get_step_data(job.id, PipelineStep.COMPOSITION, CompositionData)
    audio = store.get_step_data(job.id, PipelineStep.SOUNDSCAPE, AudioAssets)
    if flow is None or composition is None:
        raise ValueError("Preview needs Flow Design and Composition data")

    timeline = assemble(
        flow.scenes,
        flow.shots,
        latest_versions(composition.shot_versions),
        audio,
    )
    missing = sum(1 for sc in timeline.scenes for sh in sc.shots if sh.media_url is None)
    if missing:
        logger.warning(f"[{job.id}] Timeline has {missing} shot(s) without media")
    logger.info(f"[{job.id}] Timeline: {timeline.total_duration:.0f}s, {len(timeline.audio_tracks.sfx)} sfx clips")
    return StepResult(data=PreviewData(timeline=timeline))

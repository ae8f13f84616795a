"""
PipelineController — Main pipeline orchestrator.

Chains the stages in a fixed order, persisting each before the next begins:
  Step 1: Atmosphere (mood description)
  Step 2: Visual World (mapped from settings at job creation, never run)
  Step 3: Flow Design (scenes, shots, continuity)
  Step 4: Composition (prompts, keyframes, clips)
  Step 5: Soundscape (voiceover, music, sound effects)
  Step 6: Preview (timeline assembly)
  Step 7: Export (render)
  Step 8: Publish (optional, best-effort)
"""

import logging
from contextlib import nullcontext
from typing import Awaitable, Callable, ContextManager, Optional

from . import atmosphere, composition, export, flow_design, preview, publish, soundscape
from .errors import JobNotFoundError, JobLockedError
from .job_store import JobStore
from .models import (
    GenerationJob,
    GenerationResult,
    GenerationSettings,
    JobStatus,
    PipelineStep,
    STEP_NAMES,
    StepResult,
)
from .providers import Collaborators
from .visual_world import build_visual_world

logger = logging.getLogger(__name__)

StageFn = Callable[[GenerationJob, JobStore, Collaborators], Awaitable[StepResult]]

STAGES: list[tuple[PipelineStep, StageFn]] = [
    (PipelineStep.ATMOSPHERE, atmosphere.run),
    (PipelineStep.FLOW_DESIGN, flow_design.run),
    (PipelineStep.COMPOSITION, composition.run),
    (PipelineStep.SOUNDSCAPE, soundscape.run),
    (PipelineStep.PREVIEW, preview.run),
    (PipelineStep.EXPORT, export.run),
    (PipelineStep.PUBLISH, publish.run),
]


class PipelineController:
    """
    Production-grade pipeline orchestrator.

    Usage:
        controller = PipelineController(store, providers)

        # Fresh run
        result = await controller.run("forest rain", settings, user_id)

        # Resume after a failure
        result = await controller.run(
            brief, settings, user_id,
            resume_from_step=result.failed_step, job_id=result.job_id,
        )
    """

    def __init__(
        self,
        store: JobStore,
        providers: Collaborators,
        lease: Optional[Callable[[str], ContextManager]] = None,
        stages: Optional[list[tuple[PipelineStep, StageFn]]] = None,
        lease_held: Optional[Callable[[str], bool]] = None,
    ):
        self.store = store
        self.providers = providers
        self._lease = lease
        self._lease_held = lease_held
        self._stages = stages or STAGES
        self._running: set[str] = set()

    def get_status(self, job_id: str) -> dict:
        """Status surface for a job. Raises JobNotFoundError."""
        return self.store.get_job(job_id).status_surface()

    def is_running(self, job_id: str) -> bool:
        """True while this process, or a lease holder elsewhere, is running the job."""
        if job_id in self._running:
            return True
        return bool(self._lease_held and self._lease_held(job_id))

    # ── Job lifecycle ────────────────────────────────────────────────────

    def create_job(
        self,
        brief: str,
        settings: GenerationSettings,
        identity: Optional[str] = None,
    ) -> GenerationJob:
        """Create the job record and pre-populate Visual World from settings."""
        job = GenerationJob(brief=brief, settings=settings, user_id=identity)
        self.store.create_job(job)
        self.store.save_step_data(job.id, PipelineStep.VISUAL_WORLD, build_visual_world(settings))
        logger.info(f"[{job.id}] Job created for brief {brief!r}")
        return job

    def _prepare_resume(self, job_id: str, resume_from_step: int) -> GenerationJob:
        job = self.store.get_job(job_id)
        if job.status == JobStatus.COMPLETED:
            raise ValueError(f"Job {job_id} already completed")
        if not PipelineStep.ATMOSPHERE <= resume_from_step <= PipelineStep.PUBLISH:
            raise ValueError(
                f"resume_from_step must be between {int(PipelineStep.ATMOSPHERE)} "
                f"and {int(PipelineStep.PUBLISH)}, got {resume_from_step}"
            )

        start = max(int(resume_from_step), PipelineStep.FLOW_DESIGN) if resume_from_step > 1 else 1
        job.completed_steps = [s for s in job.completed_steps if s < start]
        job.current_step = start
        job.failed_step = None
        job.error = None
        logger.info(f"[{job.id}] Resuming from step {start} (kept {job.completed_steps})")
        return job

    def _stage_enabled(self, job: GenerationJob, step: PipelineStep) -> bool:
        if step == PipelineStep.PUBLISH:
            return job.settings.publishing.enabled
        return True

    # ── Run ──────────────────────────────────────────────────────────────

    async def run(
        self,
        brief: str,
        settings: GenerationSettings,
        identity: Optional[str] = None,
        resume_from_step: Optional[int] = None,
        job_id: Optional[str] = None,
    ) -> GenerationResult:
        """
        Run (or resume) the pipeline.

        Args:
            brief:            Short creative brief.
            settings:         Generation settings (ignored on resume; the job's own are used).
            identity:         Owning user id.
            resume_from_step: Re-execute from this step; requires job_id.
            job_id:           Existing job to resume.

        Returns:
            GenerationResult. On a stage failure success=False, retryable=True
            and failed_step names the stage that threw.
        """
        try:
            if resume_from_step is not None:
                if not job_id:
                    raise ValueError("resume_from_step requires job_id")
                job = self._prepare_resume(job_id, resume_from_step)
            else:
                job = self.create_job(brief, settings, identity)
        except (JobNotFoundError, ValueError) as e:
            logger.error(f"Cannot start pipeline: {e}")
            return GenerationResult(success=False, job_id=job_id, error=str(e), retryable=False)

        lease = self._lease(job.id) if self._lease else nullcontext()
        try:
            with lease:
                self._running.add(job.id)
                try:
                    return await self._run_stages(job)
                finally:
                    self._running.discard(job.id)
        except JobLockedError as e:
            logger.warning(f"[{job.id}] {e}")
            return GenerationResult(
                success=False, job_id=job.id, total_cost=job.total_cost,
                error=str(e), retryable=True,
            )

    async def continue_job(self, job_id: str) -> GenerationResult:
        """Run a created job from where it stopped (its failed or current step)."""
        try:
            job = self.store.get_job(job_id)
        except JobNotFoundError as e:
            return GenerationResult(success=False, job_id=job_id, error=f"Job not found: {e}")
        return await self.run(
            job.brief, job.settings, job.user_id,
            resume_from_step=job.failed_step or job.current_step,
            job_id=job_id,
        )

    async def _run_stages(self, job: GenerationJob) -> GenerationResult:
        job.status = JobStatus.IN_PROGRESS
        self.store.save_job(job)

        step = job.current_step
        try:
            for step, stage in self._stages:
                if step < job.current_step or not self._stage_enabled(job, step):
                    continue

                logger.info(f"[{job.id}] Step {int(step)}: {STEP_NAMES[step]}")
                result = await stage(job, self.store, self.providers)

                if not result.success and not result.non_fatal:
                    raise RuntimeError(result.error or f"{STEP_NAMES[step]} failed")
                if result.non_fatal and result.error:
                    logger.warning(f"[{job.id}] {STEP_NAMES[step]} finished with a non-fatal error: {result.error}")

                self._complete_step(job, step, result)

        except Exception as e:
            logger.error(f"[{job.id}] Pipeline failed at step {int(step)}: {e}", exc_info=True)
            job.status = JobStatus.FAILED
            job.failed_step = int(step)
            job.error = str(e)
            self.store.save_job(job)
            return GenerationResult(
                success=False,
                job_id=job.id,
                total_cost=job.total_cost,
                error=str(e),
                failed_step=int(step),
                retryable=True,
            )

        job.status = JobStatus.COMPLETED
        self.store.save_job(job)
        logger.info(f"[{job.id}] Pipeline completed — total cost ${job.total_cost:.4f}")
        return GenerationResult(success=True, job_id=job.id, total_cost=job.total_cost)

    def _complete_step(self, job: GenerationJob, step: PipelineStep, result: StepResult) -> None:
        if result.data is not None:
            self.store.save_step_data(job.id, step, result.data)

        done = [int(step)]
        if step == PipelineStep.ATMOSPHERE:
            # Visual World was persisted at creation; it completes alongside step 1.
            done.append(int(PipelineStep.VISUAL_WORLD))
        for n in done:
            if n not in job.completed_steps:
                job.completed_steps.append(n)

        job.current_step = done[-1] + 1
        job.total_cost += result.cost
        self.store.save_job(job)
        logger.info(
            f"[{job.id}] {STEP_NAMES[step]} done (+${result.cost:.4f}, "
            f"total ${job.total_cost:.4f}) → step {job.current_step}"
        )

"""
Ambient Video Pipeline

Production-grade orchestration for:
  Atmosphere → Flow Design → Composition → Soundscape → Preview → Export → Publish
  Continuity — consecutive shots inherit their start frame from the shot before
  Resume — any failed job restarts from the step that failed
"""

from .orchestrator import PipelineController
from .routes import pipeline_router
from .models import GenerationJob, GenerationSettings, JobStatus

__all__ = [
    "PipelineController",
    "pipeline_router",
    "GenerationJob",
    "GenerationSettings",
    "JobStatus",
]

"""
Pydantic models and enums for the ambient video generation pipeline.
"""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid4())


# ── Job Status ───────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStep(IntEnum):
    ATMOSPHERE = 1
    VISUAL_WORLD = 2
    FLOW_DESIGN = 3
    COMPOSITION = 4
    SOUNDSCAPE = 5
    PREVIEW = 6
    EXPORT = 7
    PUBLISH = 8


STEP_NAMES = {
    PipelineStep.ATMOSPHERE: "Atmosphere",
    PipelineStep.VISUAL_WORLD: "Visual World",
    PipelineStep.FLOW_DESIGN: "Flow Design",
    PipelineStep.COMPOSITION: "Composition",
    PipelineStep.SOUNDSCAPE: "Soundscape",
    PipelineStep.PREVIEW: "Preview",
    PipelineStep.EXPORT: "Export",
    PipelineStep.PUBLISH: "Publish",
}


# ── Generation Modes ─────────────────────────────────────────────────────────

class AnimationMode(str, Enum):
    IMAGE_TRANSITIONS = "image-transitions"
    VIDEO_ANIMATION = "video-animation"


class FrameMode(str, Enum):
    IMAGE_REFERENCE = "image-reference"
    START_END_FRAME = "start-end-frame"


class ShotVersionStatus(str, Enum):
    PROMPT_GENERATED = "prompt_generated"
    IMAGES_GENERATED = "images_generated"
    COMPLETED = "completed"
    FAILED = "failed"


class ContinuityStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"


TRANSITION_TYPES = (
    "flow",
    "pan",
    "zoom",
    "match-cut",
    "environment",
    "light-transition",
)
DEFAULT_TRANSITION = "flow"

SHOT_TYPES = (
    "Wide Shot",
    "Extreme Wide Shot",
    "Medium Shot",
    "Medium Wide Shot",
    "Close-Up",
    "Extreme Close-Up",
    "Establishing Shot",
    "Detail Shot",
)

CAMERA_MOVEMENTS = {
    AnimationMode.VIDEO_ANIMATION: (
        "static", "slow-pan-left", "slow-pan-right", "tilt-up", "tilt-down",
        "gentle-drift", "orbit", "push-in", "pull-out", "floating",
    ),
    AnimationMode.IMAGE_TRANSITIONS: (
        "static", "slow-zoom-in", "slow-zoom-out", "pan-left", "pan-right",
        "ken-burns-up", "ken-burns-down", "diagonal-drift",
    ),
}


# ── Settings ─────────────────────────────────────────────────────────────────

class ModelSelection(BaseModel):
    text_model: str = "gemini-flash"
    image_model: str = "nano-banana"
    image_resolution: str = "1k"
    video_model: str = "seedance-1.0-pro"
    video_resolution: str = "720p"


class LoopSettings(BaseModel):
    loop_mode: bool = False
    segment_loop_enabled: bool = False
    segment_loop_count: Union[str, int] = "auto"
    shot_loop_enabled: bool = False
    shot_loop_count: Union[str, int] = "auto"


class VisualWorldSettings(BaseModel):
    art_style: str = "cinematic"
    visual_elements: list[str] = Field(default_factory=list)
    visual_rhythm: str = "breathing"
    # Either plain URLs or uploaded-file objects carrying a previewUrl
    reference_images: list[Any] = Field(default_factory=list)
    image_custom_instructions: str = ""


class SoundscapeSettings(BaseModel):
    voiceover_enabled: bool = False
    voiceover_story: str = ""
    voice_id: Optional[str] = None
    background_music_enabled: bool = False
    music_style: Optional[str] = None
    custom_music_prompt: Optional[str] = None


class PublishSettings(BaseModel):
    enabled: bool = False
    platforms: list[str] = Field(default_factory=list)
    schedule_mode: str = "immediate"  # immediate, scheduled, continuous
    scheduled_for: Optional[str] = None
    youtube_visibility: str = "public"


class GenerationSettings(BaseModel):
    """Everything the user configures before a run."""
    mood: str = "calm"
    theme: str = "nature"
    time_context: str = "dawn"
    season: str = "spring"
    duration: str = "1min"
    aspect_ratio: str = "16:9"
    language: str = "en"
    pacing: int = Field(default=50, ge=0, le=100)
    segment_count: Union[str, int] = "auto"
    shots_per_segment: Union[str, int] = "auto"
    animation_mode: AnimationMode = AnimationMode.IMAGE_TRANSITIONS
    frame_mode: FrameMode = FrameMode.IMAGE_REFERENCE
    motion_prompt: str = ""
    models: ModelSelection = Field(default_factory=ModelSelection)
    loops: LoopSettings = Field(default_factory=LoopSettings)
    visual_world: VisualWorldSettings = Field(default_factory=VisualWorldSettings)
    soundscape: SoundscapeSettings = Field(default_factory=SoundscapeSettings)
    publishing: PublishSettings = Field(default_factory=PublishSettings)


# ── Scenes & Shots ───────────────────────────────────────────────────────────

class Scene(BaseModel):
    id: str = Field(default_factory=new_id)
    scene_number: int
    title: str = ""
    description: str = ""
    duration: int
    lighting: Optional[str] = None
    weather: Optional[str] = None
    loop_count: Optional[int] = None


class Shot(BaseModel):
    id: str = Field(default_factory=new_id)
    scene_id: str
    shot_number: int
    shot_type: str = "Wide Shot"
    camera_movement: str = "static"
    duration: int
    description: str = ""
    loop_count: Optional[int] = None


class ShotVersion(BaseModel):
    id: str = Field(default_factory=new_id)
    shot_id: str
    version_number: int = 1
    image_prompt: Optional[str] = None
    start_frame_prompt: Optional[str] = None
    end_frame_prompt: Optional[str] = None
    video_prompt: Optional[str] = None
    image_url: Optional[str] = None
    start_frame_url: Optional[str] = None
    end_frame_url: Optional[str] = None
    start_frame_inherited: bool = False
    video_url: Optional[str] = None
    video_duration: Optional[float] = None
    status: ShotVersionStatus = ShotVersionStatus.PROMPT_GENERATED
    error_message: Optional[str] = None
    created_at: str = Field(default_factory=_now_iso)


class ContinuityGroup(BaseModel):
    id: str = Field(default_factory=new_id)
    scene_id: str
    group_number: int = 1
    shot_ids: list[str]
    transition_type: str = DEFAULT_TRANSITION
    description: str = ""
    status: ContinuityStatus = ContinuityStatus.PROPOSED


class ShotContinuity(BaseModel):
    group_id: Optional[str] = None
    is_first: bool = True
    previous_shot_id: Optional[str] = None


# ── Audio ────────────────────────────────────────────────────────────────────

class VoiceoverAsset(BaseModel):
    script: str
    audio_url: str
    duration: float


class MusicAsset(BaseModel):
    music_url: str
    duration: float
    style: Optional[str] = None


class SoundEffectAsset(BaseModel):
    shot_id: str
    scene_id: str
    prompt: str
    audio_url: str
    duration: float


class AudioAssets(BaseModel):
    voiceover: Optional[VoiceoverAsset] = None
    music: Optional[MusicAsset] = None
    sound_effects: list[SoundEffectAsset] = Field(default_factory=list)


# ── Timeline ─────────────────────────────────────────────────────────────────

class TimelineShot(BaseModel):
    shot_id: str
    shot_number: int
    duration: float
    start: float
    media_url: Optional[str] = None
    media_type: Optional[str] = None  # "video" | "image" | None
    loop_count: int = 1


class TimelineScene(BaseModel):
    scene_id: str
    scene_number: int
    title: str = ""
    duration: float
    loop_count: int = 1
    shots: list[TimelineShot] = Field(default_factory=list)


class AudioClip(BaseModel):
    id: str
    src: str
    start: float
    duration: float
    volume: float
    shot_id: Optional[str] = None


class AudioTracks(BaseModel):
    voiceover: Optional[AudioClip] = None
    music: Optional[AudioClip] = None
    sfx: list[AudioClip] = Field(default_factory=list)


class VolumeSettings(BaseModel):
    master: float = 1.0
    voiceover: float = 1.0
    music: float = 0.3
    sfx: float = 0.8


class TimelineDocument(BaseModel):
    scenes: list[TimelineScene] = Field(default_factory=list)
    audio_tracks: AudioTracks = Field(default_factory=AudioTracks)
    volumes: VolumeSettings = Field(default_factory=VolumeSettings)
    total_duration: float = 0.0


# ── Stage Data ───────────────────────────────────────────────────────────────

class AtmosphereData(BaseModel):
    brief: str
    mood: str
    theme: str
    time_context: str
    season: str
    duration: str
    aspect_ratio: str
    language: str
    animation_mode: AnimationMode
    frame_mode: FrameMode
    loops: LoopSettings
    mood_description: str = ""


class VisualWorldData(BaseModel):
    art_style: str = "cinematic"
    visual_elements: list[str] = Field(default_factory=list)
    visual_rhythm: str = "breathing"
    reference_images: list[str] = Field(default_factory=list)
    image_custom_instructions: str = ""
    music_style: Optional[str] = None


class FlowDesignData(BaseModel):
    scenes: list[Scene] = Field(default_factory=list)
    shots: dict[str, list[Shot]] = Field(default_factory=dict)
    continuity_groups: dict[str, list[ContinuityGroup]] = Field(default_factory=dict)
    continuity_locked: bool = False


class CompositionData(BaseModel):
    shot_versions: dict[str, list[ShotVersion]] = Field(default_factory=dict)
    images_generated: int = 0
    videos_generated: int = 0
    failures: int = 0


class PreviewData(BaseModel):
    timeline: TimelineDocument


class ExportData(BaseModel):
    render_status: str
    render_id: Optional[str] = None
    export_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    completed_at: Optional[str] = None


class PublishData(BaseModel):
    skipped: bool = False
    reason: Optional[str] = None
    post_id: Optional[str] = None
    status: Optional[str] = None
    platforms: list[str] = Field(default_factory=list)
    scheduled_for: Optional[str] = None
    error: Optional[str] = None


# ── Results ──────────────────────────────────────────────────────────────────

class StepResult(BaseModel):
    """Outcome of one stage. `non_fatal` marks a best-effort stage that
    completed despite an internal failure."""
    success: bool = True
    cost: float = 0.0
    data: Any = None
    error: Optional[str] = None
    non_fatal: bool = False


class GenerationResult(BaseModel):
    success: bool
    job_id: Optional[str] = None
    total_cost: float = 0.0
    error: Optional[str] = None
    failed_step: Optional[int] = None
    retryable: bool = False


class ShotRequest(BaseModel):
    """One unit of work handed to the batch scheduler."""
    shot: Shot
    scene_number: int
    version: ShotVersion


class ShotResult(BaseModel):
    shot_id: str
    success: bool
    image_url: Optional[str] = None
    start_frame_url: Optional[str] = None
    end_frame_url: Optional[str] = None
    start_frame_inherited: bool = False
    cost: float = 0.0
    error: Optional[str] = None


class BatchResult(BaseModel):
    results: list[ShotResult] = Field(default_factory=list)
    total_cost: float = 0.0
    success_count: int = 0
    failure_count: int = 0


# ── Job Record ───────────────────────────────────────────────────────────────

class GenerationJob(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    brief: str
    settings: GenerationSettings
    current_step: int = 1
    completed_steps: list[int] = Field(default_factory=list)
    status: JobStatus = JobStatus.QUEUED
    total_cost: float = 0.0
    failed_step: Optional[int] = None
    error: Optional[str] = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    def status_surface(self) -> dict:
        surface = {
            "status": self.status.value,
            "current_step": self.current_step,
            "completed_steps": list(self.completed_steps),
            "total_cost": round(self.total_cost, 4),
        }
        if self.error is not None:
            surface["error"] = self.error
        if self.failed_step is not None:
            surface["failed_step"] = self.failed_step
        return surface


# ── API Request Models ───────────────────────────────────────────────────────

class PipelineRunRequest(BaseModel):
    user_id: Optional[str] = None
    brief: str = Field(..., description="Short creative brief, e.g. 'forest rain'")
    settings: GenerationSettings = Field(default_factory=GenerationSettings)


class PipelineResumeRequest(BaseModel):
    resume_from_step: Optional[int] = Field(
        default=None, ge=1, le=8,
        description="Defaults to the job's failed_step",
    )


class PipelineStatusResponse(BaseModel):
    job_id: str
    status: JobStatus
    current_step: int
    completed_steps: list[int] = Field(default_factory=list)
    total_cost: float = 0.0
    error: Optional[str] = None
    failed_step: Optional[int] = None

"""
Contracts for everything the pipeline calls out to.

Stages only ever see these protocols. Concrete implementations live at the
package root (gateway.py, shotstack.py, late.py, storage) and are wired
together by ProviderFactory.build_collaborators().
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from pydantic import BaseModel


# ── Results ──────────────────────────────────────────────────────────────────

class TextResult(BaseModel):
    output: Any  # str, or a dict when a JSON schema was requested
    cost: float = 0.0


class MediaResult(BaseModel):
    url: str
    cost: float = 0.0
    duration: Optional[float] = None


class AudioResult(BaseModel):
    url: str
    duration: float
    cost: float = 0.0


class RenderStatus(BaseModel):
    status: str  # queued, fetching, rendering, saving, done, failed
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None


class PublishReceipt(BaseModel):
    post_id: str
    status: str
    platforms: list[str] = []


# ── Protocols ────────────────────────────────────────────────────────────────

class TextGenerator(Protocol):
    async def generate_text(
        self,
        system_prompt: str,
        user_prompt: str,
        output_schema: Optional[dict] = None,
        model: Optional[str] = None,
    ) -> TextResult: ...


class ImageGenerator(Protocol):
    async def generate_image(
        self,
        prompt: str,
        reference_images: Optional[list[str]] = None,
        aspect_ratio: str = "16:9",
        model: Optional[str] = None,
        resolution: Optional[str] = None,
    ) -> MediaResult: ...


class ClipGenerator(Protocol):
    async def generate_clip(
        self,
        start_frame: str,
        end_frame: Optional[str],
        prompt: str,
        duration: int,
        aspect_ratio: str = "16:9",
        model: Optional[str] = None,
        resolution: Optional[str] = None,
    ) -> MediaResult: ...


class SpeechGenerator(Protocol):
    async def generate_speech(self, script: str, voice_id: str, language: str = "en") -> AudioResult: ...


class MusicGenerator(Protocol):
    async def generate_music(self, prompt: str, duration: float) -> AudioResult: ...


class SoundEffectGenerator(Protocol):
    async def generate_sound_effect(self, video_url: str, prompt: str, duration: float) -> AudioResult: ...


class ObjectStore(Protocol):
    def store_object(self, path: str, data: bytes, mime_type: str) -> str: ...


class Renderer(Protocol):
    async def submit_render(self, timeline: dict) -> str: ...

    async def poll_render_status(self, render_id: str) -> RenderStatus: ...


class Publisher(Protocol):
    async def publish(
        self,
        video_url: str,
        platforms: list[str],
        metadata: dict,
        scheduled_for: Optional[str] = None,
    ) -> PublishReceipt: ...


# ── Bundle ───────────────────────────────────────────────────────────────────

@dataclass
class Collaborators:
    """Everything a pipeline run needs from the outside world.

    renderer, publisher and object_store are optional: without a renderer the
    export is left pending, without a publisher step 8 is skipped, without an
    object store rendered media keeps its renderer URL.
    """
    text: TextGenerator
    images: ImageGenerator
    clips: ClipGenerator
    speech: SpeechGenerator
    music: MusicGenerator
    sound_effects: SoundEffectGenerator
    object_store: Optional[ObjectStore] = None
    renderer: Optional[Renderer] = None
    publisher: Optional[Publisher] = None

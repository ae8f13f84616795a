"""
Shotstack renderer — converts a timeline document into a Shotstack edit,
submits it, and reports render status.

Loops are expanded here: a shot with loop_count 3 becomes three back-to-back
clips, and a looped scene repeats its whole shot sequence.
"""

import os
import logging
from typing import Optional

import httpx

from .pipeline.errors import RenderError
from .pipeline.providers import RenderStatus

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
SHOTSTACK_API_KEY = os.environ.get("SHOTSTACK_API_KEY", "")
SHOTSTACK_ENV = os.environ.get("SHOTSTACK_ENV", "stage")  # stage | v1
SHOTSTACK_API_BASE = f"https://api.shotstack.io/edit/{SHOTSTACK_ENV}"

OUTPUT_RESOLUTION = os.environ.get("SHOTSTACK_RESOLUTION", "hd")
SCENE_LOOP_TRANSITION = "fade"


# ── Edit building ────────────────────────────────────────────────────────────

def _video_clips(timeline: dict) -> list[dict]:
    clips = []
    cursor = 0.0
    for scene in timeline.get("scenes", []):
        for _ in range(scene.get("loop_count") or 1):
            for shot in scene.get("shots", []):
                if not shot.get("media_url"):
                    cursor += shot["duration"] * (shot.get("loop_count") or 1)
                    continue
                asset_type = "video" if shot.get("media_type") == "video" else "image"
                for _ in range(shot.get("loop_count") or 1):
                    asset = {"type": asset_type, "src": shot["media_url"]}
                    if asset_type == "video":
                        asset["volume"] = 0
                    clips.append({
                        "asset": asset,
                        "start": round(cursor, 3),
                        "length": shot["duration"],
                        "fit": "cover",
                    })
                    cursor += shot["duration"]
        if clips and (scene.get("loop_count") or 1) > 1:
            clips[-1]["transition"] = {"out": SCENE_LOOP_TRANSITION}
    return clips


def _audio_clip(clip: dict, master: float, effect: Optional[str] = None) -> dict:
    asset = {
        "type": "audio",
        "src": clip["src"],
        "volume": round(clip["volume"] * master, 3),
    }
    if effect:
        asset["effect"] = effect
    return {"asset": asset, "start": clip["start"], "length": clip["duration"]}


def build_edit(timeline: dict) -> dict:
    """
    Build the Shotstack edit JSON.

    Tracks, top to bottom: voiceover, sound effects, music, video. Tracks
    whose effective volume is zero are left out.
    """
    volumes = timeline.get("volumes") or {}
    master = volumes.get("master", 1.0)
    audio = timeline.get("audio_tracks") or {}

    tracks = []
    voiceover = audio.get("voiceover")
    if voiceover and voiceover["volume"] * master > 0:
        tracks.append({"clips": [_audio_clip(voiceover, master)]})

    sfx = [c for c in audio.get("sfx") or [] if c["volume"] * master > 0]
    if sfx:
        tracks.append({"clips": [_audio_clip(c, master) for c in sfx]})

    music = audio.get("music")
    if music and music["volume"] * master > 0:
        tracks.append({"clips": [_audio_clip(music, master, effect="fadeInFadeOut")]})

    video = _video_clips(timeline)
    if not video:
        raise RenderError("Timeline has no renderable media")
    tracks.append({"clips": video})

    return {
        "timeline": {"background": "#000000", "tracks": tracks},
        "output": {
            "format": "mp4",
            "resolution": OUTPUT_RESOLUTION,
            "aspectRatio": timeline.get("aspect_ratio", "16:9"),
            "thumbnail": {"capture": 1, "scale": 0.5},
        },
    }


# ── Client ───────────────────────────────────────────────────────────────────

class ShotstackRenderer:

    def __init__(
        self,
        api_key: str = SHOTSTACK_API_KEY,
        base_url: str = SHOTSTACK_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _headers(self) -> dict:
        return {"x-api-key": self.api_key, "Content-Type": "application/json"}

    async def submit_render(self, timeline: dict) -> str:
        edit = build_edit(timeline)
        async with httpx.AsyncClient(timeout=60, transport=self._transport) as client:
            resp = await client.post(f"{self.base_url}/render", headers=self._headers(), json=edit)
        if resp.status_code >= 400:
            raise RenderError(f"Shotstack submit failed ({resp.status_code}): {resp.text[:300]}")

        render_id = (resp.json().get("response") or {}).get("id")
        if not render_id:
            raise RenderError(f"Shotstack submit returned no render id: {resp.text[:300]}")
        logger.info(f"Shotstack render queued: {render_id}")
        return render_id

    async def poll_render_status(self, render_id: str) -> RenderStatus:
        async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
            resp = await client.get(f"{self.base_url}/render/{render_id}", headers=self._headers())
        resp.raise_for_status()

        body = resp.json().get("response") or {}
        return RenderStatus(
            status=body.get("status", "queued"),
            url=body.get("url"),
            thumbnail_url=body.get("thumbnail") or body.get("poster"),
            error=body.get("error"),
        )

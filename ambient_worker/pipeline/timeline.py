"""
Timeline assembly — scene/shot/audio state → renderer-ready document.

Pure function, no I/O. Shots play back-to-back across scene boundaries;
each shot's sound effect is placed at that shot's global offset.
"""

from typing import Optional

from .models import (
    AudioAssets,
    AudioClip,
    AudioTracks,
    Scene,
    Shot,
    ShotVersion,
    TimelineDocument,
    TimelineScene,
    TimelineShot,
    VolumeSettings,
)


def _resolve_media(version: Optional[ShotVersion]) -> tuple[Optional[str], Optional[str]]:
    if version is None:
        return None, None
    if version.video_url:
        return version.video_url, "video"
    still = version.image_url or version.start_frame_url
    if still:
        return still, "image"
    return None, None


def assemble(
    scenes: list[Scene],
    shots_by_scene: dict[str, list[Shot]],
    latest_version_by_shot: dict[str, ShotVersion],
    audio_assets: Optional[AudioAssets] = None,
    volumes: Optional[VolumeSettings] = None,
) -> TimelineDocument:
    """
    Build the timeline document.

    Args:
        scenes: scenes in any order (sorted by scene_number here)
        shots_by_scene: scene_id → shots (sorted by shot_number here)
        latest_version_by_shot: shot_id → active ShotVersion
        audio_assets: voiceover / music / per-shot SFX
        volumes: track volumes (defaults: music 0.3, sfx 0.8)

    Returns:
        TimelineDocument with explicit start offsets on every clip
    """
    audio_assets = audio_assets or AudioAssets()
    volumes = volumes or VolumeSettings()
    sfx_by_shot = {sfx.shot_id: sfx for sfx in audio_assets.sound_effects}

    doc = TimelineDocument(volumes=volumes)
    offset = 0.0

    for scene in sorted(scenes, key=lambda s: s.scene_number):
        timeline_scene = TimelineScene(
            scene_id=scene.id,
            scene_number=scene.scene_number,
            title=scene.title,
            duration=0.0,
            loop_count=scene.loop_count or 1,
        )
        shots = sorted(shots_by_scene.get(scene.id, []), key=lambda s: s.shot_number)

        for shot in shots:
            media_url, media_type = _resolve_media(latest_version_by_shot.get(shot.id))
            timeline_scene.shots.append(TimelineShot(
                shot_id=shot.id,
                shot_number=shot.shot_number,
                duration=shot.duration,
                start=offset,
                media_url=media_url,
                media_type=media_type,
                loop_count=shot.loop_count or 1,
            ))

            sfx = sfx_by_shot.get(shot.id)
            if sfx is not None:
                doc.audio_tracks.sfx.append(AudioClip(
                    id=f"sfx-{shot.id}",
                    src=sfx.audio_url,
                    start=offset,
                    duration=sfx.duration or shot.duration,
                    volume=volumes.sfx,
                    shot_id=shot.id,
                ))

            offset += shot.duration
            timeline_scene.duration += shot.duration

        doc.scenes.append(timeline_scene)

    doc.total_duration = offset

    if audio_assets.voiceover is not None:
        doc.audio_tracks.voiceover = AudioClip(
            id="voiceover-main",
            src=audio_assets.voiceover.audio_url,
            start=0.0,
            duration=audio_assets.voiceover.duration or offset,
            volume=volumes.voiceover,
        )

    if audio_assets.music is not None:
        doc.audio_tracks.music = AudioClip(
            id="music-main",
            src=audio_assets.music.music_url,
            start=0.0,
            duration=audio_assets.music.duration or offset,
            volume=volumes.music,
        )

    return doc

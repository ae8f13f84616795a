from ambient_worker.pipeline.models import (
    AudioAssets,
    MusicAsset,
    Scene,
    Shot,
    ShotVersion,
    SoundEffectAsset,
    VoiceoverAsset,
)
from ambient_worker.pipeline.timeline import assemble


def _fixture(durations_by_scene):
    scenes, shots_by_scene = [], {}
    for n, durations in enumerate(durations_by_scene, start=1):
        scene = Scene(id=f"sc{n}", scene_number=n, duration=sum(durations))
        scenes.append(scene)
        shots_by_scene[scene.id] = [
            Shot(id=f"sc{n}-{i}", scene_id=scene.id, shot_number=i, duration=d)
            for i, d in enumerate(durations, start=1)
        ]
    return scenes, shots_by_scene


def test_sfx_offsets_accumulate_across_scenes():
    scenes, shots = _fixture([[2, 3], [4], [1, 1, 1]])
    all_shots = [s for sc in scenes for s in shots[sc.id]]
    audio = AudioAssets(sound_effects=[
        SoundEffectAsset(shot_id=s.id, scene_id=s.scene_id, prompt="rain", audio_url=f"{s.id}.mp3", duration=s.duration)
        for s in all_shots
    ])

    doc = assemble(list(reversed(scenes)), shots, {}, audio)

    assert [c.start for c in doc.audio_tracks.sfx] == [0, 2, 5, 9, 10, 11]
    assert [sc.scene_number for sc in doc.scenes] == [1, 2, 3]
    assert doc.total_duration == 12
    assert doc.audio_tracks.sfx[0].id == "sfx-sc1-1"


def test_media_prefers_clip_then_image():
    scenes, shots = _fixture([[2, 2, 2, 2]])
    versions = {
        "sc1-1": ShotVersion(shot_id="sc1-1", video_url="clip.mp4", image_url="img.png"),
        "sc1-2": ShotVersion(shot_id="sc1-2", image_url="img.png"),
        "sc1-3": ShotVersion(shot_id="sc1-3", start_frame_url="start.png"),
    }

    doc = assemble(scenes, shots, versions)
    media = [(s.media_url, s.media_type) for s in doc.scenes[0].shots]

    assert media == [
        ("clip.mp4", "video"),
        ("img.png", "image"),
        ("start.png", "image"),
        (None, None),
    ]


def test_voiceover_and_music_are_single_clips_from_zero():
    scenes, shots = _fixture([[10], [20]])
    audio = AudioAssets(
        voiceover=VoiceoverAsset(script="hi", audio_url="vo.mp3", duration=25),
        music=MusicAsset(music_url="m.mp3", duration=30),
    )

    doc = assemble(scenes, shots, {}, audio)

    assert doc.audio_tracks.voiceover.start == 0
    assert doc.audio_tracks.voiceover.duration == 25
    assert doc.audio_tracks.voiceover.id == "voiceover-main"
    assert doc.audio_tracks.music.start == 0
    assert doc.audio_tracks.music.volume == 0.3
    assert doc.audio_tracks.sfx == []


def test_shots_sorted_within_scene():
    scenes = [Scene(id="a", scene_number=1, duration=3)]
    shots = {"a": [
        Shot(id="second", scene_id="a", shot_number=2, duration=1),
        Shot(id="first", scene_id="a", shot_number=1, duration=2),
    ]}

    doc = assemble(scenes, shots, {})

    assert [s.shot_id for s in doc.scenes[0].shots] == ["first", "second"]
    assert [s.start for s in doc.scenes[0].shots] == [0, 2]

import asyncio
import threading
from contextlib import contextmanager

import pytest

from ambient_worker.pipeline import batch, composition, export
from ambient_worker.pipeline.errors import JobLockedError, PublishError
from ambient_worker.pipeline.job_store import InMemoryJobStore
from ambient_worker.pipeline.models import (
    AnimationMode,
    AudioAssets,
    CompositionData,
    ContinuityStatus,
    ExportData,
    FlowDesignData,
    FrameMode,
    GenerationSettings,
    JobStatus,
    PublishData,
    PreviewData,
    PublishSettings,
    SoundscapeSettings,
    VisualWorldData,
)
from ambient_worker.pipeline.orchestrator import PipelineController
from ambient_worker.pipeline.providers import RenderStatus
from tests.fakes import (
    IMAGE_COST,
    TEXT_COST,
    DummyAudio,
    DummyClips,
    DummyImages,
    DummyPublisher,
    DummyRenderer,
    DummyText,
    make_collaborators,
)


@pytest.fixture(autouse=True)
def no_waiting(monkeypatch):
    monkeypatch.setattr(batch, "RETRY_DELAY", 0)
    monkeypatch.setattr(composition, "CLIP_RETRY_DELAY", 0)
    monkeypatch.setattr(export, "POLL_INTERVAL", 0)


def _settings(**overrides):
    base = {"duration": "2min", "pacing": 50}
    base.update(overrides)
    return GenerationSettings(**base)


def _video_settings(**overrides):
    return _settings(
        animation_mode=AnimationMode.VIDEO_ANIMATION,
        frame_mode=FrameMode.START_END_FRAME,
        **overrides,
    )


def _voiceover():
    return SoundscapeSettings(voiceover_enabled=True, voiceover_story="a walk in the rain", voice_id="v1")


def _run(controller, settings, brief="forest rain", **kwargs):
    return asyncio.run(controller.run(brief, settings, **kwargs))


# ── Happy path ───────────────────────────────────────────────────────────────

def test_forest_rain_two_minutes_end_to_end():
    store = InMemoryJobStore()
    text, images = DummyText(), DummyImages()
    controller = PipelineController(store, make_collaborators(text=text, images=images, renderer=DummyRenderer()))

    result = _run(controller, _settings(), identity="user-1")

    assert result.success, result.error
    job = store.get_job(result.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.completed_steps == [1, 2, 3, 4, 5, 6, 7]
    assert job.user_id == "user-1"

    flow = store.get_step_data(job.id, 3, FlowDesignData)
    assert sum(s.duration for s in flow.scenes) == 120
    assert 5 <= len(flow.scenes) <= 10
    for scene in flow.scenes:
        assert sum(shot.duration for shot in flow.shots[scene.id]) == scene.duration

    assert store.get_step_data(job.id, 7, ExportData).export_url == "https://render.test/out.mp4"


def test_thirty_segments_in_one_minute_completes():
    store = InMemoryJobStore()
    controller = PipelineController(store, make_collaborators())

    result = _run(controller, _settings(duration="1min", segment_count=30))

    assert result.success, result.error
    flow = store.get_step_data(result.job_id, 3, FlowDesignData)
    assert len(flow.scenes) == 30
    assert sum(s.duration for s in flow.scenes) == 60
    for scene in flow.scenes:
        shots = flow.shots[scene.id]
        assert 1 <= len(shots) <= scene.duration
        assert all(shot.duration >= 1 for shot in shots)
        assert sum(shot.duration for shot in shots) == scene.duration


def test_total_cost_is_sum_of_every_provider_call():
    store = InMemoryJobStore()
    text, images = DummyText(), DummyImages()
    controller = PipelineController(store, make_collaborators(text=text, images=images, renderer=DummyRenderer()))

    result = _run(controller, _settings())

    expected = len(text.calls) * TEXT_COST + len(images.calls) * IMAGE_COST
    assert result.total_cost == pytest.approx(expected)
    assert store.get_job(result.job_id).total_cost == pytest.approx(expected)


def test_visual_world_is_mapped_from_settings_at_creation():
    store = InMemoryJobStore()
    controller = PipelineController(store, make_collaborators())
    settings = _settings()
    settings.visual_world.art_style = "watercolor"
    settings.visual_world.reference_images = ["https://ref/1.png", {"previewUrl": "https://ref/2.png"}, {}]

    job = controller.create_job("forest rain", settings)

    data = store.get_step_data(job.id, 2, VisualWorldData)
    assert data.art_style == "watercolor"
    assert data.reference_images == ["https://ref/1.png", "https://ref/2.png"]


def test_start_end_frame_continuity_chains_frames():
    store = InMemoryJobStore()
    text = DummyText(continuity_groups=[{"scene_number": 1, "shot_numbers": [1, 2, 3], "transition_type": "pan"}])
    images, clips = DummyImages(), DummyClips()
    controller = PipelineController(store, make_collaborators(text=text, images=images, clips=clips, renderer=DummyRenderer()))

    result = _run(controller, _video_settings())
    assert result.success, result.error

    flow = store.get_step_data(result.job_id, 3, FlowDesignData)
    scene = next(s for s in flow.scenes if s.scene_number == 1)
    first, second, third = flow.shots[scene.id]
    groups = flow.continuity_groups[scene.id]
    assert flow.continuity_locked
    assert groups[0].status == ContinuityStatus.APPROVED
    assert groups[0].transition_type == "pan"

    latest = composition.latest_versions(
        store.get_step_data(result.job_id, 4, CompositionData).shot_versions
    )
    assert latest[second.id].start_frame_url == latest[first.id].end_frame_url
    assert latest[third.id].start_frame_url == latest[second.id].end_frame_url
    assert latest[second.id].start_frame_inherited
    assert not latest[first.id].start_frame_inherited
    assert latest[second.id].start_frame_prompt == "end 1.1"
    # an inheriting shot only generates its end frame, anchored on the inherited start
    assert ("end 1.2", [latest[second.id].start_frame_url]) in images.calls
    assert [prompt for prompt, _ in images.calls].count("end 1.1") == 1

    assert all(v.video_url for v in latest.values())
    assert len(clips.calls) == len(latest)


def test_image_reference_mode_skips_continuity():
    store = InMemoryJobStore()
    text = DummyText(continuity_groups=[{"scene_number": 1, "shot_numbers": [1, 2]}])
    controller = PipelineController(store, make_collaborators(text=text))

    result = _run(controller, _settings(animation_mode=AnimationMode.VIDEO_ANIMATION))

    assert result.success, result.error
    flow = store.get_step_data(result.job_id, 3, FlowDesignData)
    assert all(groups == [] for groups in flow.continuity_groups.values())
    assert not flow.continuity_locked


# ── Failure & resume ─────────────────────────────────────────────────────────

def test_stage_failure_marks_job_failed_and_retryable():
    store = InMemoryJobStore()
    audio = DummyAudio(fail_speech=True)
    controller = PipelineController(store, make_collaborators(audio=audio))

    result = _run(controller, _settings(soundscape=_voiceover()))

    assert not result.success
    assert result.retryable
    assert result.failed_step == 5
    job = store.get_job(result.job_id)
    assert job.status == JobStatus.FAILED
    assert job.failed_step == 5
    assert "speech provider down" in job.error
    assert job.completed_steps == [1, 2, 3, 4]
    assert store.get_step_raw(job.id, 5) is None


def test_resume_from_failed_step_leaves_earlier_steps_untouched():
    store = InMemoryJobStore()
    audio = DummyAudio(fail_speech=True)
    text = DummyText()
    controller = PipelineController(store, make_collaborators(text=text, audio=audio, renderer=DummyRenderer()))

    failed = _run(controller, _settings(soundscape=_voiceover()))
    before = {n: store.get_step_raw(failed.job_id, n) for n in (1, 2, 3, 4)}
    calls_before = len(text.calls)
    cost_before = store.get_job(failed.job_id).total_cost

    audio.fail_speech = False
    job = store.get_job(failed.job_id)
    resumed = _run(controller, job.settings, resume_from_step=failed.failed_step, job_id=job.id)

    assert resumed.success, resumed.error
    assert {n: store.get_step_raw(job.id, n) for n in (1, 2, 3, 4)} == before
    # only the voiceover script is regenerated
    assert len(text.calls) == calls_before + 1

    job = store.get_job(job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.completed_steps == [1, 2, 3, 4, 5, 6, 7]
    assert job.failed_step is None and job.error is None
    assert job.total_cost > cost_before
    assert store.get_step_data(job.id, 5, AudioAssets).voiceover.duration == 42.0


def test_resume_from_composition_reuses_prompts_and_frames():
    store = InMemoryJobStore()
    audio = DummyAudio(fail_speech=True)
    images = DummyImages()
    controller = PipelineController(store, make_collaborators(images=images, audio=audio))

    failed = _run(controller, _settings(soundscape=_voiceover()))
    first_pass = store.get_step_data(failed.job_id, 4, CompositionData)
    image_calls = len(images.calls)

    audio.fail_speech = False
    resumed = _run(controller, _settings(), resume_from_step=4, job_id=failed.job_id)

    assert resumed.success, resumed.error
    assert len(images.calls) == image_calls
    second_pass = store.get_step_data(failed.job_id, 4, CompositionData)
    for shot_id, versions in second_pass.shot_versions.items():
        assert [v.version_number for v in versions] == [1, 2]
        assert versions[1].image_url == first_pass.shot_versions[shot_id][0].image_url
        assert versions[1].image_prompt == versions[0].image_prompt


def test_resume_from_visual_world_starts_at_flow_design():
    store = InMemoryJobStore()
    audio = DummyAudio(fail_speech=True)
    controller = PipelineController(store, make_collaborators(audio=audio))

    failed = _run(controller, _settings(soundscape=_voiceover()))
    atmosphere_raw = store.get_step_raw(failed.job_id, 1)
    flow_raw = store.get_step_raw(failed.job_id, 3)

    audio.fail_speech = False
    resumed = _run(controller, _settings(), resume_from_step=2, job_id=failed.job_id)

    assert resumed.success, resumed.error
    assert store.get_step_raw(failed.job_id, 1) == atmosphere_raw
    assert store.get_step_raw(failed.job_id, 3) != flow_raw
    assert store.get_job(failed.job_id).completed_steps == [1, 2, 3, 4, 5, 6, 7]


def test_continue_job_picks_up_failed_step():
    store = InMemoryJobStore()
    audio = DummyAudio(fail_speech=True)
    controller = PipelineController(store, make_collaborators(audio=audio))

    failed = _run(controller, _settings(soundscape=_voiceover()))
    audio.fail_speech = False
    resumed = asyncio.run(controller.continue_job(failed.job_id))

    assert resumed.success, resumed.error
    assert controller.get_status(failed.job_id)["status"] == "completed"


def test_completed_job_cannot_be_resumed():
    store = InMemoryJobStore()
    controller = PipelineController(store, make_collaborators())
    done = _run(controller, _settings())

    again = _run(controller, _settings(), resume_from_step=3, job_id=done.job_id)

    assert not again.success
    assert not again.retryable
    assert "already completed" in again.error


def test_unknown_job_is_not_retryable():
    controller = PipelineController(InMemoryJobStore(), make_collaborators())

    result = _run(controller, _settings(), resume_from_step=3, job_id="missing")

    assert not result.success
    assert not result.retryable


@pytest.mark.parametrize("bad_step", [0, 9])
def test_out_of_range_resume_step_leaves_job_failed(bad_step):
    store = InMemoryJobStore()
    controller = PipelineController(store, make_collaborators(audio=DummyAudio(fail_speech=True)))
    failed = _run(controller, _settings(soundscape=_voiceover()))

    result = _run(controller, _settings(), resume_from_step=bad_step, job_id=failed.job_id)

    assert not result.success
    assert not result.retryable
    assert "resume_from_step" in result.error
    job = store.get_job(failed.job_id)
    assert job.status == JobStatus.FAILED
    assert job.failed_step == 5
    assert not controller.is_running(job.id)


def test_held_lease_returns_retryable_result():
    @contextmanager
    def busy(job_id):
        raise JobLockedError(f"Job {job_id} is being processed by another worker")
        yield

    store = InMemoryJobStore()
    controller = PipelineController(store, make_collaborators(), lease=busy)

    result = _run(controller, _settings())

    assert not result.success
    assert result.retryable
    assert store.get_job(result.job_id).completed_steps == []


# ── Soundscape ───────────────────────────────────────────────────────────────

def test_failed_sound_effect_is_skipped():
    store = InMemoryJobStore()
    audio = DummyAudio(fail_sfx_calls={2})
    controller = PipelineController(store, make_collaborators(audio=audio))

    result = _run(controller, _video_settings())

    assert result.success, result.error
    flow = store.get_step_data(result.job_id, 3, FlowDesignData)
    shot_count = sum(len(shots) for shots in flow.shots.values())
    effects = store.get_step_data(result.job_id, 5, AudioAssets).sound_effects
    assert audio.sfx_calls == shot_count
    assert len(effects) == shot_count - 1


def test_music_and_voiceover_reach_the_timeline():
    store = InMemoryJobStore()
    controller = PipelineController(store, make_collaborators())
    sound = _voiceover()
    sound.background_music_enabled = True
    sound.music_style = "piano"

    result = _run(controller, _settings(soundscape=sound))

    assert result.success, result.error
    timeline = store.get_step_data(result.job_id, 6, PreviewData).timeline
    assert timeline.audio_tracks.voiceover.start == 0
    assert timeline.audio_tracks.music.start == 0
    assert timeline.audio_tracks.music.duration == 120
    assert timeline.total_duration == 120


# ── Export ───────────────────────────────────────────────────────────────────

def test_render_timeout_fails_export(monkeypatch):
    monkeypatch.setattr(export, "MAX_POLL_ATTEMPTS", 3)
    renderer = DummyRenderer(statuses=[RenderStatus(status="rendering")])
    store = InMemoryJobStore()
    controller = PipelineController(store, make_collaborators(renderer=renderer))

    result = _run(controller, _settings())

    assert not result.success
    assert result.failed_step == 7
    assert result.retryable
    assert "timed out" in result.error


def test_failed_render_fails_export():
    renderer = DummyRenderer(statuses=[RenderStatus(status="failed", error="bad codec")])
    controller = PipelineController(InMemoryJobStore(), make_collaborators(renderer=renderer))

    result = _run(controller, _settings())

    assert result.failed_step == 7
    assert "bad codec" in result.error


def test_no_renderer_leaves_export_pending():
    store = InMemoryJobStore()
    controller = PipelineController(store, make_collaborators())

    result = _run(controller, _settings())

    assert result.success
    assert store.get_step_data(result.job_id, 7, ExportData).render_status == "pending"


def test_rehost_uploads_off_the_event_loop(monkeypatch):
    async def fake_download(url):
        return b"video"

    class RecordingStore:
        def __init__(self):
            self.threads = []

        def store_object(self, path, data, mime_type):
            self.threads.append(threading.current_thread())
            return f"https://cdn.test/{path}"

    monkeypatch.setattr(export, "download_bytes", fake_download)
    store = RecordingStore()

    url = asyncio.run(export.rehost(store, "https://render.test/out.mp4", "exports/a.mp4", "video/mp4"))

    assert url == "https://cdn.test/exports/a.mp4"
    assert store.threads[0] is not threading.main_thread()


# ── Publish ──────────────────────────────────────────────────────────────────

def _publishing(**overrides):
    return PublishSettings(enabled=True, platforms=["youtube", "tiktok", "myspace"], **overrides)


def test_publish_posts_exported_video():
    store = InMemoryJobStore()
    publisher = DummyPublisher()
    controller = PipelineController(store, make_collaborators(renderer=DummyRenderer(), publisher=publisher))

    result = _run(controller, _settings(publishing=_publishing(schedule_mode="scheduled", scheduled_for="2026-11-01T09:00:00Z")))

    assert result.success, result.error
    video_url, platforms, metadata, scheduled_for = publisher.calls[0]
    assert video_url == "https://render.test/out.mp4"
    assert platforms == ["youtube", "tiktok"]
    assert metadata["youtube"]["title"] == "Forest Rain"
    assert metadata["tiktok"]["hashtags"] == ["#rain"]
    assert scheduled_for == "2026-11-01T09:00:00Z"

    job = store.get_job(result.job_id)
    assert job.completed_steps[-1] == 8
    assert store.get_step_data(job.id, 8, PublishData).status == "scheduled"


def test_publish_failure_does_not_fail_job():
    store = InMemoryJobStore()
    publisher = DummyPublisher(error=PublishError("account disconnected"))
    controller = PipelineController(store, make_collaborators(renderer=DummyRenderer(), publisher=publisher))

    result = _run(controller, _settings(publishing=_publishing()))

    assert result.success
    job = store.get_job(result.job_id)
    assert job.status == JobStatus.COMPLETED
    assert 8 in job.completed_steps
    assert store.get_step_data(job.id, 8, PublishData).error == "account disconnected"


def test_unexpected_publish_error_is_swallowed():
    store = InMemoryJobStore()
    publisher = DummyPublisher(error=RuntimeError("socket closed"))
    controller = PipelineController(store, make_collaborators(renderer=DummyRenderer(), publisher=publisher))

    result = _run(controller, _settings(publishing=_publishing()))

    assert result.success
    assert store.get_step_data(result.job_id, 8, PublishData).error == "socket closed"


def test_publish_disabled_skips_step_eight():
    store = InMemoryJobStore()
    publisher = DummyPublisher()
    controller = PipelineController(store, make_collaborators(renderer=DummyRenderer(), publisher=publisher))

    result = _run(controller, _settings())

    assert result.success
    assert publisher.calls == []
    assert 8 not in store.get_job(result.job_id).completed_steps


def test_publish_without_export_url_is_skipped():
    store = InMemoryJobStore()
    publisher = DummyPublisher()
    controller = PipelineController(store, make_collaborators(publisher=publisher))

    result = _run(controller, _settings(publishing=_publishing()))

    assert result.success
    assert publisher.calls == []
    data = store.get_step_data(result.job_id, 8, PublishData)
    assert data.skipped and data.reason == "no export url"

import json
from unittest.mock import MagicMock

import pytest

from ambient_worker.pipeline.errors import JobNotFoundError
from ambient_worker.pipeline.job_store import InMemoryJobStore, SupabaseJobStore
from ambient_worker.pipeline.models import (
    AtmosphereData,
    GenerationJob,
    GenerationSettings,
    JobStatus,
    VisualWorldData,
)
from ambient_worker.pipeline.visual_world import build_visual_world


def _job():
    return GenerationJob(brief="forest rain", settings=GenerationSettings(duration="2min"))


def _atmosphere(settings):
    return AtmosphereData(
        brief="forest rain", mood=settings.mood, theme=settings.theme,
        time_context=settings.time_context, season=settings.season,
        duration=settings.duration, aspect_ratio=settings.aspect_ratio,
        language=settings.language, animation_mode=settings.animation_mode,
        frame_mode=settings.frame_mode, loops=settings.loops,
        mood_description="Soft rain.",
    )


def test_in_memory_round_trip():
    store = InMemoryJobStore()
    job = store.create_job(_job())

    job.status = JobStatus.IN_PROGRESS
    job.completed_steps = [1, 2]
    store.save_job(job)

    loaded = store.get_job(job.id)
    assert loaded.status == JobStatus.IN_PROGRESS
    assert loaded.completed_steps == [1, 2]
    assert loaded.settings.duration == "2min"


def test_in_memory_step_data_is_isolated_per_step():
    store = InMemoryJobStore()
    job = store.create_job(_job())
    store.save_step_data(job.id, 1, _atmosphere(job.settings))
    first = store.get_step_raw(job.id, 1)

    store.save_step_data(job.id, 2, build_visual_world(job.settings))

    assert store.get_step_raw(job.id, 1) == first
    assert store.get_step_data(job.id, 1, AtmosphereData).mood_description == "Soft rain."
    assert store.get_step_data(job.id, 2, VisualWorldData).art_style == "cinematic"
    assert store.get_step_data(job.id, 3, VisualWorldData) is None


def test_in_memory_unknown_job():
    store = InMemoryJobStore()
    with pytest.raises(JobNotFoundError):
        store.get_job("nope")
    with pytest.raises(JobNotFoundError):
        store.save_step_data("nope", 1, build_visual_world(GenerationSettings()))


def test_loaded_job_is_a_copy():
    store = InMemoryJobStore()
    job = store.create_job(_job())

    loaded = store.get_job(job.id)
    loaded.completed_steps.append(1)

    assert store.get_job(job.id).completed_steps == []


def _table(client):
    return client.table.return_value


def test_supabase_get_job_maps_row():
    client = MagicMock()
    job = _job()
    _table(client).select.return_value.eq.return_value.execute.return_value.data = [{
        "id": job.id,
        "brief": "forest rain",
        "settings": {"duration": "4min", "pacing": 20},
        "current_step": 5,
        "completed_steps": [1, 2, 3, 4],
        "status": "failed",
        "total_cost": "1.25",
        "failed_step": 5,
        "error": "speech provider down",
    }]

    loaded = SupabaseJobStore(client).get_job(job.id)

    assert loaded.status == JobStatus.FAILED
    assert loaded.settings.pacing == 20
    assert loaded.total_cost == 1.25
    assert loaded.failed_step == 5
    client.table.assert_called_with("generation_jobs")


def test_supabase_missing_job_raises():
    client = MagicMock()
    _table(client).select.return_value.eq.return_value.execute.return_value.data = []

    with pytest.raises(JobNotFoundError):
        SupabaseJobStore(client).get_job("missing")


def test_supabase_step_data_written_to_its_own_column():
    client = MagicMock()
    store = SupabaseJobStore(client)
    settings = GenerationSettings()

    store.save_step_data("job-1", 2, build_visual_world(settings))

    payload = _table(client).update.call_args[0][0]
    assert set(payload) == {"step2_data", "updated_at"}
    assert json.loads(payload["step2_data"])["art_style"] == "cinematic"
    _table(client).update.return_value.eq.assert_called_with("id", "job-1")


def test_supabase_save_job_does_not_rewrite_identity_columns():
    client = MagicMock()
    job = _job()

    SupabaseJobStore(client).save_job(job)

    row = _table(client).update.call_args[0][0]
    assert "id" not in row and "created_at" not in row
    assert row["status"] == "queued"
    assert row["settings"]["duration"] == "2min"

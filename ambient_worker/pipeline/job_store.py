"""
Generation job persistence.

The job record plus one data blob per step (step1_data … step8_data). Two
backends with the same surface:
  - InMemoryJobStore: local runs and tests
  - SupabaseJobStore: production, `generation_jobs` table via service role

Step data is written as JSON so that rewriting one step never touches the
bytes of another.
"""

import os
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from supabase import create_client, Client

from .errors import JobNotFoundError
from .models import GenerationJob

logger = logging.getLogger(__name__)

JOBS_TABLE = os.getenv("GENERATION_JOBS_TABLE", "generation_jobs")
STEP_KEYS = {n: f"step{n}_data" for n in range(1, 9)}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump(data: BaseModel) -> str:
    return json.dumps(data.model_dump(mode="json"), sort_keys=True)


class JobStore:
    """Interface shared by both backends."""

    def create_job(self, job: GenerationJob) -> GenerationJob:
        raise NotImplementedError

    def save_job(self, job: GenerationJob) -> GenerationJob:
        raise NotImplementedError

    def get_job(self, job_id: str) -> GenerationJob:
        raise NotImplementedError

    def save_step_data(self, job_id: str, step: int, data: BaseModel) -> None:
        raise NotImplementedError

    def get_step_raw(self, job_id: str, step: int) -> Optional[str]:
        """Persisted JSON for one step, or None if the step never ran."""
        raise NotImplementedError

    def get_step_data(self, job_id: str, step: int, model: type[BaseModel]):
        raw = self.get_step_raw(job_id, step)
        if raw is None:
            return None
        return model.model_validate_json(raw)


# ═════════════════════════════════════════════════════════════════════════════
# In-memory
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryJobStore(JobStore):

    def __init__(self):
        self._jobs: dict[str, str] = {}
        self._steps: dict[str, dict[str, str]] = {}

    def create_job(self, job: GenerationJob) -> GenerationJob:
        self._jobs[job.id] = job.model_dump_json()
        self._steps[job.id] = {}
        return job

    def save_job(self, job: GenerationJob) -> GenerationJob:
        if job.id not in self._jobs:
            raise JobNotFoundError(job.id)
        job.updated_at = _now_iso()
        self._jobs[job.id] = job.model_dump_json()
        return job

    def get_job(self, job_id: str) -> GenerationJob:
        raw = self._jobs.get(job_id)
        if raw is None:
            raise JobNotFoundError(job_id)
        return GenerationJob.model_validate_json(raw)

    def save_step_data(self, job_id: str, step: int, data: BaseModel) -> None:
        if job_id not in self._steps:
            raise JobNotFoundError(job_id)
        self._steps[job_id][STEP_KEYS[step]] = _dump(data)

    def get_step_raw(self, job_id: str, step: int) -> Optional[str]:
        return self._steps.get(job_id, {}).get(STEP_KEYS[step])


# ═════════════════════════════════════════════════════════════════════════════
# Supabase
# ═════════════════════════════════════════════════════════════════════════════

_service_client: Optional[Client] = None


def _get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def _job_to_row(job: GenerationJob) -> dict:
    return {
        "id": job.id,
        "user_id": job.user_id,
        "brief": job.brief,
        "settings": job.settings.model_dump(mode="json"),
        "current_step": job.current_step,
        "completed_steps": job.completed_steps,
        "status": job.status.value,
        "total_cost": job.total_cost,
        "failed_step": job.failed_step,
        "error": job.error,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }


def _row_to_job(row: dict) -> GenerationJob:
    return GenerationJob(
        id=row["id"],
        user_id=row.get("user_id"),
        brief=row.get("brief", ""),
        settings=row.get("settings") or {},
        current_step=row.get("current_step", 1),
        completed_steps=row.get("completed_steps") or [],
        status=row.get("status", "queued"),
        total_cost=float(row.get("total_cost") or 0),
        failed_step=row.get("failed_step"),
        error=row.get("error"),
        created_at=row.get("created_at") or _now_iso(),
        updated_at=row.get("updated_at") or _now_iso(),
    )


class SupabaseJobStore(JobStore):
    """Rows in `generation_jobs`; step blobs stored as text columns."""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        return self._client or _get_service_client()

    def create_job(self, job: GenerationJob) -> GenerationJob:
        self.sb.table(JOBS_TABLE).insert(_job_to_row(job)).execute()
        logger.info(f"Job created: {job.id}")
        return job

    def save_job(self, job: GenerationJob) -> GenerationJob:
        job.updated_at = _now_iso()
        row = _job_to_row(job)
        row.pop("id")
        row.pop("created_at")
        self.sb.table(JOBS_TABLE).update(row).eq("id", job.id).execute()
        return job

    def get_job(self, job_id: str) -> GenerationJob:
        result = self.sb.table(JOBS_TABLE).select("*").eq("id", job_id).execute()
        if not result.data:
            raise JobNotFoundError(job_id)
        return _row_to_job(result.data[0])

    def save_step_data(self, job_id: str, step: int, data: BaseModel) -> None:
        self.sb.table(JOBS_TABLE).update({
            STEP_KEYS[step]: _dump(data),
            "updated_at": _now_iso(),
        }).eq("id", job_id).execute()

    def get_step_raw(self, job_id: str, step: int) -> Optional[str]:
        key = STEP_KEYS[step]
        result = self.sb.table(JOBS_TABLE).select(key).eq("id", job_id).execute()
        if not result.data:
            raise JobNotFoundError(job_id)
        return result.data[0].get(key)

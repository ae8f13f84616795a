import os
import time
import asyncio
import logging
import threading
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query

load_dotenv()

from .auth_middleware import WorkerAuthMiddleware
from .provider_factory import ProviderFactory
from .pipeline import routes as pipeline_routes
from .pipeline.job_store import InMemoryJobStore, SupabaseJobStore
from .pipeline.orchestrator import PipelineController
from . import queue as task_queue

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            import redis
            _redis_client = redis.from_url(redis_url, decode_responses=False)
            try:
                _redis_client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
            except Exception as e:
                logger.warning(f"Redis connection failed: {e} — falling back to in-process runs")
                _redis_client = None
    return _redis_client


def build_controller() -> PipelineController:
    if os.environ.get("SUPABASE_URL") and os.environ.get("SUPABASE_SERVICE_ROLE_KEY"):
        store = SupabaseJobStore()
    else:
        logger.warning("Supabase not configured — jobs are kept in memory only")
        store = InMemoryJobStore()

    r = get_redis()
    if r:
        return PipelineController(
            store, ProviderFactory.build_collaborators(),
            lease=lambda job_id: task_queue.job_lease(r, job_id),
            lease_held=lambda job_id: task_queue.lease_held(r, job_id),
        )
    return PipelineController(store, ProviderFactory.build_collaborators())


# ── Queue consumer thread (reliable) ──────────────────────────────────────────
def _queue_consumer_loop(controller: PipelineController):
    """Background thread: dequeues via BLMOVE, acks on success, nacks on retryable failure."""
    logger.info("Queue consumer thread started (reliable mode)")
    while True:
        try:
            r = get_redis()
            if r is None:
                time.sleep(5)
                continue

            job_id = task_queue.dequeue_task(r, timeout=5)
            if job_id is None:
                continue

            meta = task_queue.get_task_meta(r, job_id)
            if not meta:
                logger.warning(f"Queue consumer: no metadata for job {job_id}, skipping")
                task_queue.ack_task(r, job_id)
                continue

            task_queue.update_task_status(r, job_id, "processing")
            retries = int(meta.get("retries", "0"))
            logger.info(f"Queue consumer: processing {meta.get('task_type')} job {job_id} (attempt {retries + 1})")

            result = asyncio.run(controller.continue_job(job_id))
            if result.success or not result.retryable:
                task_queue.ack_task(r, job_id)
            else:
                task_queue.nack_task(r, job_id, result.error or "")

        except Exception as e:
            logger.error(f"Queue consumer loop error: {e}", exc_info=True)
            time.sleep(2)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    controller = build_controller()

    r = get_redis()
    if r:
        recovered = task_queue.recover_stale_tasks(r)
        if recovered:
            logger.info(f"Recovered {recovered} stale task(s) from previous session")

        pipeline_routes.configure(
            controller,
            enqueue=lambda job_id, task_type: task_queue.enqueue_task(r, job_id, task_type, {"job_id": job_id}),
        )
        consumer = threading.Thread(target=_queue_consumer_loop, args=(controller,), daemon=True)
        consumer.start()
        logger.info("Queue consumer thread launched (reliable mode)")
    else:
        pipeline_routes.configure(controller)
        logger.info("No Redis — pipelines run as in-process background tasks")
    yield
    logger.info("Worker shutting down...")


app = FastAPI(lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(pipeline_routes.pipeline_router)


@app.get("/health")
def health_check():
    """Verify worker is running and env vars are configured."""
    return {
        "status": "ok",
        "ai_gateway_configured": bool(os.environ.get("AI_GATEWAY_API_KEY")),
        "renderer_configured": bool(os.environ.get("SHOTSTACK_API_KEY")),
        "publisher_configured": bool(os.environ.get("LATE_API_KEY")),
        "supabase_configured": bool(os.environ.get("SUPABASE_URL")),
        "redis_connected": get_redis() is not None,
    }


@app.get("/queue/status")
def queue_status(job_id: str = Query(...)):
    """Queue position and task metadata for a job."""
    r = get_redis()
    if r is None:
        raise HTTPException(status_code=503, detail="Queue not available")
    meta = task_queue.get_task_meta(r, job_id)
    if meta is None:
        raise HTTPException(status_code=404, detail="Job not in queue")
    return {
        "job_id": job_id,
        "status": meta.get("status"),
        "position": task_queue.get_queue_position(r, job_id),
        "retries": int(meta.get("retries", "0")),
        "last_error": meta.get("last_error"),
    }


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))

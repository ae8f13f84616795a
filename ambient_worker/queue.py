"""
Redis-backed FIFO task queue with reliable delivery, plus per-job leases.

Uses the BLMOVE (reliable queue) pattern so no pipeline run is lost:
  1. LPUSH → `ambientqueue:jobs`         (enqueue)
  2. BLMOVE → `ambientqueue:processing`  (atomic dequeue + in-flight tracking)
  3. LREM from processing on success    (ack)
  4. Requeue or → `ambientqueue:dead_letter` after 3 failures (nack)

A lease (`SET NX PX`) guarantees only one worker runs a given job at a time.

Keys:
  ambientqueue:jobs             — pending tasks (Redis list, FIFO)
  ambientqueue:processing       — in-flight tasks (Redis list)
  ambientqueue:dead_letter      — permanently failed tasks (Redis list)
  ambientqueue:meta:{job_id}    — per-job metadata (Redis hash, TTL 2h)
  ambientqueue:lease:{job_id}   — single-writer lease (string, TTL 1h)
"""

import json
import time
import logging
from contextlib import contextmanager
from typing import Optional
from uuid import uuid4

from .pipeline.errors import JobLockedError

logger = logging.getLogger(__name__)

QUEUE_KEY = "ambientqueue:jobs"
PROCESSING_KEY = "ambientqueue:processing"
DEAD_LETTER_KEY = "ambientqueue:dead_letter"
META_PREFIX = "ambientqueue:meta:"
LEASE_PREFIX = "ambientqueue:lease:"
META_TTL = 7200  # 2 hours, metadata auto-expires
LEASE_TTL_MS = 3_600_000  # 1 hour, longest expected pipeline run

MAX_RETRIES = 3
STALE_TASK_TIMEOUT = 3600  # 1 hour, then stale in-flight tasks are requeued

# Delete the lease only if we still own it
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


# ── Enqueue ───────────────────────────────────────────────────────────────────

def enqueue_task(
    redis_client,
    job_id: str,
    task_type: str,
    payload: dict,
    user_id: Optional[str] = None,
) -> int:
    """
    Add a task to the back of the queue.
    Returns the queue position (1-based).
    """
    meta = {
        "user_id": user_id or "",
        "job_id": job_id,
        "task_type": task_type,
        "payload": json.dumps(payload),
        "enqueued_at": str(time.time()),
        "status": "queued",
        "retries": "0",
    }

    pipe = redis_client.pipeline(transaction=True)

    meta_key = f"{META_PREFIX}{job_id}"
    pipe.hset(meta_key, mapping=meta)
    pipe.expire(meta_key, META_TTL)

    # LPUSH = new items go to left; pop from right = FIFO
    pipe.lpush(QUEUE_KEY, job_id)

    pipe.execute()

    position = redis_client.llen(QUEUE_KEY)
    logger.info(f"Enqueued job {job_id} (type={task_type}, pos={position})")
    return position


# ── Reliable Dequeue ──────────────────────────────────────────────────────────

def dequeue_task(redis_client, timeout: int = 5) -> Optional[str]:
    """
    Atomically move a task from the pending queue to the processing list.

    The task is never in limbo: it's either in `jobs` or in `processing`.
    If the worker crashes, `recover_stale_tasks()` will move it back.

    Returns the job_id or None on timeout.
    """
    result = redis_client.blmove(
        QUEUE_KEY, PROCESSING_KEY,
        timeout=timeout,
        src="RIGHT", dest="LEFT",
    )
    if result is None:
        return None

    job_id = _decode(result)
    redis_client.hset(f"{META_PREFIX}{job_id}", "processing_started_at", str(time.time()))

    logger.info(f"Dequeued job {job_id} → processing")
    return job_id


# ── Ack / Nack ────────────────────────────────────────────────────────────────

def ack_task(redis_client, job_id: str):
    """Acknowledge successful completion — remove from the processing list."""
    redis_client.lrem(PROCESSING_KEY, 1, job_id)
    update_task_status(redis_client, job_id, "completed")
    logger.info(f"Acked job {job_id}")


def nack_task(redis_client, job_id: str, error_msg: str = "") -> bool:
    """
    Negative-acknowledge a failed task.
    Increments retry count. If below MAX_RETRIES, requeues.
    Otherwise moves to the dead-letter queue.

    Returns True if the task was requeued.
    """
    meta_key = f"{META_PREFIX}{job_id}"
    retries = int(redis_client.hget(meta_key, "retries") or 0)
    retries += 1
    redis_client.hset(meta_key, "retries", str(retries))

    if error_msg:
        redis_client.hset(meta_key, "last_error", error_msg[:500])

    redis_client.lrem(PROCESSING_KEY, 1, job_id)

    if retries < MAX_RETRIES:
        redis_client.lpush(QUEUE_KEY, job_id)
        update_task_status(redis_client, job_id, "queued")
        logger.warning(f"Nacked job {job_id} (retry {retries}/{MAX_RETRIES}), requeued")
        return True

    redis_client.lpush(DEAD_LETTER_KEY, job_id)
    update_task_status(redis_client, job_id, "dead_letter")
    logger.error(f"Job {job_id} moved to dead-letter queue after {MAX_RETRIES} failures: {error_msg}")
    return False


# ── Stale Task Recovery ───────────────────────────────────────────────────────

def recover_stale_tasks(redis_client) -> int:
    """
    Move tasks in-flight longer than STALE_TASK_TIMEOUT back to the pending
    queue. These are likely from crashed workers.

    Call this on worker startup. Returns the number of recovered tasks.
    """
    processing_items = redis_client.lrange(PROCESSING_KEY, 0, -1)
    recovered = 0
    now = time.time()

    for item in processing_items:
        job_id = _decode(item)
        meta = get_task_meta(redis_client, job_id)

        if not meta:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            logger.warning(f"Removed orphaned job {job_id} from processing (no metadata)")
            continue

        started_at = float(meta.get("processing_started_at", 0))
        if started_at > 0 and (now - started_at) > STALE_TASK_TIMEOUT:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            redis_client.lpush(QUEUE_KEY, job_id)
            update_task_status(redis_client, job_id, "queued")
            recovered += 1
            logger.warning(
                f"Recovered stale job {job_id} (in-flight {int(now - started_at)}s > {STALE_TASK_TIMEOUT}s)"
            )

    if recovered:
        logger.info(f"Recovered {recovered} stale task(s) from processing queue")
    return recovered


# ── Job Lease ─────────────────────────────────────────────────────────────────

@contextmanager
def job_lease(redis_client, job_id: str, ttl_ms: int = LEASE_TTL_MS):
    """
    Hold the single-writer lease for a job for the duration of the block.

    Raises:
        JobLockedError: another worker holds the lease.
    """
    key = f"{LEASE_PREFIX}{job_id}"
    token = uuid4().hex
    if not redis_client.set(key, token, nx=True, px=ttl_ms):
        raise JobLockedError(f"Job {job_id} is already running on another worker")

    logger.info(f"Lease acquired for job {job_id}")
    try:
        yield token
    finally:
        redis_client.eval(_RELEASE_SCRIPT, 1, key, token)
        logger.info(f"Lease released for job {job_id}")


def lease_held(redis_client, job_id: str) -> bool:
    """True when some worker currently holds the lease for this job."""
    return bool(redis_client.exists(f"{LEASE_PREFIX}{job_id}"))


# ── Metadata Helpers ──────────────────────────────────────────────────────────

def get_queue_position(redis_client, job_id: str) -> Optional[int]:
    """
    Get the 1-based position of a job in the pending queue.
    Returns None if the job is not in the queue (already processing or done).
    """
    queue_items = redis_client.lrange(QUEUE_KEY, 0, -1)

    for i, item in enumerate(queue_items):
        if _decode(item) == job_id:
            # Items are popped from the right, so rightmost = next
            return len(queue_items) - i

    return None


def get_task_meta(redis_client, job_id: str) -> Optional[dict]:
    """Get metadata for a queued/processing task."""
    data = redis_client.hgetall(f"{META_PREFIX}{job_id}")
    if not data:
        return None
    return {_decode(k): _decode(v) for k, v in data.items()}


def update_task_status(redis_client, job_id: str, status: str):
    """Update the status of a task in its metadata."""
    redis_client.hset(f"{META_PREFIX}{job_id}", "status", status)

"""
Batch generation scheduler — keyframes for every shot, in playback order.

Shots are processed strictly one at a time, sorted by (scene_number,
shot_number), because a shot that inherits its start frame needs the end
frame of the shot before it. A failed shot is retried once and then
recorded; the batch always runs to the end.
"""

import os
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .models import BatchResult, ShotContinuity, ShotRequest, ShotResult

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────
RETRY_DELAY = float(os.getenv("BATCH_RETRY_DELAY", "2.0"))  # seconds
ITEM_DELAY = float(os.getenv("BATCH_ITEM_DELAY", "0.0"))    # seconds between shots

# (request, inherited_start_frame_url) → result
GenerateFn = Callable[[ShotRequest, Optional[str]], Awaitable[ShotResult]]


async def _attempt(fn: GenerateFn, request: ShotRequest, inherited: Optional[str]) -> ShotResult:
    try:
        return await fn(request, inherited)
    except Exception as e:
        logger.error(f"Shot {request.shot.id} generation raised: {e}")
        return ShotResult(shot_id=request.shot.id, success=False, error=str(e))


async def process_all(
    ordered_shots: list[ShotRequest],
    inheritance_map: dict[str, ShotContinuity],
    existing_artifacts: dict[str, str],
    generate: GenerateFn,
    retry: Optional[GenerateFn] = None,
    retry_delay: Optional[float] = None,
    item_delay: Optional[float] = None,
) -> BatchResult:
    """
    Generate keyframes for a list of shots.

    Args:
        ordered_shots: one request per shot (re-sorted here by scene/shot number)
        inheritance_map: output of continuity.resolve()
        existing_artifacts: shot_id → end frame URL from earlier partial runs
        generate: produces one shot's frames
        retry: called once when `generate` fails (defaults to `generate`)
        retry_delay: pause before the retry
        item_delay: pause between shots

    Returns:
        BatchResult with one ShotResult per request. Cost includes every
        attempt that reported one, failed attempts included.
    """
    retry = retry or generate
    retry_delay = RETRY_DELAY if retry_delay is None else retry_delay
    item_delay = ITEM_DELAY if item_delay is None else item_delay
    requests = sorted(
        ordered_shots,
        key=lambda r: (r.scene_number, r.shot.shot_number),
    )

    end_frames: dict[str, str] = {k: v for k, v in existing_artifacts.items() if v}
    batch = BatchResult()

    for idx, request in enumerate(requests):
        shot_id = request.shot.id
        continuity = inheritance_map.get(shot_id)

        inherited: Optional[str] = None
        if continuity and not continuity.is_first and continuity.previous_shot_id:
            inherited = end_frames.get(continuity.previous_shot_id)
            if inherited is None:
                logger.warning(
                    f"Shot {shot_id} inherits from {continuity.previous_shot_id} "
                    f"but no end frame is available — generating a fresh start frame"
                )

        logger.info(
            f"Batch [{idx + 1}/{len(requests)}] scene {request.scene_number} "
            f"shot {request.shot.shot_number}"
            + (" (inherited start)" if inherited else "")
        )

        result = await _attempt(generate, request, inherited)
        cost = result.cost

        if not result.success:
            logger.warning(f"Shot {shot_id} failed ({result.error}) — retrying once")
            if retry_delay > 0:
                await asyncio.sleep(retry_delay)
            result = await _attempt(retry, request, inherited)
            cost += result.cost

        result = result.model_copy(update={
            "cost": cost,
            "start_frame_inherited": bool(inherited) and result.success,
        })

        if result.success:
            batch.success_count += 1
            if result.end_frame_url:
                end_frames[shot_id] = result.end_frame_url
        else:
            batch.failure_count += 1
            if not result.error:
                result.error = "Generation failed"
            logger.error(f"Shot {shot_id} failed after retry: {result.error}")

        batch.results.append(result)
        batch.total_cost += cost

        if item_delay > 0 and idx < len(requests) - 1:
            await asyncio.sleep(item_delay)

    logger.info(
        f"Batch complete: {batch.success_count} succeeded, "
        f"{batch.failure_count} failed, cost ${batch.total_cost:.4f}"
    )
    return batch

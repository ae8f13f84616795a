"""
Pacing math — duration buckets, scene/shot counts, loop counts, and
duration normalization.

Everything here is pure; stage modules call it to turn the user's pacing
slider (0-100) and duration bucket into concrete numbers.
"""

import math
import random
from typing import Optional, Union

from .models import LoopSettings, Scene, Shot


# ── Config ───────────────────────────────────────────────────────────────────

DURATION_SECONDS = {
    "1min": 60,
    "2min": 120,
    "4min": 240,
    "6min": 360,
    "8min": 480,
    "10min": 600,
}
DEFAULT_DURATION_SECONDS = 60

MIN_SCENES, MAX_SCENES = 1, 50
MIN_SCENE_DURATION, MAX_SCENE_DURATION = 15, 120
MAX_SHOTS_PER_SCENE = 10
MIN_SHOT_DURATION, MAX_SHOT_DURATION = 5, 30

LOOP_COUNT_MIN, LOOP_COUNT_MAX = 2, 10

# category → (min count, max count, avg duration low, avg duration high)
SEGMENT_RANGES = {
    "slow": (3, 6, 45, 90),
    "medium": (5, 10, 30, 60),
    "fast": (8, 15, 15, 40),
}

SHOT_RANGES = {
    "slow": (2, 3, 15, 30),
    "medium": (3, 4, 8, 15),
    "fast": (4, 6, 5, 10),
}

LONG_FORM_SECONDS = 1800
LONG_FORM_SCALE = 2.5


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ── Duration & Pacing ────────────────────────────────────────────────────────

def parse_duration_to_seconds(duration: str) -> int:
    """Map a duration bucket like '2min' to seconds (60 when unknown)."""
    return DURATION_SECONDS.get(duration, DEFAULT_DURATION_SECONDS)


def pacing_category(pacing: int) -> str:
    if pacing <= 30:
        return "slow"
    if pacing <= 70:
        return "medium"
    return "fast"


def segment_count_bounds(duration_seconds: int, pacing: int) -> tuple[int, int]:
    """Scene-count bounds for a pacing category, scaled up for long-form."""
    lo, hi, _, _ = SEGMENT_RANGES[pacing_category(pacing)]
    if duration_seconds >= LONG_FORM_SECONDS:
        return _round_half_up(lo * LONG_FORM_SCALE), _round_half_up(hi * LONG_FORM_SCALE)
    return lo, hi


def optimal_segment_count(
    duration_seconds: int,
    pacing: int,
    segment_count: Union[str, int] = "auto",
) -> int:
    """
    Target number of scenes.

    An explicit count is honored within [1, 30]; "auto" derives the count
    from the pacing category's average segment length.
    """
    if segment_count != "auto":
        return max(1, min(30, int(segment_count)))

    _, _, avg_lo, avg_hi = SEGMENT_RANGES[pacing_category(pacing)]
    ideal = _round_half_up(duration_seconds / ((avg_lo + avg_hi) / 2))
    lo, hi = segment_count_bounds(duration_seconds, pacing)
    return max(lo, min(hi, ideal))


def optimal_shot_count(
    scene_duration: int,
    pacing: int,
    shots_per_segment: Union[str, int] = "auto",
) -> int:
    if shots_per_segment != "auto":
        return max(1, min(MAX_SHOTS_PER_SCENE, int(shots_per_segment)))

    lo, hi, avg_lo, avg_hi = SHOT_RANGES[pacing_category(pacing)]
    ideal = _round_half_up(scene_duration / ((avg_lo + avg_hi) / 2))
    return max(lo, min(hi, ideal))


# ── Normalization ────────────────────────────────────────────────────────────

def normalize_durations(
    raw: list[float],
    total: int,
    minimum: int,
    maximum: int,
) -> list[int]:
    """
    Rescale proposed durations to whole seconds that sum exactly to `total`.

    Each value stays inside [minimum, maximum] whenever that is arithmetically
    possible; otherwise the bounds relax to [1, total]. Callers must trim to
    at most `total` items, since every item needs at least one second.
    """
    n = len(raw)
    if n == 0:
        return []
    if n > total:
        raise ValueError(f"Cannot fit {n} items of at least 1s into {total}s")
    if n * minimum > total or n * maximum < total:
        minimum, maximum = 1, total

    weights = [d if d and d > 0 else 1 for d in raw]
    weight_sum = sum(weights)
    durations = [
        max(minimum, min(maximum, int(total * w / weight_sum)))
        for w in weights
    ]

    diff = total - sum(durations)
    i = 0
    while diff != 0:
        step = 1 if diff > 0 else -1
        idx = i % n
        candidate = durations[idx] + step
        if minimum <= candidate <= maximum:
            durations[idx] = candidate
            diff -= step
        i += 1
    return durations


# ── Loops ────────────────────────────────────────────────────────────────────

def calculate_loop_count(
    enabled: bool,
    setting: Union[str, int],
    rng: Optional[random.Random] = None,
) -> int:
    """1 when looping is off; random 2-10 for 'auto'; otherwise the setting."""
    if not enabled:
        return 1
    if setting == "auto":
        return (rng or random).randint(LOOP_COUNT_MIN, LOOP_COUNT_MAX)
    return max(1, int(setting))


def scene_loop_count(loops: LoopSettings, rng: Optional[random.Random] = None) -> Optional[int]:
    if not loops.loop_mode:
        return None
    return calculate_loop_count(loops.segment_loop_enabled, loops.segment_loop_count, rng)


def shot_loop_count(loops: LoopSettings, rng: Optional[random.Random] = None) -> Optional[int]:
    if not loops.loop_mode:
        return None
    return calculate_loop_count(loops.shot_loop_enabled, loops.shot_loop_count, rng)


def total_duration_with_loops(
    scenes: list[Scene],
    shots_by_scene: dict[str, list[Shot]],
) -> float:
    """Playback length once shot and scene loops are expanded."""
    total = 0.0
    for scene in scenes:
        scene_total = sum(
            shot.duration * (shot.loop_count or 1)
            for shot in shots_by_scene.get(scene.id, [])
        )
        total += scene_total * (scene.loop_count or 1)
    return total

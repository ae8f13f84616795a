"""
Continuity resolution — turns proposed shot-continuity groups into a
per-shot inheritance map.

A continuity group is a run of 2-5 consecutive shots in one scene whose
frame boundaries should connect: every shot after the first starts from
the end frame of the shot before it.

Resolution is two-phase so the result does not depend on the order groups
are supplied in:
  Phase 1: every approved group's first member is claimed as "first".
  Phase 2: every non-first member is upgraded to inherit from its
           predecessor. Upgrades only, so a "first" claim can never undo
           an inheritance.
"""

import logging
from typing import Iterable

from .errors import ContinuityValidationError
from .models import (
    ContinuityGroup,
    ContinuityStatus,
    DEFAULT_TRANSITION,
    Shot,
    ShotContinuity,
    TRANSITION_TYPES,
)

logger = logging.getLogger(__name__)

MIN_GROUP_SIZE = 2
MAX_GROUP_SIZE = 5


# ── Validation ───────────────────────────────────────────────────────────────

def _validate_group(
    group: ContinuityGroup,
    shots_by_scene: dict[str, list[Shot]],
) -> ContinuityGroup:
    scene_shots = {s.id: s for s in shots_by_scene.get(group.scene_id, [])}

    valid_ids = [sid for sid in group.shot_ids if sid in scene_shots]
    if len(valid_ids) < MIN_GROUP_SIZE:
        raise ContinuityValidationError(
            f"{len(valid_ids)} valid shot(s) in scene {group.scene_id}"
        )

    if len(valid_ids) > MAX_GROUP_SIZE:
        logger.warning(
            f"Truncating continuity group {group.id} from {len(valid_ids)} "
            f"to {MAX_GROUP_SIZE} shots"
        )
        valid_ids = valid_ids[:MAX_GROUP_SIZE]

    numbers = [scene_shots[sid].shot_number for sid in valid_ids]
    if any(b != a + 1 for a, b in zip(numbers, numbers[1:])):
        raise ContinuityValidationError(f"shots {numbers} are not consecutive")

    transition = group.transition_type
    if transition not in TRANSITION_TYPES:
        transition = DEFAULT_TRANSITION

    return group.model_copy(update={
        "shot_ids": valid_ids,
        "transition_type": transition,
    })


def validate_groups(
    shots_by_scene: dict[str, list[Shot]],
    proposed_groups: Iterable[ContinuityGroup],
) -> list[ContinuityGroup]:
    """
    Drop or repair malformed continuity groups.

    Groups with fewer than 2 known shots or non-consecutive shot numbers are
    dropped; groups longer than 5 are truncated; unknown transition labels
    fall back to "flow". Never raises.

    Returns:
        Surviving groups, in proposal order, with their original status.
    """
    survivors = []
    for group in proposed_groups:
        try:
            survivors.append(_validate_group(group, shots_by_scene))
        except ContinuityValidationError as e:
            logger.warning(f"Dropping continuity group {group.id}: {e}")
    return survivors


# ── Inheritance ──────────────────────────────────────────────────────────────

def resolve(
    shots_by_scene: dict[str, list[Shot]],
    proposed_groups: Iterable[ContinuityGroup],
) -> dict[str, ShotContinuity]:
    """
    Build the per-shot inheritance map.

    Every shot gets an entry. Shots outside any approved group stay
    `{group_id: None, is_first: True, previous_shot_id: None}`.

    Args:
        shots_by_scene: scene_id → shots of that scene
        proposed_groups: groups as proposed (validation is applied here)

    Returns:
        shot_id → ShotContinuity
    """
    # Longest group first, then group_number, so ties on a shared shot
    # always go to the same group whatever the proposal order.
    approved = sorted(
        (
            g for g in validate_groups(shots_by_scene, proposed_groups)
            if g.status == ContinuityStatus.APPROVED
        ),
        key=lambda g: (-len(g.shot_ids), g.group_number, g.id),
    )

    inheritance: dict[str, ShotContinuity] = {
        shot.id: ShotContinuity()
        for shots in shots_by_scene.values()
        for shot in shots
    }

    # Phase 1: first members. The first claim in sorted order owns the shot.
    for group in approved:
        head = inheritance[group.shot_ids[0]]
        if head.is_first and head.group_id is None:
            head.group_id = group.id

    # Phase 2: upgrade-only inheritance.
    for group in approved:
        for prev_id, shot_id in zip(group.shot_ids, group.shot_ids[1:]):
            entry = inheritance[shot_id]
            if entry.is_first:
                inheritance[shot_id] = ShotContinuity(
                    group_id=group.id,
                    is_first=False,
                    previous_shot_id=prev_id,
                )

    inherited = sum(1 for c in inheritance.values() if not c.is_first)
    logger.info(
        f"Resolved continuity: {len(approved)} approved group(s), "
        f"{inherited}/{len(inheritance)} shot(s) inherit a start frame"
    )
    return inheritance

from __future__ import annotations

from typing import List, Tuple

from core.config import CleanerConfig
from core.models import ItemOutcome

REASON_CAP_REACHED = 'removal cap reached'


def removal_priority(candidate: ItemOutcome) -> tuple:
    """Longest offending first: most strikes, earliest first strike, oldest item, lowest queue id."""
    inf = float('inf')
    return (
        -(candidate.strike_count or 0),
        candidate.first_strike_at if candidate.first_strike_at is not None else inf,
        candidate.added if candidate.added is not None else inf,
        candidate.id,
    )


def apply_safety_limits(
    candidates: List[ItemOutcome],
    config: CleanerConfig,
    now: float,
) -> Tuple[List[ItemOutcome], List[ItemOutcome]]:
    """Split removal candidates into (approved, skipped)."""
    skipped: List[ItemOutcome] = []
    eligible: List[ItemOutcome] = []
    for cand in candidates:
        if cand.added is not None and (now - cand.added) / 60.0 < config.min_queue_age_mins:
            age = int((now - cand.added) / 60.0)
            cand.reason = f'too young: in queue {age}m (min: {config.min_queue_age_mins:g}m); {cand.reason}'
            cand.action = 'skip'
            skipped.append(cand)
            continue
        eligible.append(cand)

    cap = config.max_removals_per_run
    if len(eligible) <= cap:
        return eligible, skipped
    ordered = sorted(eligible, key=removal_priority)
    for cand in ordered[cap:]:
        cand.reason = REASON_CAP_REACHED
        cand.action = 'skip'
        skipped.append(cand)
    return ordered[:cap], skipped

from __future__ import annotations

from typing import Callable, List, Optional, Sequence, Tuple

from core.config import CleanerConfig
from core.constants import (
    FAILURE_KEYWORDS,
    IMPORT_BLOCKED_REVIEW_KEYWORDS,
    IMPORT_BLOCKED_SAFE_KEYWORDS,
    IMPORT_BLOCKED_TECHNICAL_KEYWORDS,
    IMPORT_PENDING_RECOVERABLE_KEYWORDS,
)
from core.models import DISPOSITION_REMOVE, DISPOSITION_STRIKE, QueueItem, Verdict
from core.utils import matches_keywords

# (rule_id, reason) or None
Match = Optional[Tuple[str, str]]


def matches_custom_patterns(texts: Sequence[str], patterns: Sequence[str]) -> Optional[str]:
    all_text = ' '.join(texts).lower()
    for pattern in patterns:
        if not isinstance(pattern, str) or not pattern.strip():
            continue
        if pattern.strip().lower() in all_text:
            return pattern
    return None


def evaluate_import_block_state(texts: Sequence[str], config: CleanerConfig, state_type: str) -> Match:
    """Decide whether a blocked/pending import is actionable at the configured cleanup level.

    include mode acts only on custom patterns; exclude mode uses the
    built-in keyword categories but spares items matching a custom pattern.
    """
    level = config.import_block_cleanup_level
    mode = config.import_block_pattern_mode
    patterns = config.import_block_patterns
    rule = 'import_blocked' if state_type == 'blocked' else 'import_pending'
    prefix = 'Import blocked' if state_type == 'blocked' else 'Import pending'

    if mode == 'include' and patterns:
        hit = matches_custom_patterns(texts, patterns)
        if hit:
            return rule, f'{prefix} (matched pattern): {hit}'
        return None
    if mode == 'exclude' and patterns and matches_custom_patterns(texts, patterns):
        return None

    safe = matches_keywords(texts, IMPORT_BLOCKED_SAFE_KEYWORDS)
    if safe:
        return rule, f'{prefix} (safe to remove): {safe}'
    review = matches_keywords(texts, IMPORT_BLOCKED_REVIEW_KEYWORDS)
    if review:
        if level in ('moderate', 'aggressive'):
            return rule, f'{prefix} (needs review): {review}'
        return None
    technical = matches_keywords(texts, IMPORT_BLOCKED_TECHNICAL_KEYWORDS)
    if technical:
        if level == 'aggressive':
            return rule, f'{prefix} (technical): {technical}'
        return None
    if level in ('moderate', 'aggressive'):
        summary = texts[0] if texts else 'requires manual intervention'
        return rule, f'{prefix}: {summary}'
    return None


def _is_recoverable_pending(item: QueueItem) -> bool:
    return matches_keywords(item.status_messages, IMPORT_PENDING_RECOVERABLE_KEYWORDS) is not None


def rule_error_pattern(item: QueueItem, config: CleanerConfig, now: float) -> Match:
    if not config.error_patterns_enabled or not config.error_patterns:
        return None
    all_text = ' '.join(item.status_messages).lower()
    err = item.error_message.lower()
    for pattern in config.error_patterns:
        needle = pattern.strip().lower()
        if needle and (needle in all_text or needle in err):
            return 'error_pattern', f'Matched error pattern: "{pattern}"'
    return None


def rule_import_block(item: QueueItem, config: CleanerConfig, now: float) -> Match:
    if not config.import_block_enabled:
        return None
    state = item.tracked_download_state
    if state == 'importblocked':
        return evaluate_import_block_state(item.status_messages, config, 'blocked')
    if state == 'importpending' and not _is_recoverable_pending(item):
        return evaluate_import_block_state(item.status_messages, config, 'pending')
    return None


def rule_failed(item: QueueItem, config: CleanerConfig, now: float) -> Match:
    if not config.failed_enabled:
        return None
    state = item.tracked_download_state
    status = item.tracked_download_status
    if state == 'importfailed' or status == 'error' or 'failed' in state or item.status == 'failed':
        return 'failed', f'Download failed (state: {state or status or item.status})'
    hit = matches_keywords(item.status_messages, FAILURE_KEYWORDS)
    if hit:
        return 'failed', f'Failed: {hit}'
    return None


def rule_stalled(item: QueueItem, config: CleanerConfig, now: float) -> Match:
    if not config.stalled_enabled:
        return None
    age = item.age_minutes(now)
    if age is None or age < config.stalled_threshold_mins:
        return None
    signal = item.stall_signal
    if signal:
        return 'stalled', f'Stalled: {signal} (in queue {round(age)}m, threshold: {config.stalled_threshold_mins:g}m)'
    if item.no_bytes_downloaded:
        return 'stalled', f'No progress for {round(age)} minutes (threshold: {config.stalled_threshold_mins:g}m)'
    return None


def rule_slow(item: QueueItem, config: CleanerConfig, now: float) -> Match:
    if not config.slow_enabled or item.added is None:
        return None
    age = item.age_minutes(now)
    if age < config.slow_grace_period_mins:
        return None
    if not item.size or item.sizeleft is None or item.sizeleft <= 0:
        return None
    if item.speed is not None:
        speed_kbs = item.speed / 1024.0
    else:
        elapsed = now - item.added
        if elapsed <= 0:
            return None
        speed_kbs = (item.size - item.sizeleft) / 1024.0 / elapsed
    if speed_kbs < config.slow_speed_threshold:
        return 'slow', f'Speed: {speed_kbs:.1f} KB/s (threshold: {config.slow_speed_threshold:g} KB/s)'
    return None


def rule_seeding_timeout(item: QueueItem, config: CleanerConfig, now: float) -> Match:
    if not config.seeding_timeout_enabled or not item.is_torrent or item.added is None:
        return None
    seeding = item.sizeleft == 0 or item.tracked_download_status == 'seeding' or item.status == 'seeding'
    if not seeding:
        return None
    hours = (now - item.added) / 3600.0
    if hours >= config.seeding_timeout_hours:
        return 'seeding_timeout', f'Seeding for {int(hours)}h (limit: {config.seeding_timeout_hours:g}h)'
    return None


def rule_estimated_completion(item: QueueItem, config: CleanerConfig, now: float) -> Match:
    if not config.estimated_completion_enabled:
        return None
    if item.estimated_completion is None or item.added is None or not item.sizeleft or item.sizeleft <= 0:
        return None
    expected = item.estimated_completion - item.added
    actual = now - item.added
    mult = config.estimated_completion_multiplier
    if expected > 0 and actual > expected * mult:
        over = round((actual - expected) / 60.0)
        return 'estimated_completion', f'Exceeded estimated completion by {over}m ({mult:g}x threshold)'
    return None


def rule_import_pending(item: QueueItem, config: CleanerConfig, now: float) -> Match:
    if not config.import_pending_enabled or item.tracked_download_state != 'importpending':
        return None
    if _is_recoverable_pending(item):
        return None
    age = item.age_minutes(now)
    if age is None or age <= config.import_pending_threshold_mins:
        return None
    summary = '; '.join(item.status_messages[:2]) if item.status_messages else 'no status info'
    return 'import_pending', f'Import pending too long ({round(age)}m): {summary}'


# Precedence order; the first non-None result wins
RULES: Tuple[Callable[[QueueItem, CleanerConfig, float], Match], ...] = (
    rule_error_pattern,
    rule_import_block,
    rule_failed,
    rule_stalled,
    rule_slow,
    rule_seeding_timeout,
    rule_estimated_completion,
    rule_import_pending,
)


def classify(item: QueueItem, config: CleanerConfig, now: float, rules=RULES) -> Optional[Verdict]:
    for rule_fn in rules:
        hit = rule_fn(item, config, now)
        if hit is None:
            continue
        rule_id, reason = hit
        disposition = DISPOSITION_STRIKE if config.strikes_apply_to(rule_id) else DISPOSITION_REMOVE
        return Verdict(rule=rule_id, reason=reason, disposition=disposition)
    return None


def explain(item: QueueItem, config: CleanerConfig, now: float) -> List[Tuple[str, str]]:
    """Every rule the item matches, in precedence order (used by the CLI simulator)."""
    out: List[Tuple[str, str]] = []
    for rule_fn in RULES:
        hit = rule_fn(item, config, now)
        if hit is not None:
            out.append(hit)
    return out

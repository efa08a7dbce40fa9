from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from core.config import CleanerConfig
from core.constants import (
    AUTO_IMPORT_DELAY_SECONDS,
    AUTO_IMPORT_NEVER_KEYWORDS,
    AUTO_IMPORT_SAFE_KEYWORDS,
    IMPORT_RULES,
    MAX_AUTO_IMPORTS_PER_RUN,
)
from core.models import (
    RUN_COMPLETED,
    RUN_ERROR,
    RUN_PARTIAL,
    ItemOutcome,
    QueueItem,
    QueueProviderError,
    RunLog,
)
from core.utils import matches_keywords
from storage.strikes import StrikeRecord, StrikeStore


@dataclass
class ActionsDeps:
    provider: Any  # list_queue / remove_item / change_category / trigger_search / manual_import
    strikes: StrikeStore
    event_bus: Any  # expects .emit(event, instance_id=..., item=..., reason=..., **fields)
    debug_logging: bool = False
    auto_import_delay: float = AUTO_IMPORT_DELAY_SECONDS


@dataclass
class ExecutionResult:
    succeeded: int = 0
    failed: int = 0


def run_status(succeeded: int, failed: int) -> str:
    if failed and succeeded:
        return RUN_PARTIAL
    if failed:
        return RUN_ERROR
    return RUN_COMPLETED


def evaluate_auto_import_eligibility(
    texts: List[str],
    config: CleanerConfig,
    record: Optional[StrikeRecord],
    now: float,
) -> Tuple[bool, str]:
    if not config.auto_import_enabled:
        return False, 'Auto-import disabled'
    attempts = record.import_attempts if record else 0
    if attempts >= config.auto_import_max_attempts:
        return False, f'Max attempts reached ({attempts}/{config.auto_import_max_attempts})'
    if record and record.last_import_attempt is not None:
        cooldown = config.auto_import_cooldown_mins * 60
        since = now - record.last_import_attempt
        if since < cooldown:
            return False, f'Cooldown active ({int((cooldown - since + 59) // 60)}m remaining)'
    never = matches_keywords(texts, AUTO_IMPORT_NEVER_KEYWORDS)
    if never:
        return False, f'Cannot auto-import: {never}'
    custom_never = matches_keywords(texts, config.auto_import_never_patterns)
    if custom_never:
        return False, f'Blocked by custom pattern: {custom_never}'
    if config.auto_import_safe_only:
        safe = matches_keywords(texts, AUTO_IMPORT_SAFE_KEYWORDS) or matches_keywords(
            texts, config.auto_import_custom_patterns
        )
        if not safe:
            return False, 'No safe pattern matched (safe-only mode)'
    return True, 'Eligible for auto-import'


async def attempt_auto_import(instance_id: str, item: QueueItem, deps: ActionsDeps) -> Tuple[bool, Optional[str]]:
    try:
        await deps.provider.manual_import(instance_id, item)
    except Exception as e:
        logging.warning(f'Instance {instance_id}: auto-import failed id={item.id} title={item.title}: {e}')
        return False, str(e) or e.__class__.__name__
    logging.info(f'Instance {instance_id}: auto-import succeeded id={item.id} title={item.title}')
    return True, None


async def remove_and_blocklist(
    instance_id: str,
    item: QueueItem,
    config: CleanerConfig,
    deps: ActionsDeps,
) -> str:
    """Apply the configured removal action and return the action name.

    Recategorizing only happens for torrents when the download is kept in
    the client; removal wins when remove_from_client is also set.
    """
    use_change_category = config.change_category_enabled and not config.remove_from_client and item.is_torrent
    try:
        if use_change_category:
            await deps.provider.change_category(
                instance_id, item, config.change_category_name, config.add_to_blocklist
            )
            action = 'recategorized'
        else:
            await deps.provider.remove_item(
                instance_id, item, config.remove_from_client, config.add_to_blocklist
            )
            action = 'removed'
    except QueueProviderError as e:
        if e.status == 404:
            action = 'already_removed'
        else:
            raise
    if deps.debug_logging:
        logging.info(
            f"Instance {instance_id}: {action} id={item.id} title={item.title} "
            f"blocklist={config.add_to_blocklist} remove_from_client={config.remove_from_client}"
        )
    return action


async def execute_removals(
    instance_id: str,
    approved: List[ItemOutcome],
    items_by_download: Dict[str, QueueItem],
    config: CleanerConfig,
    deps: ActionsDeps,
    run_log: RunLog,
    now: float,
) -> ExecutionResult:
    """Carry out (or simulate) approved removals, appending outcomes to ``run_log``."""
    result = ExecutionResult()
    if config.dry_run_mode:
        for outcome in approved:
            outcome.action = 'would_remove'
            run_log.skipped_items.append(outcome)
            deps.event_bus.emit('dry_remove', instance_id=instance_id, item=outcome, reason=outcome.reason, rule=outcome.rule)
        return result

    imports_this_run = 0
    for outcome in approved:
        item = items_by_download.get(outcome.download_id)
        if item is None:
            continue

        if outcome.rule in IMPORT_RULES and config.auto_import_enabled and imports_this_run < MAX_AUTO_IMPORTS_PER_RUN:
            eligible, why = evaluate_auto_import_eligibility(
                item.status_messages, config, deps.strikes.get(instance_id, item.download_id), now
            )
            if eligible:
                imports_this_run += 1
                ok, err = await attempt_auto_import(instance_id, item, deps)
                async with deps.strikes.lock_for(instance_id, item.download_id):
                    deps.strikes.record_import_attempt(instance_id, item.download_id, now, error=err, title=item.title)
                if deps.auto_import_delay > 0:
                    await asyncio.sleep(deps.auto_import_delay)
                if ok:
                    async with deps.strikes.lock_for(instance_id, item.download_id):
                        deps.strikes.clear(instance_id, item.download_id)
                    outcome.action = 'imported'
                    outcome.reason = f'Auto-imported successfully (was: {outcome.reason})'
                    run_log.cleaned_items.append(outcome)
                    result.succeeded += 1
                    deps.event_bus.emit('imported', instance_id=instance_id, item=outcome, reason=outcome.reason)
                    continue
                logging.info(f'Instance {instance_id}: auto-import failed for id={item.id}; falling back to removal')
            elif deps.debug_logging:
                logging.info(f'Instance {instance_id}: auto-import not eligible id={item.id}: {why}')

        try:
            action = await remove_and_blocklist(instance_id, item, config, deps)
        except Exception as e:
            # Strike record stays so the item is retried next run
            logging.error(f'Instance {instance_id}: removal failed id={item.id} title={item.title}: {e}')
            outcome.action = 'failed'
            outcome.reason = f'Action failed: {e}; {outcome.reason}'
            run_log.warned_items.append(outcome)
            result.failed += 1
            deps.event_bus.emit('action_failed', instance_id=instance_id, item=outcome, reason=str(e), rule=outcome.rule)
            continue

        if action == 'already_removed':
            outcome.reason = f'{outcome.reason} (already removed)'
        if config.search_after_removal:
            try:
                searched = await deps.provider.trigger_search(instance_id, item)
                if deps.debug_logging:
                    logging.info(f'Instance {instance_id}: search after removal id={item.id} triggered={searched}')
            except Exception as e:
                logging.warning(f'Instance {instance_id}: search after removal failed id={item.id}: {e}')
                outcome.reason = f'{outcome.reason} (search failed: {e})'

        async with deps.strikes.lock_for(instance_id, item.download_id):
            deps.strikes.clear(instance_id, item.download_id)
        outcome.action = action
        run_log.cleaned_items.append(outcome)
        result.succeeded += 1
        deps.event_bus.emit('remove', instance_id=instance_id, item=outcome, reason=outcome.reason, rule=outcome.rule, action=action)
    return result

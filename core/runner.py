from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.actions import ActionsDeps, execute_removals, run_status
from core.config import CleanerConfig, ConfigStore
from core.constants import MAX_CLEAN_DURATION_SECONDS
from core.governor import apply_safety_limits
from core.models import (
    DISPOSITION_STRIKE,
    RUN_COMPLETED,
    RUN_ERROR,
    RUN_PARTIAL,
    RUN_SKIPPED,
    TRIGGER_DRY_RUN,
    TRIGGER_SCHEDULED,
    ItemOutcome,
    QueueItem,
    RunLog,
)
from core.rules import classify
from core.whitelist import is_whitelisted
from storage.runlogs import RunLogStore
from storage.strikes import StrikeStore


@dataclass
class RunnerDeps:
    config_store: ConfigStore
    provider: Any  # list_queue / remove_item / change_category / trigger_search / manual_import
    strikes: StrikeStore
    run_logs: RunLogStore
    event_bus: Any

    # limits/flags
    max_run_seconds: float = MAX_CLEAN_DURATION_SECONDS
    classify_workers: int = 4
    debug_logging: bool = False
    auto_import_delay: Optional[float] = None

    clock: Callable[[], float] = time.time


@dataclass
class RunState:
    """Per-run accumulators shared by the item workers."""
    config: CleanerConfig
    log: RunLog
    now: float
    candidates: List[ItemOutcome] = field(default_factory=list)
    items_by_download: Dict[str, QueueItem] = field(default_factory=dict)


def _summary(log: RunLog) -> str:
    prefix = 'Dry run: ' if log.is_dry_run else ''
    return (
        f'{prefix}cleaned {len(log.cleaned_items)}, skipped {len(log.skipped_items)}, '
        f'warned {len(log.warned_items)}'
    )


class Orchestrator:
    """Drives one end-to-end run per call: queue, whitelist, classify, strikes, limits, actions, log."""

    def __init__(self, deps: RunnerDeps) -> None:
        self.deps = deps
        actions_kwargs = {}
        if deps.auto_import_delay is not None:
            actions_kwargs['auto_import_delay'] = deps.auto_import_delay
        self.actions = ActionsDeps(
            provider=deps.provider,
            strikes=deps.strikes,
            event_bus=deps.event_bus,
            debug_logging=deps.debug_logging,
            **actions_kwargs,
        )

    async def run(self, instance_id: str, trigger: str = TRIGGER_SCHEDULED, force_dry_run: bool = False) -> RunLog:
        deps = self.deps
        # Snapshot: later config updates never reach an in-flight run
        config = deps.config_store.get(instance_id)
        if force_dry_run:
            config.dry_run_mode = True
            trigger = TRIGGER_DRY_RUN
        log = RunLog(instance_id=instance_id, trigger=trigger, is_dry_run=config.dry_run_mode, started_at=deps.clock())

        if not config.enabled and not force_dry_run:
            log.finalize(RUN_SKIPPED, 'Queue cleaner is disabled for this instance', now=deps.clock())
            deps.event_bus.log('run_skipped', instance=instance_id, trigger=trigger, reason=log.message)
            self._write_log(log)
            return log

        if deps.debug_logging:
            logging.info(f'Instance {instance_id}: starting {trigger} run (dry_run={config.dry_run_mode})')
        state = RunState(config=config, log=log, now=log.started_at)
        try:
            status, message = await asyncio.wait_for(
                self._execute(instance_id, state), timeout=deps.max_run_seconds
            )
        except asyncio.TimeoutError:
            status = RUN_PARTIAL if log.cleaned_items else RUN_ERROR
            message = f'Run exceeded {deps.max_run_seconds:g}s and was aborted; {_summary(log)}'
            logging.error(f'Instance {instance_id}: {message}')
        except asyncio.CancelledError:
            status = RUN_PARTIAL if log.cleaned_items else RUN_ERROR
            log.finalize(status, f'Run cancelled during shutdown; {_summary(log)}', now=deps.clock())
            self._finish(instance_id, log)
            raise
        except Exception as e:
            status = RUN_ERROR
            message = f'Run failed: {e}'
            logging.error(f'Instance {instance_id}: unexpected error during run: {e}')

        log.finalize(status, message, now=deps.clock())
        self._finish(instance_id, log)
        return log

    async def _execute(self, instance_id: str, state: RunState):
        deps = self.deps
        config, log = state.config, state.log
        try:
            items = await deps.provider.list_queue(instance_id)
        except Exception as e:
            logging.error(f'Instance {instance_id}: failed to fetch queue: {e}')
            return RUN_ERROR, f'Failed to fetch queue: {e}'
        state.now = deps.clock()

        for item in items:
            state.items_by_download.setdefault(item.download_id, item)
        if not config.dry_run_mode:
            pruned = deps.strikes.prune(instance_id, state.items_by_download.keys())
            if pruned and deps.debug_logging:
                logging.info(f'Instance {instance_id}: dropped {pruned} strike record(s) for items no longer queued')
        if not items:
            return RUN_COMPLETED, 'Queue is empty'

        sem = asyncio.Semaphore(max(1, deps.classify_workers))

        async def _worker(item: QueueItem) -> None:
            async with sem:
                try:
                    await self._evaluate_item(instance_id, item, state)
                except Exception as e:
                    # One malformed item must not abort the run
                    logging.error(f'Instance {instance_id}: failed to evaluate id={item.id} title={item.title}: {e}')

        await asyncio.gather(*(_worker(item) for item in state.items_by_download.values()))

        approved, held_back = apply_safety_limits(state.candidates, config, state.now)
        for outcome in held_back:
            log.skipped_items.append(outcome)
            deps.event_bus.emit('skip', instance_id=instance_id, item=outcome, reason=outcome.reason, rule=outcome.rule)

        result = await execute_removals(
            instance_id, approved, state.items_by_download, config, self.actions, log, state.now
        )
        return run_status(result.succeeded, result.failed), _summary(log)

    async def _evaluate_item(self, instance_id: str, item: QueueItem, state: RunState) -> None:
        deps = self.deps
        config, log, now = state.config, state.log, state.now

        exempt, why = is_whitelisted(item, config)
        if exempt:
            log.skipped_items.append(ItemOutcome.for_item(item, 'whitelisted', 'whitelisted', action='skip'))
            deps.event_bus.emit('whitelisted', instance_id=instance_id, item=item, reason=why)
            return

        verdict = classify(item, config, now)
        if verdict is None:
            return

        if verdict.disposition != DISPOSITION_STRIKE:
            state.candidates.append(ItemOutcome.for_item(item, verdict.rule, verdict.reason))
            return

        max_strikes = config.max_strikes
        async with deps.strikes.lock_for(instance_id, item.download_id):
            if config.dry_run_mode:
                # Simulated increment; dry runs never touch the strike store
                rec = deps.strikes.peek(instance_id, item.download_id, config.strike_decay_hours, now)
                count = rec.strike_count + 1
                if max_strikes > 0:
                    count = min(count, max_strikes)
                first_at = rec.first_strike_at if rec.first_strike_at is not None else now
            else:
                rec = deps.strikes.get_or_create(instance_id, item.download_id, config.strike_decay_hours, now)
                deps.strikes.record_strike(rec, verdict.rule, verdict.reason, now, max_strikes, item.title)
                count = rec.strike_count
                first_at = rec.first_strike_at

        outcome = ItemOutcome.for_item(
            item,
            verdict.rule,
            verdict.reason,
            strike_count=count,
            max_strikes=max_strikes,
            first_strike_at=first_at,
        )
        if count >= max_strikes:
            state.candidates.append(outcome)
            return
        outcome.action = 'strike'
        outcome.reason = f'{verdict.reason} (strike {count}/{max_strikes})'
        log.warned_items.append(outcome)
        deps.event_bus.emit(
            'strike', instance_id=instance_id, item=item, reason=verdict.reason,
            rule=verdict.rule, strike_count=count, max_strikes=max_strikes,
        )

    def _write_log(self, log: RunLog) -> None:
        try:
            self.deps.run_logs.append(log)
        except OSError as e:
            logging.error(f'Instance {log.instance_id}: failed to write run log {log.id}: {e}')

    def _finish(self, instance_id: str, log: RunLog) -> None:
        deps = self.deps
        self._write_log(log)
        deps.config_store.record_run(instance_id, log.items_cleaned, log.items_skipped, when=log.completed_at)
        if not log.is_dry_run:
            try:
                deps.strikes.save()
            except OSError as e:
                logging.error(f'Instance {instance_id}: failed to save strikes: {e}')
        deps.event_bus.log(
            'run_complete',
            instance=instance_id,
            run_id=log.id,
            trigger=log.trigger,
            status=log.status,
            dry_run=log.is_dry_run,
            cleaned=log.items_cleaned,
            skipped=log.items_skipped,
            warned=log.items_warned,
            duration_ms=log.duration_ms,
        )
        if deps.debug_logging or log.status == RUN_ERROR:
            level = logging.error if log.status == RUN_ERROR else logging.info
            level(f'Instance {instance_id}: run {log.id} finished with status {log.status}: {log.message}')

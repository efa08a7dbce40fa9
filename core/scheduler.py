from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from core.config import ConfigStore, InstanceNotFoundError
from core.constants import (
    DEFAULT_SHUTDOWN_GRACE_SECONDS,
    MANUAL_CLEAN_COOLDOWN_MINS,
    UNHEALTHY_AFTER_FAILURES,
)
from core.models import RUN_ERROR, RUN_SKIPPED, TRIGGER_MANUAL, TRIGGER_SCHEDULED, RunLog
from core.runner import Orchestrator
from storage.strikes import StrikeStore

ORPHAN_WINDOW_SECONDS = 3600


@dataclass
class InstanceState:
    instance_id: str
    timer: Optional[asyncio.Task] = None
    run_task: Optional[asyncio.Task] = None
    running: bool = False
    next_run_at: Optional[float] = None
    last_run_at: Optional[float] = None
    last_status: Optional[str] = None
    last_success_at: Optional[float] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    last_manual_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instance_id': self.instance_id,
            'state': 'running' if self.running else 'idle',
            'next_run_at': self.next_run_at,
            'last_run_at': self.last_run_at,
            'last_status': self.last_status,
            'last_success_at': self.last_success_at,
            'last_error': self.last_error,
            'consecutive_failures': self.consecutive_failures,
        }


class Scheduler:
    """Registry of per-instance timers with an explicit start/stop lifecycle.

    Each instance gets one asyncio task that sleeps until its next due time
    and then runs a clean. The ``running`` flag is checked and set without an
    intervening await, so runs for one instance never overlap.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        config_store: ConfigStore,
        strikes: Optional[StrikeStore] = None,
        *,
        manual_cooldown_mins: float = MANUAL_CLEAN_COOLDOWN_MINS,
        unhealthy_after: int = UNHEALTHY_AFTER_FAILURES,
        debug_logging: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.orchestrator = orchestrator
        self.config_store = config_store
        self.strikes = strikes
        self.manual_cooldown_mins = manual_cooldown_mins
        self.unhealthy_after = max(1, unhealthy_after)
        self.debug_logging = debug_logging
        self.clock = clock
        self._states: Dict[str, InstanceState] = {}
        self._running = False
        self._decay_failures = 0
        self._last_decay_error: Optional[str] = None
        self._orphans: List[Tuple[str, float]] = []
        # Runs of instances removed by sync(); stop() still owes them a grace period
        self._detached: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    def _state(self, instance_id: str) -> InstanceState:
        state = self._states.get(instance_id)
        if state is None:
            state = InstanceState(instance_id=instance_id)
            cfg = self.config_store.instance(instance_id).config
            state.last_run_at = cfg.last_run_at
            self._states[instance_id] = state
        return state

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.sync()
        logging.info(f'Scheduler started for {len(self._states)} instance(s)')

    def sync(self) -> None:
        """Add timers for new instances and cancel timers for removed ones."""
        if not self._running:
            return
        configured = set(self.config_store.instance_ids())
        for iid in list(self._states):
            if iid not in configured:
                state = self._states.pop(iid)
                if state.timer is not None and not state.timer.done():
                    state.timer.cancel()
                if state.run_task is not None and not state.run_task.done():
                    self._detached.add(state.run_task)
                    state.run_task.add_done_callback(self._detached.discard)
        for iid in configured:
            state = self._state(iid)
            if state.timer is None or state.timer.done():
                state.timer = asyncio.create_task(self._loop(iid), name=f'queue-cleaner:{iid}')

    async def stop(self, grace_seconds: float = DEFAULT_SHUTDOWN_GRACE_SECONDS) -> None:
        """Stop new runs, give in-flight runs ``grace_seconds`` to finish, then cancel the rest."""
        self._running = False
        timers = [s.timer for s in self._states.values() if s.timer is not None and not s.timer.done()]
        for t in timers:
            t.cancel()
        in_flight = [s.run_task for s in self._states.values() if s.run_task is not None and not s.run_task.done()]
        in_flight += [t for t in self._detached if not t.done()]
        if in_flight:
            logging.info(f'Waiting up to {grace_seconds:g}s for {len(in_flight)} in-flight run(s)')
            done, pending = await asyncio.wait(in_flight, timeout=grace_seconds)
            for t in pending:
                t.cancel()
            if pending:
                logging.warning(f'Cancelled {len(pending)} run(s) still active after the shutdown grace period')
                await asyncio.gather(*pending, return_exceptions=True)
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        for s in self._states.values():
            s.timer = None
            s.next_run_at = None
        logging.info('Scheduler stopped')

    def _due_in(self, instance_id: str) -> float:
        state = self._state(instance_id)
        interval = max(1, self.config_store.get(instance_id).interval_mins) * 60
        if state.last_run_at is None:
            return 0.0
        return max(0.0, state.last_run_at + interval - self.clock())

    async def _loop(self, instance_id: str) -> None:
        while self._running:
            try:
                delay = self._due_in(instance_id)
            except InstanceNotFoundError:
                self._note_orphan(instance_id)
                return
            state = self._state(instance_id)
            state.next_run_at = self.clock() + delay
            await asyncio.sleep(delay)
            if not self._running:
                return
            self._decay(instance_id)
            try:
                cfg = self.config_store.get(instance_id)
            except InstanceNotFoundError:
                self._note_orphan(instance_id)
                return
            if not cfg.enabled:
                # Disabled instances are re-checked every interval without writing a log
                state.last_run_at = self.clock()
                if self.debug_logging:
                    logging.info(f'Instance {instance_id}: queue cleaner disabled; scheduled run not started')
                continue
            if not self._begin(state):
                logging.info(f'Instance {instance_id}: scheduled run skipped; a run is already in progress')
                state.last_run_at = self.clock()
                continue
            # Shielded so stop() can cancel the timer while the run gets its grace period
            await asyncio.shield(self._spawn_run(state, TRIGGER_SCHEDULED))

    def _decay(self, instance_id: str) -> None:
        if self.strikes is None:
            return
        try:
            cfg = self.config_store.get(instance_id)
            if not cfg.strike_system_enabled:
                return
            expired = self.strikes.decay(instance_id, cfg.strike_decay_hours, self.clock())
            if expired:
                self.strikes.save()
                if self.debug_logging:
                    logging.info(f'Instance {instance_id}: {expired} strike record(s) decayed')
            self._decay_failures = 0
            self._last_decay_error = None
        except (OSError, InstanceNotFoundError) as e:
            self._decay_failures += 1
            self._last_decay_error = str(e)
            logging.error(f'Instance {instance_id}: strike decay failed ({self._decay_failures} consecutive): {e}')

    def _begin(self, state: InstanceState) -> bool:
        if state.running:
            return False
        state.running = True
        return True

    def _spawn_run(self, state: InstanceState, trigger: str) -> asyncio.Task:
        task = asyncio.create_task(self._guarded_run(state, trigger), name=f'queue-cleaner-run:{state.instance_id}')
        state.run_task = task
        return task

    async def _guarded_run(self, state: InstanceState, trigger: str, force_dry_run: bool = False) -> Optional[RunLog]:
        """Run once for an instance whose ``running`` flag is already set, recording health."""
        try:
            log = await self.orchestrator.run(state.instance_id, trigger, force_dry_run=force_dry_run)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logging.error(f'Instance {state.instance_id}: run crashed: {e}')
            self._record_failure(state, str(e) or e.__class__.__name__)
            return None
        finally:
            state.running = False
            state.run_task = None
            state.last_run_at = self.clock()
        state.last_status = log.status
        if log.status == RUN_ERROR:
            self._record_failure(state, log.message)
        elif log.status != RUN_SKIPPED:
            state.consecutive_failures = 0
            state.last_error = None
            state.last_success_at = log.completed_at
        return log

    def _record_failure(self, state: InstanceState, message: str) -> None:
        state.consecutive_failures += 1
        state.last_error = message
        state.last_status = RUN_ERROR
        if state.consecutive_failures >= self.unhealthy_after:
            logging.error(
                f'Instance {state.instance_id}: {state.consecutive_failures} consecutive failed runs; last error: {message}'
            )

    def _note_orphan(self, instance_id: str) -> None:
        logging.error(f'Instance {instance_id}: no queue cleaner config found; clean skipped')
        self._orphans.append((instance_id, self.clock()))

    def _cooldown(self, state: InstanceState) -> Optional[str]:
        if state.last_manual_at is None:
            return None
        mins_since = (self.clock() - state.last_manual_at) / 60.0
        if mins_since < self.manual_cooldown_mins:
            wait = math.ceil(self.manual_cooldown_mins - mins_since)
            return f'Cooldown: wait {wait} minute(s) between cleans'
        return None

    def trigger(self, instance_id: str) -> Tuple[bool, str]:
        """Start a manual run in the background; later triggers are skipped, not queued."""
        if not self.config_store.has(instance_id):
            self._note_orphan(instance_id)
            return False, 'No queue cleaner config found for this instance'
        state = self._state(instance_id)
        if state.running:
            logging.info(f'Instance {instance_id}: manual trigger skipped; a run is already in progress')
            return False, 'Clean already in progress for this instance'
        wait = self._cooldown(state)
        if wait:
            return False, wait
        self._begin(state)
        state.last_manual_at = self.clock()
        self._spawn_run(state, TRIGGER_MANUAL)
        return True, 'Queue clean queued - check the run log for results'

    async def dry_run(self, instance_id: str) -> RunLog:
        """Run synchronously with dry-run forced on and return the resulting log."""
        if not self.config_store.has(instance_id):
            self._note_orphan(instance_id)
            log = RunLog(instance_id=instance_id, trigger=TRIGGER_MANUAL, is_dry_run=True)
            return log.finalize(RUN_SKIPPED, 'No queue cleaner config found for this instance', now=self.clock())
        state = self._state(instance_id)
        if not self._begin(state):
            log = RunLog(instance_id=instance_id, trigger=TRIGGER_MANUAL, is_dry_run=True)
            return log.finalize(RUN_SKIPPED, 'Clean already in progress for this instance', now=self.clock())
        # Own task so stop() cancels the run, never the caller awaiting it
        task = asyncio.create_task(
            self._guarded_run(state, TRIGGER_MANUAL, force_dry_run=True),
            name=f'queue-cleaner-dry-run:{instance_id}',
        )
        state.run_task = task
        try:
            log = await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            log = RunLog(instance_id=instance_id, trigger=TRIGGER_MANUAL, is_dry_run=True)
            return log.finalize(RUN_ERROR, 'Dry run cancelled during shutdown', now=self.clock())
        if log is None:
            log = RunLog(instance_id=instance_id, trigger=TRIGGER_MANUAL, is_dry_run=True)
            log.finalize(RUN_ERROR, state.last_error or 'Dry run failed', now=self.clock())
        return log

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {iid: s.to_dict() for iid, s in self._states.items()}

    def health(self) -> Dict[str, Any]:
        now = self.clock()
        self._orphans = [(iid, ts) for iid, ts in self._orphans if now - ts < ORPHAN_WINDOW_SECONDS]
        warnings = list(self.config_store.warnings)
        if self._decay_failures >= self.unhealthy_after:
            warnings.append(
                f'Strike decay failing ({self._decay_failures} consecutive failures): '
                f'{self._last_decay_error or "unknown error"}. Strikes may not decay properly.'
            )
        if self._orphans:
            ids = ', '.join(sorted({iid for iid, _ in self._orphans}))
            warnings.append(f'{len(self._orphans)} clean(s) skipped - config not found for instance(s): {ids}')
        failing = [s for s in self._states.values() if s.consecutive_failures >= self.unhealthy_after]
        worst = max((s.consecutive_failures for s in self._states.values()), default=0)
        errors = [s for s in self._states.values() if s.last_error]
        successes = [s.last_success_at for s in self._states.values() if s.last_success_at is not None]
        return {
            'running': self._running,
            'healthy': not failing and self._decay_failures < self.unhealthy_after,
            'consecutive_failures': worst,
            'last_error': max(errors, key=lambda s: s.last_run_at or 0.0).last_error if errors else None,
            'last_successful_run': max(successes) if successes else None,
            'warnings': warnings,
            'instances': self.status(),
        }

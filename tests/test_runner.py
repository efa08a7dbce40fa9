import asyncio
import importlib

import pytest


pytestmark = pytest.mark.asyncio

NOW = 1_700_000_000.0


class FakeProvider:
    def __init__(self, records=None, list_error=None):
        self.records = records or []
        self.list_error = list_error
        self.calls = []

    async def list_queue(self, instance_id):
        models = importlib.import_module('core.models')
        self.calls.append(('list', instance_id))
        if self.list_error:
            raise self.list_error
        return [models.QueueItem.from_record(r, instance_id) for r in self.records]

    async def remove_item(self, instance_id, item, remove_from_client, blocklist):
        self.calls.append(('remove', item.id))

    async def change_category(self, instance_id, item, category, blocklist):
        self.calls.append(('change_category', item.id))

    async def trigger_search(self, instance_id, item):
        self.calls.append(('search', item.id))
        return True

    async def manual_import(self, instance_id, item):
        self.calls.append(('import', item.id))
        return 1

    def mutating_calls(self):
        return [c for c in self.calls if c[0] != 'list']


class DummyBus:
    def __init__(self):
        self.events = []

    def emit(self, event, *, instance_id=None, item=None, reason=None, **fields):
        self.events.append({'event': event, 'id': getattr(item, 'id', None), 'reason': reason, **fields})

    def log(self, event, **fields):
        self.events.append({'event': event, **fields})


def _record(qid, minutes_ago=90, **overrides):
    rec = {
        'id': qid,
        'downloadId': f'DL{qid}',
        'title': f'Show.S01E0{qid}',
        'protocol': 'torrent',
        'size': 1000,
        'sizeleft': 1000,
        'status': 'downloading',
        'trackedDownloadState': 'downloading',
        'added': NOW - minutes_ago * 60,
    }
    rec.update(overrides)
    return rec


def _orchestrator(records=None, provider=None, **cleaner):
    config = importlib.import_module('core.config')
    runner = importlib.import_module('core.runner')
    runlogs = importlib.import_module('storage.runlogs')
    strikes = importlib.import_module('storage.strikes')
    settings = {'enabled': True, 'dry_run_mode': False, 'stalled_threshold_mins': 60}
    settings.update(cleaner)
    store = config.ConfigStore.from_dict({
        'instances': {
            'sonarr': {'service': 'sonarr', 'api_url': 'http://sonarr:8989/api/v3', 'api_key': 'k', 'cleaner': settings}
        }
    })
    provider = provider or FakeProvider(records)
    deps = runner.RunnerDeps(
        config_store=store,
        provider=provider,
        strikes=strikes.StrikeStore(),
        run_logs=runlogs.RunLogStore(),
        event_bus=DummyBus(),
        auto_import_delay=0,
        clock=lambda: NOW,
    )
    return runner.Orchestrator(deps), provider


async def test_stalled_item_removed_on_first_run():
    orch, provider = _orchestrator([_record(1, minutes_ago=90)])
    log = await orch.run('sonarr')
    assert log.status == 'completed'
    assert provider.mutating_calls() == [('remove', 1)]
    assert [(o.rule, o.action) for o in log.cleaned_items] == [('stalled', 'removed')]
    assert log.items_cleaned == 1
    assert orch.deps.config_store.get('sonarr').total_items_cleaned == 1


async def test_strikes_warn_twice_then_remove_on_third_run():
    orch, provider = _orchestrator(
        [_record(1, minutes_ago=90)], strike_system_enabled=True, max_strikes=3
    )
    first = await orch.run('sonarr')
    second = await orch.run('sonarr')
    assert [o.strike_count for o in first.warned_items] == [1]
    assert [o.strike_count for o in second.warned_items] == [2]
    assert second.warned_items[0].reason.endswith('(strike 2/3)')
    assert provider.mutating_calls() == []

    third = await orch.run('sonarr')
    assert third.warned_items == []
    assert [o.strike_count for o in third.cleaned_items] == [3]
    assert provider.mutating_calls() == [('remove', 1)]
    assert orch.deps.strikes.get('sonarr', 'DL1') is None


async def test_whitelist_beats_slow_rule():
    orch, provider = _orchestrator(
        [_record(1, minutes_ago=45, sizeleft=900, speed=100, title='Keep.Me.S01E01')],
        slow_enabled=True,
        slow_speed_threshold=100,
        slow_grace_period_mins=30,
        strike_system_enabled=True,
        whitelist_enabled=True,
        whitelist_patterns=[{'type': 'title', 'pattern': 'keep.me'}],
    )
    log = await orch.run('sonarr')
    assert [(o.rule, o.reason) for o in log.skipped_items] == [('whitelisted', 'whitelisted')]
    assert log.warned_items == [] and log.cleaned_items == []
    assert orch.deps.strikes.get('sonarr', 'DL1') is None
    assert provider.mutating_calls() == []


async def test_removal_cap_holds_back_newest_candidates():
    records = [_record(1, minutes_ago=300), _record(2, minutes_ago=200), _record(3, minutes_ago=100)]
    orch, provider = _orchestrator(records, max_removals_per_run=2)
    log = await orch.run('sonarr')
    assert sorted(c[1] for c in provider.mutating_calls()) == [1, 2]
    assert [(o.id, o.reason) for o in log.skipped_items] == [(3, 'removal cap reached')]
    assert log.status == 'completed'


async def test_dry_run_never_mutates():
    records = [_record(1), _record(2, status='failed'), _record(3, minutes_ago=500, sizeleft=0, trackedDownloadState='importPending')]
    orch, provider = _orchestrator(records, dry_run_mode=True, search_after_removal=True, add_to_blocklist=True)
    log = await orch.run('sonarr')
    assert provider.mutating_calls() == []
    assert log.is_dry_run
    assert {o.action for o in log.skipped_items} == {'would_remove'}
    assert len(log.skipped_items) == 3


async def test_forced_dry_run_with_strikes_does_not_touch_store():
    orch, provider = _orchestrator([_record(1)], strike_system_enabled=True, max_strikes=3)
    log = await orch.run('sonarr', 'manual', force_dry_run=True)
    assert log.trigger == 'dry_run'
    assert [o.strike_count for o in log.warned_items] == [1]
    assert orch.deps.strikes.get('sonarr', 'DL1') is None


async def test_unreachable_instance_marks_run_error():
    models = importlib.import_module('core.models')
    provider = FakeProvider(list_error=models.QueueProviderError('Instance sonarr: queue request failed'))
    orch, _ = _orchestrator(provider=provider)
    log = await orch.run('sonarr')
    assert log.status == 'error'
    assert 'Failed to fetch queue' in log.message
    stored, total, _ = orch.deps.run_logs.query('sonarr')
    assert total == 1 and stored[0].status == 'error'


async def test_disabled_instance_is_skipped():
    orch, provider = _orchestrator([_record(1)], enabled=False)
    log = await orch.run('sonarr')
    assert log.status == 'skipped'
    assert provider.calls == []


async def test_items_leaving_queue_drop_their_strikes():
    orch, provider = _orchestrator([], strike_system_enabled=True)
    rec = orch.deps.strikes.get_or_create('sonarr', 'GONE', 24, NOW)
    orch.deps.strikes.record_strike(rec, 'stalled', 'x', NOW)
    log = await orch.run('sonarr')
    assert log.status == 'completed'
    assert orch.deps.strikes.get('sonarr', 'GONE') is None


async def test_run_log_round_trips_into_statistics():
    stats = importlib.import_module('core.statistics')
    records = [_record(1), _record(2, minutes_ago=1, status='failed'), _record(3, title='Keep.This')]
    orch, _ = _orchestrator(
        records, whitelist_enabled=True, whitelist_patterns=[{'type': 'title', 'pattern': 'keep'}], min_queue_age_mins=5
    )
    log = await orch.run('sonarr')
    stored = orch.deps.run_logs.all()
    result = stats.compute_statistics(stored, now=NOW)
    assert (result['totals']['items_cleaned'], result['totals']['items_skipped'], result['totals']['items_warned']) == (
        log.items_cleaned, log.items_skipped, log.items_warned,
    )
    assert result['rule_breakdown'] == {'stalled': 1}
    assert result['data_quality'] is None


async def test_timeout_finalizes_run():
    class SlowProvider(FakeProvider):
        async def list_queue(self, instance_id):
            await asyncio.sleep(5)
            return []

    orch, _ = _orchestrator(provider=SlowProvider())
    orch.deps.max_run_seconds = 0.01
    log = await orch.run('sonarr')
    assert log.status == 'error'
    assert 'aborted' in log.message
    assert orch.deps.run_logs.all()[0].id == log.id


async def test_cancelled_run_is_logged_before_cancellation_propagates():
    started = asyncio.Event()

    class HangingProvider(FakeProvider):
        async def list_queue(self, instance_id):
            started.set()
            await asyncio.Event().wait()

    orch, _ = _orchestrator(provider=HangingProvider())
    task = asyncio.create_task(orch.run('sonarr'))
    await asyncio.wait_for(started.wait(), timeout=1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    stored = orch.deps.run_logs.all()
    assert len(stored) == 1
    assert stored[0].status == 'error'
    assert 'cancelled' in stored[0].message

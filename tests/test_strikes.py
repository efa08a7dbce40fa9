import asyncio
import importlib
import json

import pytest

NOW = 1_700_000_000.0
HOUR = 3600.0


def _store(path=None):
    strikes = importlib.import_module('storage.strikes')
    return strikes.StrikeStore(str(path) if path else None)


def test_get_or_create_and_record_strike_sets_timestamps():
    store = _store()
    rec = store.get_or_create('sonarr', 'DL1', 24, NOW)
    assert rec.strike_count == 0
    store.record_strike(rec, 'stalled', 'no progress', NOW, max_strikes=3, title='T')
    store.record_strike(rec, 'slow', 'too slow', NOW + 60, max_strikes=3)
    got = store.get('sonarr', 'DL1')
    assert got.strike_count == 2
    assert got.first_strike_at == NOW
    assert got.last_strike_at == NOW + 60
    assert got.last_rule == 'slow'
    assert got.last_reason == 'too slow'
    assert got.title == 'T'


def test_strike_count_is_clamped_to_max():
    store = _store()
    rec = store.get_or_create('sonarr', 'DL1', 24, NOW)
    for i in range(5):
        store.record_strike(rec, 'stalled', 'x', NOW + i, max_strikes=3)
    assert store.get('sonarr', 'DL1').strike_count == 3


def test_decay_resets_count_before_returning():
    store = _store()
    rec = store.get_or_create('sonarr', 'DL1', 24, NOW)
    store.record_strike(rec, 'stalled', 'x', NOW)
    store.record_strike(rec, 'stalled', 'x', NOW)
    again = store.get_or_create('sonarr', 'DL1', 24, NOW + 25 * HOUR)
    assert again.strike_count == 0
    assert again.last_rule is None
    assert again.last_reason is None
    store.record_strike(again, 'stalled', 'x', NOW + 25 * HOUR)
    assert store.get('sonarr', 'DL1').strike_count == 1


def test_peek_does_not_mutate():
    store = _store()
    rec = store.get_or_create('sonarr', 'DL1', 24, NOW)
    store.record_strike(rec, 'stalled', 'x', NOW)
    view = store.peek('sonarr', 'DL1', 24, NOW + 48 * HOUR)
    assert view.strike_count == 0
    assert store.get('sonarr', 'DL1').strike_count == 1
    assert store.peek('sonarr', 'missing', 24, NOW).strike_count == 0
    assert store.get('sonarr', 'missing') is None


def test_prune_and_decay_sweep():
    store = _store()
    for dl in ('A', 'B', 'C'):
        store.record_strike(store.get_or_create('sonarr', dl, 24, NOW), 'stalled', 'x', NOW)
    store.record_strike(store.get_or_create('radarr', 'A', 24, NOW), 'stalled', 'x', NOW)
    assert store.prune('sonarr', ['A']) == 2
    assert [r.key for r in store.list('sonarr')] == ['sonarr:A']
    assert store.decay('radarr', 1, NOW + 2 * HOUR) == 1
    assert store.list('radarr') == []


def test_persistence_round_trip_and_legacy_entries(tmp_path):
    path = tmp_path / 'data' / 'strikes.json'
    store = _store(path)
    rec = store.get_or_create('sonarr', 'DL1', 24, NOW)
    store.record_strike(rec, 'failed', 'boom', NOW, title='X')
    store.record_import_attempt('sonarr', 'DL1', NOW, error='no files')
    store.save()
    raw = json.loads(path.read_text())
    assert raw['sonarr:DL1']['strike_count'] == 1
    assert raw['sonarr:DL1']['import_attempts'] == 1

    raw['radarr:OLD'] = 2
    path.write_text(json.dumps(raw))
    reloaded = _store(path)
    assert reloaded.get('sonarr', 'DL1').last_import_error == 'no files'
    assert reloaded.get('radarr', 'OLD').strike_count == 2


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / 'strikes.json'
    path.write_text('{not json')
    assert _store(path).list() == []


@pytest.mark.asyncio
async def test_per_key_lock_serializes_updates():
    store = _store()

    async def bump():
        async with store.lock_for('sonarr', 'DL1'):
            rec = store.get_or_create('sonarr', 'DL1', 24, NOW)
            count = rec.strike_count
            await asyncio.sleep(0)
            rec.strike_count = count
            store.record_strike(rec, 'stalled', 'x', NOW)

    await asyncio.gather(*(bump() for _ in range(5)))
    assert store.get('sonarr', 'DL1').strike_count == 5

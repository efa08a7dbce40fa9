import importlib

NOW = 1_700_000_000.0


def _outcome(qid, strikes=None, added_mins_ago=120, first_strike_at=None):
    models = importlib.import_module('core.models')
    return models.ItemOutcome(
        id=qid,
        download_id=f'DL{qid}',
        title=f'Item {qid}',
        rule='stalled',
        reason='stalled',
        strike_count=strikes,
        added=NOW - added_mins_ago * 60,
        first_strike_at=first_strike_at,
    )


def _cfg(**kw):
    config = importlib.import_module('core.config')
    return config.CleanerConfig(**kw)


def test_cap_keeps_highest_strike_counts():
    gov = importlib.import_module('core.governor')
    cands = [_outcome(1, strikes=1), _outcome(2, strikes=5), _outcome(3, strikes=3)]
    approved, skipped = gov.apply_safety_limits(cands, _cfg(max_removals_per_run=2), NOW)
    assert [c.strike_count for c in approved] == [5, 3]
    assert len(skipped) == 1
    assert skipped[0].strike_count == 1
    assert skipped[0].reason == 'removal cap reached'


def test_tie_break_by_first_strike_then_age_then_id():
    gov = importlib.import_module('core.governor')
    a = _outcome(10, strikes=2, first_strike_at=NOW - 50)
    b = _outcome(11, strikes=2, first_strike_at=NOW - 100)
    c = _outcome(12, strikes=None, added_mins_ago=300)
    d = _outcome(13, strikes=None, added_mins_ago=300)
    approved, skipped = gov.apply_safety_limits([a, b, c, d], _cfg(max_removals_per_run=3), NOW)
    assert [x.id for x in approved] == [11, 10, 12]
    assert [x.id for x in skipped] == [13]


def test_too_young_items_are_skipped_before_cap():
    gov = importlib.import_module('core.governor')
    young = _outcome(1, added_mins_ago=2)
    old = _outcome(2, added_mins_ago=60)
    approved, skipped = gov.apply_safety_limits([young, old], _cfg(min_queue_age_mins=5, max_removals_per_run=1), NOW)
    assert [x.id for x in approved] == [2]
    assert skipped[0].id == 1
    assert skipped[0].reason.startswith('too young')


def test_under_cap_everything_is_approved():
    gov = importlib.import_module('core.governor')
    cands = [_outcome(i) for i in range(3)]
    approved, skipped = gov.apply_safety_limits(cands, _cfg(max_removals_per_run=10), NOW)
    assert len(approved) == 3 and skipped == []

import importlib


def _item(**overrides):
    models = importlib.import_module('core.models')
    rec = {
        'id': 7,
        'downloadId': 'ABC',
        'title': 'Linux.ISO.Collection.2024',
        'indexer': 'PrivateHD',
        'downloadClient': 'qBittorrent',
        'category': 'tv-sonarr',
        'tags': ['keep', 'anime'],
    }
    rec.update(overrides)
    return models.QueueItem.from_record(rec, 'sonarr')


def _cfg(patterns, enabled=True):
    config = importlib.import_module('core.config')
    return config.CleanerConfig.from_dict({'whitelist_enabled': enabled, 'whitelist_patterns': patterns})


def test_disabled_whitelist_never_exempts():
    wl = importlib.import_module('core.whitelist')
    cfg = _cfg([{'type': 'title', 'pattern': 'linux'}], enabled=False)
    assert wl.is_whitelisted(_item(), cfg) == (False, '')


def test_substring_match_is_case_insensitive():
    wl = importlib.import_module('core.whitelist')
    exempt, reason = wl.is_whitelisted(_item(), _cfg([{'type': 'title', 'pattern': 'iso.COLLECTION'}]))
    assert exempt
    assert "title matches 'iso.COLLECTION'" == reason


def test_exact_and_regex_matches():
    wl = importlib.import_module('core.whitelist')
    assert wl.is_whitelisted(_item(), _cfg([{'type': 'indexer', 'pattern': 'privatehd', 'match': 'exact'}]))[0]
    assert not wl.is_whitelisted(_item(), _cfg([{'type': 'indexer', 'pattern': 'private', 'match': 'exact'}]))[0]
    assert wl.is_whitelisted(_item(), _cfg([{'type': 'title', 'pattern': r'\.20\d\d$', 'match': 'regex'}]))[0]


def test_client_category_and_tag_fields():
    wl = importlib.import_module('core.whitelist')
    assert wl.is_whitelisted(_item(), _cfg([{'type': 'client', 'pattern': 'qbit'}]))[0]
    assert wl.is_whitelisted(_item(), _cfg([{'type': 'category', 'pattern': 'tv-sonarr', 'match': 'exact'}]))[0]
    assert wl.is_whitelisted(_item(), _cfg([{'type': 'tag', 'pattern': 'KEEP', 'match': 'exact'}]))[0]
    assert not wl.is_whitelisted(_item(tags=[]), _cfg([{'type': 'tag', 'pattern': 'keep'}]))[0]


def test_invalid_regex_never_matches():
    wl = importlib.import_module('core.whitelist')
    assert wl.matches_pattern('anything', '([unclosed', 'regex') is False


def test_invalid_patterns_are_dropped_on_load():
    cfg = _cfg([{'type': 'nope', 'pattern': 'x'}, {'type': 'title'}, {'field': 'title', 'pattern': 'ok'}])
    assert cfg.whitelist_patterns == [{'type': 'title', 'pattern': 'ok', 'match': 'substring'}]

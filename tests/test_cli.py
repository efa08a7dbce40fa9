import importlib
import json

import yaml

NOW = 1_700_000_000.0


def _write(path, data):
    with open(path, 'w') as f:
        f.write(data)


def _setup(monkeypatch, tmp_path, cleaner=None):
    strikes_path = tmp_path / 'strikes.json'
    runlog_path = tmp_path / 'runlogs.jsonl'
    cfg_path = tmp_path / 'config.yaml'
    _write(cfg_path, yaml.safe_dump({
        'general': {'strike_file_path': str(strikes_path), 'run_log_path': str(runlog_path)},
        'defaults': {'stalled_threshold_mins': 30},
        'instances': {
            'sonarr': {'api_url': 'http://sonarr:8989/api/v3', 'api_key': 'k', 'cleaner': cleaner or {'enabled': True}},
        },
    }))
    monkeypatch.setenv('CONFIG_PATH', str(cfg_path))
    _write(strikes_path, json.dumps({
        'sonarr:DL1': {'strike_count': 2, 'last_strike_at': NOW, 'first_strike_at': NOW - 60},
        'sonarr:DL2': {'strike_count': 0},
        'radarr:DL9': {'strike_count': 1, 'last_strike_at': NOW},
    }))
    return strikes_path, runlog_path


def test_cli_list_and_clear(monkeypatch, capsys, tmp_path):
    cli = importlib.import_module('cli')
    strikes_path, _ = _setup(monkeypatch, tmp_path)

    cli.cmd_list(type('N', (), {'instance': 'sonarr'})())
    out = json.loads(capsys.readouterr().out)
    assert sorted(out) == ['sonarr:DL1', 'sonarr:DL2']

    cli.cmd_clear(type('N', (), {'instance': 'sonarr', 'download': 'DL1'})())
    assert capsys.readouterr().out.strip() == 'Cleared sonarr:DL1'
    assert 'sonarr:DL1' not in json.loads(strikes_path.read_text())

    cli.cmd_clear(type('N', (), {'instance': 'sonarr', 'download': 'nope'})())
    assert capsys.readouterr().out.strip() == 'Key not found'

    cli.cmd_clear(type('N', (), {'instance': 'radarr', 'download': None})())
    assert capsys.readouterr().out.strip() == 'Cleared 1 strike(s) for radarr'

    cli.cmd_clear(type('N', (), {'instance': None, 'download': None})())
    assert json.loads(strikes_path.read_text()) == {}


def test_cli_status(monkeypatch, capsys, tmp_path):
    cli = importlib.import_module('cli')
    _setup(monkeypatch, tmp_path)
    cli.cmd_status(type('N', (), {})())
    out = json.loads(capsys.readouterr().out)
    assert out['entries'] == 3
    assert out['active_strikes'] == 2
    assert out['instances']['sonarr']['enabled'] is True
    assert out['instances']['sonarr']['strikes'] == 2
    assert out['instances']['sonarr']['last_run_status'] is None


def test_cli_simulate_uses_instance_config(monkeypatch, capsys, tmp_path):
    cli = importlib.import_module('cli')
    _setup(monkeypatch, tmp_path, cleaner={'enabled': True, 'strike_system_enabled': True})
    item_path = tmp_path / 'item.json'
    item = {
        'id': 10,
        'downloadId': 'DL10',
        'title': 'Old',
        'protocol': 'torrent',
        'size': 1000,
        'sizeleft': 1000,
        'added': '2000-01-01T00:00:00Z',
    }
    _write(item_path, json.dumps(item))

    cli.cmd_simulate(type('N', (), {'item_json': str(item_path), 'instance': 'sonarr'})())
    out = json.loads(capsys.readouterr().out)
    assert out['whitelisted'] is False
    assert out['rule'] == 'stalled'
    assert out['disposition'] == 'strike'
    assert [m['rule'] for m in out['matches']] == ['stalled']


def test_cli_logs_and_stats(monkeypatch, capsys, tmp_path):
    cli = importlib.import_module('cli')
    models = importlib.import_module('core.models')
    runlogs = importlib.import_module('storage.runlogs')
    _, runlog_path = _setup(monkeypatch, tmp_path)
    store = runlogs.RunLogStore(str(runlog_path))
    for i, status in enumerate(['completed', 'error', 'completed']):
        store.append(models.RunLog(instance_id='sonarr', started_at=NOW + i).finalize(status, now=NOW + i))

    cli.cmd_logs(type('N', (), {'instance': 'sonarr', 'status': 'completed', 'page': 1, 'page_size': 1})())
    out = json.loads(capsys.readouterr().out)
    assert out['total'] == 2
    assert len(out['logs']) == 1
    assert out['logs'][0]['started_at'] == NOW + 2

    cli.cmd_stats(type('N', (), {})())
    out = json.loads(capsys.readouterr().out)
    assert out['totals']['total_runs'] == 3
    assert out['totals']['error_runs'] == 1
    assert out['instance_breakdown'][0]['instance_id'] == 'sonarr'

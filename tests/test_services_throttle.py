import importlib
import asyncio
import pytest


pytestmark = pytest.mark.asyncio


async def test_request_manager_caps_concurrency_per_instance(monkeypatch):
    svc = importlib.import_module('integrations.services')
    mgr = svc.RequestManager(max_concurrent=1)

    inflight = {}
    peak = {}

    async def fake_make(session, url, api_key, **kw):
        inflight[api_key] = inflight.get(api_key, 0) + 1
        peak[api_key] = max(peak.get(api_key, 0), inflight[api_key])
        await asyncio.sleep(0)
        inflight[api_key] -= 1
        return {'status': 200}

    monkeypatch.setattr(svc, 'make_api_request', fake_make)

    async def call(instance_id):
        await mgr.throttled_request(object(), instance_id, 'http://x/api/v3/queue', instance_id)

    await asyncio.gather(call('sonarr'), call('sonarr'), call('radarr'), call('radarr'))
    assert peak == {'sonarr': 1, 'radarr': 1}


async def test_request_manager_spaces_calls(monkeypatch):
    svc = importlib.import_module('integrations.services')
    mgr = svc.RequestManager(min_interval_ms=20)
    stamps = []

    async def fake_make(session, url, api_key, **kw):
        stamps.append(asyncio.get_running_loop().time())
        return {'status': 200}

    monkeypatch.setattr(svc, 'make_api_request', fake_make)
    for _ in range(3):
        await mgr.throttled_request(object(), 'sonarr', 'http://x', 'k')
    assert stamps[1] - stamps[0] >= 0.015
    assert stamps[2] - stamps[1] >= 0.015


async def test_request_manager_passes_defaults_through(monkeypatch):
    svc = importlib.import_module('integrations.services')
    mgr = svc.RequestManager(request_timeout=7, retry_attempts=4)
    seen = {}

    async def fake_make(session, url, api_key, **kw):
        seen.update(kw)
        return None

    monkeypatch.setattr(svc, 'make_api_request', fake_make)
    await mgr.throttled_request(object(), 'sonarr', 'http://x', 'k', method='delete', return_error_status=True)
    assert seen['request_timeout'] == 7
    assert seen['retry_attempts'] == 4
    assert seen['method'] == 'delete'
    assert seen['return_error_status'] is True

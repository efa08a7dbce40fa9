import asyncio

import pytest
from aioresponses import aioresponses
import aiohttp

from integrations.services import make_api_request


pytestmark = pytest.mark.asyncio

BASE = 'http://sonarr:8989/api/v3'


async def _call(url, method='get', payload=None, **kw):
    async with aiohttp.ClientSession() as session:
        return await make_api_request(
            session,
            url,
            api_key='dummy',
            method=method,
            json_data=payload,
            retry_backoff=0,
            **kw,
        )


async def test_queue_page_json_body():
    url = f'{BASE}/queue'
    with aioresponses() as m:
        m.get(url, payload={'page': 1, 'totalRecords': 0, 'records': []})
        resp = await _call(url)
        assert resp == {'page': 1, 'totalRecords': 0, 'records': []}


async def test_delete_without_body_returns_status():
    url = f'{BASE}/queue/12'
    with aioresponses() as m:
        m.delete(url, status=204)
        resp = await _call(url, method='delete')
        assert resp == {'status': 204}


async def test_server_error_is_retried():
    url = f'{BASE}/queue'
    with aioresponses() as m:
        m.get(url, status=503)
        m.get(url, payload={'records': []})
        resp = await _call(url)
        assert resp == {'records': []}


async def test_rate_limited_until_retries_run_out():
    url = f'{BASE}/queue'
    with aioresponses() as m:
        m.get(url, status=429)
        m.get(url, status=429)
        resp = await _call(url, retry_attempts=1)
        assert resp is None


async def test_not_found_is_not_retried():
    url = f'{BASE}/queue/99'
    with aioresponses() as m:
        m.delete(url, status=404)
        assert await _call(url, method='delete') is None


async def test_error_status_can_be_returned():
    url = f'{BASE}/queue/99'
    with aioresponses() as m:
        m.delete(url, status=404)
        resp = await _call(url, method='delete', return_error_status=True)
        assert resp['status'] == 404
        assert 'error' in resp


async def test_timeout_is_retried():
    url = f'{BASE}/command'
    with aioresponses() as m:
        m.post(url, exception=asyncio.TimeoutError())
        m.post(url, payload={'id': 5, 'name': 'EpisodeSearch'})
        resp = await _call(url, method='post', payload={'name': 'EpisodeSearch', 'episodeIds': [1]})
        assert resp == {'id': 5, 'name': 'EpisodeSearch'}

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Dict, Optional

import aiohttp

RETRIABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
# Cap on a server-supplied Retry-After so one rate limit cannot stall a run
MAX_RETRY_AFTER_SECONDS = 30.0

_NETWORK_ERRORS = (
    aiohttp.ClientConnectorError,
    aiohttp.ClientOSError,
    aiohttp.ServerTimeoutError,
    asyncio.TimeoutError,
)


class RequestManager:
    """Paces calls per instance: a minimum gap between requests and a cap on concurrent ones."""

    def __init__(
        self,
        *,
        min_interval_ms: float = 0.0,
        max_concurrent: int = 0,
        request_timeout: int = 10,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
        debug_logging: bool = False,
    ) -> None:
        self.min_interval_ms = min_interval_ms
        self.max_concurrent = max_concurrent
        self.request_timeout = request_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.debug_logging = debug_logging
        self._last_request_at: Dict[str, float] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._pacing_locks: Dict[str, asyncio.Lock] = {}

    async def _pace(self, instance_id: str, min_interval_ms: float) -> None:
        # Held across the sleep so concurrent callers queue up behind each other
        lock = self._pacing_locks.setdefault(instance_id, asyncio.Lock())
        async with lock:
            loop = asyncio.get_running_loop()
            due = self._last_request_at.get(instance_id, 0.0) + min_interval_ms / 1000.0
            if due > loop.time():
                await asyncio.sleep(due - loop.time())
            self._last_request_at[instance_id] = loop.time()

    def _semaphore(self, instance_id: str, limit: int) -> asyncio.Semaphore:
        sem = self._semaphores.get(instance_id)
        if sem is None:
            sem = asyncio.Semaphore(limit)
            self._semaphores[instance_id] = sem
        return sem

    async def throttled_request(
        self,
        session: aiohttp.ClientSession,
        instance_id: str,
        url: str,
        api_key: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Any = None,
        method: str = 'get',
        min_interval_ms: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        request_timeout: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        debug_logging: Optional[bool] = None,
        return_error_status: bool = False,
    ):
        min_interval_ms = self.min_interval_ms if min_interval_ms is None else min_interval_ms
        max_concurrent = self.max_concurrent if max_concurrent is None else max_concurrent
        options = {
            'params': params,
            'json_data': json_data,
            'method': method,
            'request_timeout': self.request_timeout if request_timeout is None else request_timeout,
            'retry_attempts': self.retry_attempts if retry_attempts is None else retry_attempts,
            'retry_backoff': self.retry_backoff if retry_backoff is None else retry_backoff,
            'debug_logging': self.debug_logging if debug_logging is None else debug_logging,
            'return_error_status': return_error_status,
        }
        if min_interval_ms and min_interval_ms > 0:
            await self._pace(instance_id, min_interval_ms)
        if not max_concurrent or max_concurrent <= 0:
            return await make_api_request(session, url, api_key, **options)
        async with self._semaphore(instance_id, max_concurrent):
            return await make_api_request(session, url, api_key, **options)


def _backoff(retry_backoff: float, attempt: int, retry_after: Optional[str] = None) -> float:
    if retry_after:
        try:
            return min(MAX_RETRY_AFTER_SECONDS, max(0.0, float(retry_after)))
        except ValueError:
            # HTTP-date form; fall through to exponential backoff
            pass
    return retry_backoff * (2 ** (attempt - 1)) * (1 + random.uniform(0, 0.25))


async def _decode(response: aiohttp.ClientResponse):
    # Deletes and commands often answer with an empty body; report the status instead
    if response.status != 204 and 'application/json' in response.headers.get('Content-Type', ''):
        try:
            body = await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            body = None
        if body is not None:
            return body
    return {'status': response.status}


async def make_api_request(
    session: aiohttp.ClientSession,
    url: str,
    api_key: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    json_data: Any = None,
    method: str = 'get',
    request_timeout: int = 10,
    retry_attempts: int = 2,
    retry_backoff: float = 1.0,
    debug_logging: bool = False,
    return_error_status: bool = False,
):
    """Call an *arr API endpoint, retrying 429/5xx answers and network errors.

    Returns the decoded JSON body, ``{'status': code}`` for bodiless
    successes, and None on failure. With ``return_error_status`` a
    non-retriable HTTP error yields ``{'status': code, 'error': message}``
    instead of None so callers can tell a 404 from an outage.
    """
    verb = method.upper()
    timeout = aiohttp.ClientTimeout(total=request_timeout)
    attempt = 0
    while True:
        retry_after = None
        try:
            async with session.request(
                method, url, headers={'X-Api-Key': api_key}, params=params, json=json_data, timeout=timeout
            ) as response:
                if response.status < 400:
                    return await _decode(response)
                reason = response.reason or ''
                if response.status not in RETRIABLE_STATUSES or attempt >= retry_attempts:
                    if debug_logging:
                        logging.error(f'HTTP {verb} {url} failed with {response.status} {reason}')
                    if return_error_status:
                        return {'status': response.status, 'error': reason}
                    return None
                retry_after = response.headers.get('Retry-After')
                problem = f'{response.status} {reason}'.strip()
        except _NETWORK_ERRORS as e:
            if attempt >= retry_attempts:
                if debug_logging:
                    logging.error(f'HTTP {verb} {url} network/timeout after {attempt} retries: {e}')
                return None
            problem = f'network/timeout ({e.__class__.__name__})'
        except aiohttp.ClientError as e:
            if debug_logging:
                logging.error(f'HTTP {verb} {url} unexpected client error: {e}')
            return None

        attempt += 1
        delay = _backoff(retry_backoff, attempt, retry_after)
        if debug_logging:
            logging.warning(f'HTTP {verb} {url} {problem}; retrying in {delay:.2f}s (attempt {attempt}/{retry_attempts})')
        await asyncio.sleep(delay)

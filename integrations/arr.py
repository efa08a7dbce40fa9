from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from core.config import ConfigStore
from core.models import QueueItem, QueueProviderError
from integrations.services import RequestManager


def build_search_command(service: str, media_ref: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    service = (service or '').lower()
    if service == 'sonarr':
        if 'episodeId' in media_ref:
            return {"name": "EpisodeSearch", "episodeIds": [media_ref['episodeId']]}
        if isinstance(media_ref.get('episodeIds'), list):
            return {"name": "EpisodeSearch", "episodeIds": media_ref['episodeIds']}
        if 'seriesId' in media_ref:
            return {"name": "SeriesSearch", "seriesId": media_ref['seriesId']}
        return None
    if service == 'radarr':
        if 'movieId' in media_ref:
            return {"name": "MoviesSearch", "movieIds": [media_ref['movieId']]}
        return None
    if service == 'lidarr':
        if 'albumId' in media_ref:
            return {"name": "AlbumSearch", "albumIds": [media_ref['albumId']]}
        if 'artistId' in media_ref:
            return {"name": "ArtistSearch", "artistId": media_ref['artistId']}
        return None
    if service == 'readarr':
        if 'bookId' in media_ref:
            return {"name": "BookSearch", "bookIds": [media_ref['bookId']]}
        if 'authorId' in media_ref:
            return {"name": "AuthorSearch", "authorId": media_ref['authorId']}
        return None
    return None


def _rejection_summary(candidate: Dict[str, Any]) -> Optional[str]:
    rejections = candidate.get('rejections')
    if not isinstance(rejections, list) or not rejections:
        return None
    reasons = [r.get('reason') for r in rejections if isinstance(r, dict) and r.get('reason')]
    return '; '.join(reasons) if reasons else 'rejected'


def _ids(values: Any) -> List[int]:
    if not isinstance(values, list):
        return []
    return [v['id'] for v in values if isinstance(v, dict) and isinstance(v.get('id'), int)]


def build_manual_import_files(service: str, candidates: List[Dict[str, Any]], download_id: str) -> List[Dict[str, Any]]:
    """Map /manualimport candidates to ManualImport command files, skipping rejected ones."""
    files: List[Dict[str, Any]] = []
    for cand in candidates:
        if not isinstance(cand, dict) or _rejection_summary(cand):
            continue
        base = {
            'path': cand.get('path'),
            'folderName': cand.get('folderName') or '',
            'quality': cand.get('quality'),
            'languages': cand.get('languages') or [],
            'releaseGroup': cand.get('releaseGroup'),
            'indexerFlags': cand.get('indexerFlags') if isinstance(cand.get('indexerFlags'), int) else 0,
            'downloadId': cand.get('downloadId') or download_id,
        }
        if not base['path']:
            continue
        if service == 'sonarr':
            series_id = (cand.get('series') or {}).get('id')
            episode_ids = _ids(cand.get('episodes'))
            if not isinstance(series_id, int) or not episode_ids:
                continue
            base.update({'seriesId': series_id, 'episodeIds': episode_ids, 'releaseType': cand.get('releaseType')})
        elif service == 'radarr':
            movie_id = (cand.get('movie') or {}).get('id')
            if not isinstance(movie_id, int):
                continue
            base['movieId'] = movie_id
        elif service == 'lidarr':
            artist_id = (cand.get('artist') or {}).get('id')
            album_id = (cand.get('album') or {}).get('id')
            if not isinstance(artist_id, int) or not isinstance(album_id, int):
                continue
            base.update({
                'artistId': artist_id,
                'albumId': album_id,
                'albumReleaseId': cand.get('albumReleaseId'),
                'trackIds': _ids(cand.get('tracks')),
            })
        elif service == 'readarr':
            author_id = (cand.get('author') or {}).get('id')
            book_id = (cand.get('book') or {}).get('id')
            if not isinstance(author_id, int) or not isinstance(book_id, int):
                continue
            base.update({'authorId': author_id, 'bookId': book_id})
        else:
            continue
        files.append(base)
    return files


class ArrQueueProvider:
    """Queue access for Sonarr/Radarr/Lidarr/Readarr over their HTTP APIs.

    ``api_url`` is the versioned API base, e.g. ``http://sonarr:8989/api/v3``.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config_store: ConfigStore,
        request_manager: RequestManager,
        *,
        page_size: int = 100,
        debug_logging: bool = False,
    ) -> None:
        self.session = session
        self.config_store = config_store
        self.requests = request_manager
        self.page_size = max(1, page_size)
        self.debug_logging = debug_logging

    async def _request(self, instance_id: str, path: str, **kwargs):
        inst = self.config_store.instance(instance_id)
        url = f'{inst.api_url}{path}'
        return await self.requests.throttled_request(self.session, instance_id, url, inst.api_key, **kwargs)

    async def list_queue(self, instance_id: str) -> List[QueueItem]:
        items: List[QueueItem] = []
        seen = set()
        page = 1
        while True:
            data = await self._request(instance_id, '/queue', params={'page': page, 'pageSize': self.page_size})
            if data is None:
                raise QueueProviderError(f'Instance {instance_id}: queue request failed')
            if not isinstance(data, dict) or not isinstance(data.get('records'), list):
                raise QueueProviderError(f'Instance {instance_id}: queue response missing records')
            records = data['records']
            for record in records:
                if not isinstance(record, dict) or record.get('id') is None:
                    continue
                # Skip duplicate queue records for the same item id within this fetch
                if record['id'] in seen:
                    continue
                seen.add(record['id'])
                items.append(QueueItem.from_record(record, instance_id))
            try:
                total = int(data.get('totalRecords') or 0)
            except (TypeError, ValueError):
                total = 0
            if not records or page * self.page_size >= total:
                break
            page += 1
        if self.debug_logging:
            logging.info(f'Instance {instance_id}: fetched {len(items)} queue item(s)')
        return items

    async def _delete_queue_item(self, instance_id: str, item: QueueItem, params: Dict[str, str]) -> None:
        resp = await self._request(
            instance_id, f'/queue/{item.id}', params=params, method='delete', return_error_status=True
        )
        if resp is None:
            raise QueueProviderError(f'Instance {instance_id}: delete of queue item {item.id} failed')
        status = resp.get('status') if isinstance(resp, dict) else None
        if isinstance(status, int) and status >= 400:
            raise QueueProviderError(
                f'Instance {instance_id}: delete of queue item {item.id} returned {status}: {resp.get("error") or ""}'.strip(),
                status=status,
            )

    async def remove_item(self, instance_id: str, item: QueueItem, remove_from_client: bool, blocklist: bool) -> None:
        # Re-search is issued separately so the service must not redownload on its own
        params = {
            'removeFromClient': 'true' if remove_from_client else 'false',
            'blocklist': 'true' if blocklist else 'false',
            'skipRedownload': 'true',
        }
        await self._delete_queue_item(instance_id, item, params)

    async def change_category(self, instance_id: str, item: QueueItem, category: str, blocklist: bool) -> None:
        # The service moves the download to the post-import category configured on its client
        params = {
            'removeFromClient': 'false',
            'changeCategory': 'true',
            'blocklist': 'true' if blocklist else 'false',
            'skipRedownload': 'true',
        }
        await self._delete_queue_item(instance_id, item, params)

    async def trigger_search(self, instance_id: str, item: QueueItem) -> bool:
        service = self.config_store.instance(instance_id).service
        command = build_search_command(service, item.media_ref)
        if command is None:
            return False
        resp = await self._request(instance_id, '/command', json_data=command, method='post')
        if resp is None:
            raise QueueProviderError(f'Instance {instance_id}: search command {command["name"]} failed')
        return True

    async def manual_import(self, instance_id: str, item: QueueItem) -> int:
        service = self.config_store.instance(instance_id).service
        candidates = await self._request(
            instance_id,
            '/manualimport',
            params={'downloadId': item.download_id, 'filterExistingFiles': 'true'},
        )
        if candidates is None:
            raise QueueProviderError(f'Instance {instance_id}: manual import lookup failed')
        if isinstance(candidates, dict):
            candidates = candidates.get('items') or []
        if not isinstance(candidates, list) or not candidates:
            raise QueueProviderError('No importable files were provided for this download')
        files = build_manual_import_files(service, candidates, item.download_id)
        if not files:
            reasons = [s for s in (_rejection_summary(c) for c in candidates if isinstance(c, dict)) if s]
            detail = '; '.join(reasons[:3]) or 'no file could be mapped'
            raise QueueProviderError(f'No files eligible for import: {detail}')
        resp = await self._request(
            instance_id,
            '/command',
            json_data={'name': 'ManualImport', 'importMode': 'auto', 'files': files},
            method='post',
        )
        if resp is None:
            raise QueueProviderError(f'Instance {instance_id}: manual import command failed')
        return len(files)

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from core.constants import STALL_KEYWORDS
from core.utils import (
    collect_status_texts,
    get_indexer_name,
    get_int,
    get_progress_percent,
    get_str,
    matches_keywords,
    parse_date,
)

RUN_RUNNING = 'running'
RUN_COMPLETED = 'completed'
RUN_PARTIAL = 'partial'
RUN_SKIPPED = 'skipped'
RUN_ERROR = 'error'
RUN_STATUSES = (RUN_RUNNING, RUN_COMPLETED, RUN_PARTIAL, RUN_SKIPPED, RUN_ERROR)

TRIGGER_SCHEDULED = 'scheduled'
TRIGGER_MANUAL = 'manual'
TRIGGER_DRY_RUN = 'dry_run'

DISPOSITION_STRIKE = 'strike'
DISPOSITION_REMOVE = 'remove'

_MEDIA_REF_KEYS = (
    'episodeId', 'episodeIds', 'seriesId', 'movieId',
    'albumId', 'artistId', 'bookId', 'authorId',
)


class QueueProviderError(Exception):
    """A queue collaborator call failed; ``status`` carries the HTTP code when known."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class QueueItem:
    id: int
    download_id: str
    title: str
    instance_id: str = ''
    added: Optional[float] = None
    size: Optional[int] = None
    sizeleft: Optional[int] = None
    protocol: str = ''
    status: str = ''
    tracked_download_status: str = ''
    tracked_download_state: str = ''
    status_messages: List[str] = field(default_factory=list)
    error_message: str = ''
    estimated_completion: Optional[float] = None
    indexer: str = ''
    download_client: str = ''
    category: str = ''
    tags: List[str] = field(default_factory=list)
    speed: Optional[float] = None
    media_ref: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict[str, Any], instance_id: str = '') -> 'QueueItem':
        """Build an item from a raw queue record; unknown or malformed fields fall back to empty."""
        qid = get_int(record, 'id') or 0
        download_id = get_str(record, 'downloadId', 'downloadID') or str(qid)
        tags_raw = record.get('tags')
        tags = [str(t) for t in tags_raw if t is not None] if isinstance(tags_raw, list) else []
        speed = None
        for key in ('speed', 'downloadSpeed', 'clientDlSpeed'):
            val = record.get(key)
            if isinstance(val, (int, float)) and not isinstance(val, bool):
                speed = float(val)
                break
        media_ref = {k: record[k] for k in _MEDIA_REF_KEYS if record.get(k) is not None}
        return cls(
            id=qid,
            download_id=download_id,
            title=get_str(record, 'title') or 'Unknown',
            instance_id=instance_id,
            added=parse_date(record.get('added')),
            size=get_int(record, 'size'),
            sizeleft=get_int(record, 'sizeleft', 'sizeLeft'),
            protocol=get_str(record, 'protocol').lower(),
            status=get_str(record, 'status').lower(),
            tracked_download_status=get_str(record, 'trackedDownloadStatus').lower(),
            tracked_download_state=get_str(record, 'trackedDownloadState').lower(),
            status_messages=collect_status_texts(record),
            error_message=get_str(record, 'errorMessage'),
            estimated_completion=parse_date(record.get('estimatedCompletionTime')),
            indexer=get_indexer_name(record),
            download_client=get_str(record, 'downloadClient', 'downloadClientName'),
            category=get_str(record, 'category', 'downloadClientCategory'),
            tags=tags,
            speed=speed,
            media_ref=media_ref,
        )

    def age_minutes(self, now: float) -> Optional[float]:
        if self.added is None:
            return None
        return (now - self.added) / 60.0

    @property
    def is_torrent(self) -> bool:
        return 'torrent' in self.protocol

    @property
    def progress_percent(self) -> Optional[float]:
        return get_progress_percent(self.size, self.sizeleft)

    @property
    def no_bytes_downloaded(self) -> bool:
        return bool(self.size) and self.size > 0 and self.sizeleft is not None and self.sizeleft >= self.size

    @property
    def stall_signal(self) -> Optional[str]:
        if self.tracked_download_status == 'warning':
            match = matches_keywords(self.status_messages, STALL_KEYWORDS)
            if match:
                return match
        if self.status == 'stalled':
            return 'stalled'
        return None

    @property
    def is_stalled(self) -> bool:
        return self.stall_signal is not None or self.no_bytes_downloaded


@dataclass
class Verdict:
    rule: str
    reason: str
    disposition: str = DISPOSITION_REMOVE


@dataclass
class ItemOutcome:
    id: int
    download_id: str
    title: str
    rule: str
    reason: str
    action: str = ''
    strike_count: Optional[int] = None
    max_strikes: Optional[int] = None
    protocol: str = ''
    added: Optional[float] = None
    first_strike_at: Optional[float] = None

    @classmethod
    def for_item(cls, item: QueueItem, rule: str, reason: str, action: str = '', **extra) -> 'ItemOutcome':
        return cls(
            id=item.id,
            download_id=item.download_id,
            title=item.title,
            rule=rule,
            reason=reason,
            action=action,
            protocol=item.protocol,
            added=item.added,
            **extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ItemOutcome':
        return cls(
            id=int(data.get('id') or 0),
            download_id=str(data.get('download_id') or ''),
            title=str(data.get('title') or ''),
            rule=str(data.get('rule') or ''),
            reason=str(data.get('reason') or ''),
            action=str(data.get('action') or ''),
            strike_count=data.get('strike_count'),
            max_strikes=data.get('max_strikes'),
            protocol=str(data.get('protocol') or ''),
            added=data.get('added'),
            first_strike_at=data.get('first_strike_at'),
        )


@dataclass
class RunLog:
    instance_id: str
    trigger: str = TRIGGER_SCHEDULED
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    status: str = RUN_RUNNING
    is_dry_run: bool = False
    items_cleaned: int = 0
    items_skipped: int = 0
    items_warned: int = 0
    cleaned_items: List[ItemOutcome] = field(default_factory=list)
    skipped_items: List[ItemOutcome] = field(default_factory=list)
    warned_items: List[ItemOutcome] = field(default_factory=list)
    message: str = ''
    duration_ms: Optional[int] = None
    has_data_error: bool = False

    def finalize(self, status: str, message: str = '', now: Optional[float] = None) -> 'RunLog':
        self.status = status
        if message:
            self.message = message
        self.completed_at = time.time() if now is None else now
        self.duration_ms = max(0, int(round((self.completed_at - self.started_at) * 1000)))
        self.items_cleaned = len(self.cleaned_items)
        self.items_skipped = len(self.skipped_items)
        self.items_warned = len(self.warned_items)
        return self

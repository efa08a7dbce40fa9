from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional


def parse_date(value: Any) -> Optional[float]:
    """Return epoch seconds for an ISO-8601 string or number, else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def get_int(record: Dict[str, Any], *keys: str) -> Optional[int]:
    for key in keys:
        val = record.get(key)
        if val is None or isinstance(val, bool):
            continue
        try:
            return int(val)
        except (TypeError, ValueError):
            continue
    return None


def get_str(record: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        val = record.get(key)
        if isinstance(val, str) and val:
            return val
    return ''


def get_downloaded_bytes(size: Optional[int], sizeleft: Optional[int]) -> Optional[int]:
    if size is None or sizeleft is None:
        return None
    return size - sizeleft


def get_progress_percent(size: Optional[int], sizeleft: Optional[int]) -> Optional[float]:
    dl = get_downloaded_bytes(size, sizeleft)
    if dl is None or not size or size <= 0:
        return None
    pct = (dl / size) * 100.0
    # clamp 0..100
    return max(0.0, min(100.0, pct))


def get_indexer_name(record: Dict[str, Any]) -> str:
    name = get_str(record, 'indexer', 'indexerName')
    if name:
        return name
    rel = record.get('release')
    if isinstance(rel, dict):
        return get_str(rel, 'indexer', 'indexerName')
    return ''


def collect_status_texts(record: Dict[str, Any]) -> List[str]:
    """Flatten statusMessages titles/messages and errorMessage into a list of texts."""
    texts: List[str] = []
    msgs = record.get('statusMessages')
    if isinstance(msgs, list):
        for msg in msgs:
            if not isinstance(msg, dict):
                continue
            title = msg.get('title')
            if isinstance(title, str) and title.strip():
                texts.append(title.strip())
            inner = msg.get('messages')
            if isinstance(inner, list):
                texts.extend(m.strip() for m in inner if isinstance(m, str) and m.strip())
            single = msg.get('message')
            if isinstance(single, str) and single.strip():
                texts.append(single.strip())
    err = record.get('errorMessage')
    if isinstance(err, str) and err.strip():
        texts.append(err.strip())
    return texts


def matches_keywords(texts: Iterable[str], keywords: Iterable[str]) -> Optional[str]:
    """Return the first status text containing any keyword (case-insensitive)."""
    lowered = [(t, t.lower()) for t in texts]
    for kw in keywords:
        if not isinstance(kw, str) or not kw.strip():
            continue
        needle = kw.strip().lower()
        for original, low in lowered:
            if needle in low:
                return original
    return None

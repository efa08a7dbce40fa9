from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import List, Optional, Pattern, Tuple

from core.config import CleanerConfig
from core.models import QueueItem


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[Pattern[str]]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logging.warning(f'Whitelist regex {pattern!r} is invalid and will never match: {e}')
        return None


def _field_values(item: QueueItem, ftype: str) -> List[str]:
    if ftype == 'title':
        return [item.title]
    if ftype in ('indexer', 'tracker'):
        return [item.indexer]
    if ftype == 'client':
        return [item.download_client]
    if ftype == 'category':
        return [item.category]
    if ftype == 'tag':
        return list(item.tags)
    return []


def matches_pattern(value: str, pattern: str, match: str = 'substring') -> bool:
    if not value or not pattern:
        return False
    if match == 'regex':
        rx = _compile(pattern)
        return bool(rx and rx.search(value))
    if match == 'exact':
        return value.strip().lower() == pattern.strip().lower()
    return pattern.strip().lower() in value.lower()


def is_whitelisted(item: QueueItem, config: CleanerConfig) -> Tuple[bool, str]:
    if not config.whitelist_enabled:
        return False, ''
    for pat in config.whitelist_patterns:
        ftype = pat.get('type', 'title')
        for value in _field_values(item, ftype):
            if matches_pattern(value, pat.get('pattern', ''), pat.get('match', 'substring')):
                return True, f"{ftype} matches '{pat.get('pattern')}'"
    return False, ''

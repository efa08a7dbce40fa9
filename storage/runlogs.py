from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Tuple

from core.models import RUN_ERROR, RUN_RUNNING, ItemOutcome, RunLog

ITEM_FIELDS = ('cleaned_items', 'skipped_items', 'warned_items')


def encode_run_log(log: RunLog) -> str:
    """One JSON line; item detail is stored as JSON strings like the summary columns beside it."""
    data = asdict(log)
    for name in ITEM_FIELDS:
        data[name] = json.dumps([o.to_dict() for o in getattr(log, name)], ensure_ascii=False)
    data.pop('has_data_error', None)
    return json.dumps(data, ensure_ascii=False, default=str)


def _decode_items(raw: Any) -> Tuple[List[ItemOutcome], bool]:
    if raw in (None, ''):
        return [], False
    try:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(parsed, list):
            return [], True
        return [ItemOutcome.from_dict(d) for d in parsed if isinstance(d, dict)], False
    except (TypeError, ValueError):
        return [], True


def _count(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def decode_run_log(data: Dict[str, Any]) -> RunLog:
    """Rebuild a RunLog; broken item detail sets ``has_data_error`` but keeps the summary counters."""
    log = RunLog(
        instance_id=str(data.get('instance_id') or ''),
        trigger=str(data.get('trigger') or ''),
        id=str(data.get('id') or ''),
        started_at=float(data.get('started_at') or 0.0),
        completed_at=data.get('completed_at'),
        status=str(data.get('status') or RUN_ERROR),
        is_dry_run=bool(data.get('is_dry_run')),
        message=str(data.get('message') or ''),
        duration_ms=data.get('duration_ms'),
    )
    for name in ITEM_FIELDS:
        items, broken = _decode_items(data.get(name))
        setattr(log, name, items)
        if broken:
            log.has_data_error = True
    log.items_cleaned = _count(data.get('items_cleaned', len(log.cleaned_items)))
    log.items_skipped = _count(data.get('items_skipped', len(log.skipped_items)))
    log.items_warned = _count(data.get('items_warned', len(log.warned_items)))
    return log


class RunLogStore:
    """Append-only JSON-lines history of runs.

    Without a path the history lives in memory only (used by tests and the
    CLI simulator).
    """

    def __init__(self, path: Optional[str] = None, debug_logging: bool = False) -> None:
        self.path = path
        self.debug_logging = debug_logging
        self._lock = threading.Lock()
        self._memory: List[str] = []
        if path:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)

    def _read_lines(self) -> List[str]:
        if not self.path:
            return list(self._memory)
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return [line.rstrip('\n') for line in f if line.strip()]
        except FileNotFoundError:
            return []

    def append(self, log: RunLog) -> None:
        if log.status == RUN_RUNNING:
            raise ValueError(f'Run log {log.id} is still {RUN_RUNNING}; finalize it before appending')
        line = encode_run_log(log)
        with self._lock:
            if not self.path:
                self._memory.append(line)
                return
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(line + '\n')
                f.flush()
                os.fsync(f.fileno())

    def load(self) -> Tuple[List[RunLog], int]:
        """All decodable logs, newest first, and the number of unreadable lines."""
        logs: List[RunLog] = []
        unreadable = 0
        for line in self._read_lines():
            try:
                data = json.loads(line)
                if not isinstance(data, dict):
                    raise ValueError('run log line is not an object')
                logs.append(decode_run_log(data))
            except (TypeError, ValueError) as e:
                unreadable += 1
                if self.debug_logging:
                    logging.warning(f'Skipping unreadable run log line: {e}')
        logs.sort(key=lambda entry: entry.started_at, reverse=True)
        return logs, unreadable

    def all(self) -> List[RunLog]:
        return self.load()[0]

    def query(
        self,
        instance_id: Optional[str] = None,
        status: Optional[str] = None,
        since: Optional[float] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[RunLog], int, Optional[Dict[str, str]]]:
        logs, unreadable = self.load()
        if instance_id:
            logs = [entry for entry in logs if entry.instance_id == instance_id]
        if status:
            logs = [entry for entry in logs if entry.status == status]
        if since is not None:
            logs = [entry for entry in logs if entry.started_at >= since]
        total = len(logs)
        page = max(1, int(page))
        page_size = max(1, int(page_size))
        start = (page - 1) * page_size
        window = logs[start:start + page_size]
        return window, total, data_quality_warning(window, unreadable)


def data_quality_warning(logs: List[RunLog], unreadable: int = 0) -> Optional[Dict[str, str]]:
    broken = sum(1 for entry in logs if entry.has_data_error)
    parts = []
    if broken:
        parts.append(f'{broken} log(s) have corrupted data - item details may be incomplete')
    if unreadable:
        parts.append(f'{unreadable} unreadable log line(s) were skipped')
    if not parts:
        return None
    return {'warning': '; '.join(parts)}

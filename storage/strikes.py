from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional


def load_strikes(path: Optional[str], debug_logging: bool = False) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        with open(path, 'r') as file:
            data = json.load(file)
            return data if isinstance(data, dict) else {}
    except (FileNotFoundError, json.JSONDecodeError):
        if debug_logging:
            logging.warning("Strike file not found or is invalid. Starting with an empty strike list.")
        return {}


def save_strikes(data: Dict[str, Any], path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = path + '.tmp'
    with open(tmp_path, 'w') as file:
        json.dump(data, file, indent=4)
    os.replace(tmp_path, path)


def make_strike_key(instance_id: str, download_id: Any) -> str:
    return f"{instance_id}:{download_id}"


def _num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class StrikeRecord:
    instance_id: str
    download_id: str
    strike_count: int = 0
    first_strike_at: Optional[float] = None
    last_strike_at: Optional[float] = None
    last_rule: Optional[str] = None
    last_reason: Optional[str] = None
    title: Optional[str] = None
    import_attempts: int = 0
    last_import_attempt: Optional[float] = None
    last_import_error: Optional[str] = None

    @property
    def key(self) -> str:
        return make_strike_key(self.instance_id, self.download_id)

    def is_expired(self, decay_hours: float, now: float) -> bool:
        last = max(self.last_strike_at or 0.0, self.last_import_attempt or 0.0)
        if not last:
            return False
        return (now - last) > decay_hours * 3600

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_strike_entry(key: str, entry: Any) -> StrikeRecord:
    """Turn a persisted entry (or a bare legacy count) into a StrikeRecord."""
    instance_id, _, download_id = str(key).partition(':')
    record = StrikeRecord(instance_id=instance_id, download_id=download_id)
    if isinstance(entry, int) and not isinstance(entry, bool):
        record.strike_count = max(0, entry)
        return record
    if not isinstance(entry, dict):
        return record
    try:
        record.strike_count = max(0, int(entry.get('strike_count', entry.get('count', 0)) or 0))
    except (TypeError, ValueError):
        record.strike_count = 0
    record.first_strike_at = _num(entry.get('first_strike_at'))
    record.last_strike_at = _num(entry.get('last_strike_at'))
    record.last_rule = entry.get('last_rule')
    record.last_reason = entry.get('last_reason')
    record.title = entry.get('title')
    try:
        record.import_attempts = max(0, int(entry.get('import_attempts', 0) or 0))
    except (TypeError, ValueError):
        record.import_attempts = 0
    record.last_import_attempt = _num(entry.get('last_import_attempt'))
    record.last_import_error = entry.get('last_import_error')
    return record


class StrikeStore:
    """Per (instance, download) strike counters with decay.

    Read-modify-write sequences for the same download must hold
    ``lock_for(instance_id, download_id)``.
    """

    def __init__(self, path: Optional[str] = None, debug_logging: bool = False) -> None:
        self.path = path
        self.debug_logging = debug_logging
        self._records: Dict[str, StrikeRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        for key, entry in load_strikes(path, debug_logging).items():
            rec = normalize_strike_entry(key, entry)
            if rec.instance_id and rec.download_id:
                self._records[rec.key] = rec

    def lock_for(self, instance_id: str, download_id: str) -> asyncio.Lock:
        key = make_strike_key(instance_id, download_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _decayed(self, rec: StrikeRecord, decay_hours: float, now: float) -> StrikeRecord:
        if rec.last_strike_at is not None and (now - rec.last_strike_at) > decay_hours * 3600:
            rec.strike_count = 0
            rec.first_strike_at = None
            rec.last_rule = None
            rec.last_reason = None
        return rec

    def get_or_create(self, instance_id: str, download_id: str, decay_hours: float, now: float) -> StrikeRecord:
        key = make_strike_key(instance_id, download_id)
        rec = self._records.get(key)
        if rec is None:
            rec = StrikeRecord(instance_id=instance_id, download_id=str(download_id))
            self._records[key] = rec
            return rec
        return self._decayed(rec, decay_hours, now)

    def peek(self, instance_id: str, download_id: str, decay_hours: float, now: float) -> StrikeRecord:
        """Decayed view of a record without creating or mutating it."""
        rec = self._records.get(make_strike_key(instance_id, download_id))
        if rec is None:
            return StrikeRecord(instance_id=instance_id, download_id=str(download_id))
        return self._decayed(StrikeRecord(**rec.to_dict()), decay_hours, now)

    def record_strike(
        self,
        record: StrikeRecord,
        rule: str,
        reason: str,
        now: float,
        max_strikes: Optional[int] = None,
        title: Optional[str] = None,
    ) -> StrikeRecord:
        count = record.strike_count + 1
        if max_strikes is not None and max_strikes > 0:
            count = min(count, max_strikes)
        record.strike_count = count
        if record.first_strike_at is None:
            record.first_strike_at = now
        record.last_strike_at = now
        record.last_rule = rule
        record.last_reason = reason
        if title:
            record.title = title
        self._records[record.key] = record
        return record

    def record_import_attempt(
        self,
        instance_id: str,
        download_id: str,
        now: float,
        error: Optional[str] = None,
        title: Optional[str] = None,
    ) -> StrikeRecord:
        key = make_strike_key(instance_id, download_id)
        rec = self._records.get(key)
        if rec is None:
            rec = StrikeRecord(instance_id=instance_id, download_id=str(download_id))
            self._records[key] = rec
        rec.import_attempts += 1
        rec.last_import_attempt = now
        rec.last_import_error = error
        if title:
            rec.title = title
        return rec

    def get(self, instance_id: str, download_id: str) -> Optional[StrikeRecord]:
        return self._records.get(make_strike_key(instance_id, download_id))

    def clear(self, instance_id: str, download_id: str) -> bool:
        key = make_strike_key(instance_id, download_id)
        self._locks.pop(key, None)
        return self._records.pop(key, None) is not None

    def clear_instance(self, instance_id: str) -> int:
        keys = [k for k, r in self._records.items() if r.instance_id == instance_id]
        for k in keys:
            self._records.pop(k, None)
            self._locks.pop(k, None)
        return len(keys)

    def prune(self, instance_id: str, present_download_ids: Iterable[str]) -> int:
        """Delete records for downloads that are no longer in the queue."""
        present = {str(d) for d in present_download_ids}
        gone = [r.download_id for r in self._records.values() if r.instance_id == instance_id and r.download_id not in present]
        for dl in gone:
            self.clear(instance_id, dl)
        return len(gone)

    def decay(self, instance_id: str, decay_hours: float, now: float) -> int:
        expired = [r.download_id for r in self._records.values() if r.instance_id == instance_id and r.is_expired(decay_hours, now)]
        for dl in expired:
            self.clear(instance_id, dl)
        return len(expired)

    def list(self, instance_id: Optional[str] = None) -> List[StrikeRecord]:
        recs = [r for r in self._records.values() if instance_id is None or r.instance_id == instance_id]
        return sorted(recs, key=lambda r: (r.instance_id, -r.strike_count, r.first_strike_at or 0.0, r.download_id))

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, rec in self._records.items():
            data = rec.to_dict()
            data.pop('instance_id', None)
            data.pop('download_id', None)
            out[key] = data
        return out

    def save(self) -> None:
        if self.path:
            save_strikes(self.to_dict(), self.path)

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from core.config import InstanceSettings
from core.models import RUN_COMPLETED, RUN_ERROR, RUN_PARTIAL, RunLog

DAILY_DAYS = 7
WEEKLY_WEEKS = 4
RECENT_ACTIVITY = 10

_SUCCESS = (RUN_COMPLETED, RUN_PARTIAL)


def _day_start(ts: float) -> datetime:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _empty_bucket(period: str) -> Dict[str, Any]:
    return {'period': period, 'items_cleaned': 0, 'items_warned': 0, 'runs_completed': 0}


def _add(bucket: Dict[str, Any], log: RunLog) -> None:
    bucket['items_cleaned'] += log.items_cleaned
    bucket['items_warned'] += log.items_warned
    if log.status in _SUCCESS:
        bucket['runs_completed'] += 1


def compute_statistics(
    logs: Iterable[RunLog],
    instances: Optional[Iterable[InstanceSettings]] = None,
    now: Optional[float] = None,
    unreadable_logs: int = 0,
) -> Dict[str, Any]:
    """Roll run history up into daily/weekly buckets, totals and breakdowns.

    Summary counters always come from the stored totals; logs whose item
    detail could not be decoded only drop out of the per-rule breakdown and
    are reported through ``data_quality``.
    """
    logs = sorted(logs, key=lambda entry: entry.started_at, reverse=True)
    now = datetime.now(timezone.utc).timestamp() if now is None else now
    today = _day_start(now)

    daily: Dict[str, Dict[str, Any]] = {}
    for i in range(DAILY_DAYS - 1, -1, -1):
        key = (today - timedelta(days=i)).strftime('%Y-%m-%d')
        daily[key] = _empty_bucket(key)
    weekly: Dict[str, Dict[str, Any]] = {}
    for i in range(WEEKLY_WEEKS):
        key = f'Week {i + 1}'
        weekly[key] = _empty_bucket(key)

    seven_days_ago = (today - timedelta(days=DAILY_DAYS)).timestamp()
    four_weeks_ago = (today - timedelta(days=WEEKLY_WEEKS * 7)).timestamp()
    for log in logs:
        if log.started_at >= seven_days_ago:
            bucket = daily.get(_day_start(log.started_at).strftime('%Y-%m-%d'))
            if bucket is not None:
                _add(bucket, log)
        if log.started_at >= four_weeks_ago:
            days_ago = int((today.timestamp() - log.started_at) // 86400)
            week_index = max(0, days_ago // 7)
            if week_index < WEEKLY_WEEKS:
                # Week 4 is the most recent
                _add(weekly[f'Week {WEEKLY_WEEKS - week_index}'], log)

    completed = [entry for entry in logs if entry.status in _SUCCESS]
    errors = [entry for entry in logs if entry.status == RUN_ERROR]
    durations = [entry.duration_ms for entry in logs if isinstance(entry.duration_ms, (int, float))]
    totals = {
        'items_cleaned': sum(entry.items_cleaned for entry in logs),
        'items_skipped': sum(entry.items_skipped for entry in logs),
        'items_warned': sum(entry.items_warned for entry in logs),
        'total_runs': len(logs),
        'completed_runs': len(completed),
        'error_runs': len(errors),
        'average_duration_ms': round(sum(durations) / len(durations)) if durations else 0,
        'success_rate': round(len(completed) / len(logs) * 100) if logs else 100,
    }

    rule_breakdown: Dict[str, int] = {}
    corrupt = 0
    for log in logs:
        if log.has_data_error:
            corrupt += 1
            logging.warning(
                f'Run log {log.id} for instance {log.instance_id} has malformed item detail; '
                f'statistics may be incomplete'
            )
        for item in log.cleaned_items:
            if item.rule:
                rule_breakdown[item.rule] = rule_breakdown.get(item.rule, 0) + 1

    instance_breakdown: List[Dict[str, Any]] = []
    for inst in instances or []:
        own = [entry for entry in logs if entry.instance_id == inst.id]
        instance_breakdown.append({
            'instance_id': inst.id,
            'instance_name': inst.label,
            'service': inst.service,
            'items_cleaned': sum(entry.items_cleaned for entry in own),
            'total_runs': len(own),
            'last_run_at': inst.config.last_run_at,
        })

    recent_activity = [
        {
            'id': entry.id,
            'instance_id': entry.instance_id,
            'items_cleaned': entry.items_cleaned,
            'items_skipped': entry.items_skipped,
            'items_warned': entry.items_warned,
            'status': entry.status,
            'is_dry_run': entry.is_dry_run,
            'started_at': entry.started_at,
        }
        for entry in logs[:RECENT_ACTIVITY]
    ]

    warnings = []
    if corrupt:
        warnings.append(
            f'{corrupt} log entries had corrupted data and were excluded from rule breakdown statistics'
        )
    if unreadable_logs:
        warnings.append(f'{unreadable_logs} unreadable log line(s) were skipped')

    return {
        'daily': list(daily.values()),
        'weekly': list(weekly.values()),
        'totals': totals,
        'rule_breakdown': rule_breakdown,
        'instance_breakdown': instance_breakdown,
        'recent_activity': recent_activity,
        'data_quality': {'warning': '; '.join(warnings)} if warnings else None,
    }

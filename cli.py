import argparse
import asyncio
import json
import os
import sys
import time
from dataclasses import asdict
from typing import Any, Dict

import aiohttp

from core.config import CleanerConfig, ConfigStore, GeneralSettings, load_yaml
from core.models import RUN_STATUSES, TRIGGER_MANUAL, QueueItem
from core.rules import classify, explain
from core.statistics import compute_statistics
from core.whitelist import is_whitelisted
from storage.runlogs import RunLogStore
from storage.strikes import StrikeStore


def _env(key: str, default: Any) -> Any:
    return os.environ.get(key, default)


def _config_path() -> str:
    return _env('CONFIG_PATH', '/app/config.yaml')


def _raw_config() -> Dict[str, Any]:
    return load_yaml(_config_path())


def _general() -> GeneralSettings:
    return GeneralSettings.from_sources(_raw_config().get('general'))


def _strikes() -> StrikeStore:
    return StrikeStore(_general().strike_file_path)


def _run_logs() -> RunLogStore:
    return RunLogStore(_general().run_log_path)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_list(args):
    store = _strikes()
    instance = getattr(args, 'instance', None)
    _print({rec.key: rec.to_dict() for rec in store.list(instance)})


def cmd_clear(args):
    store = _strikes()
    instance = getattr(args, 'instance', None)
    download = getattr(args, 'download', None)
    if download and not instance:
        print("--download requires --instance")
        return
    if instance and download:
        if store.clear(instance, download):
            store.save()
            print(f"Cleared {instance}:{download}")
        else:
            print("Key not found")
    elif instance:
        count = store.clear_instance(instance)
        store.save()
        print(f"Cleared {count} strike(s) for {instance}")
    else:
        for rec in store.list():
            store.clear(rec.instance_id, rec.download_id)
        store.save()
        print("Cleared all strikes")


def cmd_simulate(args):
    with open(args.item_json, 'r') as f:
        record = json.load(f)
    configs = ConfigStore.from_dict(_raw_config())
    instance = getattr(args, 'instance', None)
    if instance and configs.has(instance):
        config = configs.get(instance)
    else:
        # Unknown instance: evaluate with the shared defaults only
        config = CleanerConfig.from_dict(_raw_config().get('defaults'))
    item = QueueItem.from_record(record, instance or '')
    now = time.time()
    exempt, why = is_whitelisted(item, config)
    verdict = None if exempt else classify(item, config, now)
    _print(
        {
            "whitelisted": exempt,
            "whitelist_reason": why,
            "rule": verdict.rule if verdict else None,
            "reason": verdict.reason if verdict else None,
            "disposition": verdict.disposition if verdict else None,
            "matches": [{"rule": r, "reason": msg} for r, msg in explain(item, config, now)],
        }
    )


def cmd_status(args):
    general = _general()
    store = StrikeStore(general.strike_file_path)
    records = store.list()
    logs = RunLogStore(general.run_log_path).all()
    configs = ConfigStore.from_dict(_raw_config())
    instances = {}
    for iid in configs.instance_ids():
        cfg = configs.get(iid)
        last = next((entry for entry in logs if entry.instance_id == iid), None)
        instances[iid] = {
            "enabled": cfg.enabled,
            "dry_run_mode": cfg.dry_run_mode,
            "interval_mins": cfg.interval_mins,
            "last_run_status": last.status if last else None,
            "last_run_at": last.started_at if last else None,
            "next_run_due": (last.started_at + cfg.interval_mins * 60) if last else None,
            "strikes": sum(1 for rec in records if rec.instance_id == iid),
        }
    _print(
        {
            "strike_file": general.strike_file_path,
            "run_log": general.run_log_path,
            "entries": len(records),
            "active_strikes": sum(1 for rec in records if rec.strike_count > 0),
            "instances": instances,
        }
    )


def cmd_stats(args):
    general = _general()
    logs, unreadable = RunLogStore(general.run_log_path).load()
    configs = ConfigStore.from_dict(_raw_config())
    instances = [configs.instance(iid) for iid in configs.instance_ids()]
    _print(compute_statistics(logs, instances, unreadable_logs=unreadable))


def cmd_logs(args):
    logs, total, quality = _run_logs().query(
        instance_id=getattr(args, 'instance', None),
        status=getattr(args, 'status', None),
        page=getattr(args, 'page', 1) or 1,
        page_size=getattr(args, 'page_size', 20) or 20,
    )
    _print({"logs": [asdict(entry) for entry in logs], "total": total, "data_quality": quality})


async def _run_now(instance_id: str, dry_run: bool):
    from cleaner import build_app

    async with aiohttp.ClientSession() as session:
        app = build_app(session, _raw_config(), _config_path())
        return await app.orchestrator.run(instance_id, TRIGGER_MANUAL, force_dry_run=dry_run)


def cmd_run_now(args):
    log = asyncio.run(_run_now(args.instance, bool(getattr(args, 'dry_run', False))))
    _print(asdict(log))


def main():
    ap = argparse.ArgumentParser(description="Queue Cleaner CLI")
    sub = ap.add_subparsers(dest='cmd')

    p_list = sub.add_parser('list', help='List strike records')
    p_list.add_argument('--instance', help='Only show strikes for this instance id')
    p_list.set_defaults(func=cmd_list)

    p_clear = sub.add_parser('clear', help='Clear strikes (all, one instance, or one download)')
    p_clear.add_argument('--instance', help='Instance id (e.g., sonarr)')
    p_clear.add_argument('--download', help='Download id within the instance')
    p_clear.set_defaults(func=cmd_clear)

    p_sim = sub.add_parser('simulate', help='Simulate a decision for a queue record JSON')
    p_sim.add_argument('item_json', help='Path to queue record JSON file')
    p_sim.add_argument('--instance', help='Instance whose cleaner config to apply')
    p_sim.set_defaults(func=cmd_simulate)

    p_status = sub.add_parser('status', help='Show strike summary and per-instance run state')
    p_status.set_defaults(func=cmd_status)

    p_stats = sub.add_parser('stats', help='Show statistics derived from the run log')
    p_stats.set_defaults(func=cmd_stats)

    p_logs = sub.add_parser('logs', help='Show run log history, newest first')
    p_logs.add_argument('--instance')
    p_logs.add_argument('--status', choices=list(RUN_STATUSES))
    p_logs.add_argument('--page', type=int, default=1)
    p_logs.add_argument('--page-size', dest='page_size', type=int, default=20)
    p_logs.set_defaults(func=cmd_logs)

    p_run = sub.add_parser('run-now', help='Run one clean for an instance and print its log')
    p_run.add_argument('instance')
    p_run.add_argument('--dry-run', action='store_true')
    p_run.set_defaults(func=cmd_run_now)

    args = ap.parse_args()
    if not hasattr(args, 'func'):
        ap.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == '__main__':
    main()

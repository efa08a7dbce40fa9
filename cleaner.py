import os
import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from core.config import ConfigStore, GeneralSettings, load_yaml
from core.events import EventBus, build_event_logger
from core.runner import Orchestrator, RunnerDeps
from core.scheduler import Scheduler
from integrations.arr import ArrQueueProvider
from integrations.services import RequestManager
from storage.runlogs import RunLogStore
from storage.strikes import StrikeStore


# Helper function to get environment variables with type casting
def get_env_var(key, default=None, cast_to=str):
    value = os.environ.get(key, default)
    if value is not None:
        return cast_to(value)
    return default


def _as_bool(value: str) -> bool:
    return value.lower() in ['true', '1', 'yes']


# Fetch debug flag from environment and set logging level
DEBUG_LOGGING = get_env_var('DEBUG_LOGGING', default='false', cast_to=_as_bool)
CONFIG_PATH = get_env_var('CONFIG_PATH', '/app/config.yaml')


def configure_logging(debug_logging: bool) -> None:
    level = logging.DEBUG if debug_logging else logging.INFO
    logging.basicConfig(
        format='%(asctime)s [%(levelname)s]: %(message)s',
        level=level,
        handlers=[logging.StreamHandler()],
        force=True,
    )
    # Dedicated non-propagating logger for structured event logs
    build_event_logger(level)


configure_logging(DEBUG_LOGGING)


@dataclass
class CleanerApp:
    general: GeneralSettings
    config_store: ConfigStore
    strikes: StrikeStore
    run_logs: RunLogStore
    event_bus: EventBus
    provider: ArrQueueProvider
    orchestrator: Orchestrator
    scheduler: Scheduler


def build_app(
    session: aiohttp.ClientSession,
    raw_config: Optional[Dict[str, Any]] = None,
    config_path: Optional[str] = None,
) -> CleanerApp:
    raw_config = raw_config if isinstance(raw_config, dict) else {}
    general = GeneralSettings.from_sources(raw_config.get('general'))
    debug = general.debug_logging or DEBUG_LOGGING
    config_store = ConfigStore.from_dict(raw_config, path=config_path, debug_logging=debug)
    strikes = StrikeStore(general.strike_file_path, debug_logging=debug)
    run_logs = RunLogStore(general.run_log_path, debug_logging=debug)
    event_bus = EventBus(structured_logs=general.structured_logs, debug_logging=debug)
    requests = RequestManager(
        min_interval_ms=general.min_request_interval_ms,
        max_concurrent=general.max_concurrent_requests,
        request_timeout=general.request_timeout,
        retry_attempts=general.retry_attempts,
        retry_backoff=general.retry_backoff,
        debug_logging=debug,
    )
    provider = ArrQueueProvider(session, config_store, requests, debug_logging=debug)
    orchestrator = Orchestrator(
        RunnerDeps(
            config_store=config_store,
            provider=provider,
            strikes=strikes,
            run_logs=run_logs,
            event_bus=event_bus,
            max_run_seconds=general.max_run_seconds,
            classify_workers=general.classify_workers,
            debug_logging=debug,
        )
    )
    scheduler = Scheduler(
        orchestrator,
        config_store,
        strikes,
        manual_cooldown_mins=general.manual_cooldown_mins,
        debug_logging=debug,
    )
    return CleanerApp(
        general=general,
        config_store=config_store,
        strikes=strikes,
        run_logs=run_logs,
        event_bus=event_bus,
        provider=provider,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


async def main():
    raw_config = load_yaml(CONFIG_PATH)
    general = GeneralSettings.from_sources(raw_config.get('general'))
    if general.debug_logging and not DEBUG_LOGGING:
        configure_logging(True)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support; Ctrl+C still cancels main()
            logging.debug(f'Signal handler for {sig!r} unavailable on this platform')

    async with aiohttp.ClientSession() as session:
        app = build_app(session, raw_config, CONFIG_PATH)
        if general.debug_logging or DEBUG_LOGGING:
            logging.info(f'Running queue cleaner for instances: {", ".join(app.config_store.instance_ids()) or "none"}')
        app.scheduler.start()
        try:
            await stop_event.wait()
        finally:
            logging.info('Shutdown requested; stopping scheduler')
            await app.scheduler.stop(app.general.shutdown_grace_seconds)


def run():
    asyncio.run(main())


if __name__ == '__main__':
    run()

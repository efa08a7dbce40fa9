from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

EVENT_LOGGER_NAME = 'queue_cleaner.events'


def build_event_logger(level: int = logging.INFO) -> logging.Logger:
    """Dedicated non-propagating logger with exactly one handler."""
    logger = logging.getLogger(EVENT_LOGGER_NAME)
    logger.setLevel(level)
    # Prevent propagation to root to avoid duplicate lines
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s]: %(message)s'))
    logger.addHandler(handler)
    return logger


_ITEM_FIELDS = ('id', 'download_id', 'title')


def item_fields(item: Any) -> Dict[str, Any]:
    """Identifying fields of a QueueItem or ItemOutcome for an event line."""
    if item is None:
        return {}
    return {name: getattr(item, name, None) for name in _ITEM_FIELDS}


class EventBus:
    """Writes one line per decision to the events logger."""

    def __init__(
        self,
        *,
        structured_logs: bool = True,
        debug_logging: bool = False,
        logger=None,
    ) -> None:
        self.structured_logs = structured_logs
        self.debug_logging = debug_logging
        self.logger = logger if logger is not None else logging.getLogger(EVENT_LOGGER_NAME)

    def log(self, event: str, **fields) -> None:
        if not self.structured_logs:
            self.logger.info(f"{event}: {fields}")
            return
        payload = {"event": event, **fields}
        try:
            line = json.dumps(payload, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            line = str(payload)
        self.logger.info(line)

    def emit(
        self,
        event: str,
        *,
        instance_id: Optional[str] = None,
        item: Any = None,
        reason: Optional[str] = None,
        **fields,
    ) -> None:
        for name, value in item_fields(item).items():
            fields.setdefault(name, value)
        if instance_id is not None:
            fields.setdefault('instance', instance_id)
        if reason is not None:
            fields.setdefault('reason', reason)
        self.log(event, **fields)

from __future__ import annotations

import copy
import json
import logging
import math
import os
import re
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

import yaml

from core import constants as C


class ConfigValidationError(ValueError):
    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__('; '.join(self.errors) or 'invalid configuration')


class InstanceNotFoundError(KeyError):
    pass


def load_yaml(path: str) -> Dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError) as e:
        logging.warning(f'Config file {path} could not be read: {e}')
        return {}


def _get_env(key: str, default: Any = None) -> Any:
    return os.environ.get(key, default)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'on')
    return bool(value)


_CAMEL_RE = re.compile(r'(?<!^)(?=[A-Z])')


def normalize_key(key: str) -> str:
    """Accept camelCase keys (e.g. maxStrikes) alongside snake_case."""
    return _CAMEL_RE.sub('_', str(key)).lower()


@dataclass
class CleanerConfig:
    enabled: bool = False
    interval_mins: int = C.DEFAULT_INTERVAL_MINS

    stalled_enabled: bool = True
    stalled_threshold_mins: float = C.DEFAULT_STALLED_THRESHOLD_MINS
    failed_enabled: bool = True
    slow_enabled: bool = False
    slow_speed_threshold: float = C.DEFAULT_SLOW_SPEED_THRESHOLD
    slow_grace_period_mins: float = C.DEFAULT_SLOW_GRACE_PERIOD_MINS
    error_patterns_enabled: bool = False
    error_patterns: List[str] = field(default_factory=list)
    seeding_timeout_enabled: bool = False
    seeding_timeout_hours: float = C.DEFAULT_SEEDING_TIMEOUT_HOURS
    estimated_completion_enabled: bool = False
    estimated_completion_multiplier: float = C.DEFAULT_ESTIMATED_MULTIPLIER
    import_pending_enabled: bool = True
    import_pending_threshold_mins: float = C.DEFAULT_IMPORT_PENDING_MINS
    import_block_enabled: bool = True
    import_block_cleanup_level: str = C.DEFAULT_IMPORT_BLOCK_CLEANUP_LEVEL
    import_block_pattern_mode: str = C.DEFAULT_IMPORT_BLOCK_PATTERN_MODE
    import_block_patterns: List[str] = field(default_factory=list)

    strike_system_enabled: bool = False
    max_strikes: int = C.DEFAULT_MAX_STRIKES
    strike_decay_hours: float = C.DEFAULT_STRIKE_DECAY_HOURS
    strike_rules: Optional[List[str]] = None

    whitelist_enabled: bool = False
    whitelist_patterns: List[Dict[str, str]] = field(default_factory=list)

    remove_from_client: bool = True
    add_to_blocklist: bool = False
    search_after_removal: bool = False
    change_category_enabled: bool = False
    change_category_name: str = ''

    auto_import_enabled: bool = False
    auto_import_max_attempts: int = C.DEFAULT_AUTO_IMPORT_ATTEMPTS
    auto_import_cooldown_mins: float = C.DEFAULT_AUTO_IMPORT_COOLDOWN_MINS
    auto_import_safe_only: bool = True
    auto_import_custom_patterns: List[str] = field(default_factory=list)
    auto_import_never_patterns: List[str] = field(default_factory=list)

    dry_run_mode: bool = True
    max_removals_per_run: int = C.DEFAULT_MAX_REMOVALS
    min_queue_age_mins: float = C.DEFAULT_QUEUE_AGE_MINS

    last_run_at: Optional[float] = None
    last_run_items_cleaned: int = 0
    last_run_items_skipped: int = 0
    total_runs: int = 0
    total_items_cleaned: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], debug_logging: bool = False) -> 'CleanerConfig':
        clean = sanitize_config(data or {}, debug_logging)
        return cls(**clean)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def strikes_apply_to(self, rule: str) -> bool:
        if not self.strike_system_enabled:
            return False
        if not self.strike_rules:
            return True
        return rule in self.strike_rules


_FIELD_NAMES = {f.name for f in fields(CleanerConfig)}
_DEFAULTS = CleanerConfig()

BOOKKEEPING_FIELDS = (
    'last_run_at',
    'last_run_items_cleaned',
    'last_run_items_skipped',
    'total_runs',
    'total_items_cleaned',
)

_BOOL_FIELDS = tuple(
    f.name for f in fields(CleanerConfig) if isinstance(getattr(_DEFAULTS, f.name), bool)
)

# field -> (cast, min, max) used by strict validation of runtime patches
NUMERIC_LIMITS: Dict[str, Tuple[type, float, float]] = {
    'interval_mins': (int, C.MIN_INTERVAL_MINS, C.MAX_INTERVAL_MINS),
    'stalled_threshold_mins': (float, C.MIN_STALLED_THRESHOLD_MINS, C.MAX_STALLED_THRESHOLD_MINS),
    'slow_speed_threshold': (float, C.MIN_SLOW_SPEED_THRESHOLD, C.MAX_SLOW_SPEED_THRESHOLD),
    'slow_grace_period_mins': (float, C.MIN_SLOW_GRACE_PERIOD_MINS, C.MAX_SLOW_GRACE_PERIOD_MINS),
    'seeding_timeout_hours': (float, C.MIN_SEEDING_TIMEOUT_HOURS, C.MAX_SEEDING_TIMEOUT_HOURS),
    'estimated_completion_multiplier': (float, C.MIN_ESTIMATED_MULTIPLIER, C.MAX_ESTIMATED_MULTIPLIER),
    'import_pending_threshold_mins': (float, C.MIN_IMPORT_PENDING_MINS, C.MAX_IMPORT_PENDING_MINS),
    'max_strikes': (int, C.MIN_MAX_STRIKES, C.MAX_MAX_STRIKES),
    'strike_decay_hours': (float, C.MIN_STRIKE_DECAY_HOURS, C.MAX_STRIKE_DECAY_HOURS),
    'max_removals_per_run': (int, C.MIN_MAX_REMOVALS, C.MAX_MAX_REMOVALS),
    'min_queue_age_mins': (float, C.MIN_QUEUE_AGE_MINS, C.MAX_QUEUE_AGE_MINS),
    'auto_import_max_attempts': (int, C.MIN_AUTO_IMPORT_ATTEMPTS, C.MAX_AUTO_IMPORT_ATTEMPTS),
    'auto_import_cooldown_mins': (float, C.MIN_AUTO_IMPORT_COOLDOWN_MINS, C.MAX_AUTO_IMPORT_COOLDOWN_MINS),
}

_STRING_LIST_FIELDS = (
    'error_patterns',
    'import_block_patterns',
    'auto_import_custom_patterns',
    'auto_import_never_patterns',
)


def _as_list(value: Any) -> List[Any]:
    # Pattern lists may arrive as JSON-encoded strings
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except ValueError:
            return [text]
        return parsed if isinstance(parsed, list) else [parsed]
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _string_list(value: Any) -> List[str]:
    return [str(v).strip() for v in _as_list(value) if isinstance(v, (str, int, float)) and str(v).strip()]


def normalize_cleanup_level(value: Any) -> Optional[str]:
    level = str(value or '').strip().lower()
    level = C.CLEANUP_LEVEL_ALIASES.get(level, level)
    return level if level in C.CLEANUP_LEVELS else None


def _normalize_whitelist_pattern(entry: Any) -> Optional[Dict[str, str]]:
    if not isinstance(entry, dict):
        return None
    ftype = str(entry.get('type') or entry.get('field') or 'title').strip().lower()
    pattern = entry.get('pattern')
    match = str(entry.get('match') or 'substring').strip().lower()
    if ftype not in C.WHITELIST_FIELDS or not isinstance(pattern, str) or not pattern.strip():
        return None
    if match not in C.WHITELIST_MATCH_TYPES:
        return None
    return {'type': ftype, 'pattern': pattern.strip(), 'match': match}


def sanitize_config(cfg: Dict[str, Any], debug_logging: bool = False) -> Dict[str, Any]:
    """Coerce a loosely typed mapping into CleanerConfig kwargs.

    Never raises: bad values fall back to defaults, negative numbers are
    clamped to zero and unknown keys are dropped.
    """
    if not isinstance(cfg, dict):
        return {}
    out: Dict[str, Any] = {}

    def _nz(v, cast, default):
        try:
            num = cast(v)
        except (TypeError, ValueError, OverflowError):
            return default
        if isinstance(num, float) and not math.isfinite(num):
            return default
        return num

    for raw_key, value in cfg.items():
        key = normalize_key(raw_key)
        if key not in _FIELD_NAMES:
            if debug_logging:
                logging.warning(f'Ignoring unknown cleaner setting: {raw_key}')
            continue
        default = getattr(_DEFAULTS, key)
        if key in _BOOL_FIELDS:
            out[key] = _truthy(value)
        elif key in NUMERIC_LIMITS:
            cast = NUMERIC_LIMITS[key][0]
            out[key] = max(0, _nz(value, cast, default))
        elif key in ('last_run_items_cleaned', 'last_run_items_skipped', 'total_runs', 'total_items_cleaned'):
            out[key] = max(0, _nz(value, int, 0))
        elif key == 'last_run_at':
            out[key] = _nz(value, float, None) if value is not None else None
        elif key in _STRING_LIST_FIELDS:
            out[key] = _string_list(value)
        elif key == 'strike_rules':
            rules = [r for r in _string_list(value) if r in C.RULE_IDS]
            out[key] = rules or None
        elif key == 'whitelist_patterns':
            pats = []
            for entry in _as_list(value):
                norm = _normalize_whitelist_pattern(entry)
                if norm is None:
                    if debug_logging:
                        logging.warning(f'Ignoring invalid whitelist pattern: {entry}')
                    continue
                pats.append(norm)
            out[key] = pats
        elif key == 'import_block_cleanup_level':
            out[key] = normalize_cleanup_level(value) or C.DEFAULT_IMPORT_BLOCK_CLEANUP_LEVEL
        elif key == 'import_block_pattern_mode':
            mode = str(value or '').strip().lower()
            out[key] = mode if mode in C.PATTERN_MODES else C.DEFAULT_IMPORT_BLOCK_PATTERN_MODE
        elif key == 'change_category_name':
            out[key] = str(value or '').strip()
    if 'interval_mins' in out:
        out['interval_mins'] = max(1, out['interval_mins'])
    return out


def validate_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Strictly validate a runtime update and return it with normalized keys.

    Raises ConfigValidationError listing every problem found.
    """
    if not isinstance(patch, dict):
        raise ConfigValidationError(['patch must be a mapping'])
    errors: List[str] = []
    out: Dict[str, Any] = {}
    for raw_key, value in patch.items():
        key = normalize_key(raw_key)
        if key not in _FIELD_NAMES:
            errors.append(f'{raw_key}: unknown setting')
            continue
        if key in BOOKKEEPING_FIELDS:
            errors.append(f'{raw_key}: read-only setting')
            continue
        if key in _BOOL_FIELDS:
            if not isinstance(value, bool):
                errors.append(f'{raw_key}: expected a boolean')
                continue
            out[key] = value
        elif key in NUMERIC_LIMITS:
            cast, lo, hi = NUMERIC_LIMITS[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f'{raw_key}: expected a number')
                continue
            if not math.isfinite(value):
                errors.append(f'{raw_key}: must be a finite number')
                continue
            if cast is int and float(value) != int(value):
                errors.append(f'{raw_key}: expected an integer')
                continue
            if value < lo or value > hi:
                errors.append(f'{raw_key}: must be between {lo} and {hi}')
                continue
            out[key] = cast(value)
        elif key in _STRING_LIST_FIELDS:
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                errors.append(f'{raw_key}: expected a list of strings')
                continue
            out[key] = [v.strip() for v in value if v.strip()]
        elif key == 'strike_rules':
            if value is None:
                out[key] = None
                continue
            if not isinstance(value, list) or any(r not in C.RULE_IDS for r in value):
                errors.append(f'{raw_key}: expected a list of rule ids from {", ".join(C.RULE_IDS)}')
                continue
            out[key] = list(value) or None
        elif key == 'whitelist_patterns':
            if not isinstance(value, list):
                errors.append(f'{raw_key}: expected a list')
                continue
            pats = []
            for i, entry in enumerate(value):
                norm = _normalize_whitelist_pattern(entry)
                if norm is None:
                    errors.append(f'{raw_key}[{i}]: invalid pattern {entry!r}')
                    continue
                if norm['match'] == 'regex':
                    try:
                        re.compile(norm['pattern'])
                    except re.error as e:
                        errors.append(f'{raw_key}[{i}]: invalid regex: {e}')
                        continue
                pats.append(norm)
            out[key] = pats
        elif key == 'import_block_cleanup_level':
            level = normalize_cleanup_level(value)
            if level is None:
                errors.append(f'{raw_key}: must be one of {", ".join(C.CLEANUP_LEVELS)}')
                continue
            out[key] = level
        elif key == 'import_block_pattern_mode':
            if value not in C.PATTERN_MODES:
                errors.append(f'{raw_key}: must be one of {", ".join(C.PATTERN_MODES)}')
                continue
            out[key] = value
        elif key == 'change_category_name':
            if not isinstance(value, str):
                errors.append(f'{raw_key}: expected a string')
                continue
            out[key] = value.strip()
    if errors:
        raise ConfigValidationError(errors)
    return out


@dataclass
class GeneralSettings:
    debug_logging: bool = False
    structured_logs: bool = True
    request_timeout: int = 10
    retry_attempts: int = 2
    retry_backoff: float = 1.0
    min_request_interval_ms: float = 0.0
    max_concurrent_requests: int = 0
    strike_file_path: Optional[str] = '/app/data/strikes.json'
    run_log_path: Optional[str] = '/app/data/runlogs.jsonl'
    shutdown_grace_seconds: float = C.DEFAULT_SHUTDOWN_GRACE_SECONDS
    max_run_seconds: float = C.MAX_CLEAN_DURATION_SECONDS
    manual_cooldown_mins: float = C.MANUAL_CLEAN_COOLDOWN_MINS
    classify_workers: int = 4

    @classmethod
    def from_sources(cls, general: Optional[Dict[str, Any]] = None) -> 'GeneralSettings':
        """YAML `general:` wins; environment variables fill what YAML omits."""
        gen = general if isinstance(general, dict) else {}
        base = cls()
        values: Dict[str, Any] = {}
        for f in fields(cls):
            default = getattr(base, f.name)
            raw = gen.get(f.name)
            if raw is None:
                raw = _get_env(f.name.upper())
            if raw is None:
                values[f.name] = default
                continue
            if isinstance(default, bool):
                values[f.name] = _truthy(raw)
            elif isinstance(default, int):
                try:
                    values[f.name] = max(0, int(raw))
                except (TypeError, ValueError, OverflowError):
                    values[f.name] = default
            elif isinstance(default, float):
                try:
                    num = float(raw)
                    values[f.name] = max(0.0, num) if math.isfinite(num) else default
                except (TypeError, ValueError):
                    values[f.name] = default
            else:
                values[f.name] = str(raw) if raw != '' else None
        values['classify_workers'] = max(1, values['classify_workers'])
        return cls(**values)


@dataclass
class InstanceSettings:
    id: str
    service: str
    api_url: str
    api_key: str
    config: CleanerConfig

    @property
    def label(self) -> str:
        return self.id


SUPPORTED_SERVICES = ('sonarr', 'radarr', 'lidarr', 'readarr')


def service_endpoint(instance_id: str, entry: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """YAML endpoint values first, then <ID>_URL / <ID>_API_KEY from the environment."""
    upper = re.sub(r'[^A-Za-z0-9]', '_', instance_id).upper()
    return {
        'api_url': entry.get('api_url') or _get_env(f'{upper}_URL') or None,
        'api_key': entry.get('api_key') or _get_env(f'{upper}_API_KEY') or None,
    }


def validate_config(cfg: Dict[str, Any], debug_logging: bool = False) -> List[str]:
    """Log and return non-fatal problems with a loaded configuration."""
    problems: List[str] = []
    instances = cfg.get('instances') if isinstance(cfg.get('instances'), dict) else {}
    if not instances:
        problems.append('No instances configured; the scheduler has nothing to clean.')
    for iid, entry in instances.items():
        entry = entry if isinstance(entry, dict) else {}
        service = str(entry.get('service') or iid).lower()
        if service not in SUPPORTED_SERVICES:
            problems.append(f"Instance {iid}: unsupported service '{service}'; it will be skipped.")
        ep = service_endpoint(str(iid), entry)
        if not ep['api_url'] or not ep['api_key']:
            problems.append(f'Instance {iid} has partial endpoint config (URL/API_KEY); it will be skipped.')
        merged = {}
        merged.update(cfg.get('defaults') if isinstance(cfg.get('defaults'), dict) else {})
        merged.update(entry.get('cleaner') if isinstance(entry.get('cleaner'), dict) else {})
        if _truthy(merged.get('change_category_enabled')) and _truthy(merged.get('remove_from_client', True)):
            problems.append(f'Instance {iid}: change_category_enabled is ignored while remove_from_client is on.')
    gen = cfg.get('general') if isinstance(cfg.get('general'), dict) else {}
    if float(gen.get('min_request_interval_ms') or 0) > 0 and int(gen.get('max_concurrent_requests') or 0) == 0:
        problems.append('min_request_interval_ms set without max_concurrent_requests; consider setting both for effect.')
    for p in problems:
        logging.warning(p)
    return problems


class ConfigStore:
    """Per-instance cleaner configuration with snapshot reads and validated updates."""

    def __init__(
        self,
        instances: Dict[str, InstanceSettings],
        *,
        path: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
        warnings: Optional[List[str]] = None,
    ) -> None:
        self._instances = instances
        self.path = path
        self.raw = raw if isinstance(raw, dict) else {}
        self.warnings = list(warnings or [])

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any], path: Optional[str] = None, debug_logging: bool = False) -> 'ConfigStore':
        cfg = cfg if isinstance(cfg, dict) else {}
        warnings = validate_config(cfg, debug_logging)
        defaults = cfg.get('defaults') if isinstance(cfg.get('defaults'), dict) else {}
        instances: Dict[str, InstanceSettings] = {}
        raw_instances = cfg.get('instances') if isinstance(cfg.get('instances'), dict) else {}
        for iid, entry in raw_instances.items():
            entry = entry if isinstance(entry, dict) else {}
            iid = str(iid)
            service = str(entry.get('service') or iid).lower()
            ep = service_endpoint(iid, entry)
            if service not in SUPPORTED_SERVICES or not ep['api_url'] or not ep['api_key']:
                continue
            merged = dict(defaults)
            merged.update(entry.get('cleaner') if isinstance(entry.get('cleaner'), dict) else {})
            instances[iid] = InstanceSettings(
                id=iid,
                service=service,
                api_url=str(ep['api_url']).rstrip('/'),
                api_key=str(ep['api_key']),
                config=CleanerConfig.from_dict(merged, debug_logging),
            )
        return cls(instances, path=path, raw=cfg, warnings=warnings)

    @classmethod
    def from_file(cls, path: str, debug_logging: bool = False) -> 'ConfigStore':
        return cls.from_dict(load_yaml(path), path=path, debug_logging=debug_logging)

    def instance_ids(self) -> List[str]:
        return list(self._instances.keys())

    def has(self, instance_id: str) -> bool:
        return instance_id in self._instances

    def instance(self, instance_id: str) -> InstanceSettings:
        try:
            return self._instances[instance_id]
        except KeyError:
            raise InstanceNotFoundError(instance_id) from None

    def get(self, instance_id: str) -> CleanerConfig:
        # Runs work on a private copy so later updates never leak into them
        return copy.deepcopy(self.instance(instance_id).config)

    def update(self, instance_id: str, patch: Dict[str, Any]) -> CleanerConfig:
        inst = self.instance(instance_id)
        changes = validate_patch(patch)
        merged = inst.config.to_dict()
        merged.update(changes)
        inst.config = CleanerConfig(**merged)
        self.save()
        return copy.deepcopy(inst.config)

    def record_run(self, instance_id: str, items_cleaned: int, items_skipped: int, when: Optional[float] = None) -> None:
        if instance_id not in self._instances:
            return
        cfg = self._instances[instance_id].config
        cfg.last_run_at = time.time() if when is None else when
        cfg.last_run_items_cleaned = int(items_cleaned)
        cfg.last_run_items_skipped = int(items_skipped)
        cfg.total_runs += 1
        cfg.total_items_cleaned += int(items_cleaned)

    def to_dict(self) -> Dict[str, Any]:
        out = copy.deepcopy(self.raw)
        raw_instances = out.setdefault('instances', {})
        for iid, inst in self._instances.items():
            entry = raw_instances.setdefault(iid, {})
            cleaner = {k: v for k, v in inst.config.to_dict().items() if k not in BOOKKEEPING_FIELDS}
            entry['cleaner'] = cleaner
        return out

    def save(self) -> None:
        if not self.path:
            return
        tmp_path = self.path + '.tmp'
        with open(tmp_path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        os.replace(tmp_path, self.path)

from __future__ import annotations

# Scheduling
MIN_INTERVAL_MINS = 5
MAX_INTERVAL_MINS = 1440
DEFAULT_INTERVAL_MINS = 30
MANUAL_CLEAN_COOLDOWN_MINS = 2
MAX_CLEAN_DURATION_SECONDS = 5 * 60
DEFAULT_SHUTDOWN_GRACE_SECONDS = 30
UNHEALTHY_AFTER_FAILURES = 3

# Stalled
MIN_STALLED_THRESHOLD_MINS = 10
MAX_STALLED_THRESHOLD_MINS = 1440
DEFAULT_STALLED_THRESHOLD_MINS = 60

# Slow (KB/s)
MIN_SLOW_SPEED_THRESHOLD = 10
MAX_SLOW_SPEED_THRESHOLD = 10000
DEFAULT_SLOW_SPEED_THRESHOLD = 100
MIN_SLOW_GRACE_PERIOD_MINS = 5
MAX_SLOW_GRACE_PERIOD_MINS = 1440
DEFAULT_SLOW_GRACE_PERIOD_MINS = 30

# Safety
MIN_MAX_REMOVALS = 1
MAX_MAX_REMOVALS = 100
DEFAULT_MAX_REMOVALS = 10
MIN_QUEUE_AGE_MINS = 1
MAX_QUEUE_AGE_MINS = 60
DEFAULT_QUEUE_AGE_MINS = 5

# Strikes
MIN_MAX_STRIKES = 2
MAX_MAX_STRIKES = 10
DEFAULT_MAX_STRIKES = 3
MIN_STRIKE_DECAY_HOURS = 1
MAX_STRIKE_DECAY_HOURS = 168
DEFAULT_STRIKE_DECAY_HOURS = 24

# Seeding
MIN_SEEDING_TIMEOUT_HOURS = 1
MAX_SEEDING_TIMEOUT_HOURS = 720
DEFAULT_SEEDING_TIMEOUT_HOURS = 72

# Estimated completion
MIN_ESTIMATED_MULTIPLIER = 1.5
MAX_ESTIMATED_MULTIPLIER = 10
DEFAULT_ESTIMATED_MULTIPLIER = 2.0

# Import pending
MIN_IMPORT_PENDING_MINS = 5
MAX_IMPORT_PENDING_MINS = 1440
DEFAULT_IMPORT_PENDING_MINS = 60

# Auto-import
MIN_AUTO_IMPORT_ATTEMPTS = 1
MAX_AUTO_IMPORT_ATTEMPTS = 5
DEFAULT_AUTO_IMPORT_ATTEMPTS = 2
MIN_AUTO_IMPORT_COOLDOWN_MINS = 5
MAX_AUTO_IMPORT_COOLDOWN_MINS = 240
DEFAULT_AUTO_IMPORT_COOLDOWN_MINS = 30
MAX_AUTO_IMPORTS_PER_RUN = 10
AUTO_IMPORT_DELAY_SECONDS = 0.2

CLEANUP_LEVELS = ('conservative', 'moderate', 'aggressive')
CLEANUP_LEVEL_ALIASES = {'safe': 'conservative'}
DEFAULT_IMPORT_BLOCK_CLEANUP_LEVEL = 'conservative'
PATTERN_MODES = ('defaults', 'include', 'exclude')
DEFAULT_IMPORT_BLOCK_PATTERN_MODE = 'defaults'

WHITELIST_FIELDS = ('title', 'indexer', 'tracker', 'client', 'category', 'tag')
WHITELIST_MATCH_TYPES = ('substring', 'exact', 'regex')

RULE_IDS = (
    'error_pattern',
    'import_blocked',
    'failed',
    'stalled',
    'slow',
    'seeding_timeout',
    'estimated_completion',
    'import_pending',
)
IMPORT_RULES = ('import_blocked', 'import_pending')

STALL_KEYWORDS = (
    'stalled',
    'no seeds',
    'no seeders',
    'not seeding',
    'dead torrent',
    'timed out',
    'timeout',
    'no connections',
    'metadata',
    'queued for checking',
)

FAILURE_KEYWORDS = (
    'failed',
    'failure',
    'import failed',
    'importfailed',
    'error',
    'cannot be imported',
    'could not be imported',
    'not a valid',
    'disk space',
    'permission denied',
    'access denied',
)

# Redundant or unwanted downloads
IMPORT_BLOCKED_SAFE_KEYWORDS = (
    'already exists',
    'already in library',
    'already imported',
    'duplicate',
    'quality not wanted',
    'not wanted in',
    'cutoff already met',
    'not an upgrade',
    'not a custom format upgrade',
    'do not improve on existing',
    'sample only',
    'sample file',
    'no files found',
    'no video files',
    'no audio files',
    'no book files',
    'bad nfo',
)

# The user may have intent here
IMPORT_BLOCKED_REVIEW_KEYWORDS = (
    'manual import',
    'manual interaction',
    'missing expected',
    'expected files',
    'automatic import is not possible',
    'was not found in the grabbed release',
    "couldn't find similar album",
    'match is not close enough',
    'has unmatched tracks',
)

# Possibly fixable by the user
IMPORT_BLOCKED_TECHNICAL_KEYWORDS = (
    'unpack required',
    'unpacking failed',
    'rar required',
    'password protected',
)

IMPORT_PENDING_RECOVERABLE_KEYWORDS = (
    'extracting',
    'unpacking',
    'processing',
    'copying',
    'moving',
    'importing',
    'scanning',
)

AUTO_IMPORT_SAFE_KEYWORDS = (
    'waiting for import',
    'import pending',
    'manual import required',
    'manual import',
    'waiting for manual',
    'matched to series by id',
    'matched to movie by id',
    'matched to artist by id',
    'matched to album by id',
    'matched to author by id',
    'matched to book by id',
    'via grab history',
    'title mismatch',
    'name mismatch',
)

AUTO_IMPORT_NEVER_KEYWORDS = (
    'no video files',
    'no audio files',
    'no book files',
    'no files found',
    'no files',
    'sample only',
    'sample file',
    'bad nfo',
    'password protected',
    'unpack required',
    'rar required',
    'unpacking failed',
    'extraction failed',
    'quality not wanted',
    'not an upgrade',
    'cutoff already met',
    'not wanted in',
    'not a custom format upgrade',
    'do not improve on existing',
    'already exists',
    'already in library',
    'already imported',
    'duplicate',
    "couldn't find similar album",
    'match is not close enough',
    'path does not exist',
    'file not found',
)

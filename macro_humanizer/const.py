"""Constants for the macro humanizer engine."""

DOMAIN = "macro_humanizer"

# Command types
COMMAND_KEYBOARD = "keyboard"
COMMAND_MOUSE = "mouse"
COMMAND_DELAY = "delay"
COMMAND_TEXT = "text"
COMMAND_TYPES = (COMMAND_KEYBOARD, COMMAND_MOUSE, COMMAND_DELAY, COMMAND_TEXT)

DELAY_ACTION = "wait"
HESITATION_ACTION = "pause"
KEY_DOWN_ACTION = "keydown"
KEY_UP_ACTION = "keyup"
BACKSPACE_KEY = "BackSpace"

# Pattern mining configuration
DEFAULT_MIN_SEQUENCE_LENGTH = 3
DEFAULT_MIN_FREQUENCY = 2
MAX_WINDOW_LENGTH = 15
MAX_PATTERNS = 100
DEFAULT_SIMILARITY_THRESHOLD = 0.8
PATTERN_NAME_MAX_KEYS = 30

# Cache
DEFAULT_CACHE_TTL = 60 * 60 * 24  # 24 hours
CACHE_BACKEND_MEMORY = "memory"
CACHE_BACKEND_SQL = "sql"
CACHE_BACKEND_NONE = "none"
CACHE_PREFIX_COMMANDS = "mcr:commands:"
CACHE_PREFIX_PATTERNS = "mcr:patterns:"
CACHE_PREFIX_IMAGE = "image:analysis:"
CACHE_PREFIX_USAGE = "pattern:usage:"

# Humanization
TYPING_SPEED_MULTIPLIERS = {
    "slow": 1.5,
    "medium": 1.0,
    "fast": 0.6,
}
HESITATION_MIN_MULTIPLIER = 3.0
HESITATION_MAX_MULTIPLIER = 8.0

# Queue names
QUEUE_PROCESSING = "processing"
QUEUE_IMAGE_ANALYSIS = "image-analysis"
QUEUE_PATTERN_MINING = "pattern-mining"

BACKOFF_EXPONENTIAL = "exponential"
BACKOFF_FIXED = "fixed"
BACKOFF_NONE = "none"

QUEUE_DEFAULTS = {
    QUEUE_PROCESSING: {
        "concurrency": 3,
        "attempts": 3,
        "backoff_type": BACKOFF_EXPONENTIAL,
        "backoff_delay": 2.0,
    },
    QUEUE_IMAGE_ANALYSIS: {
        "concurrency": 2,
        "attempts": 2,
        "backoff_type": BACKOFF_FIXED,
        "backoff_delay": 3.0,
    },
    QUEUE_PATTERN_MINING: {
        "concurrency": 1,
        "attempts": 2,
        "backoff_type": BACKOFF_NONE,
        "backoff_delay": 0.0,
    },
}
DEFAULT_JOB_PRIORITY = 10

# Job states
JOB_QUEUED = "queued"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_TERMINAL_STATES = (JOB_COMPLETED, JOB_FAILED)

# Storage
DEFAULT_DB_URL = "sqlite:///macro_humanizer.db"
DEFAULT_STORAGE_DIR = "./macros"
PATTERN_EXPORT_FILE = "patterns_for_review.json"

# Database table names
TABLE_PATTERNS = "mh_patterns"
TABLE_PATTERN_USAGE = "mh_pattern_usage"
TABLE_PROFILES = "mh_humanization_profiles"
TABLE_CACHE = "mh_cache_entries"

# UI element types
UI_ELEMENT_TYPES = ("button", "textfield", "menu", "icon", "checkbox", "label", "unknown")
SAME_ROW_THRESHOLD_PX = 50

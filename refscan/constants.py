"""Default values shared by config, queue, status and orchestrator modules."""

from __future__ import annotations

PACKAGE_NAME = "refscan"
PACKAGE_VERSION = "0.1.0"

SUPPORTED_CONFIG_SUFFIXES = (".yaml", ".yml", ".json")
JSON_INDENT = 2

DEFAULT_DATA_DIR = "refscan_data"
DEFAULT_SITE_ID = 1

DEFAULT_POST_TYPES = ("post", "page")
DEFAULT_POST_STATUSES = ("publish", "private", "draft", "future", "pending")
DEFAULT_TAXONOMIES = ("category", "post_tag")
DEFAULT_SCAN_USERS = True
DEFAULT_SCAN_MENUS = True
DEFAULT_SCAN_META = True
DEFAULT_CHECK_STATUS_CODES = True
DEFAULT_REDIRECTS_ENABLED = True

DEFAULT_IGNORED_META_KEYS = ("_edit_lock", "_edit_last", "_wp_page_template")
DEFAULT_IGNORED_BLOCKS = (
    "core/columns",
    "core/column",
    "core/group",
    "core/heading",
    "core/image",
    "core/list-item",
    "core/navigation-link",
    "core/navigation-submenu",
    "core/page-list-item",
    "core/paragraph",
    "core/separator",
    "core/spacer",
)

# Batch budget.
DEFAULT_TIME_LIMIT_SECONDS = 20.0
DEFAULT_MEMORY_CEILING = "256M"
UNLIMITED_MEMORY_CEILING = "16000M"
DEFAULT_MEMORY_FRACTION = 0.8
DEFAULT_LOCK_TTL_SECONDS = 60
DEFAULT_FILE_LOCK_TIMEOUT_SECONDS = 30.0
DEFAULT_HEALTH_CHECK_SECONDS = 300
DEFAULT_CONTINUATION_DELAY_SECONDS = 0.0
DEFAULT_RESUME_DELAY_SECONDS = 5.0

# Status checks.
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
DEFAULT_RATE_LIMIT_BACKOFF_SECONDS = 2.0
DEFAULT_REQUEST_PAUSE_SECONDS = 0.2
DEFAULT_MAX_STATUS_ATTEMPTS = 4
DEFAULT_CACHE_TTL_SECONDS = 600
DEFAULT_MAINTENANCE_DELAY_SECONDS = 10.0
DEFAULT_USER_AGENT = f"{PACKAGE_NAME}/{PACKAGE_VERSION}"

# Status-code sentinels stored on references.
STATUS_NOT_APPLICABLE = -1
STATUS_NO_RESPONSE = 0
STATUS_DEFERRED = 202
EPOCH_DATE = "1970-01-01 00:00:00"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Queue files.
QUEUE_SENTINEL = "_update_progress~"
QUEUE_DESCRIPTION_DELIMITER = "|"
QUEUE_MAX_GROUP_SIZE = 50
DEFAULT_GROUP_SIZES = {
    "menus": 1,
    "users": 10,
    "posts": 5,
    "terms": 10,
    "statuses": 5,
}

# Scan state.
HISTORY_LIMIT = 10
STATUS_REFRESH_RETRY_SECONDS = 600
MAINTENANCE_RETRY_SECONDS = 120

DEFAULT_REFRESH_FREQUENCY = "off"
DEFAULT_REFRESH_DAY_OF_WEEK = "sunday"
DEFAULT_REFRESH_DAY_OF_MONTH = 1
DEFAULT_REFRESH_TIME_OF_DAY = "03:00"

OPTION_PREFIX = "refscan_"

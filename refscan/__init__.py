"""Reference scanner package: config, shared types, and scan components."""

from .cache import StatusCache, cache_key
from .config import ScanConfig, SiteConfig, StatusRefreshConfig, load_config, save_config
from .errors import (
    AuthorizationError,
    InvalidScanTypeError,
    NoWorkFoundError,
    RedirectStoreUnavailable,
    RefScanError,
    ScanAlreadyRunningError,
    ScanBusyError,
    StaleTokenError,
)
from .extractor import ReferenceExtractor
from .orchestrator import BatchOutcome, BatchResult, ScanOrchestrator
from .queue import QueueEntry, QueueManager
from .redirects import FileRedirectStore, InMemoryRedirectStore, MatchingMode, RedirectCorrelator
from .repository import ContentRepository, InMemoryRepository, load_repository
from .scheduler import ManualScheduler, ThreadingScheduler
from .state import ScanState, ScanStateStore
from .stats import StatsCollector
from .status import StatusChecker
from .storage import OptionStore, ReferenceIndex
from .types import (
    Entity,
    EntityKind,
    FromWhere,
    MenuItem,
    Progress,
    QueueCategory,
    RedirectRule,
    Reference,
    ReferenceKind,
    ScanType,
    StatusResult,
)
from .url import NormalizedURL, normalize

__all__ = [
    "AuthorizationError",
    "BatchOutcome",
    "BatchResult",
    "ContentRepository",
    "Entity",
    "EntityKind",
    "FileRedirectStore",
    "FromWhere",
    "InMemoryRedirectStore",
    "InMemoryRepository",
    "InvalidScanTypeError",
    "ManualScheduler",
    "MatchingMode",
    "MenuItem",
    "NoWorkFoundError",
    "NormalizedURL",
    "OptionStore",
    "Progress",
    "QueueCategory",
    "QueueEntry",
    "QueueManager",
    "RedirectCorrelator",
    "RedirectRule",
    "RedirectStoreUnavailable",
    "Reference",
    "ReferenceExtractor",
    "ReferenceIndex",
    "ReferenceKind",
    "RefScanError",
    "ScanAlreadyRunningError",
    "ScanBusyError",
    "ScanConfig",
    "ScanOrchestrator",
    "ScanState",
    "ScanStateStore",
    "ScanType",
    "SiteConfig",
    "StaleTokenError",
    "StatsCollector",
    "StatusCache",
    "StatusChecker",
    "StatusRefreshConfig",
    "StatusResult",
    "ThreadingScheduler",
    "cache_key",
    "load_config",
    "load_repository",
    "normalize",
    "save_config",
]

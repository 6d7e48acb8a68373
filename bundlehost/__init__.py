"""bundlehost - Async plugin host that fans bundle operations out over stored instances."""

from bundlehost.config import Settings, get_settings
from bundlehost.core import (
    Bundle,
    BundleHostError,
    BundleInstance,
    BundleLoader,
    BundleProcessor,
    CustomerEventSource,
    EntityChangeEvent,
    EntitySource,
    EntitySourceManager,
    FanoutStats,
    PaginatedResult,
    PaginationRequest,
    Property,
    RecurringJob,
    ResilienceManager,
)
from bundlehost.scheduling import BackgroundJobWrapper, InMemoryJobScheduler, RecurringJobManager
from bundlehost.storage import (
    FileSystemInstanceStorage,
    InMemoryInstanceStorage,
    InstanceStorage,
    RedisInstanceStorage,
    create_storage,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "Bundle",
    "BundleInstance",
    "EntityChangeEvent",
    "Property",
    "RecurringJob",
    "PaginationRequest",
    "PaginatedResult",
    "BundleLoader",
    "ResilienceManager",
    "BundleProcessor",
    "FanoutStats",
    "BundleHostError",
    # Entity sources
    "EntitySource",
    "CustomerEventSource",
    "EntitySourceManager",
    # Scheduling
    "InMemoryJobScheduler",
    "BackgroundJobWrapper",
    "RecurringJobManager",
    # Storage
    "InstanceStorage",
    "InMemoryInstanceStorage",
    "FileSystemInstanceStorage",
    "RedisInstanceStorage",
    "create_storage",
    # Config
    "Settings",
    "get_settings",
    # Meta
    "__version__",
]

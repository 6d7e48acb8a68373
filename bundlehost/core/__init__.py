"""Core components for bundlehost.

Types:
    Bundle: Abstract base class for plugins.
    BundleInstance: Immutable persisted record bound to a bundle.
    EntityChangeEvent: Notification that a business entity changed.
    Property, RecurringJob: Metadata a bundle declares about itself.
    PaginationRequest, PaginatedResult: Page-by-page storage access.

Runtime:
    BundleLoader: Discovers plugin files and registers their bundles.
    ResilienceManager: Runs bundle handlers with a timeout and fault isolation.
    BundleProcessor: Fans operations out over every instance of a bundle.
    EntitySource, CustomerEventSource, EntitySourceManager: Entity event intake.

Constants:
    MAX_PAGE_SIZE: Largest page a storage backend will be asked for (1000).
"""

from bundlehost.core.bundle import Bundle
from bundlehost.core.errors import (
    BundleHostError,
    BundleInstantiationError,
    BundleLoadError,
    ExecutionFaultError,
    ExecutionTimeoutError,
    NotFoundError,
    SerializationError,
    StorageConfigurationError,
)
from bundlehost.core.loader import BundleLoader
from bundlehost.core.models import (
    MAX_PAGE_SIZE,
    BundleInstance,
    EntityChangeEvent,
    PaginatedResult,
    PaginationRequest,
    Property,
    RecurringJob,
)
from bundlehost.core.processor import BackgroundJobProcessor, BundleProcessor, FanoutStats
from bundlehost.core.resilience import ExecutionOutcome, ResilienceManager, ResilienceStats
from bundlehost.core.sources import CustomerEventSource, EntitySource, EntitySourceManager

__all__ = [
    "Bundle",
    "BundleInstance",
    "EntityChangeEvent",
    "Property",
    "RecurringJob",
    "PaginationRequest",
    "PaginatedResult",
    "MAX_PAGE_SIZE",
    "BundleLoader",
    "ResilienceManager",
    "ResilienceStats",
    "ExecutionOutcome",
    "BundleProcessor",
    "BackgroundJobProcessor",
    "FanoutStats",
    "EntitySource",
    "CustomerEventSource",
    "EntitySourceManager",
    "BundleHostError",
    "BundleLoadError",
    "BundleInstantiationError",
    "ExecutionTimeoutError",
    "ExecutionFaultError",
    "NotFoundError",
    "SerializationError",
    "StorageConfigurationError",
]

"""Pytest configuration, Hypothesis profiles, and shared bundle fixtures."""

import logging
import os
import threading

import pytest
from hypothesis import settings

from bundlehost.config import reset_settings
from bundlehost.core.bundle import Bundle
from bundlehost.core.loader import BundleLoader
from bundlehost.core.logging import ROOT_LOGGER
from bundlehost.core.models import BundleInstance, PaginatedResult, PaginationRequest, Property
from bundlehost.core.resilience import ResilienceManager
from bundlehost.storage.memory import InMemoryInstanceStorage

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


class RecordingBundle(Bundle):
    """Sync bundle that stamps every call and remembers what it saw."""

    id = "billing"
    friendly_name = "Billing"
    version = "2.0.0"
    properties = [Property(name="rate", default_value=10)]

    def __init__(self) -> None:
        self.calls: list[tuple[str, BundleInstance]] = []
        self._lock = threading.Lock()

    def handle_event(self, event_name: str, instance: BundleInstance) -> BundleInstance:
        with self._lock:
            self.calls.append((event_name, instance))
        properties = dict(instance.properties)
        properties["handled"] = event_name
        return instance.with_properties(properties)

    def upgrade_instance(self, instance: BundleInstance) -> BundleInstance:
        properties = dict(instance.properties)
        for prop in self.properties:
            properties.setdefault(prop.name, prop.default_value)
        properties["_upgraded"] = True
        properties["_originalVersion"] = instance.bundle_version
        return BundleInstance(
            id=instance.id,
            bundle_id=self.id,
            bundle_version=self.version,
            properties=properties,
        )


class CountingStorage(InMemoryInstanceStorage):
    """In-memory storage that counts page fetches and can refuse updates."""

    def __init__(self) -> None:
        super().__init__()
        self.page_requests: list[PaginationRequest] = []
        self.refuse_updates: set[str] = set()

    async def get_by_bundle_id(
        self, bundle_id: str, pagination: PaginationRequest
    ) -> PaginatedResult[BundleInstance]:
        self.page_requests.append(pagination)
        return await super().get_by_bundle_id(bundle_id, pagination)

    async def update(self, instance: BundleInstance) -> bool:
        if instance.id in self.refuse_updates:
            return False
        return await super().update(instance)


async def seed(storage: InMemoryInstanceStorage, bundle_id: str, count: int, version: str = "2.0.0") -> list[str]:
    """Create ``count`` instances of a bundle and return their ids in order."""
    ids = []
    for i in range(count):
        instance = BundleInstance(
            id=f"{bundle_id}-{i:05d}",
            bundle_id=bundle_id,
            bundle_version=version,
            properties={"n": i},
        )
        await storage.create(instance)
        ids.append(instance.id)
    return ids


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    """Isolate every test from ambient BUNDLEHOST_* variables and cached settings."""
    for key in list(os.environ):
        if key.startswith("BUNDLEHOST_"):
            monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(autouse=True)
def _restore_logging():
    """Undo handlers and levels that configure_logging leaves on the package logger."""
    logger = logging.getLogger(ROOT_LOGGER)
    handlers, level = list(logger.handlers), logger.level
    yield
    for handler in logger.handlers[:]:
        if handler not in handlers:
            logger.removeHandler(handler)
    logger.setLevel(level)


@pytest.fixture
def bundle() -> RecordingBundle:
    return RecordingBundle()


@pytest.fixture
def loader(bundle: RecordingBundle) -> BundleLoader:
    loader = BundleLoader()
    loader.register(bundle)
    return loader


@pytest.fixture
def storage() -> CountingStorage:
    return CountingStorage()


@pytest.fixture
def resilience():
    manager = ResilienceManager(timeout=2.0)
    yield manager
    manager.shutdown()


@pytest.fixture
def release_event():
    """Event that blocking handlers wait on; set at teardown to free worker threads."""
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio."""
    return "asyncio"

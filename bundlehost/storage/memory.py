"""In-memory instance storage."""

import asyncio

from bundlehost.core.logging import get_logger
from bundlehost.core.models import BundleInstance, PaginatedResult, PaginationRequest
from bundlehost.storage.base import require_id

logger = get_logger("storage.memory")


class InMemoryInstanceStorage:
    """Dict-backed storage for development and testing.

    Provides no durability: instances are lost when the process exits. Pages
    are returned in insertion order; updating an instance keeps its position.
    """

    def __init__(self) -> None:
        self._instances: dict[str, BundleInstance] = {}
        self._lock = asyncio.Lock()

    async def create(self, instance: BundleInstance) -> bool:
        if instance is None:
            raise ValueError("instance must not be None")
        async with self._lock:
            if instance.id in self._instances:
                return False
            self._instances[instance.id] = instance
        logger.debug(f"Created instance {instance.id}", extra={"instance_id": instance.id})
        return True

    async def get(self, instance_id: str) -> BundleInstance | None:
        require_id(instance_id)
        return self._instances.get(instance_id)

    async def get_all(self) -> list[BundleInstance]:
        return list(self._instances.values())

    async def get_by_bundle_id(
        self, bundle_id: str, pagination: PaginationRequest
    ) -> PaginatedResult[BundleInstance]:
        require_id(bundle_id, "bundle_id")
        async with self._lock:
            matching = [i for i in self._instances.values() if i.bundle_id == bundle_id]
        page = matching[pagination.skip : pagination.skip + pagination.page_size]
        return PaginatedResult[BundleInstance](
            items=page, page_number=pagination.page_number, page_size=pagination.page_size
        )

    async def update(self, instance: BundleInstance) -> bool:
        if instance is None:
            raise ValueError("instance must not be None")
        async with self._lock:
            if instance.id not in self._instances:
                return False
            self._instances[instance.id] = instance
        logger.debug(f"Updated instance {instance.id}", extra={"instance_id": instance.id})
        return True

    async def delete(self, instance_id: str) -> bool:
        require_id(instance_id)
        async with self._lock:
            return self._instances.pop(instance_id, None) is not None

    async def exists(self, instance_id: str) -> bool:
        require_id(instance_id)
        return instance_id in self._instances

    async def get_count(self) -> int:
        return len(self._instances)

    async def get_count_by_bundle_id(self, bundle_id: str) -> int:
        require_id(bundle_id, "bundle_id")
        return sum(1 for i in self._instances.values() if i.bundle_id == bundle_id)

    def clear(self) -> None:
        self._instances.clear()

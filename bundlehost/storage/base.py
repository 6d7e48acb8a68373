"""Storage protocol for bundle instances.

The processor never touches a database directly: every read and write goes
through an ``InstanceStorage``. Implementations must make each single-instance
create/update/delete atomic; nothing above them locks across a
read-enrich-write sequence.
"""

from typing import Protocol

from bundlehost.core.models import BundleInstance, PaginatedResult, PaginationRequest


class InstanceStorage(Protocol):
    """Protocol defining CRUD and paging for ``BundleInstance`` records.

    All id arguments must be non-blank; implementations raise ``ValueError``
    otherwise.
    """

    async def create(self, instance: BundleInstance) -> bool:
        """Store a new instance.

        Returns:
            True if created, False if an instance with this id already exists.
        """
        ...

    async def get(self, instance_id: str) -> BundleInstance | None:
        """Return the instance with this id, or None."""
        ...

    async def get_all(self) -> list[BundleInstance]:
        """Return every stored instance."""
        ...

    async def get_by_bundle_id(
        self, bundle_id: str, pagination: PaginationRequest
    ) -> PaginatedResult[BundleInstance]:
        """Return one page of instances bound to ``bundle_id``.

        Pages are disjoint and, absent concurrent writes, their union is the
        full set of matching instances.
        """
        ...

    async def update(self, instance: BundleInstance) -> bool:
        """Replace an existing instance.

        Returns:
            True if updated, False if no instance with this id exists.
        """
        ...

    async def delete(self, instance_id: str) -> bool:
        """Remove an instance. Returns False if it did not exist."""
        ...

    async def exists(self, instance_id: str) -> bool:
        ...

    async def get_count(self) -> int:
        ...

    async def get_count_by_bundle_id(self, bundle_id: str) -> int:
        ...


def require_id(value: str | None, name: str = "instance_id") -> str:
    """Validate a caller-supplied id, returning it unchanged."""
    if value is None or not str(value).strip():
        raise ValueError(f"{name} must not be empty")
    return value

"""File system instance storage: one serialized document per instance."""

import asyncio
from collections import defaultdict
from pathlib import Path

from bundlehost.core.errors import SerializationError
from bundlehost.core.logging import get_logger
from bundlehost.core.models import BundleInstance, PaginatedResult, PaginationRequest
from bundlehost.storage.base import require_id
from bundlehost.storage.serializer import JsonInstanceSerializer

logger = get_logger("storage.filesystem")


class FileSystemInstanceStorage:
    """Stores each instance as ``{directory}/{id}{file_extension}``.

    File I/O runs in worker threads via ``asyncio.to_thread`` so the event
    loop is never blocked. Writes to one id are serialized by a per-id lock.
    Listing reads every file, so paging cost grows with the directory size;
    pages are ordered by file name.

    Args:
        directory: Storage directory, created if missing.
        serializer: Document format. Defaults to JSON.
    """

    def __init__(
        self,
        directory: str | Path,
        serializer: JsonInstanceSerializer | None = None,
    ) -> None:
        if directory is None or not str(directory).strip():
            raise ValueError("directory must not be empty")
        self.directory = Path(directory)
        self.serializer = serializer or JsonInstanceSerializer()
        self._file_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        if not self.directory.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created storage directory: {self.directory}")

    def _path(self, instance_id: str) -> Path:
        if any(sep in instance_id for sep in ("/", "\\")) or instance_id in (".", ".."):
            raise ValueError(f"instance id {instance_id!r} is not a valid file name")
        return self.directory / f"{instance_id}{self.serializer.file_extension}"

    async def create(self, instance: BundleInstance) -> bool:
        if instance is None:
            raise ValueError("instance must not be None")
        path = self._path(instance.id)
        async with self._file_locks[instance.id]:
            if path.exists():
                return False
            try:
                data = self.serializer.serialize(instance)
                await asyncio.to_thread(path.write_text, data, "utf-8")
            except (OSError, SerializationError) as e:
                logger.error(
                    f"Failed to create instance {instance.id}: {e}",
                    extra={"instance_id": instance.id, "error": str(e)},
                )
                return False
        logger.info(f"Created instance {instance.id} at {path}", extra={"instance_id": instance.id})
        return True

    async def get(self, instance_id: str) -> BundleInstance | None:
        require_id(instance_id)
        path = self._path(instance_id)
        async with self._file_locks[instance_id]:
            if not path.exists():
                logger.debug(f"Instance {instance_id} not found at {path}")
                return None
            data = await asyncio.to_thread(path.read_text, "utf-8")
        instance = self.serializer.try_deserialize(data)
        if instance is None:
            logger.warning(
                f"Failed to deserialize instance {instance_id} from {path}",
                extra={"instance_id": instance_id},
            )
        return instance

    async def get_all(self) -> list[BundleInstance]:
        return await asyncio.to_thread(self._read_all)

    def _read_all(self) -> list[BundleInstance]:
        instances: list[BundleInstance] = []
        files = sorted(self.directory.glob(f"*{self.serializer.file_extension}"))
        logger.debug(f"Found {len(files)} instance files in {self.directory}")
        for path in files:
            try:
                data = path.read_text("utf-8")
            except OSError as e:
                logger.error(f"Error reading instance file {path}: {e}", extra={"error": str(e)})
                continue
            instance = self.serializer.try_deserialize(data)
            if instance is None:
                logger.warning(f"Failed to deserialize instance from file: {path}")
                continue
            instances.append(instance)
        return instances

    async def get_by_bundle_id(
        self, bundle_id: str, pagination: PaginationRequest
    ) -> PaginatedResult[BundleInstance]:
        require_id(bundle_id, "bundle_id")
        matching = [i for i in await self.get_all() if i.bundle_id == bundle_id]
        page = matching[pagination.skip : pagination.skip + pagination.page_size]
        logger.debug(
            f"Page {pagination.page_number} for bundle {bundle_id}: {len(page)} of {len(matching)}",
            extra={"bundle_id": bundle_id},
        )
        return PaginatedResult[BundleInstance](
            items=page, page_number=pagination.page_number, page_size=pagination.page_size
        )

    async def update(self, instance: BundleInstance) -> bool:
        if instance is None:
            raise ValueError("instance must not be None")
        path = self._path(instance.id)
        async with self._file_locks[instance.id]:
            if not path.exists():
                return False
            try:
                data = self.serializer.serialize(instance)
                await asyncio.to_thread(path.write_text, data, "utf-8")
            except (OSError, SerializationError) as e:
                logger.error(
                    f"Failed to update instance {instance.id}: {e}",
                    extra={"instance_id": instance.id, "error": str(e)},
                )
                return False
        logger.info(f"Updated instance {instance.id} at {path}", extra={"instance_id": instance.id})
        return True

    async def delete(self, instance_id: str) -> bool:
        require_id(instance_id)
        path = self._path(instance_id)
        try:
            async with self._file_locks[instance_id]:
                if not path.exists():
                    logger.debug(f"Instance {instance_id} not found for deletion at {path}")
                    return False
                await asyncio.to_thread(path.unlink)
        finally:
            self._file_locks.pop(instance_id, None)
        logger.info(f"Deleted instance {instance_id} from {path}", extra={"instance_id": instance_id})
        return True

    async def exists(self, instance_id: str) -> bool:
        require_id(instance_id)
        return self._path(instance_id).exists()

    async def get_count(self) -> int:
        return len(await self.get_all())

    async def get_count_by_bundle_id(self, bundle_id: str) -> int:
        require_id(bundle_id, "bundle_id")
        return sum(1 for i in await self.get_all() if i.bundle_id == bundle_id)

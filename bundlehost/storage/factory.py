"""Builds the configured ``InstanceStorage`` implementation."""

from typing import TYPE_CHECKING

from bundlehost.core.errors import StorageConfigurationError
from bundlehost.core.logging import get_logger
from bundlehost.storage.base import InstanceStorage
from bundlehost.storage.filesystem import FileSystemInstanceStorage
from bundlehost.storage.memory import InMemoryInstanceStorage
from bundlehost.storage.serializer import JsonInstanceSerializer

if TYPE_CHECKING:
    from bundlehost.config import Settings

logger = get_logger("storage")


def create_storage(settings: "Settings") -> InstanceStorage:
    """Return the storage backend selected by ``settings.storage_provider``.

    Raises:
        StorageConfigurationError: If the selected provider is missing settings.
    """
    errors = settings.validate_storage()
    if errors:
        raise StorageConfigurationError(errors)

    provider = settings.storage_provider
    logger.info(f"Using {provider} instance storage", extra={"storage_provider": provider})

    if provider == "memory":
        return InMemoryInstanceStorage()
    if provider == "filesystem":
        return FileSystemInstanceStorage(settings.storage_directory, JsonInstanceSerializer())
    if provider == "redis":
        from bundlehost.storage.redis import RedisInstanceStorage

        return RedisInstanceStorage(settings.redis_url, key_prefix=settings.redis_key_prefix)
    raise StorageConfigurationError([f"Unknown storage provider '{provider}'"])

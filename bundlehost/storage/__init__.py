"""Storage backends for bundle instances."""

from bundlehost.storage.base import InstanceStorage
from bundlehost.storage.factory import create_storage
from bundlehost.storage.filesystem import FileSystemInstanceStorage
from bundlehost.storage.memory import InMemoryInstanceStorage
from bundlehost.storage.redis import RedisInstanceStorage, StorageHealth
from bundlehost.storage.serializer import JsonInstanceSerializer

__all__ = [
    "InstanceStorage",
    "InMemoryInstanceStorage",
    "FileSystemInstanceStorage",
    "RedisInstanceStorage",
    "StorageHealth",
    "JsonInstanceSerializer",
    "create_storage",
]

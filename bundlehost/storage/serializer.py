"""JSON serialization of bundle instances for file-backed storage."""

import json
from typing import Any

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from bundlehost.core.errors import SerializationError
from bundlehost.core.models import BundleInstance


class JsonInstanceSerializer:
    """Serializes instances to indented, camelCase JSON documents.

    Property values go through pydantic's JSON mode, so datetimes become
    ISO8601 strings and do not round-trip back to ``datetime``.
    """

    format_name = "JSON"
    file_extension = ".json"

    def __init__(self, indent: int | None = 2) -> None:
        self._indent = indent

    def serialize(self, instance: BundleInstance) -> str:
        if instance is None:
            raise ValueError("instance must not be None")
        try:
            data = instance.model_dump(mode="json")
            document = {
                "id": data["id"],
                "bundleId": data["bundle_id"],
                "bundleVersion": data["bundle_version"],
                "properties": data["properties"],
            }
            return json.dumps(document, indent=self._indent)
        except (PydanticSerializationError, TypeError, ValueError) as e:
            raise SerializationError(
                f"Failed to serialize BundleInstance with id '{instance.id}': {e}"
            ) from e

    def deserialize(self, data: str) -> BundleInstance:
        if data is None or not data.strip():
            raise ValueError("data must not be empty")
        try:
            document: Any = json.loads(data)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Invalid JSON document: {e}") from e
        if not isinstance(document, dict):
            raise SerializationError(
                f"Expected a JSON object, got {type(document).__name__}"
            )
        try:
            return BundleInstance(
                id=document.get("id", ""),
                bundle_id=document.get("bundleId", ""),
                bundle_version=document.get("bundleVersion", ""),
                properties=document.get("properties") or {},
            )
        except ValidationError as e:
            raise SerializationError(f"Invalid BundleInstance document: {e}") from e

    def try_deserialize(self, data: str) -> BundleInstance | None:
        """Like ``deserialize`` but returns None instead of raising."""
        try:
            return self.deserialize(data)
        except (SerializationError, ValueError):
            return None

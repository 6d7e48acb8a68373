"""Data models shared by bundles, storage backends, and the processor."""

from datetime import UTC, datetime
from typing import Any, Generic, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationInfo, computed_field, field_validator

# Upper bound on a single page fetched from storage
MAX_PAGE_SIZE = 1000

T = TypeVar("T")


def _require_text(value: str, field_name: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{field_name} must not be empty")
    return value


class Property(BaseModel):
    """A configurable property declared by a bundle, with its default value."""

    name: str
    description: str = ""
    default_value: Any = None

    model_config = {"extra": "forbid", "frozen": True}


class RecurringJob(BaseModel):
    """A recurring background job declared by a bundle.

    Attributes:
        name: Job name, unique within its bundle.
        cron_schedule: Five-field cron expression, e.g. ``"*/5 * * * *"``.
        description: Optional free text, copied into enriched instances.
        parameters: Values handed to the job on every run.
    """

    name: str
    cron_schedule: str
    description: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _require_text(v, "name")

    @field_validator("cron_schedule")
    @classmethod
    def validate_cron_schedule(cls, v: str) -> str:
        return _require_text(v, "cron_schedule")

    def __str__(self) -> str:
        return f"{self.name} ({self.cron_schedule})"


class BundleInstance(BaseModel):
    """A persisted record bound to a bundle.

    Instances are immutable. Producing a new state always means building a
    new instance; the processor keeps the original ``id`` when it persists.

    Attributes:
        id: Stable identifier, generated if not provided.
        bundle_id: Id of the bundle this instance belongs to.
        bundle_version: Last bundle version that wrote this instance.
        properties: Ordered property values.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    bundle_id: str = ""
    bundle_version: str = ""
    properties: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return _require_text(v, "id")

    def with_properties(self, properties: dict[str, Any]) -> "BundleInstance":
        """Return a copy carrying ``properties`` instead of the current ones."""
        return BundleInstance(
            id=self.id,
            bundle_id=self.bundle_id,
            bundle_version=self.bundle_version,
            properties=dict(properties),
        )

    def with_id(self, instance_id: str) -> "BundleInstance":
        """Return a copy stored under ``instance_id``."""
        return BundleInstance(
            id=instance_id,
            bundle_id=self.bundle_id,
            bundle_version=self.bundle_version,
            properties=dict(self.properties),
        )


class EntityChangeEvent(BaseModel):
    """Notification that a business entity was created, updated, or deleted."""

    entity_type: str
    entity_id: str
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    entity_data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("entity_type", "entity_id", "event_type")
    @classmethod
    def validate_text(cls, v: str, info: ValidationInfo) -> str:
        return _require_text(v, info.field_name)

    @property
    def event_name(self) -> str:
        """Event name handed to bundles, e.g. ``entity.updated``."""
        return f"entity.{self.event_type}"


class PaginationRequest(BaseModel):
    """A 1-based page request. ``page_size`` is bounded to [1, MAX_PAGE_SIZE]."""

    page_number: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=MAX_PAGE_SIZE)

    model_config = {"extra": "forbid", "frozen": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def skip(self) -> int:
        return (self.page_number - 1) * self.page_size


class PaginatedResult(BaseModel, Generic[T]):
    """One page of results plus the request that produced it."""

    items: list[T]
    page_number: int
    page_size: int

    model_config = {"frozen": True}

    @property
    def has_previous_page(self) -> bool:
        return self.page_number > 1

    @property
    def count(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

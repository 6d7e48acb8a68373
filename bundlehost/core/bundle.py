"""Bundle base class for bundlehost plugins."""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, ClassVar

from bundlehost.core.models import BundleInstance, Property, RecurringJob


class Bundle(ABC):
    """Base class for dynamically loaded bundles.

    A bundle declares its identity and configuration schema as class
    attributes and reacts to named events by producing a new state for a
    ``BundleInstance``. Bundles must be constructible without arguments so the
    loader can instantiate them.

    Note: the loader does not de-duplicate by ``id``; keeping ids unique across
    a plugin directory is the plugin author's responsibility.
    """

    id: ClassVar[str] = ""
    friendly_name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    version: ClassVar[str] = "1.0.0"
    properties: ClassVar[list[Property]] = []
    recurring_jobs: ClassVar[list[RecurringJob]] = []

    def initialize(self) -> None:
        """Hook called once after loading. No-op by default."""

    def dispose(self) -> None:
        """Hook called on shutdown. No-op by default."""

    @abstractmethod
    def handle_event(
        self,
        event_name: str,
        instance: BundleInstance,
    ) -> BundleInstance | Awaitable[BundleInstance]:
        """Handle a named event for one instance.

        Args:
            event_name: Why the bundle is being called, e.g. ``entity.updated``.
            instance: The (possibly enriched) instance to process.

        Returns:
            The new instance state, or an awaitable resolving to it.
        """
        ...

    @abstractmethod
    def upgrade_instance(self, instance: BundleInstance) -> BundleInstance:
        """Upgrade an instance written by an older version of this bundle.

        Args:
            instance: Instance whose ``bundle_version`` differs from ``version``.

        Returns:
            A new instance at the current version.
        """
        ...

    def default_property_values(self) -> dict[str, Any]:
        return {prop.name: prop.default_value for prop in self.properties}

    def create_instance(
        self,
        properties: dict[str, Any] | None = None,
        instance_id: str | None = None,
    ) -> BundleInstance:
        """Build a new instance at the current version, seeded with defaults."""
        values = self.default_property_values()
        values.update(properties or {})
        kwargs: dict[str, Any] = {
            "bundle_id": self.id,
            "bundle_version": self.version,
            "properties": values,
        }
        if instance_id is not None:
            kwargs["id"] = instance_id
        return BundleInstance(**kwargs)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} id={self.id!r} version={self.version!r}>"

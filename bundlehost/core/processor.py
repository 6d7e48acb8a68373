"""Bundle processor: fans one operation out across every instance of a bundle.

The processor is the target of background jobs. Each operation resolves a
bundle, pages through its instances in storage, enriches each instance,
invokes the bundle, and writes the result back under the original id.

Failure policy:
- Bad arguments raise ``ValueError`` immediately.
- An unknown bundle, job, or instance is logged and the operation returns.
- A failure on one instance is logged and counted; the loop moves on.
- An unexpected failure outside the per-instance loop (e.g. storage paging
  blows up) is logged and re-raised so the scheduler can retry the job.

Pages are requested 1, 2, 3, ... until an empty page comes back, so N
instances at page size P take ceil(N/P) + 1 fetches. There is no checkpoint:
a retried job starts again from page 1.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from bundlehost.core.bundle import Bundle
from bundlehost.core.loader import BundleLoader
from bundlehost.core.logging import get_logger
from bundlehost.core.models import (
    MAX_PAGE_SIZE,
    BundleInstance,
    EntityChangeEvent,
    PaginationRequest,
)
from bundlehost.core.resilience import ResilienceManager
from bundlehost.storage.base import InstanceStorage

DEFAULT_PAGE_SIZE = 1000
DEFAULT_EXECUTE_EVENT = "background.execute"

logger = get_logger("processor")


@dataclass
class FanoutStats:
    """Aggregate counts from one fan-out operation over one bundle.

    ``attempted`` counts instances handed to the bundle; ``skipped`` counts
    instances passed over without a call (e.g. already at the current version).
    """

    bundle_id: str
    operation: str
    pages_fetched: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class BackgroundJobProcessor(Protocol):
    """Operations the job scheduler can trigger."""

    async def process_entity_event(self, event: EntityChangeEvent) -> list[FanoutStats]: ...

    async def execute_recurring_job(
        self, bundle_id: str, job_name: str, parameters: dict[str, Any] | None = None
    ) -> FanoutStats: ...

    async def execute_instance(
        self, instance_id: str, event_name: str = DEFAULT_EXECUTE_EVENT
    ) -> FanoutStats: ...

    async def upgrade_instances(self, bundle_id: str) -> FanoutStats: ...


InstanceHandler = Callable[[BundleInstance], Awaitable[bool]]


def _require(value: str | None, name: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{name} must not be empty")
    return value


class BundleProcessor:
    """Runs entity events, recurring jobs, single executions, and upgrades.

    Args:
        loader: Registry of loaded bundles.
        storage: Instance storage backend.
        resilience: Guards every ``handle_event`` call.
        page_size: Instances fetched per storage page, in [1, 1000].
    """

    def __init__(
        self,
        loader: BundleLoader,
        storage: InstanceStorage,
        resilience: ResilienceManager,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")
        self.loader = loader
        self.storage = storage
        self.resilience = resilience
        self.page_size = page_size

    # ------------------------------------------------------------------
    # Entity events
    # ------------------------------------------------------------------

    async def process_entity_event(self, event: EntityChangeEvent) -> list[FanoutStats]:
        """Run ``entity.{event_type}`` on every instance of every loaded bundle.

        A failure while processing one bundle is logged and the next bundle
        is still processed.
        """
        if event is None:
            raise ValueError("event must not be None")

        event_name = event.event_name
        logger.info(
            f"Processing entity event: {event.entity_type} {event.entity_id} - {event.event_type}",
            extra={"event_name": event_name, "entity_type": event.entity_type, "entity_id": event.entity_id},
        )

        bundles = self.loader.loaded_bundles
        if not bundles:
            logger.warning("No bundles loaded for entity event processing")
            return []

        results: list[FanoutStats] = []
        for bundle in bundles:
            stats = FanoutStats(bundle_id=bundle.id, operation="entity event")

            async def handle(instance: BundleInstance, bundle: Bundle = bundle) -> bool:
                enriched = self._enrich_with_entity_event(instance, event)
                result = await self.resilience.execute_handle_event(bundle, event_name, enriched)
                if result is None:
                    return False
                return await self._persist(result, instance.id, "entity event processing")

            try:
                await self._fan_out(bundle, stats, handle)
            except Exception as e:
                logger.error(
                    f"Error processing entity event for bundle {bundle.id}: {e}",
                    extra={"bundle_id": bundle.id, "event_name": event_name, "error": str(e)},
                    exc_info=True,
                )
            results.append(stats)

        logger.info(
            f"Entity event processing completed: {event.entity_type} {event.entity_id}",
            extra={"event_name": event_name, "bundles": len(results)},
        )
        return results

    # ------------------------------------------------------------------
    # Recurring jobs
    # ------------------------------------------------------------------

    async def execute_recurring_job(
        self,
        bundle_id: str,
        job_name: str,
        parameters: dict[str, Any] | None = None,
    ) -> FanoutStats:
        """Run a bundle's recurring job against all of its instances.

        The event name is ``parameters["eventName"]`` when given, otherwise
        ``recurring.{job_name}``.
        """
        _require(bundle_id, "bundle_id")
        _require(job_name, "job_name")
        parameters = dict(parameters or {})
        operation = f"recurring job '{job_name}'"
        stats = FanoutStats(bundle_id=bundle_id, operation=operation)

        bundle = self._resolve_bundle(bundle_id, operation)
        if bundle is None:
            return stats

        job = next((j for j in bundle.recurring_jobs if j.name == job_name), None)
        if job is None:
            logger.warning(
                f"Recurring job '{job_name}' not found in bundle '{bundle_id}'",
                extra={"bundle_id": bundle_id, "job_name": job_name},
            )
            return stats

        override = parameters.get("eventName")
        event_name = str(override) if override else f"recurring.{job_name}"

        async def handle(instance: BundleInstance) -> bool:
            enriched = self._enrich_with_job(instance, job_name, job.description, parameters)
            result = await self.resilience.execute_handle_event(bundle, event_name, enriched)
            if result is None:
                return False
            return await self._persist(result, instance.id, operation)

        await self._run_operation(bundle, stats, handle)
        return stats

    # ------------------------------------------------------------------
    # Single instance
    # ------------------------------------------------------------------

    async def execute_instance(
        self,
        instance_id: str,
        event_name: str = DEFAULT_EXECUTE_EVENT,
    ) -> FanoutStats:
        """Run one event against one stored instance and persist the result."""
        _require(instance_id, "instance_id")
        _require(event_name, "event_name")
        logger.info(
            f"Executing bundle for instance '{instance_id}' with event '{event_name}'",
            extra={"instance_id": instance_id, "event_name": event_name},
        )

        instance = await self.storage.get(instance_id)
        if instance is None:
            logger.warning(f"Instance '{instance_id}' not found", extra={"instance_id": instance_id})
            return FanoutStats(bundle_id="", operation="instance execution")

        stats = FanoutStats(bundle_id=instance.bundle_id, operation="instance execution")
        bundle = self._resolve_bundle(instance.bundle_id, stats.operation)
        if bundle is None:
            return stats

        stats.attempted = 1
        result = await self.resilience.execute_handle_event(bundle, event_name, instance)
        if result is not None and await self._persist(result, instance_id, "bundle execution"):
            stats.succeeded = 1
            logger.info(
                f"Executed bundle '{bundle.id}' for instance '{instance_id}'",
                extra={"bundle_id": bundle.id, "instance_id": instance_id, "event_name": event_name},
            )
        else:
            stats.failed = 1
        return stats

    # ------------------------------------------------------------------
    # Upgrades
    # ------------------------------------------------------------------

    async def upgrade_instances(self, bundle_id: str) -> FanoutStats:
        """Upgrade every instance whose version differs from the bundle's.

        ``upgrade_instance`` is called directly, without a timeout: upgrades
        are synchronous and trusted.
        """
        _require(bundle_id, "bundle_id")
        stats = FanoutStats(bundle_id=bundle_id, operation="bulk upgrade")

        bundle = self._resolve_bundle(bundle_id, stats.operation)
        if bundle is None:
            return stats

        async def handle(instance: BundleInstance) -> bool:
            upgraded = bundle.upgrade_instance(instance)
            if not isinstance(upgraded, BundleInstance):
                raise TypeError(
                    f"upgrade_instance must return BundleInstance, got {type(upgraded).__name__}"
                )
            ok = await self._persist(upgraded, instance.id, "upgrade")
            if ok:
                logger.debug(
                    f"Upgraded instance '{instance.id}' from '{instance.bundle_version}' to '{bundle.version}'",
                    extra={"bundle_id": bundle.id, "instance_id": instance.id},
                )
            return ok

        def needs_upgrade(instance: BundleInstance) -> bool:
            return instance.bundle_version != bundle.version

        await self._run_operation(bundle, stats, handle, select=needs_upgrade)
        return stats

    # ------------------------------------------------------------------
    # Ad-hoc execution
    # ------------------------------------------------------------------

    async def execute_bundles(
        self,
        event_name: str,
        property_values: dict[str, Any] | None = None,
    ) -> list[BundleInstance]:
        """Run every loaded bundle once against a fresh, unsaved instance.

        Each instance starts from the bundle's defaults overlaid with
        ``property_values``. Nothing is persisted.
        """
        _require(event_name, "event_name")
        bundles = self.loader.loaded_bundles
        logger.info(
            f"Executing {len(bundles)} bundles for event: {event_name}",
            extra={"event_name": event_name},
        )
        results: list[BundleInstance] = []
        for bundle in bundles:
            instance = bundle.create_instance(property_values)
            result = await self.resilience.execute_handle_event(bundle, event_name, instance)
            if result is not None:
                results.append(result)
        return results

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_bundle(self, bundle_id: str, operation: str) -> Bundle | None:
        bundle = self.loader.get_bundle_by_id(bundle_id)
        if bundle is None:
            logger.warning(
                f"Bundle '{bundle_id}' not found for {operation}",
                extra={"bundle_id": bundle_id, "operation": operation},
            )
        return bundle

    async def _run_operation(
        self,
        bundle: Bundle,
        stats: FanoutStats,
        handler: InstanceHandler,
        select: Callable[[BundleInstance], bool] | None = None,
    ) -> None:
        logger.info(
            f"Starting {stats.operation} for bundle '{bundle.id}'",
            extra={"bundle_id": bundle.id, "operation": stats.operation},
        )
        try:
            await self._fan_out(bundle, stats, handler, select)
        except Exception as e:
            logger.error(
                f"Error during {stats.operation} for bundle '{bundle.id}': {e}",
                extra={"bundle_id": bundle.id, "operation": stats.operation, "error": str(e)},
                exc_info=True,
            )
            raise
        logger.info(
            f"Completed {stats.operation} for bundle '{bundle.id}': "
            f"{stats.succeeded}/{stats.attempted} succeeded, {stats.skipped} skipped",
            extra={
                "bundle_id": bundle.id,
                "operation": stats.operation,
                "attempted": stats.attempted,
                "succeeded": stats.succeeded,
                "skipped": stats.skipped,
                "pages": stats.pages_fetched,
            },
        )

    async def _fan_out(
        self,
        bundle: Bundle,
        stats: FanoutStats,
        handler: InstanceHandler,
        select: Callable[[BundleInstance], bool] | None = None,
    ) -> None:
        page_number = 1
        while True:
            request = PaginationRequest(page_number=page_number, page_size=self.page_size)
            page = await self.storage.get_by_bundle_id(bundle.id, request)
            stats.pages_fetched += 1

            if page.is_empty:
                logger.debug(
                    f"No more instances for bundle {bundle.id} (page {page_number})",
                    extra={"bundle_id": bundle.id, "operation": stats.operation},
                )
                break

            logger.debug(
                f"Processing {page.count} instances for bundle {bundle.id} (page {page_number})",
                extra={"bundle_id": bundle.id, "operation": stats.operation},
            )
            for instance in page.items:
                if select is not None and not select(instance):
                    stats.skipped += 1
                    continue
                stats.attempted += 1
                if await self._process_safely(instance, stats.operation, handler):
                    stats.succeeded += 1
                else:
                    stats.failed += 1

            page_number += 1

    async def _process_safely(
        self, instance: BundleInstance, operation: str, handler: InstanceHandler
    ) -> bool:
        try:
            return await handler(instance)
        except Exception as e:
            logger.error(
                f"Failed {operation} for instance '{instance.id}': {e}",
                extra={"instance_id": instance.id, "operation": operation, "error": str(e)},
                exc_info=True,
            )
            return False

    async def _persist(self, result: BundleInstance, original_id: str, operation: str) -> bool:
        # Persist under the original id whatever id the bundle put on its result
        to_store = BundleInstance(
            id=original_id,
            bundle_id=result.bundle_id,
            bundle_version=result.bundle_version,
            properties=dict(result.properties),
        )
        updated = await self.storage.update(to_store)
        if updated:
            logger.debug(
                f"Updated instance '{original_id}' after {operation}",
                extra={"instance_id": original_id, "operation": operation},
            )
        else:
            logger.warning(
                f"Failed to update instance '{original_id}' after {operation}",
                extra={"instance_id": original_id, "operation": operation},
            )
        return updated

    @staticmethod
    def _enrich_with_entity_event(
        instance: BundleInstance, event: EntityChangeEvent
    ) -> BundleInstance:
        properties = dict(instance.properties)
        properties["_entityType"] = event.entity_type
        properties["_entityId"] = event.entity_id
        properties["_eventType"] = event.event_type
        properties["_eventTimestamp"] = event.timestamp
        for key, value in event.entity_data.items():
            properties[f"_entity_{key}"] = value
        for key, value in event.metadata.items():
            properties[f"_meta_{key}"] = value
        return instance.with_properties(properties)

    @staticmethod
    def _enrich_with_job(
        instance: BundleInstance,
        job_name: str,
        job_description: str | None,
        parameters: dict[str, Any],
    ) -> BundleInstance:
        properties = dict(instance.properties)
        properties["_recurringJobName"] = job_name
        properties["_recurringJobDescription"] = job_description
        properties["_executionTimestamp"] = datetime.now(UTC)
        for key, value in parameters.items():
            properties[f"_job_{key}"] = value
        return instance.with_properties(properties)

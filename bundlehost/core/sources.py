"""Entity sources and the manager that routes their events to processors.

An entity source watches some external system (a database change feed, a
message queue, a webhook receiver ...) and publishes ``EntityChangeEvent``s.
The ``EntitySourceManager`` subscribes to every registered source and
forwards each event to every registered processor.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from bundlehost.core.logging import get_logger
from bundlehost.core.models import EntityChangeEvent
from bundlehost.core.processor import BackgroundJobProcessor

logger = get_logger("sources")

EntityListener = Callable[["EntitySource", EntityChangeEvent], Awaitable[None]]


class EntitySource(ABC):
    """Base class for producers of entity change events.

    Subclasses implement ``initialize`` and ``shutdown`` and call ``emit``
    whenever they observe a change.
    """

    entity_type: str = ""

    def __init__(self, source_id: str, friendly_name: str | None = None) -> None:
        self.id = source_id
        self.friendly_name = friendly_name or self.__class__.__name__
        self._listeners: list[EntityListener] = []

    @property
    @abstractmethod
    def is_active(self) -> bool: ...

    @abstractmethod
    async def initialize(self) -> None:
        """Connect to the external system and start watching for changes."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Stop watching and release resources."""
        ...

    def subscribe(self, listener: EntityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: EntityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def emit(self, event: EntityChangeEvent) -> None:
        """Deliver an event to every subscribed listener, in order."""
        for listener in list(self._listeners):
            await listener(self, event)


class CustomerEventSource(EntitySource):
    """Entity source for customer changes, driven by explicit ``simulate_*`` calls.

    Stands in for a real integration; production sources would call ``emit``
    from their change-feed consumer instead.
    """

    entity_type = "customer"

    def __init__(self, source_id: str = "customer-source-default") -> None:
        super().__init__(source_id, friendly_name="Customer Event Source")
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    async def initialize(self) -> None:
        if self._active:
            logger.warning(f"CustomerEventSource '{self.id}' is already active")
            return
        self._active = True
        logger.info(f"Initialized CustomerEventSource '{self.id}'", extra={"source_id": self.id})

    async def shutdown(self) -> None:
        if not self._active:
            logger.warning(f"CustomerEventSource '{self.id}' is already inactive")
            return
        self._active = False
        logger.info(f"Shutdown CustomerEventSource '{self.id}'", extra={"source_id": self.id})

    async def simulate_created(self, customer_id: str, data: dict[str, Any] | None = None) -> None:
        await self._simulate(customer_id, "created", data)

    async def simulate_updated(self, customer_id: str, data: dict[str, Any] | None = None) -> None:
        await self._simulate(customer_id, "updated", data)

    async def simulate_deleted(self, customer_id: str, data: dict[str, Any] | None = None) -> None:
        await self._simulate(customer_id, "deleted", data)

    async def _simulate(
        self, customer_id: str, event_type: str, data: dict[str, Any] | None
    ) -> None:
        if not self._active:
            raise RuntimeError(f"CustomerEventSource '{self.id}' is not active")
        if customer_id is None or not customer_id.strip():
            raise ValueError("customer_id must not be empty")

        event = EntityChangeEvent(
            entity_type=self.entity_type,
            entity_id=customer_id,
            event_type=event_type,
            entity_data=dict(data or {}),
            metadata={
                "source": self.id,
                "timestamp": datetime.now(UTC).isoformat(),
                "eventVersion": "1.0",
            },
        )
        logger.info(f"Customer {event_type} event: {customer_id}", extra={"entity_id": customer_id})
        await self.emit(event)


class EntitySourceManager:
    """Registry of entity sources and processors, and the router between them."""

    def __init__(self) -> None:
        self._sources: dict[str, EntitySource] = {}
        self._processors: dict[str, BackgroundJobProcessor] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def entity_sources(self) -> dict[str, EntitySource]:
        return dict(self._sources)

    @property
    def processors(self) -> dict[str, BackgroundJobProcessor]:
        return dict(self._processors)

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("EntitySourceManager is closed")

    async def register_entity_source(self, source: EntitySource) -> None:
        """Subscribe to a source and initialize it.

        If initialization fails the registration is rolled back and the
        error is re-raised.
        """
        if source is None:
            raise ValueError("source must not be None")
        if not source.id or not source.id.strip():
            raise ValueError("Entity source must have a valid id")
        self._ensure_open()

        async with self._lock:
            if source.id in self._sources:
                logger.warning(
                    f"Entity source with id '{source.id}' is already registered",
                    extra={"source_id": source.id},
                )
                return
            source.subscribe(self._on_entity_changed)
            self._sources[source.id] = source
        logger.info(
            f"Registered entity source '{source.id}' for entity type '{source.entity_type}'",
            extra={"source_id": source.id},
        )

        try:
            await source.initialize()
        except Exception as e:
            logger.error(
                f"Failed to initialize entity source '{source.id}': {e}",
                extra={"source_id": source.id, "error": str(e)},
            )
            async with self._lock:
                self._sources.pop(source.id, None)
                source.unsubscribe(self._on_entity_changed)
            raise
        logger.info(f"Initialized entity source '{source.id}'", extra={"source_id": source.id})

    async def unregister_entity_source(self, source_id: str) -> None:
        if not source_id or not source_id.strip():
            raise ValueError("source_id must not be empty")
        self._ensure_open()

        async with self._lock:
            source = self._sources.pop(source_id, None)
        if source is None:
            logger.warning(
                f"Entity source with id '{source_id}' was not found for unregistration",
                extra={"source_id": source_id},
            )
            return

        source.unsubscribe(self._on_entity_changed)
        await source.shutdown()
        logger.info(f"Unregistered entity source '{source_id}'", extra={"source_id": source_id})

    def register_processor(self, processor_id: str, processor: BackgroundJobProcessor) -> None:
        if not processor_id or not processor_id.strip():
            raise ValueError("processor_id must not be empty")
        if processor is None:
            raise ValueError("processor must not be None")
        self._ensure_open()

        if processor_id in self._processors:
            logger.warning(
                f"Processor with id '{processor_id}' is already registered",
                extra={"processor_id": processor_id},
            )
            return
        self._processors[processor_id] = processor
        logger.info(f"Registered processor '{processor_id}'", extra={"processor_id": processor_id})

    def unregister_processor(self, processor_id: str) -> None:
        if not processor_id or not processor_id.strip():
            raise ValueError("processor_id must not be empty")
        self._ensure_open()

        if self._processors.pop(processor_id, None) is None:
            logger.warning(
                f"Processor with id '{processor_id}' was not found for unregistration",
                extra={"processor_id": processor_id},
            )
            return
        logger.info(f"Unregistered processor '{processor_id}'", extra={"processor_id": processor_id})

    async def dispatch(self, event: EntityChangeEvent, source_id: str = "unknown") -> int:
        """Forward an event to every registered processor concurrently.

        A failing processor is logged; the others still receive the event.

        Returns:
            Number of processors the event was dispatched to.
        """
        if self._closed or event is None:
            return 0

        logger.debug(
            f"Received entity change event from source '{source_id}': "
            f"{event.entity_type}.{event.entity_id} -> {event.event_type}",
            extra={"source_id": source_id, "event_name": event.event_name},
        )

        processors = list(self._processors.items())
        results = await asyncio.gather(
            *(processor.process_entity_event(event) for _, processor in processors),
            return_exceptions=True,
        )
        for (processor_id, _), result in zip(processors, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Error processing entity event in processor '{processor_id}' "
                    f"for entity {event.entity_type}.{event.entity_id}: {result}",
                    extra={"processor_id": processor_id, "event_name": event.event_name},
                    exc_info=result,
                )

        logger.info(
            f"Dispatched entity change event to {len(processors)} processors: "
            f"{event.entity_type}.{event.entity_id} -> {event.event_type}",
            extra={"event_name": event.event_name},
        )
        return len(processors)

    async def _on_entity_changed(self, source: EntitySource, event: EntityChangeEvent) -> None:
        await self.dispatch(event, source_id=source.id)

    async def close(self) -> None:
        """Shut down every registered source and clear both registries."""
        if self._closed:
            return
        logger.info(f"Closing EntitySourceManager with {len(self._sources)} entity sources")

        for source in list(self._sources.values()):
            source.unsubscribe(self._on_entity_changed)
            try:
                await source.shutdown()
                logger.debug(f"Shutdown entity source '{source.id}'", extra={"source_id": source.id})
            except Exception as e:
                logger.error(
                    f"Error shutting down entity source '{source.id}': {e}",
                    extra={"source_id": source.id, "error": str(e)},
                )

        self._sources.clear()
        self._processors.clear()
        self._closed = True

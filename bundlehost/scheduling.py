"""Background job scheduling: recurring bundle jobs and one-shot operations.

``JobScheduler`` is the seam to a job runner. ``InMemoryJobScheduler`` is an
in-process implementation driven by explicit ``run_due``/``drain`` calls; a
deployment may plug in any runner that offers the same three operations.

Jobs are delivered at least once: a failing job is logged and its error is
re-raised to whoever drove the scheduler, which may retry it. Operations on
the processor are not idempotent, so a retried job re-processes instances
from the first page.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import uuid4

from croniter import croniter

from bundlehost.core.bundle import Bundle
from bundlehost.core.loader import BundleLoader
from bundlehost.core.logging import get_logger
from bundlehost.core.models import EntityChangeEvent
from bundlehost.core.processor import DEFAULT_EXECUTE_EVENT, BundleProcessor, FanoutStats

logger = get_logger("scheduling")

DEFAULT_QUEUE = "default"
RECURRING_QUEUE = "recurring"
BUNDLES_QUEUE = "bundles"
ENTITIES_QUEUE = "entities"

JobFunc = Callable[..., Awaitable[Any]]


class JobScheduler(Protocol):
    """Operations bundlehost needs from a job runner."""

    def add_or_update(
        self,
        job_id: str,
        func: JobFunc,
        cron: str,
        queue: str = DEFAULT_QUEUE,
        kwargs: dict[str, Any] | None = None,
    ) -> None: ...

    def remove_if_exists(self, job_id: str) -> bool: ...

    def enqueue(
        self,
        func: JobFunc,
        queue: str = DEFAULT_QUEUE,
        kwargs: dict[str, Any] | None = None,
    ) -> str: ...


@dataclass
class ScheduledJob:
    """A recurring job registered with ``InMemoryJobScheduler``."""

    job_id: str
    func: JobFunc
    cron: str
    queue: str
    next_run: datetime
    kwargs: dict[str, Any] = field(default_factory=dict)
    last_run: datetime | None = None


@dataclass
class QueuedJob:
    job_id: str
    func: JobFunc
    queue: str
    kwargs: dict[str, Any] = field(default_factory=dict)


def next_occurrence(cron: str, after: datetime) -> datetime:
    """Return the first time matching ``cron`` strictly after ``after``.

    Raises:
        ValueError: If ``cron`` is not a valid cron expression.
    """
    try:
        return croniter(cron, after).get_next(datetime)
    except Exception as e:
        raise ValueError(f"Invalid cron expression: {cron}") from e


class InMemoryJobScheduler:
    """In-process scheduler with one bounded worker slot pool per queue.

    Args:
        queue_concurrency: Max jobs running at once, per queue name.
        default_concurrency: Capacity of queues not listed above.
        clock: Source of "now"; UTC wall clock by default.
    """

    def __init__(
        self,
        queue_concurrency: dict[str, int] | None = None,
        default_concurrency: int = 1,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if default_concurrency < 1:
            raise ValueError(f"default_concurrency must be >= 1, got {default_concurrency}")
        for name, capacity in (queue_concurrency or {}).items():
            if capacity < 1:
                raise ValueError(f"Queue '{name}' capacity must be >= 1, got {capacity}")
        self._capacity = dict(queue_concurrency or {})
        self._default_capacity = default_concurrency
        self._clock = clock or (lambda: datetime.now(UTC))
        self._jobs: dict[str, ScheduledJob] = {}
        self._pending: deque[QueuedJob] = deque()
        self._semaphores: dict[str, asyncio.Semaphore] = {}

    @property
    def recurring_jobs(self) -> dict[str, ScheduledJob]:
        return dict(self._jobs)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add_or_update(
        self,
        job_id: str,
        func: JobFunc,
        cron: str,
        queue: str = DEFAULT_QUEUE,
        kwargs: dict[str, Any] | None = None,
    ) -> None:
        if not job_id or not job_id.strip():
            raise ValueError("job_id must not be empty")
        next_run = next_occurrence(cron, self._clock())
        existing = self._jobs.get(job_id)
        self._jobs[job_id] = ScheduledJob(
            job_id=job_id,
            func=func,
            cron=cron,
            queue=queue,
            next_run=next_run,
            kwargs=dict(kwargs or {}),
            last_run=existing.last_run if existing else None,
        )
        logger.debug(
            f"Scheduled recurring job '{job_id}' ({cron}) on queue '{queue}', next run {next_run.isoformat()}",
            extra={"job_id": job_id, "queue": queue},
        )

    def remove_if_exists(self, job_id: str) -> bool:
        removed = self._jobs.pop(job_id, None) is not None
        if removed:
            logger.debug(f"Removed recurring job '{job_id}'", extra={"job_id": job_id})
        return removed

    def enqueue(
        self,
        func: JobFunc,
        queue: str = DEFAULT_QUEUE,
        kwargs: dict[str, Any] | None = None,
    ) -> str:
        job_id = str(uuid4())
        self._pending.append(QueuedJob(job_id=job_id, func=func, queue=queue, kwargs=dict(kwargs or {})))
        logger.debug(f"Enqueued job {job_id} on queue '{queue}'", extra={"job_id": job_id, "queue": queue})
        return job_id

    async def run_due(self, now: datetime | None = None) -> list[str]:
        """Run every recurring job whose next run is at or before ``now``.

        Each due job runs once even if several occurrences were missed, and
        its next run is computed from ``now``.

        Returns:
            Ids of the jobs that were triggered.

        Raises:
            Exception: The first job failure, after every due job has run.
        """
        now = now or self._clock()
        due = sorted(
            (job for job in self._jobs.values() if job.next_run <= now),
            key=lambda job: job.next_run,
        )
        for job in due:
            job.last_run = now
            job.next_run = next_occurrence(job.cron, now)

        await self._run_all([(job.job_id, job.queue, job.func, job.kwargs) for job in due])
        return [job.job_id for job in due]

    async def trigger(self, job_id: str) -> None:
        """Run a recurring job immediately without touching its schedule."""
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Recurring job '{job_id}' is not registered")
        await self._run(job.job_id, job.queue, job.func, job.kwargs)

    async def drain(self) -> int:
        """Run every queued one-shot job, including ones queued while draining.

        Returns:
            Number of jobs run.

        Raises:
            Exception: The first job failure, after the queue is empty.
        """
        ran = 0
        first_error: BaseException | None = None
        while self._pending:
            batch = list(self._pending)
            self._pending.clear()
            ran += len(batch)
            try:
                await self._run_all([(j.job_id, j.queue, j.func, j.kwargs) for j in batch])
            except Exception as e:
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error
        return ran

    async def _run_all(self, jobs: list[tuple[str, str, JobFunc, dict[str, Any]]]) -> None:
        results = await asyncio.gather(
            *(self._run(job_id, queue, func, kwargs) for job_id, queue, func, kwargs in jobs),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                raise result

    def _semaphore(self, queue: str) -> asyncio.Semaphore:
        semaphore = self._semaphores.get(queue)
        if semaphore is None:
            semaphore = asyncio.Semaphore(self._capacity.get(queue, self._default_capacity))
            self._semaphores[queue] = semaphore
        return semaphore

    async def _run(self, job_id: str, queue: str, func: JobFunc, kwargs: dict[str, Any]) -> Any:
        async with self._semaphore(queue):
            logger.debug(f"Running job '{job_id}' on queue '{queue}'", extra={"job_id": job_id, "queue": queue})
            try:
                return await func(**kwargs)
            except Exception as e:
                logger.error(
                    f"Job '{job_id}' failed on queue '{queue}': {e}",
                    extra={"job_id": job_id, "queue": queue, "error": str(e)},
                    exc_info=True,
                )
                raise


class BackgroundJobWrapper:
    """Job target that forwards to a ``BundleProcessor``.

    Each method runs on a fixed queue (see ``QUEUES``); the ``enqueue_*``
    helpers place work on the right one.
    """

    QUEUES = {
        "execute_recurring_job": RECURRING_QUEUE,
        "execute_instance": BUNDLES_QUEUE,
        "upgrade_instances": BUNDLES_QUEUE,
        "process_entity_event": ENTITIES_QUEUE,
    }

    def __init__(self, processor: BundleProcessor, scheduler: JobScheduler | None = None) -> None:
        if processor is None:
            raise ValueError("processor must not be None")
        self.processor = processor
        self.scheduler = scheduler

    async def execute_recurring_job(
        self, bundle_id: str, job_name: str, parameters: dict[str, Any] | None = None
    ) -> FanoutStats:
        return await self.processor.execute_recurring_job(bundle_id, job_name, parameters)

    async def execute_instance(
        self, instance_id: str, event_name: str = DEFAULT_EXECUTE_EVENT
    ) -> FanoutStats:
        return await self.processor.execute_instance(instance_id, event_name)

    async def upgrade_instances(self, bundle_id: str) -> FanoutStats:
        return await self.processor.upgrade_instances(bundle_id)

    async def process_entity_event(self, event: EntityChangeEvent) -> list[FanoutStats]:
        return await self.processor.process_entity_event(event)

    def enqueue_instance_execution(
        self, instance_id: str, event_name: str = DEFAULT_EXECUTE_EVENT
    ) -> str:
        return self._enqueue(
            "execute_instance", {"instance_id": instance_id, "event_name": event_name}
        )

    def enqueue_upgrade(self, bundle_id: str) -> str:
        return self._enqueue("upgrade_instances", {"bundle_id": bundle_id})

    def enqueue_entity_event(self, event: EntityChangeEvent) -> str:
        return self._enqueue("process_entity_event", {"event": event})

    def _enqueue(self, method: str, kwargs: dict[str, Any]) -> str:
        if self.scheduler is None:
            raise RuntimeError("No scheduler attached to BackgroundJobWrapper")
        return self.scheduler.enqueue(getattr(self, method), queue=self.QUEUES[method], kwargs=kwargs)


def recurring_job_id(bundle: Bundle, job_name: str) -> str:
    return f"{bundle.id}.{job_name}"


class RecurringJobManager:
    """Registers every loaded bundle's recurring jobs with a scheduler."""

    def __init__(
        self,
        loader: BundleLoader,
        scheduler: JobScheduler,
        wrapper: BackgroundJobWrapper,
    ) -> None:
        self.loader = loader
        self.scheduler = scheduler
        self.wrapper = wrapper

    def initialize_recurring_jobs(self) -> int:
        """Register jobs for all loaded bundles, loading them first if needed.

        Returns:
            Number of jobs registered.
        """
        bundles = self.loader.loaded_bundles
        if not bundles:
            bundles = self.loader.load_bundles()

        logger.info(f"Registering recurring jobs for {len(bundles)} bundles")
        total = 0
        for bundle in bundles:
            try:
                total += self.register_bundle_jobs(bundle)
            except Exception as e:
                logger.error(
                    f"Failed to register recurring jobs for bundle '{bundle.id}': {e}",
                    extra={"bundle_id": bundle.id, "error": str(e)},
                )
        logger.info(f"Registered {total} recurring jobs")
        return total

    def register_bundle_jobs(self, bundle: Bundle) -> int:
        """Register one bundle's jobs as ``{bundle.id}.{job.name}``.

        A job whose cron expression is blank or invalid is skipped with a warning.
        """
        registered = 0
        for job in bundle.recurring_jobs:
            job_id = recurring_job_id(bundle, job.name)
            if not job.cron_schedule or not job.cron_schedule.strip():
                logger.warning(
                    f"Skipping recurring job '{job_id}': empty cron schedule",
                    extra={"bundle_id": bundle.id, "job_id": job_id},
                )
                continue
            try:
                self.scheduler.add_or_update(
                    job_id,
                    self.wrapper.execute_recurring_job,
                    job.cron_schedule,
                    queue=RECURRING_QUEUE,
                    kwargs={
                        "bundle_id": bundle.id,
                        "job_name": job.name,
                        "parameters": dict(job.parameters),
                    },
                )
            except ValueError as e:
                logger.warning(
                    f"Skipping recurring job '{job_id}': {e}",
                    extra={"bundle_id": bundle.id, "job_id": job_id},
                )
                continue
            registered += 1
            logger.info(
                f"Registered recurring job '{job_id}' with schedule '{job.cron_schedule}'",
                extra={"bundle_id": bundle.id, "job_id": job_id},
            )
        return registered

    def remove_bundle_jobs(self, bundle_id: str) -> int:
        """Remove every recurring job registered for a bundle.

        Returns:
            Number of jobs removed.
        """
        bundle = self.loader.get_bundle_by_id(bundle_id)
        if bundle is None:
            logger.warning(
                f"Bundle '{bundle_id}' not found for job removal", extra={"bundle_id": bundle_id}
            )
            return 0
        removed = 0
        for job in bundle.recurring_jobs:
            if self.scheduler.remove_if_exists(recurring_job_id(bundle, job.name)):
                removed += 1
        logger.info(f"Removed {removed} recurring jobs for bundle '{bundle_id}'", extra={"bundle_id": bundle_id})
        return removed

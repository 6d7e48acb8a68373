"""Time-bounded, fault-isolated execution of bundle event handlers.

Bundle code is third party: it may hang, raise, or return garbage. Every call
made through ``ResilienceManager`` is bounded by a timeout and every failure
is turned into ``None`` so batch callers can move on to the next instance.

Each synchronous handler call gets its own daemon thread, so the timeout
starts when the handler starts and a hung bundle never holds a slot another
bundle is waiting for. When a call times out the caller stops waiting but the
thread is NOT interrupted (Python threads cannot be killed); it runs to
completion in the background and its result is discarded. Coroutine handlers
are awaited directly and are genuinely cancelled on timeout.
"""

import asyncio
import inspect
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

from bundlehost.core.bundle import Bundle
from bundlehost.core.errors import ExecutionFaultError, ExecutionTimeoutError
from bundlehost.core.logging import get_logger
from bundlehost.core.models import BundleInstance

DEFAULT_HANDLER_TIMEOUT = 30.0

logger = get_logger("resilience")


class ExecutionOutcome(Enum):
    """Terminal state of a single guarded invocation."""

    COMPLETED = "completed"
    FAULTED = "faulted"
    TIMED_OUT = "timed_out"


@dataclass
class ResilienceStats:
    """Counters across all invocations made through one manager."""

    completed: int = 0
    faulted: int = 0
    timed_out: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.faulted + self.timed_out


class ResilienceManager:
    """Runs ``Bundle.handle_event`` with timeout protection.

    Args:
        timeout: Default per-call bound in seconds.
    """

    def __init__(self, timeout: float = DEFAULT_HANDLER_TIMEOUT) -> None:
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.timeout = timeout
        self._threads: set[threading.Thread] = set()
        self._threads_lock = threading.Lock()
        self._stats = ResilienceStats()
        self._last_outcome: ExecutionOutcome | None = None

    @property
    def stats(self) -> ResilienceStats:
        return ResilienceStats(
            completed=self._stats.completed,
            faulted=self._stats.faulted,
            timed_out=self._stats.timed_out,
        )

    @property
    def last_outcome(self) -> ExecutionOutcome | None:
        return self._last_outcome

    @property
    def running_threads(self) -> int:
        """Sync handler threads still alive, abandoned ones included."""
        with self._threads_lock:
            return len(self._threads)

    async def execute_handle_event(
        self,
        bundle: Bundle,
        event_name: str,
        instance: BundleInstance,
        timeout: float | None = None,
    ) -> BundleInstance | None:
        """Invoke ``bundle.handle_event`` and return its result, or None on failure.

        Args:
            bundle: The bundle to call.
            event_name: Event name passed through to the bundle.
            instance: Instance passed through to the bundle.
            timeout: Per-call override of the default bound.

        Returns:
            The bundle's result, or None if it raised, returned a non-instance,
            or did not finish in time.

        Raises:
            ValueError: If bundle or instance is None, or event_name is blank.
        """
        if bundle is None:
            raise ValueError("bundle must not be None")
        if not event_name or not event_name.strip():
            raise ValueError("event_name must not be empty")
        if instance is None:
            raise ValueError("instance must not be None")

        limit = timeout if timeout is not None else self.timeout
        log_extra = {"bundle_id": bundle.id, "event_name": event_name, "instance_id": instance.id}
        logger.debug(f"Executing bundle '{bundle.id}' handle_event for '{event_name}'", extra=log_extra)

        try:
            result = await self._invoke(bundle, event_name, instance, limit)
        except ExecutionTimeoutError as e:
            self._record(ExecutionOutcome.TIMED_OUT)
            logger.error(str(e), extra={**log_extra, "timeout": limit})
            return None
        except ExecutionFaultError as e:
            self._record(ExecutionOutcome.FAULTED)
            logger.error(str(e), extra={**log_extra, "error": str(e.original)}, exc_info=e.original)
            return None

        self._record(ExecutionOutcome.COMPLETED)
        logger.debug(f"Bundle '{bundle.id}' completed '{event_name}'", extra=log_extra)
        return result

    async def _invoke(
        self,
        bundle: Bundle,
        event_name: str,
        instance: BundleInstance,
        limit: float,
    ) -> BundleInstance:
        try:
            if inspect.iscoroutinefunction(bundle.handle_event):
                pending = bundle.handle_event(event_name, instance)
            else:
                pending = self._start_thread(bundle, event_name, instance)
            result = await asyncio.wait_for(pending, timeout=limit)
        except TimeoutError:
            raise ExecutionTimeoutError(bundle.id, event_name, limit) from None
        except Exception as e:
            raise ExecutionFaultError(bundle.id, event_name, e) from e

        # A sync handler may still hand back an awaitable
        if inspect.isawaitable(result):
            try:
                result = await asyncio.wait_for(result, timeout=limit)
            except TimeoutError:
                raise ExecutionTimeoutError(bundle.id, event_name, limit) from None
            except Exception as e:
                raise ExecutionFaultError(bundle.id, event_name, e) from e

        if not isinstance(result, BundleInstance):
            raise ExecutionFaultError(
                bundle.id,
                event_name,
                TypeError(
                    f"handle_event must return BundleInstance, got {type(result).__name__}"
                ),
            )
        return result

    def _start_thread(
        self,
        bundle: Bundle,
        event_name: str,
        instance: BundleInstance,
    ) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def deliver(result: Any, error: Exception | None) -> None:
            # Already cancelled by wait_for when the call timed out
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        def run() -> None:
            result: Any = None
            error: Exception | None = None
            try:
                result = bundle.handle_event(event_name, instance)
            except Exception as e:
                error = e
            finally:
                with self._threads_lock:
                    self._threads.discard(threading.current_thread())
            try:
                loop.call_soon_threadsafe(deliver, result, error)
            except RuntimeError:
                logger.debug(
                    f"Discarding late result of bundle '{bundle.id}', event loop is closed",
                    extra={"bundle_id": bundle.id, "event_name": event_name},
                )

        thread = threading.Thread(target=run, name=f"bundle-exec-{bundle.id}", daemon=True)
        with self._threads_lock:
            self._threads.add(thread)
        try:
            thread.start()
        except RuntimeError:
            with self._threads_lock:
                self._threads.discard(thread)
            raise
        return future

    def _record(self, outcome: ExecutionOutcome) -> None:
        self._last_outcome = outcome
        if outcome is ExecutionOutcome.COMPLETED:
            self._stats.completed += 1
        elif outcome is ExecutionOutcome.FAULTED:
            self._stats.faulted += 1
        else:
            self._stats.timed_out += 1

    def shutdown(self, wait: bool = False, timeout: float | None = None) -> None:
        """Stop tracking handler threads, joining them first when ``wait`` is set.

        Threads are daemons, so abandoned handlers never block interpreter exit.
        """
        with self._threads_lock:
            threads = list(self._threads)
        if wait:
            for thread in threads:
                thread.join(timeout)
        elif threads:
            logger.warning(
                f"Shutting down with {len(threads)} bundle handler threads still running",
                extra={"threads": len(threads)},
            )

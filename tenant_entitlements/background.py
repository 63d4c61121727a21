"""
Bounded fire-and-forget cache population.

Work runs on a fixed-size thread pool. At most one task per tenant is in
flight and the number of pending tasks is capped, so a burst of cache
misses cannot grow the queue without bound. Callers never wait on the
returned future; failures are logged and otherwise invisible.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Callable, Dict, Optional

from tenant_entitlements.config import POPULATION_WORKERS

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 1000


class BackgroundPopulator:
    def __init__(
        self,
        max_workers: int = POPULATION_WORKERS,
        *,
        max_pending: int = DEFAULT_MAX_PENDING,
        executor: Optional[Executor] = None,
    ) -> None:
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="entitlement-populate"
        )
        self._owns_executor = executor is None
        self._max_pending = max_pending
        self._lock = threading.Lock()
        self._in_flight: Dict[object, "_Slot"] = {}
        self._closed = False

    def submit(self, key: object, task: Callable[[], object]) -> Optional[Future]:
        """
        Schedule task unless one for the same key is already queued or running.

        Returns the (new or existing) future, or None when the pool is
        saturated or shut down.
        """
        with self._lock:
            if self._closed:
                return None
            existing = self._in_flight.get(key)
            if existing is not None:
                return existing.future
            if len(self._in_flight) >= self._max_pending:
                logger.warning(
                    "Background population queue full; dropping task",
                    extra={"key": str(key), "pending": len(self._in_flight)},
                )
                return None
            # Reserve before submitting: an inline executor may finish the task immediately.
            slot = _Slot()
            self._in_flight[key] = slot

        try:
            future = self._executor.submit(self._run, key, slot, task)
        except RuntimeError as exc:
            self._release(key, slot)
            logger.warning("Background population rejected", extra={"key": str(key), "error": str(exc)})
            return None

        with self._lock:
            slot.future = future
        return future

    def _release(self, key: object, slot: "_Slot") -> None:
        with self._lock:
            if self._in_flight.get(key) is slot:
                del self._in_flight[key]

    def _run(self, key: object, slot: "_Slot", task: Callable[[], object]) -> None:
        try:
            task()
        except Exception as exc:
            logger.error(
                "Background entitlement population failed",
                extra={"key": str(key), "error": str(exc)},
            )
        finally:
            self._release(key, slot)

    def pending(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for currently scheduled tasks. True if all finished in time."""
        with self._lock:
            futures = [slot.future for slot in self._in_flight.values() if slot.future is not None]
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        if self._owns_executor:
            self._executor.shutdown(wait=wait)


class _Slot:
    __slots__ = ("future",)

    def __init__(self) -> None:
        self.future: Optional[Future] = None

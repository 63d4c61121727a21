"""
Alerts for fail-closed entitlement degradation.

Every read-path fallback to core-only is logged. Repeated fallbacks for the
same tenant within a minute raise a separate warning so an outage is
distinguishable from a single slow query.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Callable, DefaultDict, List, Optional

logger = logging.getLogger(__name__)

DEGRADED_THRESHOLD_PER_MIN = 10
WINDOW_SECONDS = 60


class DegradationMonitor:
    """Sliding one-minute window of fail-closed events per tenant."""

    def __init__(
        self,
        threshold_per_min: int = DEGRADED_THRESHOLD_PER_MIN,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._threshold = threshold_per_min
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._events: DefaultDict[str, List[float]] = defaultdict(list)

    def _record(self, key: str) -> int:
        now = self._clock()
        cutoff = now - WINDOW_SECONDS
        with self._lock:
            recent = [t for t in self._events[key] if t > cutoff]
            recent.append(now)
            self._events[key] = recent
            return len(recent)

    def emit_resolution_failure(self, tenant_id, operation: str, error_message: str) -> int:
        """Log a fail-closed fallback; returns the count in the current window."""
        key = str(tenant_id)
        logger.warning(
            "Entitlement resolution degraded to core only",
            extra={"tenant_id": tenant_id, "operation": operation, "error": error_message},
        )
        count = self._record(key)
        if count >= self._threshold:
            emit_degraded_alert(tenant_id, operation, count)
        return count

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


def emit_degraded_alert(tenant_id, operation: str, count: int) -> None:
    """Alert on repeated fail-closed fallbacks (>N/min)."""
    logger.error(
        "Repeated entitlement degradation",
        extra={"tenant_id": tenant_id, "operation": operation, "count_per_min": count},
    )

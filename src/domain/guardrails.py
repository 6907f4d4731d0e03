"""Domain Guardrails - Retry Policy and Pipeline Counters.

This module provides the guardrails that keep audit persistence best-effort:
a bounded retry policy with linear backoff, and a thread-safe set of counters
that serves as the observability hook for degraded or dropped audit work.

Security Impact:
    - Dropped audit records are always counted, never silently lost
    - Retry bounds prevent an unreachable store from growing work unboundedly

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Thread-safe design: counters are updated from writer threads and
      business threads concurrently
"""

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Iterator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for PersistenceWriter retries.

    Attempt k (1-based) of a retry waits k * backoff_seconds before
    re-attempting the same batch.

    Attributes:
        max_retries: Retries after the initial attempt (0 disables retrying)
        backoff_seconds: Time unit of the linear backoff
    """
    max_retries: int = 3
    backoff_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.backoff_seconds < 0:
            raise ValueError(f"backoff_seconds must be >= 0, got {self.backoff_seconds}")

    def delays(self) -> Iterator[float]:
        """Yield the wait before each retry attempt."""
        for attempt in range(1, self.max_retries + 1):
            yield attempt * self.backoff_seconds

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1


class AuditMetrics:
    """Thread-safe counters for the change-audit pipeline.

    Known counters:
        - records_skipped: Mutations filtered out by table policy
        - resolution_failures: Snapshot sides that degraded to absent
        - records_buffered: Records appended to a transaction buffer
        - buffers_discarded: Buffers dropped on rollback/abnormal completion
        - coordinator_fallbacks: Records written directly after a coordinator error
        - records_written / batches_written: Successful persistence
        - write_retries: Retry attempts performed
        - records_dropped: Records given up after exhausting retries

    Example Usage:
        ```python
        metrics = AuditMetrics()
        metrics.increment("records_written", 3)
        stats = metrics.get_statistics()
        ```
    """

    COUNTERS = (
        "records_skipped",
        "resolution_failures",
        "records_buffered",
        "buffers_discarded",
        "coordinator_fallbacks",
        "records_written",
        "batches_written",
        "write_retries",
        "records_dropped",
    )

    def __init__(self):
        self._lock = Lock()
        self._counters: dict[str, int] = {name: 0 for name in self.COUNTERS}

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_statistics(self) -> dict:
        """Get a snapshot of all counters.

        Returns:
            dict: Counter name → value
        """
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters = {name: 0 for name in self.COUNTERS}
            logger.info("Audit metrics reset")

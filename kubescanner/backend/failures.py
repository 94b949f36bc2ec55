"""Per-object upload failure bookkeeping and the backend metrics.

FailureTracker keeps one FailureRecord per object identity that is currently
failing to upload, plus a pointer to the record that has been failing the
longest.  Both are only mutated inside ``record_failure`` / ``record_success``
under a single lock, so the oldest pointer can never outlive its record.

Exported instruments (namespace ``kubernetes_scanner``):

backend_errors_total{code}             -- every failed upload of an object.
backend_retries{code}                  -- retries needed until success, by last failure code.
backend_oldest_failure                 -- first-failure timestamp of the oldest failing object.
backend_oldest_failure_age_seconds     -- age of that failure, computed at scrape time.

Both oldest-failure gauges read +Inf while nothing is failing.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.core import GaugeMetricFamily, Metric

from kubescanner.observability.logging import get_logger
from kubescanner.observability.metrics import METRICS_NAMESPACE

_log = get_logger("backend.failures")

RETRIES_BUCKETS = (1, 2, 3, 5, 10, 50)

_AGE_METRIC = f"{METRICS_NAMESPACE}_backend_oldest_failure_age_seconds"
_AGE_HELP = "Age of the first failed reconciliation of the oldest unreconciled resource in seconds"


@dataclass
class FailureRecord:
    """Upload failure state of one object."""

    identity: str
    code: int
    retries: int
    first_failed_at: float


class FailureTracker:
    """Thread-safe failure map feeding the backend metrics.

    Args:
        registry: Registry the four instruments are registered in.
        clock:    Returns the current unix time in seconds; injectable for tests.
    """

    def __init__(self, registry: CollectorRegistry, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._failures: dict[str, FailureRecord] = {}
        self._oldest: FailureRecord | None = None

        self.retries = Histogram(
            "backend_retries",
            "Number of retries until resources were upserted successfully, partitioned by their last failure code",
            ["code"],
            namespace=METRICS_NAMESPACE,
            buckets=RETRIES_BUCKETS,
            registry=registry,
        )
        self.errors = Counter(
            "backend_errors",
            "Number of errors sending resources to the backend",
            ["code"],
            namespace=METRICS_NAMESPACE,
            registry=registry,
        )
        self.oldest_failure_timestamp = Gauge(
            "backend_oldest_failure",
            "A timestamp of when the oldest unreconciled resource first failed reconciliation",
            namespace=METRICS_NAMESPACE,
            registry=registry,
        )
        self.oldest_failure_timestamp.set(math.inf)
        registry.register(self)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record_failure(self, identity: str, code: int) -> None:
        """Count a failed upload of *identity* that ended with HTTP *code* (0: no response)."""
        with self._lock:
            self.errors.labels(code=str(code)).inc()

            record = self._failures.get(identity)
            if record is not None:
                record.retries += 1
                record.code = code
                return

            record = FailureRecord(identity=identity, code=code, retries=1, first_failed_at=self._clock())
            self._failures[identity] = record
            if self._oldest is None or record.first_failed_at < self._oldest.first_failed_at:
                self._oldest = record
                self.oldest_failure_timestamp.set(record.first_failed_at)
                _log.info("set oldest failure", identity=identity)

    def record_success(self, identity: str) -> None:
        """Resolve the failure record of *identity*, if there is one."""
        with self._lock:
            record = self._failures.pop(identity, None)
            if record is None:
                return

            self.retries.labels(code=str(record.code)).observe(record.retries)

            if self._oldest is not record:
                return

            self._oldest = min(self._failures.values(), key=lambda r: r.first_failed_at, default=None)
            if self._oldest is None:
                self.oldest_failure_timestamp.set(math.inf)
                _log.info("removed oldest failure, no new ones")
            else:
                self.oldest_failure_timestamp.set(self._oldest.first_failed_at)
                _log.info("replaced oldest failure", new_oldest_failure=self._oldest.identity)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, identity: str) -> FailureRecord | None:
        """Return a copy of the record for *identity*."""
        with self._lock:
            record = self._failures.get(identity)
            return replace(record) if record is not None else None

    def oldest(self) -> FailureRecord | None:
        with self._lock:
            return replace(self._oldest) if self._oldest is not None else None

    def oldest_failure_age(self) -> float:
        """Seconds since the oldest failing object first failed, +Inf if none."""
        with self._lock:
            if self._oldest is None:
                return math.inf
            return self._clock() - self._oldest.first_failed_at

    def __len__(self) -> int:
        with self._lock:
            return len(self._failures)

    # ------------------------------------------------------------------
    # Custom collector protocol (age gauge only; the rest are registered
    # as regular instruments)
    # ------------------------------------------------------------------

    def describe(self) -> list[Metric]:
        return [GaugeMetricFamily(_AGE_METRIC, _AGE_HELP)]

    def collect(self) -> Iterator[Metric]:
        yield GaugeMetricFamily(_AGE_METRIC, _AGE_HELP, value=self.oldest_failure_age())

"""
Bounded rolling windows of readings, one per signal domain.

Writers are serialized with a lock; readers always get an immutable copy, so a
detection cycle never blocks (or is disturbed by) a concurrent ingest.
"""

import threading
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import ValidationError

from vitalwatch.domain.models import NUMERIC_DOMAINS, Reading, SignalDomain, VitalSigns

logger = structlog.get_logger(__name__)


class RollingWindow:
    """Fixed-capacity FIFO. Appending to a full window evicts the oldest reading."""

    def __init__(self, capacity: int = 100) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._readings: deque[Reading] = deque(maxlen=capacity)
        self.evicted = 0

    def append(self, reading: Reading) -> None:
        if len(self._readings) == self.capacity:
            self.evicted += 1
        self._readings.append(reading)

    def latest(self) -> Reading | None:
        return self._readings[-1] if self._readings else None

    def snapshot(self) -> tuple[Reading, ...]:
        return tuple(self._readings)

    def __len__(self) -> int:
        return len(self._readings)


@dataclass(frozen=True)
class StoreSnapshot:
    """Point-in-time copy of every window."""

    windows: Mapping[SignalDomain, tuple[Reading, ...]]

    def readings(self, domain: SignalDomain) -> tuple[Reading, ...]:
        return self.windows.get(domain, ())

    def latest(self, domain: SignalDomain) -> Reading | None:
        readings = self.readings(domain)
        return readings[-1] if readings else None

    def vitals(self, motion_lookback: int = 10) -> VitalSigns:
        """
        Merge the latest numeric readings into one VitalSigns view.

        Motion is reduced to the peak acceleration over the last few readings,
        since a fall impact is a spike rather than a steady value.
        """
        latest = [
            r
            for domain in NUMERIC_DOMAINS
            if domain is not SignalDomain.MOTION and (r := self.latest(domain)) is not None
        ]
        vitals = VitalSigns.from_readings(latest)

        magnitudes = [
            r.values["acceleration_g"]
            for r in self.readings(SignalDomain.MOTION)[-motion_lookback:]
            if "acceleration_g" in r.values
        ]
        if magnitudes:
            vitals = vitals.model_copy(update={"peak_acceleration_g": max(magnitudes)})
        return vitals

    def is_empty(self) -> bool:
        return not any(self.windows.values())


class MetricStore:
    """Owns one RollingWindow per signal domain."""

    def __init__(self, capacity: int = 100) -> None:
        self.capacity = capacity
        self._windows = {domain: RollingWindow(capacity) for domain in SignalDomain}
        self._lock = threading.Lock()
        self.rejected = 0
        self.logger = logger.bind(component="metric_store")

    def ingest(self, reading: Reading | Mapping[str, Any]) -> bool:
        """
        Append a reading to its domain window.

        Malformed input is dropped and logged, never raised. Returns whether
        the reading was stored.
        """
        if not isinstance(reading, Reading):
            try:
                reading = Reading.model_validate(reading)
            except (ValidationError, TypeError) as e:
                self.rejected += 1
                self.logger.warning("invalid_reading_dropped", error=str(e))
                return False

        with self._lock:
            self._windows[reading.domain].append(reading)
        return True

    def snapshot(self, domain: SignalDomain) -> tuple[Reading, ...]:
        with self._lock:
            return self._windows[domain].snapshot()

    def snapshot_all(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                windows={domain: window.snapshot() for domain, window in self._windows.items()}
            )

    def latest(self, domain: SignalDomain) -> Reading | None:
        with self._lock:
            return self._windows[domain].latest()

    def counts(self) -> dict[SignalDomain, int]:
        with self._lock:
            return {domain: len(window) for domain, window in self._windows.items()}

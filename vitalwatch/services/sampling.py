"""
Per-domain sensor sampling loops.

Key patterns:
- Protocol-based dependency injection (real hardware, mock generator or remote
  feed all look the same to the engine)
- Generic Result type for expected failures
- One independent loop per signal domain; a failing domain never stalls others
- Timeouts on every poll so a slow sensor reports nothing instead of blocking
"""

import asyncio
import time
from collections.abc import Callable
from typing import Generic, Protocol, TypeVar

import structlog

from vitalwatch.domain.errors import PermissionDenied, SensorUnavailable
from vitalwatch.domain.models import Reading, SignalDomain
from vitalwatch.services.metric_store import MetricStore

logger = structlog.get_logger(__name__)

# Generic Result type for explicit error handling
ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Why: Makes error paths visible in type system, forces handling decisions.
    When to use: When failure is expected business logic, not exceptional.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


class SensorAdapter(Protocol):
    """
    How the engine pulls one reading from a signal domain.

    Adapters raise SensorUnavailable for transient gaps and PermissionDenied
    when the platform refuses access to the domain.
    """

    domain: SignalDomain
    source_name: str

    async def poll(self) -> Reading: ...


class SensorSampler:
    """
    Drives one sensor adapter on a fixed interval and feeds the metric store.

    Error taxonomy:
    - SensorUnavailable: skip this cycle, keep sampling
    - PermissionDenied: disable this loop permanently
    - timeout: skip this cycle and notify ``on_timeout``
    - anything else: log and keep sampling
    """

    def __init__(
        self,
        adapter: SensorAdapter,
        store: MetricStore,
        interval_seconds: float,
        timeout_seconds: float,
        on_reading: Callable[[Reading], None] | None = None,
        on_timeout: Callable[[SignalDomain], None] | None = None,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.on_reading = on_reading
        self.on_timeout = on_timeout
        self.disabled = False
        self.samples_taken = 0
        self.logger = logger.bind(domain=adapter.domain.value, source=adapter.source_name)

    @property
    def domain(self) -> SignalDomain:
        return self.adapter.domain

    async def sample_once(self) -> Result[Reading, Exception]:
        """Poll the adapter once with a timeout and store the reading."""
        try:
            reading = await asyncio.wait_for(self.adapter.poll(), timeout=self.timeout_seconds)
        except Exception as e:
            return Result.err(e)

        if reading.domain is not self.adapter.domain:
            return Result.err(
                SensorUnavailable(
                    f"{self.adapter.source_name} returned a {reading.domain.value} reading"
                )
            )

        if not self.store.ingest(reading):
            return Result.err(SensorUnavailable("reading rejected by metric store"))

        self.samples_taken += 1
        if self.on_reading is not None:
            self.on_reading(reading)
        return Result.ok(reading)

    def _handle_error(self, error: Exception) -> None:
        if isinstance(error, PermissionDenied):
            self.disabled = True
            self.logger.error("sensor_permission_denied", error=str(error))
        elif isinstance(error, SensorUnavailable):
            self.logger.warning("sensor_unavailable", error=str(error))
        elif isinstance(error, TimeoutError):
            self.logger.warning("sensor_poll_timeout", timeout_seconds=self.timeout_seconds)
            if self.on_timeout is not None:
                self.on_timeout(self.adapter.domain)
        else:
            self.logger.error(
                "unexpected_sensor_error", error=str(error), error_type=type(error).__name__
            )

    async def run(self) -> None:
        """
        Sample until cancelled or until the domain is disabled.

        The sleep is drift-corrected so a slow poll shortens the next wait
        instead of stretching the cadence.
        """
        self.logger.info("sampling_started", interval_seconds=self.interval_seconds)

        while not self.disabled:
            cycle_start = time.perf_counter()

            result = await self.sample_once()
            if result.is_err():
                self._handle_error(result.unwrap_err())
                if self.disabled:
                    break

            elapsed = time.perf_counter() - cycle_start
            sleep_time = max(0.0, self.interval_seconds - elapsed)
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
            else:
                self.logger.warning(
                    "sampling_slower_than_interval",
                    elapsed_seconds=round(elapsed, 3),
                    interval_seconds=self.interval_seconds,
                )
                # yield to the loop so a stuck-fast sensor cannot starve others
                await asyncio.sleep(0)

        self.logger.warning("sampling_disabled", samples_taken=self.samples_taken)

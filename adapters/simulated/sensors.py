"""
Simulated sensor adapters.

These implement the SensorAdapter protocol with random but physiologically
plausible values, so the engine can run end to end without hardware.
"""

import asyncio
import random
from collections import deque
from collections.abc import Iterable
from datetime import UTC, datetime

import structlog

from vitalwatch.domain.errors import PermissionDenied, SensorUnavailable
from vitalwatch.domain.models import Reading, SignalDomain

logger = structlog.get_logger(__name__)


class SimulatedVitalsSensor:
    """
    Random vital signs for one numeric domain.

    Has a configurable failure rate to simulate flaky wearables.
    """

    def __init__(
        self,
        domain: SignalDomain,
        source_name: str | None = None,
        failure_rate: float = 0.0,
        latency_seconds: tuple[float, float] = (0.01, 0.1),
    ) -> None:
        if domain in (SignalDomain.BEHAVIORAL, SignalDomain.LOCATION):
            raise ValueError(f"{domain.value} is not a numeric vitals domain")
        self.domain = domain
        self.source_name = source_name or f"simulated-{domain.value}"
        self.failure_rate = failure_rate
        self.latency_seconds = latency_seconds
        self.logger = logger.bind(source=self.source_name)

    def _generate(self) -> dict[str, float]:
        if self.domain is SignalDomain.CARDIAC:
            return {
                "heart_rate": float(random.randint(60, 99)),
                "systolic": float(random.randint(110, 149)),
                "diastolic": float(random.randint(70, 89)),
                "temperature": round(random.uniform(98.0, 100.0), 1),
            }
        if self.domain is SignalDomain.RESPIRATORY:
            return {
                "spo2": float(random.randint(95, 99)),
                "respiratory_rate": float(random.randint(12, 19)),
            }
        if self.domain is SignalDomain.STRESS:
            return {
                "stress_level": float(random.randint(0, 99)),
                "activity_level": float(random.randint(0, 99)),
                "sleep_quality": float(random.randint(0, 99)),
                "mental_health_score": float(random.randint(0, 99)),
            }
        if self.domain is SignalDomain.MOTION:
            # gravity plus small jitter
            return {"acceleration_g": round(random.uniform(0.9, 1.3), 2)}
        return {"audio_distress": float(random.randint(0, 40))}

    async def poll(self) -> Reading:
        await asyncio.sleep(random.uniform(*self.latency_seconds))

        if random.random() < self.failure_rate:
            self.logger.debug("simulated_sensor_failure")
            raise SensorUnavailable(f"{self.source_name} dropped its connection")

        return Reading(domain=self.domain, values=self._generate(), source=self.source_name)


class SimulatedLocationSensor:
    """GPS fix with configurable latency. A latency past the sensor timeout clears the fix."""

    domain = SignalDomain.LOCATION

    def __init__(
        self,
        latitude: float = 40.7128,
        longitude: float = -74.0060,
        address: str = "New York, NY",
        latency_seconds: float = 0.05,
        source_name: str = "simulated-gps",
    ) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self.address = address
        self.latency_seconds = latency_seconds
        self.source_name = source_name

    async def poll(self) -> Reading:
        await asyncio.sleep(self.latency_seconds)
        return Reading(
            domain=self.domain,
            values={
                "latitude": self.latitude + random.uniform(-0.0005, 0.0005),
                "longitude": self.longitude + random.uniform(-0.0005, 0.0005),
            },
            text=self.address,
            source=self.source_name,
        )


class ScriptedSensor:
    """
    Replays a fixed sequence of readings, errors or delays.

    Each step is either a Reading (returned), an Exception (raised) or a float
    (seconds to hang before raising SensorUnavailable). When the script runs
    out, the last step repeats.
    """

    def __init__(
        self,
        domain: SignalDomain,
        steps: Iterable[Reading | Exception | float],
        source_name: str | None = None,
    ) -> None:
        self.domain = domain
        self.source_name = source_name or f"scripted-{domain.value}"
        self._steps: deque[Reading | Exception | float] = deque(steps)
        if not self._steps:
            raise ValueError("script needs at least one step")
        self.polls = 0

    async def poll(self) -> Reading:
        self.polls += 1
        step = self._steps.popleft() if len(self._steps) > 1 else self._steps[0]

        if isinstance(step, Exception):
            raise step
        if isinstance(step, float | int):
            await asyncio.sleep(step)
            raise SensorUnavailable(f"{self.source_name} produced nothing after {step}s")
        # refresh the timestamp so replayed readings look current
        return step.model_copy(
            update={"source": self.source_name, "timestamp": datetime.now(UTC)}
        )


class DeniedSensor:
    """A domain the platform refuses to share."""

    def __init__(self, domain: SignalDomain) -> None:
        self.domain = domain
        self.source_name = f"denied-{domain.value}"

    async def poll(self) -> Reading:
        raise PermissionDenied(self.domain)


def default_sensor_suite(
    failure_rate: float = 0.05,
) -> list[SimulatedVitalsSensor | SimulatedLocationSensor]:
    """One simulated sensor per domain except behavioral."""
    return [
        SimulatedVitalsSensor(SignalDomain.CARDIAC, failure_rate=failure_rate),
        SimulatedVitalsSensor(SignalDomain.RESPIRATORY, failure_rate=failure_rate),
        SimulatedVitalsSensor(SignalDomain.STRESS, failure_rate=failure_rate),
        SimulatedVitalsSensor(SignalDomain.MOTION, failure_rate=failure_rate),
        SimulatedVitalsSensor(SignalDomain.AUDIO, failure_rate=failure_rate),
        SimulatedLocationSensor(),
    ]

"""
Tests for sensor sampling loops and the Result type.

Covers the error taxonomy: transient gaps keep sampling, permission
denials disable the loop, timeouts notify the owner.
"""

import asyncio

import pytest

from adapters.simulated.sensors import DeniedSensor, ScriptedSensor, SimulatedVitalsSensor
from vitalwatch.domain.errors import PermissionDenied, SensorUnavailable
from vitalwatch.domain.models import Reading, SignalDomain
from vitalwatch.services.metric_store import MetricStore
from vitalwatch.services.sampling import Result, SensorSampler


class TestResult:
    """Test the Result type for explicit error handling."""

    def test_result_ok_creates_successful_result(self) -> None:
        result: Result[str, Exception] = Result.ok("success")
        assert result.is_ok()
        assert not result.is_err()
        assert result.unwrap() == "success"

    def test_result_error_creates_failed_result(self) -> None:
        error = ValueError("test error")
        result: Result[str, ValueError] = Result.err(error)
        assert not result.is_ok()
        assert result.is_err()
        assert result.unwrap_or("default") == "default"
        assert result.unwrap_err() is error

    def test_unwrap_raises_on_error_result(self) -> None:
        result: Result[str, ValueError] = Result.err(ValueError("test error"))

        with pytest.raises(ValueError, match="test error"):
            result.unwrap()

    def test_result_needs_exactly_one_side(self) -> None:
        with pytest.raises(ValueError):
            Result()
        with pytest.raises(ValueError):
            Result(value=1, error=ValueError("x"))


def _hr(value: float) -> Reading:
    return Reading(domain=SignalDomain.CARDIAC, values={"heart_rate": value})


def _sampler(sensor: object, store: MetricStore, **kwargs: object) -> SensorSampler:
    return SensorSampler(
        sensor,  # type: ignore[arg-type]
        store,
        interval_seconds=kwargs.pop("interval_seconds", 0.01),  # type: ignore[arg-type]
        timeout_seconds=kwargs.pop("timeout_seconds", 0.5),  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


class TestSensorSampler:
    async def test_sample_once_stores_reading(self) -> None:
        store = MetricStore()
        seen: list[Reading] = []
        sampler = _sampler(
            ScriptedSensor(SignalDomain.CARDIAC, [_hr(72)]), store, on_reading=seen.append
        )

        result = await sampler.sample_once()

        assert result.is_ok()
        assert store.latest(SignalDomain.CARDIAC) is not None
        assert sampler.samples_taken == 1
        assert len(seen) == 1

    async def test_wrong_domain_reading_rejected(self) -> None:
        store = MetricStore()
        sensor = ScriptedSensor(
            SignalDomain.AUDIO, [Reading(domain=SignalDomain.CARDIAC, values={"heart_rate": 1})]
        )

        result = await _sampler(sensor, store).sample_once()

        assert result.is_err()
        assert isinstance(result.unwrap_err(), SensorUnavailable)
        assert store.counts()[SignalDomain.CARDIAC] == 0

    async def test_unavailable_sensor_keeps_sampling(self) -> None:
        store = MetricStore()
        sensor = ScriptedSensor(
            SignalDomain.CARDIAC, [SensorUnavailable("flaky"), SensorUnavailable("flaky"), _hr(80)]
        )
        sampler = _sampler(sensor, store)

        task = asyncio.create_task(sampler.run())
        await asyncio.sleep(0.1)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert not sampler.disabled
        assert sensor.polls >= 3
        assert store.latest(SignalDomain.CARDIAC) is not None

    async def test_permission_denied_disables_loop(self) -> None:
        sampler = _sampler(DeniedSensor(SignalDomain.AUDIO), MetricStore())

        await asyncio.wait_for(sampler.run(), timeout=1.0)

        assert sampler.disabled
        assert sampler.samples_taken == 0

    async def test_denied_domain_does_not_affect_others(self) -> None:
        store = MetricStore()
        denied = _sampler(DeniedSensor(SignalDomain.AUDIO), store)
        healthy = _sampler(ScriptedSensor(SignalDomain.CARDIAC, [_hr(70)]), store)

        tasks = [asyncio.create_task(denied.run()), asyncio.create_task(healthy.run())]
        await asyncio.sleep(0.1)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        assert denied.disabled
        assert healthy.samples_taken > 1

    async def test_timeout_reports_domain(self) -> None:
        timed_out: list[SignalDomain] = []
        sensor = ScriptedSensor(SignalDomain.LOCATION, [5.0])
        sampler = _sampler(
            sensor, MetricStore(), timeout_seconds=0.05, on_timeout=timed_out.append
        )

        result = await sampler.sample_once()
        assert result.is_err()
        sampler._handle_error(result.unwrap_err())

        assert timed_out == [SignalDomain.LOCATION]
        assert not sampler.disabled

    async def test_unexpected_error_is_contained(self) -> None:
        sampler = _sampler(
            ScriptedSensor(SignalDomain.CARDIAC, [RuntimeError("driver crashed")]), MetricStore()
        )

        result = await sampler.sample_once()
        sampler._handle_error(result.unwrap_err())

        assert not sampler.disabled


class TestSimulatedSensors:
    async def test_simulated_cardiac_values_in_normal_range(self) -> None:
        sensor = SimulatedVitalsSensor(SignalDomain.CARDIAC, latency_seconds=(0.0, 0.0))

        reading = await sensor.poll()

        assert reading.domain is SignalDomain.CARDIAC
        assert 60 <= reading.values["heart_rate"] < 100

    async def test_failure_rate_raises_unavailable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("random.random", lambda: 0.0)
        sensor = SimulatedVitalsSensor(
            SignalDomain.AUDIO, failure_rate=0.5, latency_seconds=(0.0, 0.0)
        )

        with pytest.raises(SensorUnavailable):
            await sensor.poll()

    async def test_denied_sensor_raises_permission_denied(self) -> None:
        with pytest.raises(PermissionDenied):
            await DeniedSensor(SignalDomain.LOCATION).poll()

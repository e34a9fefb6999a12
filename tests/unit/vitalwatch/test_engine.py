"""
Integration-style tests for the monitoring engine.

Every collaborator is a fake or a scripted adapter; nothing touches a real
network or device.
"""

import asyncio
from collections.abc import AsyncIterator

import pytest

from adapters.simulated.sensors import DeniedSensor, ScriptedSensor, SimulatedLocationSensor
from vitalwatch.config import AppConfig, EscalationConfig, MonitoringConfig
from vitalwatch.domain.models import (
    CallOutcome,
    DispatchReport,
    EmergencyContact,
    EmergencyEvent,
    EmergencyType,
    EscalationState,
    Reading,
    SignalDomain,
)
from vitalwatch.services.audit import InMemoryAuditSink
from vitalwatch.services.engine import VitalWatchEngine


class RecordingAdapter:
    def __init__(self) -> None:
        self.calls: list[EmergencyEvent] = []
        self.notified: list[str] = []

    async def place_emergency_call(self, event: EmergencyEvent) -> bool:
        self.calls.append(event)
        return True

    async def notify_contact(self, contact: EmergencyContact, event: EmergencyEvent) -> bool:
        self.notified.append(contact.name)
        return True


def _config(**monitoring: float) -> AppConfig:
    defaults: dict[str, float] = {
        "vitals_interval_seconds": 0.02,
        "behavioral_interval_seconds": 0.02,
        "location_interval_seconds": 0.02,
        "audio_interval_seconds": 0.02,
        "motion_interval_seconds": 0.02,
        "detection_interval_seconds": 0.05,
        "insight_interval_seconds": 0.05,
        "sensor_timeout_seconds": 0.1,
    }
    defaults.update(monitoring)
    return AppConfig(
        monitoring=MonitoringConfig(**defaults),  # type: ignore[arg-type]
        escalation=EscalationConfig(grace_period_seconds=0.1),
        contacts=[EmergencyContact(name="Mom", phone="+1-555-0123")],
    )


@pytest.fixture
def adapter() -> RecordingAdapter:
    return RecordingAdapter()


@pytest.fixture
def sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
async def engine(
    adapter: RecordingAdapter, sink: InMemoryAuditSink
) -> AsyncIterator[VitalWatchEngine]:
    engine = VitalWatchEngine(_config(), dispatch_adapter=adapter, audit_sink=sink)
    yield engine
    await engine.stop()


class TestDetectionCycle:
    async def test_abnormal_vitals_open_a_session(self, engine: VitalWatchEngine) -> None:
        engine.store.ingest(Reading(domain=SignalDomain.CARDIAC, values={"heart_rate": 35}))

        event = await engine.run_detection_cycle()

        assert event is not None
        assert event.type is EmergencyType.CARDIAC
        session = engine.controller.active_session
        assert session is not None
        assert session.state is EscalationState.SUSPECTED

    async def test_normal_vitals_leave_engine_idle(self, engine: VitalWatchEngine) -> None:
        engine.store.ingest(Reading(domain=SignalDomain.CARDIAC, values={"heart_rate": 72}))

        assert await engine.run_detection_cycle() is None
        assert engine.controller.active_session is None

    async def test_two_detectors_share_one_session(self, engine: VitalWatchEngine) -> None:
        engine.store.ingest(Reading(domain=SignalDomain.CARDIAC, values={"heart_rate": 130}))
        engine.store.ingest(Reading(domain=SignalDomain.RESPIRATORY, values={"spo2": 88}))
        engine.store.ingest(Reading(domain=SignalDomain.BEHAVIORAL, text="please help"))

        await engine.run_detection_cycle()
        await engine.run_behavioral_scan()

        assert len(engine.controller.history) == 1
        session = engine.controller.active_session
        assert session is not None
        assert session.event.confidence == 70
        assert any("help" in s for s in session.event.symptoms)

    async def test_detector_failure_is_audited_not_raised(
        self, engine: VitalWatchEngine, sink: InMemoryAuditSink, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def explode(*args: object, **kwargs: object) -> None:
            raise RuntimeError("rule table corrupted")

        monkeypatch.setattr(engine.detector, "detect_snapshot", explode)

        assert await engine.run_detection_cycle() is None
        assert sink.records[-1].cause.startswith("detector_error: RuntimeError")

    async def test_escalation_dispatches_with_location(
        self, engine: VitalWatchEngine, adapter: RecordingAdapter
    ) -> None:
        engine.add_sensor(SimulatedLocationSensor(address="12 Main St", latency_seconds=0))
        await engine.samplers[0].sample_once()
        engine.store.ingest(Reading(domain=SignalDomain.CARDIAC, values={"heart_rate": 190}))

        await engine.run_detection_cycle()
        await asyncio.sleep(0.3)
        await engine.dispatcher.drain()

        assert len(adapter.calls) == 1
        assert adapter.calls[0].location is not None
        assert adapter.calls[0].location.address == "12 Main St"
        assert adapter.notified == ["Mom"]


class TestManualTrigger:
    async def test_manual_trigger_dispatches_immediately(
        self, engine: VitalWatchEngine, adapter: RecordingAdapter
    ) -> None:
        session = await engine.trigger_manual_emergency()

        assert session.state is EscalationState.RESOLVED
        assert session.event.source == "manual"
        assert session.event.confidence == 100
        assert session.event.symptoms == ["Manual emergency trigger activated"]
        report = session.dispatch_report
        assert isinstance(report, DispatchReport)
        assert report.emergency_call is CallOutcome.PLACED
        assert len(adapter.calls) == 1


class TestLifecycle:
    async def test_monitoring_session_samples_and_stops(self, adapter: RecordingAdapter) -> None:
        cardiac = ScriptedSensor(
            SignalDomain.CARDIAC, [Reading(domain=SignalDomain.CARDIAC, values={"heart_rate": 72})]
        )
        engine = VitalWatchEngine(_config(), sensors=[cardiac], dispatch_adapter=adapter)

        async with engine.monitoring_session():
            assert engine.is_monitoring
            await asyncio.sleep(0.15)

        assert not engine.is_monitoring
        assert cardiac.polls > 1
        status = engine.get_current_status()
        assert status.vitals.heart_rate == 72
        assert SignalDomain.CARDIAC in status.latest
        assert engine.latest_insight is not None
        assert adapter.calls == []

    async def test_denied_domain_reported_in_status(self, adapter: RecordingAdapter) -> None:
        engine = VitalWatchEngine(
            _config(), sensors=[DeniedSensor(SignalDomain.AUDIO)], dispatch_adapter=adapter
        )

        async with engine.monitoring_session():
            await asyncio.sleep(0.05)
            status = engine.get_current_status()

        assert status.disabled_domains == [SignalDomain.AUDIO]

    async def test_location_timeout_clears_location(self, engine: VitalWatchEngine) -> None:
        engine.add_sensor(SimulatedLocationSensor(latency_seconds=0))
        await engine.samplers[0].sample_once()
        assert engine.get_current_status().location is not None

        engine.samplers[0].adapter.latency_seconds = 1.0  # type: ignore[attr-defined]
        result = await engine.samplers[0].sample_once()
        engine.samplers[0]._handle_error(result.unwrap_err())

        assert engine.get_current_status().location is None

    async def test_analyze_on_demand(self, engine: VitalWatchEngine) -> None:
        engine.store.ingest(Reading(domain=SignalDomain.CARDIAC, values={"heart_rate": 72}))

        insight = await engine.analyze()

        assert insight.overall_health == 100
        assert insight.emergency_contacts == ["Mom"]

    async def test_contacts_argument_overrides_config(self, adapter: RecordingAdapter) -> None:
        contacts = [EmergencyContact(name="Neighbor", phone="+1-555-0789")]
        engine = VitalWatchEngine(_config(), dispatch_adapter=adapter, contacts=contacts)

        await engine.trigger_manual_emergency()
        await engine.stop()

        assert adapter.notified == ["Neighbor"]

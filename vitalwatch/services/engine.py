"""
Monitoring engine that wires sampling, detection, escalation and insights together.

This is the complete end-to-end pipeline:
1. Independent sampling loops push readings into the metric store
2. A fixed detection cycle runs the rule table over the latest snapshot
3. Positive detections go to the escalation controller
4. Confirmation, dismissal or timer expiry drive dispatch
5. Every transition lands in the audit trail

Architecture pattern: explicit, dependency-injected instance. Every adapter
(sensors, dispatch, confirmation UI, audit sink) is passed in, so tests swap in
fakes without touching the engine.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import structlog
from pydantic import ValidationError

from vitalwatch.config import AppConfig, get_config
from vitalwatch.domain.models import (
    EmergencyContact,
    EmergencyEvent,
    EmergencyType,
    EscalationSession,
    HealthInsight,
    Location,
    Reading,
    Severity,
    SignalDomain,
    VitalSigns,
)
from vitalwatch.services.anomaly_detection import BehavioralPatternDetector, VitalsAnomalyDetector
from vitalwatch.services.audit import AuditSink, AuditTrail, create_audit_sink
from vitalwatch.services.dispatch import EmergencyDispatchAdapter, NotifierDispatch
from vitalwatch.services.escalation import ConfirmationCollaborator, EscalationController
from vitalwatch.services.insights import InsightAggregator, RecommendationAgent
from vitalwatch.services.metric_store import MetricStore
from vitalwatch.services.sampling import SensorAdapter, SensorSampler

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StatusSnapshot:
    """Answer to the current-status query."""

    monitoring: bool
    latest: dict[SignalDomain, Reading]
    vitals: VitalSigns
    location: Location | None
    active_session: EscalationSession | None
    disabled_domains: list[SignalDomain] = field(default_factory=list)


class VitalWatchEngine:
    """
    Main service orchestrating the monitoring pipeline.

    Owns one metric store, one escalation controller and one dispatcher.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        sensors: Iterable[SensorAdapter] = (),
        dispatch_adapter: EmergencyDispatchAdapter | None = None,
        confirmation: ConfirmationCollaborator | None = None,
        audit_sink: AuditSink | None = None,
        contacts: list[EmergencyContact] | None = None,
        recommender: RecommendationAgent | None = None,
    ) -> None:
        self.config = config or get_config()
        self.logger = logger.bind(component="vitalwatch_engine")

        monitoring = self.config.monitoring
        contacts = contacts if contacts is not None else self.config.contacts

        self.store = MetricStore(capacity=monitoring.window_capacity)
        self.audit = AuditTrail(audit_sink or create_audit_sink(self.config.audit))
        self.detector = VitalsAnomalyDetector(self.config.detection)
        self.behavioral_detector = BehavioralPatternDetector(self.config.detection)
        self.dispatcher = NotifierDispatch(dispatch_adapter, contacts, self.config.escalation)
        self.controller = EscalationController(
            self.dispatcher, self.audit, self.config.escalation, confirmation
        )

        if recommender is None and self.config.ai_provider.enabled:
            recommender = RecommendationAgent(self.config.ai_provider)
        self.aggregator = InsightAggregator(
            contacts, recommender, motion_lookback=monitoring.motion_lookback_readings
        )

        self.samplers: list[SensorSampler] = []
        self.latest_insight: HealthInsight | None = None
        self._current_location: Location | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._is_running = False

        for sensor in sensors:
            self.add_sensor(sensor)

        self.logger.info(
            "engine_initialized",
            sensors=len(self.samplers),
            contacts=len(contacts),
            ai_recommendations=recommender is not None,
        )

    @property
    def is_monitoring(self) -> bool:
        return self._is_running

    def _interval_for(self, domain: SignalDomain) -> float:
        monitoring = self.config.monitoring
        return {
            SignalDomain.CARDIAC: monitoring.vitals_interval_seconds,
            SignalDomain.RESPIRATORY: monitoring.vitals_interval_seconds,
            SignalDomain.STRESS: monitoring.vitals_interval_seconds,
            SignalDomain.BEHAVIORAL: monitoring.behavioral_interval_seconds,
            SignalDomain.LOCATION: monitoring.location_interval_seconds,
            SignalDomain.AUDIO: monitoring.audio_interval_seconds,
            SignalDomain.MOTION: monitoring.motion_interval_seconds,
        }[domain]

    def add_sensor(self, adapter: SensorAdapter) -> SensorSampler:
        """Register a sensor adapter. Starts sampling right away if the engine is running."""
        if not hasattr(adapter, "poll"):
            raise TypeError(f"Sensor {adapter} must implement SensorAdapter protocol")

        sampler = SensorSampler(
            adapter,
            self.store,
            interval_seconds=self._interval_for(adapter.domain),
            timeout_seconds=self.config.monitoring.sensor_timeout_seconds,
            on_reading=self._on_reading,
            on_timeout=self._on_sensor_timeout,
        )
        self.samplers.append(sampler)
        if self._is_running:
            self._tasks.append(
                asyncio.create_task(sampler.run(), name=f"sampler-{adapter.source_name}")
            )

        self.logger.info("sensor_added", domain=adapter.domain.value, source=adapter.source_name)
        return sampler

    def _on_reading(self, reading: Reading) -> None:
        if reading.domain is not SignalDomain.LOCATION:
            return
        try:
            self._current_location = Location.from_reading(reading)
        except (KeyError, ValidationError) as e:
            self.logger.warning("invalid_location_reading", error=str(e))

    def _on_sensor_timeout(self, domain: SignalDomain) -> None:
        # a stale fix is worse than none when dispatching responders
        if domain is SignalDomain.LOCATION:
            self._current_location = None

    # -- cycles ---------------------------------------------------------------

    async def run_detection_cycle(self) -> EmergencyEvent | None:
        """Run the vitals detector once over the latest snapshot."""
        try:
            snapshot = self.store.snapshot_all()
            event = self.detector.detect_snapshot(
                snapshot,
                self._current_location,
                motion_lookback=self.config.monitoring.motion_lookback_readings,
            )
        except Exception as e:
            self.logger.exception("detection_cycle_failed", error=str(e))
            self.audit.component_error("detector", e)
            return None

        if event is not None:
            await self.controller.submit(event)
        return event

    async def run_behavioral_scan(self) -> EmergencyEvent | None:
        """Scan recent behavioral entries for emergency keywords."""
        try:
            entries = self.store.snapshot(SignalDomain.BEHAVIORAL)
            event = self.behavioral_detector.scan(entries, self._current_location)
        except Exception as e:
            self.logger.exception("behavioral_scan_failed", error=str(e))
            self.audit.component_error("behavioral_detector", e)
            return None

        if event is not None:
            await self.controller.submit(event)
        return event

    async def run_insight_rollup(self) -> HealthInsight | None:
        try:
            self.latest_insight = await self.aggregator.analyze_enriched(self.store.snapshot_all())
        except Exception as e:
            self.logger.exception("insight_rollup_failed", error=str(e))
            self.audit.component_error("insight_aggregator", e)
            return None
        return self.latest_insight

    # -- public API -----------------------------------------------------------

    async def trigger_manual_emergency(self) -> EscalationSession:
        """Bypass detection and dispatch right away."""
        event = EmergencyEvent(
            type=EmergencyType.PHYSICAL,
            confidence=100,
            severity=Severity.HIGH,
            symptoms=["Manual emergency trigger activated"],
            recommended_action="Immediate attention required",
            should_escalate=True,
            location=self._current_location,
            source="manual",
        )
        self.logger.warning("manual_emergency_triggered")
        return await self.controller.trigger_manual(event)

    def get_current_status(self) -> StatusSnapshot:
        snapshot = self.store.snapshot_all()
        latest = {
            domain: reading
            for domain in SignalDomain
            if (reading := snapshot.latest(domain)) is not None
        }
        return StatusSnapshot(
            monitoring=self._is_running,
            latest=latest,
            vitals=snapshot.vitals(self.config.monitoring.motion_lookback_readings),
            location=self._current_location,
            active_session=self.controller.active_session,
            disabled_domains=[s.domain for s in self.samplers if s.disabled],
        )

    async def analyze(self) -> HealthInsight:
        """On-demand insight over the current window."""
        return await self.aggregator.analyze_enriched(self.store.snapshot_all())

    # -- lifecycle ------------------------------------------------------------

    async def _periodic(
        self, name: str, interval: float, job: Callable[[], Awaitable[object]]
    ) -> None:
        log = self.logger.bind(task=name)
        log.info("periodic_task_started", interval_seconds=interval)
        while self._is_running:
            started = time.perf_counter()
            try:
                await job()
            except Exception as e:
                log.exception("periodic_task_failed", error=str(e))
            elapsed = time.perf_counter() - started
            await asyncio.sleep(max(0.0, interval - elapsed))

    async def start(self) -> None:
        if self._is_running:
            return
        self._is_running = True
        monitoring = self.config.monitoring

        for sampler in self.samplers:
            self._tasks.append(
                asyncio.create_task(sampler.run(), name=f"sampler-{sampler.adapter.source_name}")
            )
        self._tasks.extend(
            [
                asyncio.create_task(
                    self._periodic(
                        "detection", monitoring.detection_interval_seconds, self.run_detection_cycle
                    )
                ),
                asyncio.create_task(
                    self._periodic(
                        "behavioral_scan",
                        monitoring.behavioral_interval_seconds,
                        self.run_behavioral_scan,
                    )
                ),
                asyncio.create_task(
                    self._periodic(
                        "insights", monitoring.insight_interval_seconds, self.run_insight_rollup
                    )
                ),
            ]
        )
        self.logger.info("monitoring_started", tasks=len(self._tasks))

    async def stop(self) -> None:
        """Stop every loop and timer, then wait out contact fan-outs and audit writes."""
        self.logger.info("stopping_monitoring")
        self._is_running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.controller.shutdown()
        await self.dispatcher.drain()
        await asyncio.to_thread(self.audit.flush)
        self.logger.info("monitoring_stopped")

    @asynccontextmanager
    async def monitoring_session(self) -> AsyncIterator["VitalWatchEngine"]:
        """Start on enter, always stop on exit."""
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

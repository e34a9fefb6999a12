"""
End-to-end demonstration of the monitoring pipeline.

This script walks through:
1. Configuration loading
2. Sampling from simulated sensors
3. Anomaly detection on injected abnormal vitals
4. Escalation with dismissal, timer expiry and manual trigger
5. Dispatch fallback when the emergency call fails

Run with: uv run python demo.py
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.simulated.notifiers import ConsoleDispatchAdapter, ScriptedConfirmation
from adapters.simulated.sensors import default_sensor_suite
from vitalwatch.config import (
    AppConfig,
    EscalationConfig,
    MonitoringConfig,
    configure_logging,
    get_config,
    print_config_summary,
)
from vitalwatch.domain.models import EmergencyContact, Reading, SignalDomain
from vitalwatch.services.audit import InMemoryAuditSink
from vitalwatch.services.engine import VitalWatchEngine
from vitalwatch.services.escalation import ConfirmationDecision

console = Console()

DEMO_CONTACTS = [
    EmergencyContact(name="Mom", phone="+1-555-0123", priority=1),
    EmergencyContact(name="Dr. Smith", phone="+1-555-0456", priority=2),
]


def demo_config() -> AppConfig:
    """Short intervals so the demo finishes in seconds."""
    return AppConfig(
        monitoring=MonitoringConfig(
            vitals_interval_seconds=0.2,
            motion_interval_seconds=0.1,
            audio_interval_seconds=0.3,
            location_interval_seconds=0.5,
            detection_interval_seconds=0.5,
            insight_interval_seconds=1.0,
        ),
        escalation=EscalationConfig(grace_period_seconds=1.0),
        contacts=DEMO_CONTACTS,
    )


def show_status(engine: VitalWatchEngine) -> None:
    status = engine.get_current_status()
    table = Table(title="Current Vitals")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for name, value in status.vitals.model_dump().items():
        if value is not None:
            table.add_row(name, f"{value:.1f}")
    console.print(table)
    if status.location:
        console.print(f"Location: {status.location.address}", style="dim")


def show_audit(sink: InMemoryAuditSink) -> None:
    table = Table(title="Audit Trail")
    table.add_column("Session", style="cyan")
    table.add_column("From", style="magenta")
    table.add_column("To", style="magenta")
    table.add_column("Cause", style="yellow")
    for record in sink.records:
        table.add_row(
            (record.session_id or "-")[:8],
            record.from_state.value if record.from_state else "-",
            record.to_state.value if record.to_state else "-",
            record.cause,
        )
    console.print(table)


async def demo_normal_monitoring() -> bool:
    console.print(Panel("Normal monitoring", style="blue"))
    engine = VitalWatchEngine(demo_config(), sensors=default_sensor_suite(failure_rate=0.1))

    async with engine.monitoring_session():
        await asyncio.sleep(1.5)

    show_status(engine)
    insight = await engine.analyze()
    console.print(f"Overall health: {insight.overall_health}/100, risk {insight.risk_score:.0f}")
    console.print(f"Next check-in in {insight.next_check_in_interval.days} days")
    return True


async def demo_dismissed_alert() -> bool:
    console.print(Panel("Suspected emergency, dismissed by the user", style="blue"))
    sink = InMemoryAuditSink()
    dispatch = ConsoleDispatchAdapter(console)
    engine = VitalWatchEngine(
        demo_config(),
        dispatch_adapter=dispatch,
        confirmation=ScriptedConfirmation(ConfirmationDecision.DISMISS, delay_seconds=0.2),
        audit_sink=sink,
    )

    engine.store.ingest(Reading(domain=SignalDomain.CARDIAC, values={"heart_rate": 135}))
    engine.store.ingest(Reading(domain=SignalDomain.RESPIRATORY, values={"spo2": 92}))
    event = await engine.run_detection_cycle()
    if event is None:
        console.print("No event detected", style="red")
        return False

    console.print(f"Detected {event.type.value} / {event.severity.value} ({event.confidence}%)")
    await asyncio.sleep(1.5)
    await engine.stop()

    show_audit(sink)
    return not dispatch.calls


async def demo_automatic_escalation() -> bool:
    console.print(Panel("Critical vitals, nobody answers", style="blue"))
    sink = InMemoryAuditSink()
    dispatch = ConsoleDispatchAdapter(console, call_succeeds=False, failing_contacts={"Dr. Smith"})
    engine = VitalWatchEngine(
        demo_config(),
        dispatch_adapter=dispatch,
        confirmation=ScriptedConfirmation(None),
        audit_sink=sink,
    )

    engine.store.ingest(Reading(domain=SignalDomain.CARDIAC, values={"heart_rate": 190}))
    await engine.run_detection_cycle()
    await asyncio.sleep(1.5)
    await engine.stop()

    session = engine.controller.history[-1]
    report = session.dispatch_report
    if report is None:
        console.print("Nothing was dispatched", style="red")
        return False

    console.print(f"Resolution: {session.resolution} (automatic={session.automatic})")
    for line in report.fallback_instructions:
        console.print(f"  - {line}", style="yellow")
    for outcome in report.contact_outcomes:
        console.print(f"  {outcome.contact.name}: {outcome.status}")
    show_audit(sink)
    return session.automatic


async def demo_manual_trigger() -> bool:
    console.print(Panel("Manual emergency trigger", style="blue"))
    engine = VitalWatchEngine(demo_config(), dispatch_adapter=ConsoleDispatchAdapter(console))
    session = await engine.trigger_manual_emergency()
    await engine.stop()
    console.print(f"Session {session.session_id[:8]} -> {session.state.value}")
    return session.dispatch_report is not None


async def main() -> None:
    config = get_config()
    configure_logging(config.logging)
    print_config_summary()

    results = {
        "Normal monitoring": await demo_normal_monitoring(),
        "Dismissed alert": await demo_dismissed_alert(),
        "Automatic escalation": await demo_automatic_escalation(),
        "Manual trigger": await demo_manual_trigger(),
    }

    summary = Table(title="Demo Summary")
    summary.add_column("Scenario", style="cyan")
    summary.add_column("Result", style="white")
    for name, ok in results.items():
        summary.add_row(name, "[green]PASS[/green]" if ok else "[red]FAIL[/red]")
    console.print(summary)


if __name__ == "__main__":
    asyncio.run(main())

"""
Fan-out of a confirmed or escalated emergency to external notifiers.

Architecture pattern: the primary emergency-services call is awaited (its
outcome decides the fallback path); contact notifications run in the
background, each attempt isolated behind its own timeout and error boundary.
An alert is never dropped: a failed call always yields manual instructions
plus the contact list.
"""

import asyncio
from datetime import UTC, datetime
from typing import Protocol

import structlog

from vitalwatch.config import EscalationConfig
from vitalwatch.domain.errors import DispatchFailed
from vitalwatch.domain.models import (
    CallOutcome,
    ContactOutcome,
    DispatchReport,
    EmergencyContact,
    EmergencyEvent,
)

logger = structlog.get_logger(__name__)


class EmergencyDispatchAdapter(Protocol):
    """External telephony/SMS integration."""

    async def place_emergency_call(self, event: EmergencyEvent) -> bool: ...

    async def notify_contact(self, contact: EmergencyContact, event: EmergencyEvent) -> bool: ...


class CircuitBreakerState:
    """Simple circuit breaker for emergency-call attempts."""

    def __init__(self, failure_threshold: int = 3, recovery_timeout: int = 60) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time: datetime | None = None
        self.state = "closed"  # closed, open, half-open

    def can_execute(self) -> bool:
        """Check if operation can execute based on circuit breaker state."""

        if self.state == "closed":
            return True

        if self.state == "open":
            if self.last_failure_time:
                time_since_failure = datetime.now(UTC) - self.last_failure_time
                if time_since_failure.total_seconds() >= self.recovery_timeout:
                    self.state = "half-open"
                    return True
            return False

        if self.state == "half-open":
            return True

        return False

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = "closed"

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = datetime.now(UTC)

        if self.failure_count >= self.failure_threshold or self.state == "half-open":
            self.state = "open"


def format_emergency_message(event: EmergencyEvent) -> str:
    """Text handed to the call/SMS integration."""
    address = event.location.address if event.location else "Unknown"
    return (
        f"Emergency: {event.type.value} emergency detected. "
        f"Severity: {event.severity.value}. Confidence: {event.confidence}%. "
        f"Symptoms: {', '.join(event.symptoms) or 'none reported'}. "
        f"Location: {address}"
    )


def fallback_instructions(emergency_number: str) -> list[str]:
    return [
        f"Call {emergency_number} manually",
        "Contact emergency services",
        "Seek immediate medical attention",
        "Contact your emergency contacts",
    ]


class NotifierDispatch:
    """Sends an emergency to emergency services and every configured contact."""

    def __init__(
        self,
        adapter: EmergencyDispatchAdapter | None,
        contacts: list[EmergencyContact],
        config: EscalationConfig | None = None,
    ) -> None:
        self.adapter = adapter
        self.config = config or EscalationConfig()
        self.contacts = sorted(contacts, key=lambda c: c.priority)
        self.call_breaker = CircuitBreakerState(
            failure_threshold=self.config.call_failure_threshold,
            recovery_timeout=self.config.call_recovery_seconds,
        )
        self._pending: set[asyncio.Task[list[ContactOutcome]]] = set()
        self.logger = logger.bind(component="notifier_dispatch")

    async def dispatch(self, event: EmergencyEvent, *, automatic: bool = False) -> DispatchReport:
        """
        Dispatch an event. Never raises.

        Returns once the emergency-call outcome is known; contact outcomes are
        appended to the report when the background fan-out finishes.
        """
        report = DispatchReport(
            event=event,
            automatic=automatic,
            emergency_call=CallOutcome.NOT_REQUIRED,
            contacts=list(self.contacts),
        )

        if event.should_escalate:
            report.emergency_call = await self._place_call(event)
            if report.emergency_call is not CallOutcome.PLACED:
                report.fallback_instructions = fallback_instructions(
                    self.config.emergency_number
                )
                self.logger.warning(
                    "emergency_call_fallback",
                    outcome=report.emergency_call.value,
                    contacts=len(report.contacts),
                )

        task = asyncio.create_task(self._fan_out(event, report), name="contact-fan-out")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

        self.logger.info(
            "emergency_dispatched",
            type=event.type.value,
            severity=event.severity.value,
            automatic=automatic,
            emergency_call=report.emergency_call.value,
            contacts=len(self.contacts),
        )
        return report

    async def _place_call(self, event: EmergencyEvent) -> CallOutcome:
        if self.adapter is None:
            self.logger.error("emergency_call_adapter_missing")
            return CallOutcome.UNAVAILABLE

        if not self.call_breaker.can_execute():
            self.logger.warning("emergency_call_circuit_open")
            return CallOutcome.UNAVAILABLE

        try:
            placed = await asyncio.wait_for(
                self.adapter.place_emergency_call(event),
                timeout=self.config.emergency_call_timeout_seconds,
            )
            if not placed:
                raise DispatchFailed("emergency call adapter reported failure")
        except Exception as e:
            self.call_breaker.record_failure()
            self.logger.error(
                "emergency_call_failed",
                error=str(e) or type(e).__name__,
                breaker_state=self.call_breaker.state,
            )
            return CallOutcome.FAILED

        self.call_breaker.record_success()
        return CallOutcome.PLACED

    async def _fan_out(self, event: EmergencyEvent, report: DispatchReport) -> list[ContactOutcome]:
        outcomes = await self.notify_contacts(event)
        report.contact_outcomes = outcomes
        return outcomes

    async def notify_contacts(self, event: EmergencyEvent) -> list[ContactOutcome]:
        """Notify every contact concurrently. One failure never blocks the rest."""
        if not self.contacts:
            return []

        async with asyncio.TaskGroup() as task_group:
            tasks = [
                task_group.create_task(self._notify_one(contact, event))
                for contact in self.contacts
            ]

        outcomes = [task.result() for task in tasks]
        self.logger.info(
            "contacts_notified",
            sent=sum(1 for o in outcomes if o.status == "sent"),
            failed=sum(1 for o in outcomes if o.status == "failed"),
        )
        return outcomes

    async def _notify_one(self, contact: EmergencyContact, event: EmergencyEvent) -> ContactOutcome:
        if self.adapter is None:
            return ContactOutcome(contact=contact, status="failed", error="no dispatch adapter")

        try:
            sent = await asyncio.wait_for(
                self.adapter.notify_contact(contact, event),
                timeout=self.config.contact_timeout_seconds,
            )
        except Exception as e:
            error = str(e) or type(e).__name__
            self.logger.warning("contact_notification_failed", contact=contact.name, error=error)
            return ContactOutcome(contact=contact, status="failed", error=error)

        if not sent:
            self.logger.warning("contact_notification_rejected", contact=contact.name)
            return ContactOutcome(
                contact=contact, status="failed", error="adapter reported failure"
            )
        return ContactOutcome(contact=contact, status="sent")

    async def drain(self) -> None:
        """Wait for every outstanding contact fan-out."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

"""Tests for notifier dispatch: fallback, per-contact isolation and the call circuit breaker."""

import asyncio

import pytest

from vitalwatch.config import EscalationConfig
from vitalwatch.domain.models import (
    CallOutcome,
    EmergencyContact,
    EmergencyEvent,
    EmergencyType,
    Location,
    Severity,
)
from vitalwatch.services.dispatch import (
    CircuitBreakerState,
    NotifierDispatch,
    fallback_instructions,
    format_emergency_message,
)

CONTACTS = [
    EmergencyContact(name="Dr. Smith", phone="+1-555-0456", priority=2),
    EmergencyContact(name="Mom", phone="+1-555-0123", priority=1),
    EmergencyContact(name="Neighbor", phone="+1-555-0789", priority=3),
]


def _event(should_escalate: bool = True) -> EmergencyEvent:
    return EmergencyEvent(
        type=EmergencyType.CARDIAC,
        confidence=80,
        severity=Severity.CRITICAL if should_escalate else Severity.MEDIUM,
        symptoms=["Abnormal heart rate"],
        recommended_action="Call emergency services immediately.",
        should_escalate=should_escalate,
        location=Location(latitude=40.7, longitude=-74.0, address="12 Main St"),
    )


class FakeDispatchAdapter:
    """Records calls; can fail the emergency call or individual contacts."""

    def __init__(
        self,
        call_result: bool | Exception = True,
        failing: set[str] | None = None,
        call_delay: float = 0.0,
    ) -> None:
        self.call_result = call_result
        self.failing = failing or set()
        self.call_delay = call_delay
        self.calls: list[EmergencyEvent] = []
        self.notified: list[str] = []

    async def place_emergency_call(self, event: EmergencyEvent) -> bool:
        self.calls.append(event)
        await asyncio.sleep(self.call_delay)
        if isinstance(self.call_result, Exception):
            raise self.call_result
        return self.call_result

    async def notify_contact(self, contact: EmergencyContact, event: EmergencyEvent) -> bool:
        if contact.name in self.failing:
            raise ConnectionError("sms gateway down")
        self.notified.append(contact.name)
        return True


class TestNotifierDispatch:
    async def test_successful_dispatch_places_call_and_notifies_everyone(self) -> None:
        adapter = FakeDispatchAdapter()
        dispatch = NotifierDispatch(adapter, CONTACTS)

        report = await dispatch.dispatch(_event(), automatic=True)
        await dispatch.drain()

        assert report.emergency_call is CallOutcome.PLACED
        assert report.automatic
        assert not report.used_fallback
        assert len(adapter.calls) == 1
        assert sorted(adapter.notified) == ["Dr. Smith", "Mom", "Neighbor"]
        assert [o.status for o in report.contact_outcomes] == ["sent", "sent", "sent"]

    async def test_contacts_ordered_by_priority(self) -> None:
        dispatch = NotifierDispatch(FakeDispatchAdapter(), CONTACTS)
        report = await dispatch.dispatch(_event())
        await dispatch.drain()

        assert [c.name for c in report.contacts] == ["Mom", "Dr. Smith", "Neighbor"]

    async def test_one_failing_contact_does_not_block_others(self) -> None:
        adapter = FakeDispatchAdapter(failing={"Dr. Smith"})
        dispatch = NotifierDispatch(adapter, CONTACTS)

        report = await dispatch.dispatch(_event())
        await dispatch.drain()

        outcomes = {o.contact.name: o for o in report.contact_outcomes}
        assert outcomes["Dr. Smith"].status == "failed"
        assert "sms gateway down" in (outcomes["Dr. Smith"].error or "")
        assert outcomes["Mom"].status == "sent"
        assert outcomes["Neighbor"].status == "sent"
        assert sorted(adapter.notified) == ["Mom", "Neighbor"]

    @pytest.mark.parametrize("call_result", [False, ConnectionError("no carrier")])
    async def test_failed_call_surfaces_fallback(self, call_result: bool | Exception) -> None:
        dispatch = NotifierDispatch(FakeDispatchAdapter(call_result=call_result), CONTACTS)

        report = await dispatch.dispatch(_event())
        await dispatch.drain()

        assert report.emergency_call is CallOutcome.FAILED
        assert report.fallback_instructions == fallback_instructions("911")
        assert len(report.contacts) == 3

    async def test_call_timeout_counts_as_failure(self) -> None:
        config = EscalationConfig(emergency_call_timeout_seconds=0.05)
        dispatch = NotifierDispatch(FakeDispatchAdapter(call_delay=1.0), CONTACTS, config)

        report = await dispatch.dispatch(_event())
        await dispatch.drain()

        assert report.emergency_call is CallOutcome.FAILED
        assert report.used_fallback

    async def test_missing_adapter_never_drops_alert(self) -> None:
        dispatch = NotifierDispatch(None, CONTACTS)

        report = await dispatch.dispatch(_event())
        await dispatch.drain()

        assert report.emergency_call is CallOutcome.UNAVAILABLE
        assert report.used_fallback
        assert all(o.status == "failed" for o in report.contact_outcomes)

    async def test_non_escalating_event_skips_call(self) -> None:
        adapter = FakeDispatchAdapter()
        dispatch = NotifierDispatch(adapter, CONTACTS)

        report = await dispatch.dispatch(_event(should_escalate=False))
        await dispatch.drain()

        assert report.emergency_call is CallOutcome.NOT_REQUIRED
        assert adapter.calls == []
        assert len(adapter.notified) == 3

    async def test_circuit_opens_after_repeated_call_failures(self) -> None:
        config = EscalationConfig(call_failure_threshold=2)
        adapter = FakeDispatchAdapter(call_result=False)
        dispatch = NotifierDispatch(adapter, [], config)

        outcomes = [(await dispatch.dispatch(_event())).emergency_call for _ in range(3)]

        assert outcomes == [CallOutcome.FAILED, CallOutcome.FAILED, CallOutcome.UNAVAILABLE]
        assert len(adapter.calls) == 2


class TestCircuitBreakerState:
    def test_half_open_failure_reopens(self) -> None:
        breaker = CircuitBreakerState(failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        assert breaker.state == "open"

        assert breaker.can_execute()
        assert breaker.state == "half-open"

        breaker.record_failure()
        assert breaker.state == "open"

    def test_success_closes(self) -> None:
        breaker = CircuitBreakerState(failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        breaker.can_execute()
        breaker.record_success()

        assert breaker.state == "closed"
        assert breaker.failure_count == 0


def test_emergency_message_includes_location_and_symptoms() -> None:
    message = format_emergency_message(_event())

    assert "cardiac" in message
    assert "12 Main St" in message
    assert "Abnormal heart rate" in message

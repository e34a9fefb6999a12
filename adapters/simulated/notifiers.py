"""
Console dispatch and scripted confirmation adapters.

Nothing here reaches a real phone network; calls and contact alerts are
rendered to the terminal with rich.
"""

import asyncio

import structlog
from rich.console import Console
from rich.panel import Panel

from vitalwatch.domain.models import EmergencyContact, EmergencyEvent, Severity
from vitalwatch.services.dispatch import format_emergency_message
from vitalwatch.services.escalation import ConfirmationDecision

logger = structlog.get_logger(__name__)

_SEVERITY_STYLE = {
    Severity.LOW: "green",
    Severity.MEDIUM: "yellow",
    Severity.HIGH: "red",
    Severity.CRITICAL: "bold red",
}


class ConsoleDispatchAdapter:
    """Prints emergency calls and contact alerts instead of sending them."""

    def __init__(
        self,
        console: Console | None = None,
        call_succeeds: bool = True,
        failing_contacts: set[str] | None = None,
    ) -> None:
        self.console = console or Console()
        self.call_succeeds = call_succeeds
        self.failing_contacts = failing_contacts or set()
        self.calls: list[EmergencyEvent] = []
        self.notified: list[str] = []

    async def place_emergency_call(self, event: EmergencyEvent) -> bool:
        self.calls.append(event)
        style = _SEVERITY_STYLE[event.severity]
        self.console.print(
            Panel(format_emergency_message(event), title="Emergency call", style=style)
        )
        return self.call_succeeds

    async def notify_contact(self, contact: EmergencyContact, event: EmergencyEvent) -> bool:
        if contact.name in self.failing_contacts:
            raise ConnectionError(f"SMS gateway rejected {contact.phone}")
        self.notified.append(contact.name)
        self.console.print(
            f"Alert sent to [cyan]{contact.name}[/cyan] ({contact.phone}): "
            f"{event.type.value} emergency, severity {event.severity.value}"
        )
        return True


class ScriptedConfirmation:
    """
    Answers every confirmation prompt with a fixed decision after a delay.

    ``decision=None`` never answers, which leaves the grace timer in charge.
    """

    def __init__(self, decision: ConfirmationDecision | None, delay_seconds: float = 0.0) -> None:
        self.decision = decision
        self.delay_seconds = delay_seconds
        self.presented: list[EmergencyEvent] = []

    async def present_event(self, event: EmergencyEvent) -> ConfirmationDecision:
        self.presented.append(event)
        logger.info(
            "confirmation_requested",
            type=event.type.value,
            severity=event.severity.value,
            decision=self.decision.value if self.decision else None,
        )
        while self.decision is None:
            await asyncio.sleep(3600)
        await asyncio.sleep(self.delay_seconds)
        return self.decision

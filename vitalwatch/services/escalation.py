"""
Escalation state machine with a cancellable grace-period timer.

States: idle -> suspected -> {confirmed | dismissed}; suspected -> escalating
on timer expiry; every dispatch ends in resolved.

Design principles:
- At most one active session. Detections arriving while a session is open are
  merged into it, never opened as a second session
- Every state change happens under one asyncio.Lock; dispatch runs outside it
- Cancel and fire are mutually exclusive. When they race, the fail-safe rule
  applies: the event is treated as already escalated
- Every transition is written to the audit trail
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

import structlog

from vitalwatch.config import EscalationConfig
from vitalwatch.domain.errors import TimerRaceError
from vitalwatch.domain.models import (
    CallOutcome,
    DispatchReport,
    EmergencyEvent,
    EscalationSession,
    EscalationState,
)
from vitalwatch.services.audit import AuditTrail
from vitalwatch.services.dispatch import fallback_instructions

logger = structlog.get_logger(__name__)


class ConfirmationDecision(str, Enum):
    CONFIRM = "confirm"
    DISMISS = "dismiss"


class ConfirmationCollaborator(Protocol):
    """The UI layer. The engine only asks; it never renders anything itself."""

    async def present_event(self, event: EmergencyEvent) -> ConfirmationDecision: ...


class Dispatcher(Protocol):
    async def dispatch(self, event: EmergencyEvent, *, automatic: bool) -> DispatchReport: ...


class GracePeriodTimer:
    """
    One-shot cancellable timer.

    ``fired`` flips synchronously when the delay elapses, before the callback
    gets a chance to await anything. From that point ``cancel()`` returns
    False; before it, cancellation always wins and the callback never runs.
    """

    def __init__(
        self,
        delay_seconds: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "grace-period",
    ) -> None:
        self.delay_seconds = delay_seconds
        self.callback = callback
        self.name = name
        self._task: asyncio.Task[None] | None = None
        self._fired = False
        self._cancelled = False

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("timer already started")
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def _run(self) -> None:
        try:
            await asyncio.sleep(self.delay_seconds)
        except asyncio.CancelledError:
            return
        if self._cancelled:
            return
        self._fired = True
        try:
            await self.callback()
        except Exception as e:
            logger.exception("grace_timer_callback_failed", timer=self.name, error=str(e))

    def cancel(self) -> bool:
        """Idempotent. Returns False once the timer has fired."""
        if self._fired:
            return False
        if not self._cancelled:
            self._cancelled = True
            if self._task is not None:
                self._task.cancel()
        return True

    async def abort(self) -> None:
        """
        Stop the timer task outright, callback included. Shutdown only.

        A fired timer whose callback is mid-dispatch is cancelled too; the
        controller resolves that session with fallback instructions.
        """
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class EscalationController:
    """Owns the single active escalation session and drives it to a terminal state."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        audit: AuditTrail,
        config: EscalationConfig | None = None,
        confirmation: ConfirmationCollaborator | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.audit = audit
        self.config = config or EscalationConfig()
        self.confirmation = confirmation
        self._lock = asyncio.Lock()
        self._active: EscalationSession | None = None
        self._history: deque[EscalationSession] = deque(maxlen=self.config.history_size)
        self._decision_tasks: dict[str, asyncio.Task[None]] = {}
        self.logger = logger.bind(component="escalation_controller")

    @property
    def active_session(self) -> EscalationSession | None:
        return self._active

    @property
    def history(self) -> tuple[EscalationSession, ...]:
        return tuple(self._history)

    # -- state helpers (caller holds the lock) --------------------------------

    def _open(
        self, event: EmergencyEvent, state: EscalationState, cause: str
    ) -> EscalationSession:
        grace = timedelta(seconds=self.config.grace_period_seconds)
        session = EscalationSession(
            event=event, state=state, confirm_deadline=datetime.now(UTC) + grace
        )
        self._active = session
        self._history.append(session)
        self.audit.transition(session.session_id, EscalationState.IDLE, state, cause)
        self.logger.info(
            "session_opened",
            session_id=session.session_id,
            state=state.value,
            type=event.type.value,
            severity=event.severity.value,
            should_escalate=event.should_escalate,
        )
        return session

    def _transition(
        self, session: EscalationSession, to_state: EscalationState, cause: str
    ) -> None:
        if session.state.is_terminal:
            raise RuntimeError(f"session {session.session_id} is already {session.state.value}")

        from_state = session.state
        session.state = to_state
        self.audit.transition(session.session_id, from_state, to_state, cause)

        if to_state.is_terminal:
            if self._active is session:
                self._active = None
            decision = self._decision_tasks.pop(session.session_id, None)
            if decision is not None and decision is not asyncio.current_task():
                decision.cancel()

    def _merge(self, session: EscalationSession, event: EmergencyEvent, cause: str) -> None:
        before = session.event
        session.event = before.merged_with(event)
        self.audit.transition(session.session_id, session.state, session.state, cause)
        self.logger.info(
            "detection_merged",
            session_id=session.session_id,
            state=session.state.value,
            severity_before=before.severity.value,
            severity_after=session.event.severity.value,
            symptoms=len(session.event.symptoms),
        )

    def _suspected(self, session_id: str | None) -> EscalationSession | None:
        """The active session if it is still awaiting a decision (and matches the id)."""
        session = self._active
        if session is None or session.state is not EscalationState.SUSPECTED:
            return None
        if session_id is not None and session.session_id != session_id:
            return None
        return session

    # -- entry points ---------------------------------------------------------

    async def submit(self, event: EmergencyEvent) -> EscalationSession:
        """
        Entry point for every detector.

        Opens a suspected session with a running grace timer when idle,
        otherwise merges into the active session.
        """
        async with self._lock:
            if self._active is not None:
                self._merge(self._active, event, cause=f"merged_{event.source}_detection")
                return self._active

            session = self._open(
                event, EscalationState.SUSPECTED, cause=f"{event.source}_detection"
            )
            session.timer = GracePeriodTimer(
                self.config.grace_period_seconds,
                lambda: self._on_grace_expired(session),
                name=f"grace-{session.session_id}",
            )
            session.timer.start()

            if self.confirmation is not None:
                self._decision_tasks[session.session_id] = asyncio.create_task(
                    self._await_decision(session), name=f"decision-{session.session_id}"
                )
        return session

    async def confirm(
        self, cause: str = "user_confirmed", session_id: str | None = None
    ) -> DispatchReport | None:
        """Confirm the suspected session and dispatch immediately."""
        async with self._lock:
            session = self._suspected(session_id)
            if session is None:
                self.logger.info("confirm_ignored", session_id=session_id)
                return None

            if session.timer is not None and not session.timer.cancel():
                # The expiry callback is waiting on the lock; it will see CONFIRMED and stand down
                self.logger.info("confirm_after_timer_fired", session_id=session.session_id)
            self._transition(session, EscalationState.CONFIRMED, cause)

        return await self._dispatch(session, automatic=False)

    async def dismiss(self, session_id: str | None = None) -> bool:
        """
        Dismiss the suspected session. No dispatch happens.

        Returns False when there is nothing to dismiss or when the grace timer
        already fired, in which case the session is treated as escalated.
        """
        async with self._lock:
            session = self._suspected(session_id)
            if session is None:
                self.logger.info("dismiss_rejected", session_id=session_id)
                return False

            try:
                self._cancel_timer(session)
            except TimerRaceError as e:
                self.logger.warning(
                    "dismiss_lost_timer_race", session_id=session.session_id, error=str(e)
                )
                return False

            session.resolution = "dismissed_by_user"
            self._transition(session, EscalationState.DISMISSED, "user_dismissed")
        return True

    async def trigger_manual(self, event: EmergencyEvent) -> EscalationSession:
        """Bypass detection: the session goes straight to confirmed and dispatches."""
        async with self._lock:
            session = self._active
            if session is None:
                session = self._open(event, EscalationState.CONFIRMED, cause="manual_trigger")
            elif session.state is EscalationState.SUSPECTED:
                self._merge(session, event, cause="merged_manual_trigger")
                if session.timer is not None:
                    session.timer.cancel()
                self._transition(session, EscalationState.CONFIRMED, "manual_trigger")
            else:
                # already confirmed or escalating; dispatch is under way
                self._merge(session, event, cause="merged_manual_trigger")
                return session

        await self._dispatch(session, automatic=False)
        return session

    # -- internals ------------------------------------------------------------

    def _cancel_timer(self, session: EscalationSession) -> None:
        if session.timer is not None and not session.timer.cancel():
            raise TimerRaceError(f"grace timer for {session.session_id} already fired")

    async def _on_grace_expired(self, session: EscalationSession) -> None:
        async with self._lock:
            if session is not self._active or session.state is not EscalationState.SUSPECTED:
                return

            if not session.event.should_escalate:
                session.resolution = "unattended_low_severity"
                self._transition(session, EscalationState.RESOLVED, "grace_period_expired")
                self.logger.warning(
                    "unattended_event_resolved",
                    session_id=session.session_id,
                    severity=session.event.severity.value,
                )
                return

            self._transition(session, EscalationState.ESCALATING, "grace_period_expired")

        await self._dispatch(session, automatic=True)

    def _fallback_report(self, session: EscalationSession, automatic: bool) -> DispatchReport:
        return DispatchReport(
            event=session.event,
            automatic=automatic,
            emergency_call=CallOutcome.FAILED,
            contacts=[],
            fallback_instructions=fallback_instructions(self.config.emergency_number),
        )

    async def _resolve(
        self,
        session: EscalationSession,
        automatic: bool,
        report: DispatchReport,
        resolution: str,
    ) -> None:
        async with self._lock:
            session.automatic = automatic
            session.dispatch_report = report
            session.resolution = resolution
            self._transition(session, EscalationState.RESOLVED, resolution)

    async def _dispatch(self, session: EscalationSession, automatic: bool) -> DispatchReport:
        try:
            report = await self.dispatcher.dispatch(session.event, automatic=automatic)
            resolution = f"dispatched_{report.emergency_call.value}"
        except asyncio.CancelledError:
            # Shutdown interrupted the call; the session still ends with fallback instructions
            self.logger.error("dispatch_interrupted", session_id=session.session_id)
            report = self._fallback_report(session, automatic)
            await self._resolve(session, automatic, report, "dispatch_interrupted")
            raise
        except Exception as e:
            self.logger.exception("dispatch_error", session_id=session.session_id, error=str(e))
            report = self._fallback_report(session, automatic)
            resolution = "dispatch_error"

        await self._resolve(session, automatic, report, resolution)
        return report

    async def _await_decision(self, session: EscalationSession) -> None:
        if self.confirmation is None:
            return
        try:
            decision = await self.confirmation.present_event(session.event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # no answer from the UI; the grace timer decides
            self.logger.error(
                "confirmation_failed", session_id=session.session_id, error=str(e)
            )
            return

        if decision is ConfirmationDecision.CONFIRM:
            await self.confirm(cause="user_confirmed", session_id=session.session_id)
        else:
            await self.dismiss(session_id=session.session_id)

    async def shutdown(self) -> None:
        """
        Stop timers and pending confirmation prompts.

        Dispatches interrupted here still reach RESOLVED with a fallback report.
        """
        pending: list[Coroutine[Any, Any, None]] = []
        for session in self._history:
            if session.timer is not None:
                pending.append(session.timer.abort())
        for task in self._decision_tasks.values():
            task.cancel()
        await asyncio.gather(*pending, *self._decision_tasks.values(), return_exceptions=True)
        self._decision_tasks.clear()
        self.logger.info(
            "escalation_controller_stopped",
            active_session=self._active.session_id if self._active else None,
        )

"""
Error taxonomy for the monitoring engine.

Each component catches these at its own boundary; none of them is allowed to
escape into another component's loop.
"""

from vitalwatch.domain.models import SignalDomain


class VitalWatchError(Exception):
    """Base class for expected engine failures."""


class SensorUnavailable(VitalWatchError):
    """The sensor could not produce a reading this cycle. Skip and retry later."""


class PermissionDenied(VitalWatchError):
    """Access to a signal domain was refused. The domain's loop is disabled for good."""

    def __init__(self, domain: SignalDomain, message: str | None = None) -> None:
        self.domain = domain
        super().__init__(message or f"permission denied for {domain.value} sampling")


class DispatchFailed(VitalWatchError):
    """The emergency-services call did not go through; the fallback path takes over."""


class TimerRaceError(VitalWatchError):
    """A cancellation arrived after the grace timer had already fired."""

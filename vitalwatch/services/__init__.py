"""
Core services for the monitoring engine.

This package contains sampling, the metric store, anomaly detection,
escalation, dispatch, insights and the engine that wires them together.
"""

from .engine import StatusSnapshot, VitalWatchEngine
from .escalation import ConfirmationDecision, EscalationController, GracePeriodTimer
from .metric_store import MetricStore
from .sampling import Result, SensorAdapter, SensorSampler

__all__ = [
    "ConfirmationDecision",
    "EscalationController",
    "GracePeriodTimer",
    "MetricStore",
    "Result",
    "SensorAdapter",
    "SensorSampler",
    "StatusSnapshot",
    "VitalWatchEngine",
]

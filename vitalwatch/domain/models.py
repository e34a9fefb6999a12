"""
Domain models for vital-sign monitoring and emergency escalation.

These models represent the core business concepts and are framework-agnostic.
Value types are immutable pydantic models; the escalation session is a plain
dataclass because only the escalation controller mutates it.
"""

import math
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

if TYPE_CHECKING:
    from vitalwatch.services.escalation import GracePeriodTimer


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SignalDomain(str, Enum):
    """Independent signal streams the engine samples."""

    CARDIAC = "cardiac"
    RESPIRATORY = "respiratory"
    STRESS = "stress"
    BEHAVIORAL = "behavioral"
    LOCATION = "location"
    MOTION = "motion"
    AUDIO = "audio"


# Domains whose readings carry numeric vital values
NUMERIC_DOMAINS = (
    SignalDomain.CARDIAC,
    SignalDomain.RESPIRATORY,
    SignalDomain.STRESS,
    SignalDomain.MOTION,
    SignalDomain.AUDIO,
)


class Severity(str, Enum):
    """Ordinal urgency of an emergency event."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def max_of(cls, *severities: "Severity") -> "Severity":
        return max(severities, key=lambda s: s.rank)


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class EmergencyType(str, Enum):
    CARDIAC = "cardiac"
    RESPIRATORY = "respiratory"
    MENTAL = "mental"
    PHYSICAL = "physical"
    OVERDOSE = "overdose"
    STROKE = "stroke"
    SEIZURE = "seizure"
    FALL = "fall"


class Reading(BaseModel):
    """One timestamped sample from a signal domain."""

    model_config = ConfigDict(frozen=True)

    domain: SignalDomain
    values: dict[str, float] = Field(default_factory=dict)
    text: str | None = Field(default=None, description="Behavioral entry or location address")
    timestamp: datetime = Field(default_factory=_utcnow)
    source: str = Field(default="unknown", description="Adapter that produced the reading")

    @field_validator("values")
    @classmethod
    def values_must_be_finite(cls, v: dict[str, float]) -> dict[str, float]:
        for name, value in v.items():
            if not math.isfinite(value):
                raise ValueError(f"reading value {name!r} must be finite, got {value}")
        return v

    @model_validator(mode="after")
    def payload_present(self) -> "Reading":
        if self.domain is SignalDomain.BEHAVIORAL and not self.text:
            raise ValueError("behavioral readings must carry text")
        if not self.values and not self.text:
            raise ValueError("reading must carry values or text")
        return self


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    address: str = "Unknown Address"

    @classmethod
    def from_reading(cls, reading: Reading) -> "Location":
        return cls(
            latitude=reading.values["latitude"],
            longitude=reading.values["longitude"],
            address=reading.text or "Unknown Address",
        )


class VitalSigns(BaseModel):
    """
    Merged view of the latest numeric readings.

    Every metric is optional: detection rules keyed to a missing metric
    simply do not fire.
    """

    model_config = ConfigDict(frozen=True)

    heart_rate: float | None = None
    systolic: float | None = None
    diastolic: float | None = None
    spo2: float | None = None
    temperature: float | None = Field(default=None, description="Body temperature in deg F")
    respiratory_rate: float | None = None
    stress_level: float | None = None
    activity_level: float | None = None
    sleep_quality: float | None = None
    mental_health_score: float | None = None
    emergency_risk: float | None = Field(
        default=None, description="Externally computed risk score overriding the built-in one"
    )
    peak_acceleration_g: float | None = None
    audio_distress: float | None = None

    @classmethod
    def from_readings(cls, readings: Iterable[Reading]) -> "VitalSigns":
        """Merge readings oldest-first so newer values win."""
        known = set(cls.model_fields)
        merged: dict[str, float] = {}
        for reading in sorted(readings, key=lambda r: r.timestamp):
            merged.update({k: v for k, v in reading.values.items() if k in known})
        return cls(**merged)

    def is_empty(self) -> bool:
        return all(value is None for value in self.model_dump().values())


class EmergencyEvent(BaseModel):
    """A candidate emergency produced by a detector or the manual trigger."""

    model_config = ConfigDict(frozen=True)

    type: EmergencyType
    confidence: int = Field(ge=0, le=100)
    severity: Severity
    symptoms: list[str] = Field(default_factory=list)
    recommended_action: str
    should_escalate: bool
    location: Location | None = None
    source: Literal["vitals", "behavioral", "manual"] = "vitals"
    detected_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def critical_always_escalates(self) -> "EmergencyEvent":
        if self.severity is Severity.CRITICAL and not self.should_escalate:
            raise ValueError("critical events must escalate")
        return self

    def merged_with(self, other: "EmergencyEvent") -> "EmergencyEvent":
        """Fold a later detection into this event without losing evidence."""
        symptoms = list(self.symptoms)
        symptoms.extend(s for s in other.symptoms if s not in symptoms)
        return self.model_copy(
            update={
                "symptoms": symptoms,
                "severity": Severity.max_of(self.severity, other.severity),
                "confidence": max(self.confidence, other.confidence),
                "should_escalate": self.should_escalate or other.should_escalate,
                "location": self.location or other.location,
            }
        )


class EscalationState(str, Enum):
    """Escalation lifecycle. IDLE only appears in audit records."""

    IDLE = "idle"
    SUSPECTED = "suspected"
    CONFIRMED = "confirmed"
    ESCALATING = "escalating"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self in (EscalationState.RESOLVED, EscalationState.DISMISSED)


class EmergencyContact(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    phone: str = Field(min_length=3)
    priority: int = Field(default=1, ge=0, description="Lower values are contacted first")


class AuditRecord(BaseModel):
    """Append-only trail entry. Component errors carry no session or states."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=_utcnow)
    session_id: str | None = None
    from_state: EscalationState | None = None
    to_state: EscalationState | None = None
    cause: str


class ContactOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    contact: EmergencyContact
    status: Literal["sent", "failed"]
    error: str | None = None


class CallOutcome(str, Enum):
    PLACED = "placed"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"
    NOT_REQUIRED = "not_required"


@dataclass
class DispatchReport:
    """Outcome of one dispatch. Contact outcomes fill in as the fan-out completes."""

    event: EmergencyEvent
    automatic: bool
    emergency_call: CallOutcome
    contacts: list[EmergencyContact]
    fallback_instructions: list[str] = field(default_factory=list)
    contact_outcomes: list[ContactOutcome] = field(default_factory=list)
    dispatched_at: datetime = field(default_factory=_utcnow)

    @property
    def used_fallback(self) -> bool:
        return bool(self.fallback_instructions)


@dataclass
class EscalationSession:
    """
    One escalation, owned and mutated only by the escalation controller.

    Once the state is terminal the controller never touches the session again.
    """

    event: EmergencyEvent
    confirm_deadline: datetime
    state: EscalationState = EscalationState.SUSPECTED
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    opened_at: datetime = field(default_factory=_utcnow)
    resolution: str | None = None
    automatic: bool = False
    dispatch_report: DispatchReport | None = None
    timer: "GracePeriodTimer | None" = field(default=None, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal


class HealthInsight(BaseModel):
    """Periodic rollup of the monitoring window."""

    model_config = ConfigDict(frozen=True)

    overall_health: int = Field(ge=0, le=100)
    risk_factors: list[str]
    recommendations: list[str]
    risk_score: float = Field(ge=0.0, le=100.0)
    next_check_in_interval: timedelta
    next_check_in_at: datetime
    emergency_contacts: list[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=_utcnow)

    def summary(self) -> dict[str, Any]:
        return {
            "overall_health": self.overall_health,
            "risk_score": round(self.risk_score, 1),
            "risk_factors": len(self.risk_factors),
            "next_check_in_days": self.next_check_in_interval.days,
        }

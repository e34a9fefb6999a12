"""
Rule-based anomaly detection over vital signs and behavioral text.

Key decisions:
- Ordered rule table: each rule is keyed to one metric and evaluated against
  the same VitalSigns snapshot, so the outcome never depends on arrival order
- Additive confidence (capped at 100), max severity, escalation if any rule
  demands it or the result is critical
- Event type comes from the single strongest typed rule; ties go to the
  earlier rule in the table
- Behavioral keyword matches always produce the same medium, non-escalating
  mental-health event
"""

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

import structlog

from vitalwatch.config import DetectionConfig
from vitalwatch.domain.models import (
    EmergencyEvent,
    EmergencyType,
    Location,
    Reading,
    Severity,
    SignalDomain,
    VitalSigns,
)
from vitalwatch.services.metric_store import StoreSnapshot

logger = structlog.get_logger(__name__)

Predicate = Callable[[float], bool]


def below(limit: float) -> Predicate:
    return lambda v: v < limit


def above(limit: float) -> Predicate:
    return lambda v: v > limit


def at_least(limit: float) -> Predicate:
    return lambda v: v >= limit


def outside(low: float, high: float) -> Predicate:
    return lambda v: v < low or v > high


@dataclass(frozen=True)
class Tier:
    """A stricter inner threshold that overrides the rule's base severity."""

    fires: Predicate
    severity: Severity
    escalate: bool = False


@dataclass(frozen=True)
class DetectionRule:
    name: str
    metric: str
    fires: Predicate
    confidence: int
    symptom: str
    type: EmergencyType | None
    severity: Severity
    escalate: bool = False
    tiers: tuple[Tier, ...] = ()  # strictest first

    def evaluate(self, value: float) -> "RuleHit | None":
        if not self.fires(value):
            return None
        for tier in self.tiers:
            if tier.fires(value):
                return RuleHit(self, value, tier.severity, tier.escalate or self.escalate)
        return RuleHit(self, value, self.severity, self.escalate)


@dataclass(frozen=True)
class RuleHit:
    rule: DetectionRule
    value: float
    severity: Severity
    escalate: bool


def build_rule_table(config: DetectionConfig) -> tuple[DetectionRule, ...]:
    """The ordered rule table. Order is the tie-break for the event type."""
    return (
        DetectionRule(
            name="heart_rate",
            metric="heart_rate",
            fires=outside(50, 120),
            confidence=30,
            symptom="Abnormal heart rate",
            type=EmergencyType.CARDIAC,
            severity=Severity.MEDIUM,
            tiers=(
                Tier(outside(30, 180), Severity.CRITICAL, escalate=True),
                Tier(outside(40, 150), Severity.HIGH),
            ),
        ),
        DetectionRule(
            name="oxygen_saturation",
            metric="spo2",
            fires=below(95),
            confidence=40,
            symptom="Low oxygen saturation",
            type=EmergencyType.RESPIRATORY,
            severity=Severity.MEDIUM,
            tiers=(
                Tier(below(85), Severity.CRITICAL, escalate=True),
                Tier(below(90), Severity.HIGH),
            ),
        ),
        DetectionRule(
            name="blood_pressure",
            metric="systolic",
            fires=outside(90, 180),
            confidence=25,
            symptom="Abnormal blood pressure",
            type=EmergencyType.CARDIAC,
            severity=Severity.HIGH,
            tiers=(Tier(outside(80, 200), Severity.CRITICAL, escalate=True),),
        ),
        DetectionRule(
            name="mental_health",
            metric="mental_health_score",
            fires=below(20),
            confidence=35,
            symptom="Severe mental distress",
            type=EmergencyType.MENTAL,
            severity=Severity.HIGH,
            tiers=(Tier(below(10), Severity.CRITICAL, escalate=True),),
        ),
        DetectionRule(
            name="stress",
            metric="stress_level",
            fires=above(90),
            confidence=20,
            symptom="Extreme stress levels",
            type=EmergencyType.MENTAL,
            severity=Severity.MEDIUM,
            tiers=(Tier(above(95), Severity.HIGH, escalate=True),),
        ),
        DetectionRule(
            name="temperature",
            metric="temperature",
            fires=outside(97, 100.4),
            confidence=15,
            symptom="Abnormal body temperature",
            type=EmergencyType.PHYSICAL,
            severity=Severity.LOW,
            tiers=(Tier(outside(95, 104), Severity.HIGH),),
        ),
        DetectionRule(
            name="respiratory_rate",
            metric="respiratory_rate",
            fires=outside(12, 20),
            confidence=15,
            symptom="Abnormal respiratory rate",
            type=EmergencyType.RESPIRATORY,
            severity=Severity.LOW,
            tiers=(Tier(outside(8, 30), Severity.HIGH),),
        ),
        DetectionRule(
            name="fall_impact",
            metric="peak_acceleration_g",
            fires=at_least(config.fall_impact_g),
            confidence=40,
            symptom="Possible fall detected",
            type=EmergencyType.FALL,
            severity=Severity.HIGH,
        ),
        DetectionRule(
            name="audio_distress",
            metric="audio_distress",
            fires=at_least(80),
            confidence=25,
            symptom="Distress sounds detected",
            type=EmergencyType.PHYSICAL,
            severity=Severity.MEDIUM,
        ),
        DetectionRule(
            name="emergency_risk",
            metric="emergency_risk",
            fires=above(config.risk_escalation_threshold),
            confidence=50,
            symptom="High overall emergency risk",
            type=None,
            severity=Severity.CRITICAL,
            escalate=True,
        ),
    )


# (metric, predicate, penalty), strictest band first per metric
_RISK_PENALTIES: tuple[tuple[str, Predicate, float], ...] = (
    ("heart_rate", outside(40, 150), 85.0),
    ("heart_rate", outside(50, 120), 25.0),
    ("spo2", below(85), 85.0),
    ("spo2", below(90), 45.0),
    ("spo2", below(95), 20.0),
    ("systolic", outside(80, 200), 85.0),
    ("systolic", outside(90, 180), 30.0),
    ("systolic", above(140), 10.0),
    ("mental_health_score", below(10), 85.0),
    ("mental_health_score", below(20), 30.0),
    ("stress_level", above(95), 40.0),
    ("stress_level", above(90), 20.0),
    ("stress_level", above(80), 10.0),
    ("temperature", outside(95, 104), 60.0),
    ("temperature", outside(97, 100.4), 15.0),
    ("respiratory_rate", outside(8, 30), 60.0),
    ("respiratory_rate", outside(12, 20), 15.0),
)


def compute_risk_score(vitals: VitalSigns) -> float:
    """
    Composite emergency risk in [0, 100].

    An externally supplied ``emergency_risk`` wins. Otherwise each metric
    contributes the penalty of its strictest matching band and the sum is
    capped at 100.
    """
    if vitals.emergency_risk is not None:
        return max(0.0, min(100.0, vitals.emergency_risk))

    values = vitals.model_dump()
    penalties: dict[str, float] = {}
    for metric, predicate, penalty in _RISK_PENALTIES:
        value = values.get(metric)
        if value is None or metric in penalties:
            continue
        if predicate(value):
            penalties[metric] = penalty
    return min(100.0, sum(penalties.values()))


_RECOMMENDED_ACTIONS: dict[EmergencyType, dict[Severity, str]] = {
    EmergencyType.CARDIAC: {
        Severity.CRITICAL: (
            "Immediate medical attention required. Call emergency services immediately."
        ),
        Severity.HIGH: "Seek immediate medical attention.",
        Severity.MEDIUM: "Monitor symptoms and contact healthcare provider.",
        Severity.LOW: "Continue monitoring and rest.",
    },
    EmergencyType.RESPIRATORY: {
        Severity.CRITICAL: (
            "Emergency medical attention required. Call emergency services immediately."
        ),
        Severity.HIGH: "Seek immediate medical attention.",
        Severity.MEDIUM: "Monitor breathing and contact healthcare provider.",
        Severity.LOW: "Rest and monitor symptoms.",
    },
    EmergencyType.MENTAL: {
        Severity.CRITICAL: "Immediate mental health crisis intervention required.",
        Severity.HIGH: "Contact mental health professional immediately.",
        Severity.MEDIUM: "Consider speaking with a counselor or therapist.",
        Severity.LOW: "Practice stress management techniques.",
    },
    EmergencyType.PHYSICAL: {
        Severity.CRITICAL: "Immediate medical attention required.",
        Severity.HIGH: "Seek medical attention.",
        Severity.MEDIUM: "Monitor symptoms and rest.",
        Severity.LOW: "Continue monitoring.",
    },
    EmergencyType.FALL: {
        Severity.CRITICAL: "Immediate medical attention required.",
        Severity.HIGH: "Check on the user and seek medical attention if they cannot get up.",
    },
}

DEFAULT_RECOMMENDED_ACTION = "Monitor symptoms and seek medical attention if needed."


def recommended_action(event_type: EmergencyType, severity: Severity) -> str:
    return _RECOMMENDED_ACTIONS.get(event_type, {}).get(severity, DEFAULT_RECOMMENDED_ACTION)


class VitalsAnomalyDetector:
    """Turns a VitalSigns snapshot into an EmergencyEvent candidate."""

    def __init__(self, config: DetectionConfig | None = None) -> None:
        self.config = config or DetectionConfig()
        self.rules = build_rule_table(self.config)
        self.logger = logger.bind(component="vitals_anomaly_detector")

    def evaluate(self, vitals: VitalSigns) -> list[RuleHit]:
        """Every rule that fires on this snapshot, in table order."""
        values = vitals.model_dump()
        values["emergency_risk"] = compute_risk_score(vitals)

        hits = []
        for rule in self.rules:
            value = values.get(rule.metric)
            if value is None:
                continue
            hit = rule.evaluate(value)
            if hit is not None:
                hits.append(hit)
        return hits

    def detect(
        self, vitals: VitalSigns, location: Location | None = None
    ) -> EmergencyEvent | None:
        hits = self.evaluate(vitals)
        if not hits:
            return None

        confidence = min(100, sum(h.rule.confidence for h in hits))
        if confidence <= self.config.emission_threshold:
            self.logger.debug(
                "detection_below_threshold",
                confidence=confidence,
                threshold=self.config.emission_threshold,
                rules=[h.rule.name for h in hits],
            )
            return None

        typed = [(h.rule.confidence, h.rule.type) for h in hits if h.rule.type is not None]
        # max() keeps the first of equal elements, so table order breaks ties
        event_type = max(typed, key=lambda t: t[0])[1] if typed else EmergencyType.PHYSICAL

        severity = Severity.max_of(*(h.severity for h in hits))
        should_escalate = severity is Severity.CRITICAL or any(h.escalate for h in hits)

        event = EmergencyEvent(
            type=event_type,
            confidence=confidence,
            severity=severity,
            symptoms=[h.rule.symptom for h in hits],
            recommended_action=recommended_action(event_type, severity),
            should_escalate=should_escalate,
            location=location,
            source="vitals",
        )

        self.logger.info(
            "emergency_candidate_detected",
            type=event.type.value,
            severity=event.severity.value,
            confidence=event.confidence,
            should_escalate=event.should_escalate,
            rules=[h.rule.name for h in hits],
        )
        return event

    def detect_snapshot(
        self,
        snapshot: StoreSnapshot,
        location: Location | None = None,
        motion_lookback: int = 10,
    ) -> EmergencyEvent | None:
        vitals = snapshot.vitals(motion_lookback)
        if vitals.is_empty():
            return None
        return self.detect(vitals, location)


def _normalize(text: str) -> str:
    return text.replace("’", "'").replace("‘", "'").lower()


class BehavioralPatternDetector:
    """
    Scans recent behavioral text entries for emergency keywords.

    Each entry is inspected once, so one message cannot raise the same alert
    on every cycle. The cursor is the newest timestamp seen plus the entries
    already scanned at exactly that timestamp.
    """

    def __init__(self, config: DetectionConfig | None = None) -> None:
        self.config = config or DetectionConfig()
        self._patterns = [
            (keyword, re.compile(r"(?<!\w)" + re.escape(keyword) + r"(?!\w)"))
            for keyword in self.config.emergency_keywords
        ]
        self._last_scanned: datetime | None = None
        self._scanned_at_cursor: list[Reading] = []
        self.logger = logger.bind(component="behavioral_pattern_detector")

    def match_keywords(self, text: str) -> list[str]:
        normalized = _normalize(text)
        return [keyword for keyword, pattern in self._patterns if pattern.search(normalized)]

    def _already_scanned(self, entry: Reading) -> bool:
        if self._last_scanned is None or entry.timestamp > self._last_scanned:
            return False
        if entry.timestamp < self._last_scanned:
            return True
        return any(entry is seen for seen in self._scanned_at_cursor)

    def _advance_cursor(self, fresh: list[Reading]) -> None:
        newest = max(e.timestamp for e in fresh)
        at_newest = [e for e in fresh if e.timestamp == newest]
        if newest == self._last_scanned:
            self._scanned_at_cursor.extend(at_newest)
        else:
            self._last_scanned = newest
            self._scanned_at_cursor = at_newest

    def scan(
        self, entries: Iterable[Reading], location: Location | None = None
    ) -> EmergencyEvent | None:
        fresh = [
            e
            for e in entries
            if e.domain is SignalDomain.BEHAVIORAL
            and e.text
            and not self._already_scanned(e)
        ]
        if not fresh:
            return None
        self._advance_cursor(fresh)

        matched: list[str] = []
        for entry in fresh:
            matched.extend(k for k in self.match_keywords(entry.text or "") if k not in matched)

        if not matched:
            return None

        self.logger.info("emergency_keywords_detected", keywords=matched, entries=len(fresh))
        return EmergencyEvent(
            type=EmergencyType.MENTAL,
            confidence=self.config.behavioral_confidence,
            severity=Severity.MEDIUM,
            symptoms=[f"Emergency keywords detected: {', '.join(matched)}"],
            recommended_action="Immediate attention required",
            should_escalate=False,
            location=location,
            source="behavioral",
        )

"""
Periodic health rollup: score, risk factors, recommendations and check-in cadence.

The rule-based rollup always runs. When enabled, a pydantic-ai agent adds a
few personalised recommendations on top; it sits behind a timeout and a
circuit breaker and its failure simply leaves the rule-based list in place.
"""

import asyncio
import math
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from pydantic_ai import Agent

from vitalwatch.config import AIProviderConfig
from vitalwatch.domain.models import EmergencyContact, HealthInsight, VitalSigns
from vitalwatch.services.anomaly_detection import compute_risk_score
from vitalwatch.services.dispatch import CircuitBreakerState
from vitalwatch.services.metric_store import StoreSnapshot

logger = structlog.get_logger(__name__)


def check_in_interval(risk_score: float) -> timedelta:
    """Shortens monotonically as risk rises."""
    if risk_score > 70:
        return timedelta(days=7)
    if risk_score > 50:
        return timedelta(days=30)
    return timedelta(days=90)


def health_sub_scores(vitals: VitalSigns) -> list[float]:
    scores: list[float] = []
    if vitals.heart_rate is not None:
        scores.append(100 if 60 < vitals.heart_rate < 100 else 50)
    if vitals.spo2 is not None:
        scores.append(100 if vitals.spo2 > 95 else 70)
    if vitals.stress_level is not None:
        scores.append(100 if vitals.stress_level < 50 else 100 - vitals.stress_level)
    if vitals.mental_health_score is not None:
        scores.append(vitals.mental_health_score)
    if vitals.sleep_quality is not None:
        scores.append(vitals.sleep_quality)
    return [max(0.0, min(100.0, s)) for s in scores]


def identify_risk_factors(vitals: VitalSigns) -> list[str]:
    factors = []
    if vitals.heart_rate is not None and vitals.heart_rate > 100:
        factors.append("Elevated heart rate")
    if vitals.spo2 is not None and vitals.spo2 < 95:
        factors.append("Low oxygen saturation")
    if vitals.stress_level is not None and vitals.stress_level > 70:
        factors.append("High stress levels")
    if vitals.mental_health_score is not None and vitals.mental_health_score < 50:
        factors.append("Mental health concerns")
    if vitals.systolic is not None and vitals.systolic > 140:
        factors.append("Elevated blood pressure")
    return factors


def generate_recommendations(vitals: VitalSigns) -> list[str]:
    recommendations = []
    if vitals.stress_level is not None and vitals.stress_level > 70:
        recommendations.append("Consider stress management techniques")
    if vitals.mental_health_score is not None and vitals.mental_health_score < 50:
        recommendations.append("Speak with a mental health professional")
    if vitals.sleep_quality is not None and vitals.sleep_quality < 50:
        recommendations.append("Improve sleep hygiene")
    if vitals.activity_level is not None and vitals.activity_level < 30:
        recommendations.append("Increase physical activity")
    return recommendations


class RecommendationAgent:
    """
    AI agent that writes short wellbeing recommendations.

    Output is a validated list of strings. It never sees identifying data,
    only the current vitals summary and rule-based risk factors.
    """

    def __init__(self, config: AIProviderConfig) -> None:
        self.config = config
        self.logger = logger.bind(component="recommendation_agent")

        self.agent = Agent(
            model=self.config.recommendation_model,
            output_type=list[str],
            system_prompt=self._build_system_prompt(),
            model_settings={"temperature": self.config.temperature},
            defer_model_check=True,
        )

    def _build_system_prompt(self) -> str:
        return """You are a careful wellbeing coach reviewing a summary of wearable readings.

Suggest at most three short, concrete, non-diagnostic recommendations.
Never claim a diagnosis and never tell the user to ignore symptoms.
If readings look dangerous, recommend contacting a medical professional."""

    def _build_user_prompt(self, vitals: VitalSigns, risk_factors: list[str]) -> str:
        readings = [
            f"- {name}: {value}" for name, value in vitals.model_dump().items() if value is not None
        ]
        return f"""CURRENT READINGS:
{chr(10).join(readings) if readings else "No readings available"}

RISK FACTORS:
{chr(10).join(f"- {f}" for f in risk_factors) if risk_factors else "None identified"}

Return up to three recommendations."""

    async def recommend(self, vitals: VitalSigns, risk_factors: list[str]) -> list[str]:
        result = await asyncio.wait_for(
            self.agent.run(self._build_user_prompt(vitals, risk_factors)),
            timeout=self.config.timeout_seconds,
        )
        output: Any = result.output
        return [str(item).strip() for item in output if str(item).strip()][:3]


class InsightAggregator:
    """Rolls the latest window up into a HealthInsight."""

    def __init__(
        self,
        contacts: list[EmergencyContact] | None = None,
        recommender: RecommendationAgent | None = None,
        motion_lookback: int = 10,
    ) -> None:
        self.contacts = sorted(contacts or [], key=lambda c: c.priority)
        self.recommender = recommender
        self.motion_lookback = motion_lookback
        self.recommender_breaker = CircuitBreakerState(failure_threshold=3, recovery_timeout=300)
        self.logger = logger.bind(component="insight_aggregator")

    def analyze(self, snapshot: StoreSnapshot, now: datetime | None = None) -> HealthInsight:
        now = now or datetime.now(UTC)
        vitals = snapshot.vitals(self.motion_lookback)
        contact_names = [c.name for c in self.contacts]

        if vitals.is_empty():
            return HealthInsight(
                overall_health=0,
                risk_factors=[],
                recommendations=[],
                risk_score=0.0,
                next_check_in_interval=timedelta(0),
                next_check_in_at=now,
                emergency_contacts=contact_names,
                generated_at=now,
            )

        scores = health_sub_scores(vitals)
        overall = math.floor(sum(scores) / len(scores)) if scores else 0
        risk_score = compute_risk_score(vitals)
        interval = check_in_interval(risk_score)

        insight = HealthInsight(
            overall_health=overall,
            risk_factors=identify_risk_factors(vitals),
            recommendations=generate_recommendations(vitals),
            risk_score=risk_score,
            next_check_in_interval=interval,
            next_check_in_at=now + interval,
            emergency_contacts=contact_names,
            generated_at=now,
        )
        self.logger.info("insight_generated", **insight.summary())
        return insight

    async def analyze_enriched(
        self, snapshot: StoreSnapshot, now: datetime | None = None
    ) -> HealthInsight:
        """Rule-based rollup plus AI recommendations when available."""
        insight = self.analyze(snapshot, now)
        if self.recommender is None or insight.overall_health == 0:
            return insight

        if not self.recommender_breaker.can_execute():
            self.logger.warning("recommendation_circuit_open")
            return insight

        try:
            extra = await self.recommender.recommend(
                snapshot.vitals(self.motion_lookback), insight.risk_factors
            )
            self.recommender_breaker.record_success()
        except Exception as e:
            self.recommender_breaker.record_failure()
            self.logger.error("ai_recommendations_failed", error=str(e) or type(e).__name__)
            return insight

        merged = list(insight.recommendations)
        merged.extend(r for r in extra if r not in merged)
        return insight.model_copy(update={"recommendations": merged})

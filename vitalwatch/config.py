"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Secure defaults (no API keys in code, no contacts baked in)
"""

import logging
import os
from functools import lru_cache
from typing import Literal, cast

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from vitalwatch.domain.models import EmergencyContact

# Load environment variables from .env file
load_dotenv()

DEFAULT_EMERGENCY_KEYWORDS = [
    "help",
    "emergency",
    "911",
    "pain",
    "chest pain",
    "heart attack",
    "stroke",
    "can't breathe",
    "dizzy",
    "fainting",
    "seizure",
    "overdose",
    "suicide",
    "bleeding",
    "broken",
    "accident",
    "fall",
    "unconscious",
    "dead",
]


class MonitoringConfig(BaseModel):
    """Sampling and analysis cadence."""

    vitals_interval_seconds: float = Field(
        default=5.0, gt=0.0, description="Interval for cardiac, respiratory and stress sampling"
    )
    behavioral_interval_seconds: float = Field(
        default=15.0, gt=0.0, description="Interval for behavioral sampling and keyword scans"
    )
    location_interval_seconds: float = Field(default=30.0, gt=0.0)
    audio_interval_seconds: float = Field(default=10.0, gt=0.0)
    motion_interval_seconds: float = Field(default=1.0, gt=0.0)
    detection_interval_seconds: float = Field(
        default=30.0, gt=0.0, description="Interval between anomaly detection cycles"
    )
    insight_interval_seconds: float = Field(
        default=300.0, gt=0.0, description="Interval between insight rollups"
    )

    sensor_timeout_seconds: float = Field(
        default=3.0, gt=0.0, description="Timeout for a single sensor poll"
    )
    window_capacity: int = Field(
        default=100, gt=0, description="Readings kept per signal domain"
    )
    motion_lookback_readings: int = Field(
        default=10, gt=0, description="Motion readings inspected for fall impacts"
    )


class DetectionConfig(BaseModel):
    """Anomaly detection thresholds."""

    emission_threshold: int = Field(
        default=30, ge=0, le=100, description="Events are emitted only above this confidence"
    )
    risk_escalation_threshold: float = Field(
        default=80.0, ge=0.0, le=100.0, description="Composite risk that forces escalation"
    )
    fall_impact_g: float = Field(default=3.0, gt=1.0, description="Acceleration treated as a fall")
    emergency_keywords: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EMERGENCY_KEYWORDS), min_length=1
    )
    behavioral_confidence: int = Field(default=60, ge=0, le=100)

    @field_validator("emergency_keywords")
    def normalize_keywords(cls, v: list[str]) -> list[str]:
        cleaned = [k.strip().lower() for k in v if k.strip()]
        if not cleaned:
            raise ValueError("at least one emergency keyword is required")
        return cleaned


class EscalationConfig(BaseModel):
    """Grace period and dispatch settings."""

    grace_period_seconds: float = Field(
        default=30.0, gt=0.0, description="Time the user has to confirm or dismiss"
    )
    emergency_call_timeout_seconds: float = Field(default=10.0, gt=0.0)
    contact_timeout_seconds: float = Field(default=10.0, gt=0.0)
    emergency_number: str = Field(default="911", min_length=1)
    history_size: int = Field(default=100, gt=0, description="Closed sessions kept in memory")
    call_failure_threshold: int = Field(
        default=3, gt=0, description="Consecutive call failures before the circuit opens"
    )
    call_recovery_seconds: int = Field(default=60, gt=0)


class AuditConfig(BaseModel):
    sink: Literal["memory", "jsonl"] = Field(default="memory")
    path: str = Field(default="./logs/audit.jsonl", description="Path for the jsonl sink")


class AIProviderConfig(BaseModel):
    """Optional AI-assisted recommendations. Disabled unless a key is configured."""

    enabled: bool = Field(default=False)
    openai_api_key: str | None = Field(default=None, description="OpenAI API key")
    recommendation_model: str = Field(default="openai:gpt-4o-mini")
    temperature: float = Field(default=0.1, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=20.0, gt=0.0)

    @model_validator(mode="after")
    def key_required_when_enabled(self) -> "AIProviderConfig":
        if not self.enabled:
            return self
        key = self.openai_api_key
        if not key or key == "your-openai-api-key-here":
            raise ValueError("AI provider API key must be set when AI recommendations are enabled")
        if not key.startswith("sk-"):
            raise ValueError("AI provider API key must start with 'sk-'")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    ai_provider: AIProviderConfig = Field(default_factory=AIProviderConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    contacts: list[EmergencyContact] = Field(default_factory=list)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def parse_contacts(raw: str | None) -> list[EmergencyContact]:
    """Parse ``name:phone[:priority]`` entries separated by semicolons."""
    if not raw:
        return []

    contacts = []
    for entry in raw.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        parts = [p.strip() for p in entry.split(":")]
        if len(parts) not in (2, 3):
            raise ValueError(f"invalid emergency contact entry: {entry!r}")
        priority = int(parts[2]) if len(parts) == 3 else len(contacts) + 1
        contacts.append(EmergencyContact(name=parts[0], phone=parts[1], priority=priority))
    return contacts


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    monitoring_config = MonitoringConfig(
        vitals_interval_seconds=float(os.getenv("VITALS_INTERVAL_SECONDS", "5.0")),
        behavioral_interval_seconds=float(os.getenv("BEHAVIORAL_INTERVAL_SECONDS", "15.0")),
        location_interval_seconds=float(os.getenv("LOCATION_INTERVAL_SECONDS", "30.0")),
        audio_interval_seconds=float(os.getenv("AUDIO_INTERVAL_SECONDS", "10.0")),
        motion_interval_seconds=float(os.getenv("MOTION_INTERVAL_SECONDS", "1.0")),
        detection_interval_seconds=float(os.getenv("DETECTION_INTERVAL_SECONDS", "30.0")),
        insight_interval_seconds=float(os.getenv("INSIGHT_INTERVAL_SECONDS", "300.0")),
        sensor_timeout_seconds=float(os.getenv("SENSOR_TIMEOUT_SECONDS", "3.0")),
        window_capacity=int(os.getenv("WINDOW_CAPACITY", "100")),
        motion_lookback_readings=int(os.getenv("MOTION_LOOKBACK_READINGS", "10")),
    )

    keywords = os.getenv("EMERGENCY_KEYWORDS")
    detection_config = DetectionConfig(
        emission_threshold=int(os.getenv("EMISSION_THRESHOLD", "30")),
        risk_escalation_threshold=float(os.getenv("RISK_ESCALATION_THRESHOLD", "80")),
        fall_impact_g=float(os.getenv("FALL_IMPACT_G", "3.0")),
        behavioral_confidence=int(os.getenv("BEHAVIORAL_CONFIDENCE", "60")),
        emergency_keywords=keywords.split(",") if keywords else list(DEFAULT_EMERGENCY_KEYWORDS),
    )

    escalation_config = EscalationConfig(
        grace_period_seconds=float(os.getenv("GRACE_PERIOD_SECONDS", "30.0")),
        emergency_call_timeout_seconds=float(os.getenv("EMERGENCY_CALL_TIMEOUT_SECONDS", "10.0")),
        contact_timeout_seconds=float(os.getenv("CONTACT_TIMEOUT_SECONDS", "10.0")),
        emergency_number=os.getenv("EMERGENCY_NUMBER", "911"),
        history_size=int(os.getenv("ESCALATION_HISTORY_SIZE", "100")),
        call_failure_threshold=int(os.getenv("CALL_FAILURE_THRESHOLD", "3")),
        call_recovery_seconds=int(os.getenv("CALL_RECOVERY_SECONDS", "60")),
    )

    audit_config = AuditConfig(
        sink="jsonl" if os.getenv("AUDIT_SINK", "memory").strip().lower() == "jsonl" else "memory",
        path=os.getenv("AUDIT_PATH", "./logs/audit.jsonl"),
    )

    ai_config = AIProviderConfig(
        enabled=_parse_bool(os.getenv("AI_RECOMMENDATIONS_ENABLED"), False),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        recommendation_model=os.getenv("RECOMMENDATION_MODEL", "openai:gpt-4o-mini"),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        monitoring=monitoring_config,
        detection=detection_config,
        escalation=escalation_config,
        audit=audit_config,
        ai_provider=ai_config,
        logging=logging_config,
        contacts=parse_contacts(os.getenv("EMERGENCY_CONTACTS")),
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def configure_logging(config: LoggingConfig) -> None:
    """Install the structlog processor chain for the configured format."""
    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )
    logging.basicConfig(format="%(message)s", level=getattr(logging, config.level))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nMONITORING")
    print(f"Vitals Interval: {config.monitoring.vitals_interval_seconds}s")
    print(f"Detection Interval: {config.monitoring.detection_interval_seconds}s")
    print(f"Window Capacity: {config.monitoring.window_capacity}")

    print("\nESCALATION")
    print(f"Grace Period: {config.escalation.grace_period_seconds}s")
    print(f"Emergency Number: {config.escalation.emergency_number}")
    print(f"Emergency Contacts: {len(config.contacts)}")
    print(f"AI Recommendations: {'on' if config.ai_provider.enabled else 'off'}")


if __name__ == "__main__":
    print_config_summary()

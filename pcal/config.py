"""
PCAL configuration.

Settings are read from the environment (prefix ``PCAL_``; the feature gate
is ``ENABLE_PCAL``) and validated when constructed. A bad value is a
deployment error and raises immediately instead of degrading to defaults.
"""

from croniter import croniter
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class PCALSettings(BaseSettings):
    """Validated runtime configuration for every PCAL component."""

    model_config = SettingsConfigDict(
        env_prefix="PCAL_",
        populate_by_name=True,
        extra="ignore",
    )

    enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("ENABLE_PCAL", "PCAL_ENABLED"),
    )

    # Decision Stream
    max_decisions: int = Field(default=10_000, gt=0)

    # Platform Memory
    pattern_threshold: int = Field(default=3, gt=0)
    pattern_window_ms: int = Field(default=DAY_MS, gt=0)

    # Feedback Loop
    override_threshold: int = Field(default=3, gt=0)
    override_lookback_ms: int = Field(default=7 * DAY_MS, gt=0)
    incident_correlation_window_ms: int = Field(default=HOUR_MS, gt=0)
    flapping_window_ms: int = Field(default=HOUR_MS, gt=0)
    flapping_threshold: int = Field(default=4, gt=0)
    confidence_decay_rate: float = Field(default=0.1, gt=0, lt=1)
    min_confidence: float = Field(default=20, ge=0, le=100)
    signal_history_limit: int = Field(default=500, gt=0)
    recommendation_history_limit: int = Field(default=200, gt=0)

    # Narrative Generator
    risk_window_ms: int = Field(default=7 * DAY_MS, gt=0)

    # Scan scheduler
    scan_schedule: str = "*/15 * * * *"

    @field_validator("scan_schedule")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"scan_schedule is not a valid cron expression: {value!r}")
        return value

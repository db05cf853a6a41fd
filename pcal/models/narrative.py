"""Narrative and risk report view models. Built on demand, never stored."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NarrativeQuery(str, Enum):
    WHY_ROLLOUT_FAILED = "why_rollout_failed"
    WHY_FEATURE_BLOCKED = "why_feature_blocked"
    RISKIEST_AREA = "riskiest_area"
    SAFETY_TREND = "safety_trend"
    PLATFORM_OVERVIEW = "platform_overview"


class NarrativeRequest(BaseModel):
    query: NarrativeQuery
    context: Dict[str, str] = {}            # e.g., {"rollout_id": "..."}


class TimelineEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    event: str
    significance: str                       # "low" | "medium" | "high"
    related_decisions: List[str] = []


class Narrative(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    query: NarrativeQuery
    generated_at: datetime
    headline: str
    summary: str
    timeline: List[TimelineEvent] = []
    root_causes: List[str] = []
    contributing_factors: List[str] = []
    recommendations: List[str] = []


class SafetyTrend(str, Enum):
    SAFER = "safer"
    SAME = "same"
    RISKIER = "riskier"


class SystemicRisk(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    area: str
    description: str
    severity: str
    likelihood: float = Field(ge=0, le=1)
    impact: str
    mitigations: List[str] = []
    trend: str


class ImprovementOpportunity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    area: str
    description: str
    expected_impact: str                    # "low" | "medium" | "high"
    effort: str
    recommendation: str


class RiskReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    generated_at: datetime
    safety_score: float = Field(ge=0, le=100)
    safety_trend: SafetyTrend
    top_risks: List[SystemicRisk] = []
    top_opportunities: List[ImprovementOpportunity] = []
    comparison_period: str
    recent_failure_rate: float = 0.0
    prior_failure_rate: float = 0.0
    recent_override_rate: float = 0.0
    prior_override_rate: float = 0.0


class NarrativeStats(BaseModel):
    narratives_by_query: Dict[str, int] = {}
    risk_reports: int = 0
    last_generated_at: Optional[datetime] = None

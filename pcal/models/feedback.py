"""Feedback Loop models — signals, recommendations and adjustment state."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class SignalType(str, Enum):
    REPEATED_OVERRIDE = "repeated_override"
    RECURRING_PATTERN = "recurring_pattern"
    POST_APPROVAL_INCIDENT = "post_approval_incident"
    READINESS_FLAPPING = "readiness_flapping"
    WRONG_APPROVAL = "wrong_approval"
    REPEATED_MISTAKE = "repeated_mistake"


class SignalSeverity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"


class FeedbackSignal(BaseModel):
    """One rule firing during one feedback cycle."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: SignalType
    severity: SignalSeverity
    affected_area: str
    context: dict = {}
    detected_at: datetime


class RecommendationAction(str, Enum):
    ESCALATE = "escalate"
    BLOCK = "block"
    LOWER_AUTOMATION_CONFIDENCE = "lower_automation_confidence"
    REQUIRE_SECOND_APPROVAL = "require_second_approval"
    INCREASE_APPROVAL_LEVEL = "increase_approval_level"
    SHORTEN_OVERRIDE_TTL = "shorten_override_ttl"
    RECOMMEND_POLICY_TIGHTENING = "recommend_policy_tightening"
    FLAG_FOR_REVIEW = "flag_for_review"


class RecommendationStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"   # Terminal


class Recommendation(BaseModel):
    """
    An advisory action. Never auto-applied.

    Status moves pending → acknowledged exactly once; the loop replaces the
    stored instance instead of editing it.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    action: RecommendationAction
    target: str
    reason: str
    status: RecommendationStatus = RecommendationStatus.PENDING
    suggested_value: Optional[float] = None
    signal_id: Optional[str] = None
    signal_type: Optional[SignalType] = None
    created_at: datetime
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None


class FeedbackState(BaseModel):
    """Adjustments decision producers are expected to read back."""

    automation_confidence: Dict[str, float] = {}
    approval_level_overrides: Dict[str, int] = {}
    override_ttl_multipliers: Dict[str, float] = {}
    pending_recommendations: int = 0
    acknowledged_recommendations: int = 0


class FeedbackCycleResult(BaseModel):
    signals_detected: int
    recommendations_generated: int
    signals: List[FeedbackSignal] = []
    recommendations: List[Recommendation] = []
    state: FeedbackState


class FeedbackStats(BaseModel):
    total_signals: int = 0
    signals_by_type: Dict[str, int] = {}
    pending_recommendations: int = 0
    acknowledged_recommendations: int = 0
    confidence_adjustments: int = 0
    approval_level_adjustments: int = 0

"""PCAL data models."""

from pcal.models.authority import (
    AccountabilityAnswer,
    Approval,
    AuthorityChain,
    AuthorityNode,
    AuthorityNodeKind,
    AuthorityStats,
    Override,
)
from pcal.models.decision import (
    AuthorityType,
    Decision,
    DecisionDomain,
    DecisionOutcome,
    DecisionSignal,
    DecisionSource,
    DecisionStats,
)
from pcal.models.feedback import (
    FeedbackCycleResult,
    FeedbackSignal,
    FeedbackState,
    FeedbackStats,
    Recommendation,
    RecommendationAction,
    RecommendationStatus,
    SignalSeverity,
    SignalType,
)
from pcal.models.memory import (
    IncidentLink,
    IncidentLinkType,
    MemorySnapshot,
    Pattern,
    PatternSeverity,
    PatternTrend,
    RepeatedMistake,
)
from pcal.models.narrative import (
    ImprovementOpportunity,
    Narrative,
    NarrativeQuery,
    NarrativeRequest,
    NarrativeStats,
    RiskReport,
    SafetyTrend,
    SystemicRisk,
    TimelineEvent,
)

__all__ = [
    "AccountabilityAnswer",
    "Approval",
    "AuthorityChain",
    "AuthorityNode",
    "AuthorityNodeKind",
    "AuthorityStats",
    "AuthorityType",
    "Decision",
    "DecisionDomain",
    "DecisionOutcome",
    "DecisionSignal",
    "DecisionSource",
    "DecisionStats",
    "FeedbackCycleResult",
    "FeedbackSignal",
    "FeedbackState",
    "FeedbackStats",
    "ImprovementOpportunity",
    "IncidentLink",
    "IncidentLinkType",
    "MemorySnapshot",
    "Narrative",
    "NarrativeQuery",
    "NarrativeRequest",
    "NarrativeStats",
    "Override",
    "Pattern",
    "PatternSeverity",
    "PatternTrend",
    "Recommendation",
    "RecommendationAction",
    "RecommendationStatus",
    "RepeatedMistake",
    "RiskReport",
    "SafetyTrend",
    "SignalSeverity",
    "SignalType",
    "SystemicRisk",
    "TimelineEvent",
]

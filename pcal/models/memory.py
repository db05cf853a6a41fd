"""Platform Memory models — patterns, incident links, mistakes and snapshots."""

from datetime import datetime
from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

from pcal.models.decision import DecisionDomain, DecisionOutcome, DecisionSource


class PatternSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {
    PatternSeverity.LOW: 0,
    PatternSeverity.MEDIUM: 1,
    PatternSeverity.HIGH: 2,
    PatternSeverity.CRITICAL: 3,
}


class PatternTrend(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


class Pattern(BaseModel):
    """
    A recurring (source, domain, outcome) signature.

    The only aggregate in the model that changes over time. It is never
    edited in place: each scan that changes it stores a fresh instance
    under the same id.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    signature: str                          # "source|domain|outcome"
    name: str
    source: DecisionSource
    domain: DecisionDomain
    outcome: DecisionOutcome
    occurrences: int
    severity: PatternSeverity
    trend: PatternTrend
    linked_decisions: List[str] = []
    linked_incidents: List[str] = []
    first_seen: datetime
    last_seen: datetime
    description: str = ""


class IncidentLinkType(str, Enum):
    CAUSED_BY = "caused_by"
    CORRELATED_WITH = "correlated_with"
    CONTRIBUTED_TO = "contributed_to"
    MITIGATED_BY = "mitigated_by"


class IncidentLink(BaseModel):
    """An edge in the provenance graph between an incident and a decision."""

    model_config = ConfigDict(frozen=True)

    id: str
    incident_id: str
    decision_id: str
    link_type: IncidentLinkType
    confidence: float = Field(ge=0, le=100)
    linked_at: datetime


class RepeatedMistake(BaseModel):
    """A recurring pattern where a human override was followed by an incident."""

    model_config = ConfigDict(frozen=True)

    id: str
    pattern_id: str
    signature: str
    source: DecisionSource
    domain: DecisionDomain
    outcome: DecisionOutcome
    occurrences: int
    decision_ids: List[str]
    override_ids: List[str]
    incident_ids: List[str]
    description: str
    recommendation: str
    detected_at: datetime


class MemorySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    captured_at: datetime
    patterns: List[Pattern]
    total_decisions: int
    decisions_by_outcome: Dict[str, int] = {}
    decisions_by_source: Dict[str, int] = {}
    incident_link_count: int = 0
    repeated_mistake_count: int = 0

"""Decision — the immutable record of one governance event."""

from datetime import datetime
from enum import Enum
from typing import Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class DecisionSource(str, Enum):
    """Subsystem that produced a decision."""
    CUTOVER = "cutover"
    GOVERNOR = "governor"
    LOAD_CONTROLLER = "load_controller"
    INCIDENT = "incident"
    OVERRIDE = "override"
    AUTONOMY = "autonomy"
    GLCP = "glcp"
    MANUAL = "manual"


class DecisionDomain(str, Enum):
    PLATFORM = "platform"
    FEATURE = "feature"
    CONTENT = "content"
    TRAFFIC = "traffic"
    DEPLOYMENT = "deployment"
    GOVERNANCE = "governance"


class DecisionOutcome(str, Enum):
    APPROVED = "approved"
    BLOCKED = "blocked"
    WARNING = "warning"
    ESCALATED = "escalated"


class AuthorityType(str, Enum):
    SYSTEM = "system"   # Automated controller acting on its own thresholds
    POLICY = "policy"   # A declared policy rule
    HUMAN = "human"     # A named operator


# Outcomes that indicate the platform stopped or flagged something
RISK_OUTCOMES = (
    DecisionOutcome.BLOCKED,
    DecisionOutcome.ESCALATED,
    DecisionOutcome.WARNING,
)


class DecisionSignal(BaseModel):
    """One piece of evidence a producer weighed when deciding."""

    model_config = ConfigDict(frozen=True)

    name: str                               # e.g., "error_rate", "p95_latency_ms"
    value: Union[float, str, bool]
    weight: float = 1.0
    source: str = "unknown"                 # Where the reading came from


class Decision(BaseModel):
    """
    A governance decision as recorded in the Decision Stream.

    Frozen: nothing derived from a decision is ever written back onto it.
    Approvals, overrides, patterns and incident links reference it by id.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    source: DecisionSource
    domain: DecisionDomain
    outcome: DecisionOutcome
    reason: str
    confidence: float = Field(ge=0, le=100, default=100)
    signals: Tuple[DecisionSignal, ...] = ()
    authority: AuthorityType = AuthorityType.SYSTEM
    actor: Optional[str] = None
    reversible: bool = True
    scope_id: Optional[str] = None          # Rollout / feature / route being governed
    override_of: Optional[str] = None       # Decision this one supersedes
    timestamp: datetime

    # INTEGRITY
    signature: str = ""

    @model_validator(mode="after")
    def _human_requires_actor(self) -> "Decision":
        if self.authority == AuthorityType.HUMAN and not self.actor:
            raise ValueError("actor is required when authority is 'human'")
        return self

    @property
    def pattern_signature(self) -> str:
        """Recurrence key used by Platform Memory."""
        return f"{self.source.value}|{self.domain.value}|{self.outcome.value}"


class DecisionStats(BaseModel):
    """Aggregate view over the live ledger, computed on demand."""

    total: int = 0
    avg_confidence: float = 0.0
    outcome_breakdown: dict = {}
    by_source: dict = {}
    by_authority: dict = {}
    reversible_percent: float = 0.0
    evicted_total: int = 0

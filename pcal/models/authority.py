"""Authority records — approvals, overrides and the resolved authority chain."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pcal.models.decision import AuthorityType, DecisionOutcome


class Approval(BaseModel):
    """
    An explicit sign-off, recorded independently of any single decision.

    `target` is matched against a decision's id, domain, source or scope id
    when the authority chain is resolved.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    approved_by: str
    authority_type: AuthorityType
    target: str
    justification: str
    timestamp: datetime


class Override(BaseModel):
    """
    A time-bounded human action that supersedes an automated decision.

    Whether an override is still in force is derived at read time from
    `created_at + duration_ms`; nothing expires it in the background.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    decision_id: str
    overridden_by: str
    justification: str
    reason: str
    created_at: datetime
    duration_ms: int = Field(gt=0)
    outcome: DecisionOutcome = DecisionOutcome.APPROVED   # What the human forced

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(milliseconds=self.duration_ms)

    def is_active(self, current_time: Optional[datetime] = None) -> bool:
        if current_time is None:
            current_time = datetime.utcnow()
        return current_time < self.expires_at

    @property
    def still_active(self) -> bool:
        return self.is_active()


class AuthorityNodeKind(str, Enum):
    DECISION = "decision"
    APPROVAL = "approval"
    OVERRIDE = "override"


class AuthorityNode(BaseModel):
    """One link in an authority chain."""

    model_config = ConfigDict(frozen=True)

    position: int
    kind: AuthorityNodeKind
    authority_type: AuthorityType
    actor: Optional[str] = None
    stance: DecisionOutcome                 # Outcome this node argued for
    reference_id: str                       # Decision / approval / override id
    justification: str = ""
    timestamp: datetime
    active: bool = True                     # False for expired overrides


class AuthorityChain(BaseModel):
    """Ordered reconstruction of who is responsible for a decision."""

    model_config = ConfigDict(frozen=True)

    decision_id: str
    nodes: List[AuthorityNode]
    recorded_outcome: DecisionOutcome
    effective_outcome: DecisionOutcome
    effective_authority: AuthorityType
    bypassed_policies: List[str] = []       # reference_ids of overruled policy nodes
    overridden: bool = False
    resolved_at: datetime


class AccountabilityAnswer(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    answer: str
    evidence: List[str] = []


class AuthorityStats(BaseModel):
    total_approvals: int = 0
    total_overrides: int = 0
    active_overrides: int = 0
    overrides_by_actor: Dict[str, int] = {}
    approvals_by_authority: Dict[str, int] = {}

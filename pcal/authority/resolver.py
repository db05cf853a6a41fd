"""
Authority Chain Resolver — who is responsible for a decision, and why.

Behavioral Contract:
- Owns Approval and Override records. Both reference decisions only by id;
  a decision leaving the ledger never cascades into them.
- Overrides expire lazily: `still_active` is evaluated at read time.
- Chains are rebuilt on every request from the current records, so an
  approval recorded after the decision shows up on the next resolution.
- Unknown decisions resolve to None (chain) or [] (accountability answers).
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Union
from uuid import uuid4

from pcal.config import PCALSettings
from pcal.decision_stream.stream import DecisionStream
from pcal.models.authority import (
    AccountabilityAnswer,
    Approval,
    AuthorityChain,
    AuthorityNode,
    AuthorityNodeKind,
    AuthorityStats,
    Override,
)
from pcal.models.decision import AuthorityType, Decision, DecisionOutcome

logger = logging.getLogger(__name__)


def _describe_actor(node: AuthorityNode) -> str:
    if node.actor:
        return f"{node.actor} ({node.authority_type.value})"
    return f"the {node.authority_type.value} authority"


class AuthorityChainResolver:
    """Approval/override registry plus chain reconstruction over the Decision Stream."""

    def __init__(
        self,
        decision_stream: DecisionStream,
        settings: Optional[PCALSettings] = None,
    ):
        self.decision_stream = decision_stream
        self.settings = settings or decision_stream.settings
        self._approvals: Dict[str, Approval] = {}
        self._overrides: Dict[str, Override] = {}

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    # --- Recording ---

    def record_approval(
        self,
        approved_by: str,
        authority_type: Union[AuthorityType, str],
        target: str,
        justification: str,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Approval]:
        """Record an explicit sign-off against a decision, domain, source or scope."""
        if not self.enabled:
            return None
        approval = Approval(
            id=f"appr_{uuid4().hex[:12]}",
            approved_by=approved_by,
            authority_type=authority_type,
            target=target,
            justification=justification,
            timestamp=timestamp or datetime.utcnow(),
        )
        self._approvals[approval.id] = approval
        logger.info(
            "approval recorded",
            extra={"approval_id": approval.id, "approved_by": approved_by, "target": target},
        )
        return approval

    def record_override(
        self,
        decision_id: str,
        overridden_by: str,
        justification: str,
        reason: str,
        duration_ms: int,
        outcome: Union[DecisionOutcome, str] = DecisionOutcome.APPROVED,
        created_at: Optional[datetime] = None,
    ) -> Optional[Override]:
        """Record a time-bounded human override of a decision."""
        if not self.enabled:
            return None
        override = Override(
            id=f"ovr_{uuid4().hex[:12]}",
            decision_id=decision_id,
            overridden_by=overridden_by,
            justification=justification,
            reason=reason,
            created_at=created_at or datetime.utcnow(),
            duration_ms=duration_ms,
            outcome=outcome,
        )
        self._overrides[override.id] = override
        logger.info(
            "override recorded",
            extra={
                "override_id": override.id,
                "decision_id": decision_id,
                "overridden_by": overridden_by,
                "duration_ms": duration_ms,
            },
        )
        return override

    # --- Queries ---

    def get_active_overrides(self, current_time: Optional[datetime] = None) -> List[Override]:
        if not self.enabled:
            return []
        if current_time is None:
            current_time = datetime.utcnow()
        return [o for o in self._overrides.values() if o.is_active(current_time)]

    def get_all_overrides(self) -> List[Override]:
        if not self.enabled:
            return []
        return sorted(self._overrides.values(), key=lambda o: o.created_at)

    def get_overrides_for_decision(self, decision_id: str) -> List[Override]:
        return [o for o in self.get_all_overrides() if o.decision_id == decision_id]

    def get_approvals_for_target(self, target: str) -> List[Approval]:
        if not self.enabled:
            return []
        return sorted(
            (a for a in self._approvals.values() if a.target == target),
            key=lambda a: a.timestamp,
        )

    def get_authority_stats(self, current_time: Optional[datetime] = None) -> AuthorityStats:
        if not self.enabled:
            return AuthorityStats()
        return AuthorityStats(
            total_approvals=len(self._approvals),
            total_overrides=len(self._overrides),
            active_overrides=len(self.get_active_overrides(current_time)),
            overrides_by_actor=dict(Counter(o.overridden_by for o in self._overrides.values())),
            approvals_by_authority=dict(
                Counter(a.authority_type.value for a in self._approvals.values())
            ),
        )

    # --- Chain resolution ---

    async def resolve_authority_chain(
        self,
        decision_id: str,
        current_time: Optional[datetime] = None,
    ) -> Optional[AuthorityChain]:
        """
        Reconstruct the authority chain for a decision.

        Yields to the event loop between lookups: approvals and overrides
        recorded by concurrently running producers are picked up, but the
        result is not guaranteed to be a consistent snapshot.
        """
        if not self.enabled:
            return None
        decision = self.decision_stream.get_decision(decision_id)
        if decision is None:
            return None

        await asyncio.sleep(0)
        approvals = self._matching_approvals(decision)
        await asyncio.sleep(0)
        overrides = self.get_overrides_for_decision(decision.id)

        return self._build_chain(decision, approvals, overrides, current_time)

    def get_bypassed_policies(
        self,
        decision_id: str,
        current_time: Optional[datetime] = None,
    ) -> List[str]:
        """Ids of policy approvals the decision's effective outcome went against."""
        if not self.enabled:
            return []
        decision = self.decision_stream.get_decision(decision_id)
        if decision is None:
            return []
        chain = self._build_chain(
            decision,
            self._matching_approvals(decision),
            self.get_overrides_for_decision(decision.id),
            current_time,
        )
        return chain.bypassed_policies

    def _matching_approvals(self, decision: Decision) -> List[Approval]:
        """Approvals whose target names the decision, its domain, source or scope."""
        targets = {decision.id, decision.domain.value, decision.source.value}
        if decision.scope_id:
            targets.add(decision.scope_id)
        return sorted(
            (a for a in self._approvals.values() if a.target in targets),
            key=lambda a: a.timestamp,
        )

    def _build_chain(
        self,
        decision: Decision,
        approvals: List[Approval],
        overrides: List[Override],
        current_time: Optional[datetime] = None,
    ) -> AuthorityChain:
        if current_time is None:
            current_time = datetime.utcnow()

        nodes: List[AuthorityNode] = [
            AuthorityNode(
                position=0,
                kind=AuthorityNodeKind.DECISION,
                authority_type=decision.authority,
                actor=decision.actor,
                stance=decision.outcome,
                reference_id=decision.id,
                justification=decision.reason,
                timestamp=decision.timestamp,
            )
        ]
        for approval in approvals:
            nodes.append(AuthorityNode(
                position=len(nodes),
                kind=AuthorityNodeKind.APPROVAL,
                authority_type=approval.authority_type,
                actor=approval.approved_by,
                stance=DecisionOutcome.APPROVED,
                reference_id=approval.id,
                justification=approval.justification,
                timestamp=approval.timestamp,
            ))
        for override in overrides:
            nodes.append(AuthorityNode(
                position=len(nodes),
                kind=AuthorityNodeKind.OVERRIDE,
                authority_type=AuthorityType.HUMAN,
                actor=override.overridden_by,
                stance=override.outcome,
                reference_id=override.id,
                justification=override.justification,
                timestamp=override.created_at,
                active=override.is_active(current_time),
            ))

        # Latest override decides the effective outcome, expired or not
        last_override = overrides[-1] if overrides else None
        effective_outcome = last_override.outcome if last_override else decision.outcome
        effective_authority = AuthorityType.HUMAN if last_override else decision.authority

        bypassed = [
            n.reference_id for n in nodes
            if n.authority_type == AuthorityType.POLICY and n.stance != effective_outcome
        ]

        return AuthorityChain(
            decision_id=decision.id,
            nodes=nodes,
            recorded_outcome=decision.outcome,
            effective_outcome=effective_outcome,
            effective_authority=effective_authority,
            bypassed_policies=bypassed,
            overridden=last_override is not None,
            resolved_at=current_time,
        )

    # --- Accountability ---

    def answer_accountability(
        self,
        decision_id: str,
        current_time: Optional[datetime] = None,
    ) -> List[AccountabilityAnswer]:
        """Canned who/why/evidence answers for one decision."""
        if not self.enabled:
            return []
        decision = self.decision_stream.get_decision(decision_id)
        if decision is None:
            return []

        overrides = self.get_overrides_for_decision(decision.id)
        chain = self._build_chain(
            decision, self._matching_approvals(decision), overrides, current_time
        )
        signal_evidence = [
            f"{s.name}={s.value} (weight {s.weight}, from {s.source})"
            for s in decision.signals
        ]

        return [
            self._who_allowed(decision, chain),
            AccountabilityAnswer(
                question="Why was this decided?",
                answer=(
                    f"{decision.source.value} recorded '{decision.outcome.value}' in "
                    f"{decision.domain.value}: {decision.reason}"
                ),
                evidence=[f"confidence={decision.confidence}"] + signal_evidence,
            ),
            AccountabilityAnswer(
                question="What evidence supported it?",
                answer=(
                    f"{len(decision.signals)} signal(s) were weighed."
                    if decision.signals
                    else "No signals were attached to this decision."
                ),
                evidence=signal_evidence,
            ),
            self._was_overridden(chain, overrides, current_time),
            AccountabilityAnswer(
                question="Can it be reversed?",
                answer=(
                    "Yes, the decision is marked reversible."
                    if decision.reversible
                    else "No, the decision is marked irreversible."
                ),
                evidence=[f"reversible={decision.reversible}"],
            ),
        ]

    def _who_allowed(self, decision: Decision, chain: AuthorityChain) -> AccountabilityAnswer:
        root = chain.nodes[0]
        parts = [f"Originally decided by {_describe_actor(root)}."]
        evidence = [f"{root.kind.value}:{root.reference_id}"]

        for node in chain.nodes[1:]:
            evidence.append(f"{node.kind.value}:{node.reference_id} by {node.actor}")
            if node.kind == AuthorityNodeKind.APPROVAL:
                parts.append(f"Approved by {_describe_actor(node)}: {node.justification}.")
            else:
                parts.append(
                    f"Overridden by {node.actor} to '{node.stance.value}': {node.justification}."
                )
        if chain.bypassed_policies:
            parts.append(f"{len(chain.bypassed_policies)} policy stance(s) were bypassed.")

        return AccountabilityAnswer(
            question="Who allowed this?",
            answer=" ".join(parts),
            evidence=evidence,
        )

    def _was_overridden(
        self,
        chain: AuthorityChain,
        overrides: List[Override],
        current_time: Optional[datetime],
    ) -> AccountabilityAnswer:
        if not overrides:
            return AccountabilityAnswer(
                question="Was it overridden?",
                answer="No human override has been recorded.",
            )
        latest = overrides[-1]
        state = "still active" if latest.is_active(current_time) else "expired"
        return AccountabilityAnswer(
            question="Was it overridden?",
            answer=(
                f"Yes, {len(overrides)} override(s); the latest by {latest.overridden_by} "
                f"({latest.reason}) is {state}. Effective outcome: "
                f"{chain.effective_outcome.value}."
            ),
            evidence=[
                f"override:{o.id} by {o.overridden_by} until {o.expires_at.isoformat()}"
                for o in overrides
            ],
        )

    # --- Maintenance ---

    def clear_all(self) -> None:
        self._approvals.clear()
        self._overrides.clear()

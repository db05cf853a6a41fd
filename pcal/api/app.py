"""
PCAL API — FastAPI endpoints.

Exposes the accountability layer to producers and operators:
- Decision ingestion and ledger queries
- Authority chains, approvals and overrides
- Platform Memory scans, incident links and snapshots
- Feedback recommendations and confidence adjustments
- Narratives and risk reports
"""

from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from pcal.models.authority import Override
from pcal.models.decision import (
    AuthorityType,
    DecisionDomain,
    DecisionOutcome,
    DecisionSignal,
    DecisionSource,
)
from pcal.models.memory import IncidentLinkType
from pcal.models.narrative import NarrativeRequest
from pcal.runtime.context import PCALContext


# --- Request/Response Models ---

class DecisionIngestRequest(BaseModel):
    source: DecisionSource
    domain: DecisionDomain
    outcome: DecisionOutcome
    reason: str
    confidence: float = Field(ge=0, le=100, default=100)
    signals: List[DecisionSignal] = []
    authority: AuthorityType = AuthorityType.SYSTEM
    actor: Optional[str] = None
    reversible: bool = True
    scope_id: Optional[str] = None
    override_of: Optional[str] = None


class ManualDecisionRequest(BaseModel):
    domain: DecisionDomain
    outcome: DecisionOutcome
    reason: str
    actor: str = Field(min_length=1)
    confidence: float = Field(ge=0, le=100, default=100)
    reversible: bool = True
    scope_id: Optional[str] = None


class ApprovalRequest(BaseModel):
    approved_by: str
    authority_type: AuthorityType
    target: str
    justification: str


class OverrideRequest(BaseModel):
    decision_id: str
    overridden_by: str
    justification: str
    reason: str
    duration_ms: int = Field(gt=0)
    outcome: DecisionOutcome = DecisionOutcome.APPROVED


class IncidentLinkRequest(BaseModel):
    incident_id: str
    decision_id: str
    link_type: IncidentLinkType
    confidence: float = Field(ge=0, le=100)


class AcknowledgeRequest(BaseModel):
    actor: str = Field(min_length=1)


class ConfidenceAdjustmentRequest(BaseModel):
    delta: float = Field(ge=-1, le=1)


def _override_view(override: Override) -> dict:
    data = override.model_dump(mode="json")
    data["still_active"] = override.still_active
    data["expires_at"] = override.expires_at.isoformat()
    return data


# --- Application Factory ---

def create_app(context: Optional[PCALContext] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="PCAL API",
        description="Platform Command & Accountability Layer",
        version="0.1.0",
    )

    ctx = context or PCALContext()
    app.state.pcal = ctx

    # === DECISIONS ===

    @app.post("/decisions")
    def ingest_decision(req: DecisionIngestRequest):
        """Record a decision from a producing subsystem."""
        try:
            decision = ctx.decisions.ingest_decision(
                req.source,
                req.domain,
                req.outcome,
                req.reason,
                confidence=req.confidence,
                signals=req.signals,
                authority=req.authority,
                actor=req.actor,
                reversible=req.reversible,
                scope_id=req.scope_id,
                override_of=req.override_of,
            )
        except ValueError as exc:
            raise HTTPException(422, str(exc))
        if decision is None:
            return {"status": "disabled"}
        return decision.model_dump(mode="json")

    @app.post("/decisions/manual")
    def ingest_manual_decision(req: ManualDecisionRequest):
        """Record a decision made by a human operator."""
        try:
            decision = ctx.decisions.ingest_manual_decision(
                req.domain,
                req.outcome,
                req.reason,
                req.actor,
                confidence=req.confidence,
                reversible=req.reversible,
                scope_id=req.scope_id,
            )
        except ValueError as exc:
            raise HTTPException(422, str(exc))
        if decision is None:
            return {"status": "disabled"}
        return decision.model_dump(mode="json")

    @app.get("/decisions/recent")
    def get_recent_decisions(limit: int = 50):
        return [d.model_dump(mode="json") for d in ctx.decisions.get_recent_decisions(limit)]

    @app.get("/decisions/stats")
    def get_decision_stats():
        return ctx.decisions.get_decision_stats().model_dump(mode="json")

    @app.get("/decisions/verify")
    def verify_decisions():
        """Verify no live decision has been tampered with."""
        return {
            "integrity_valid": ctx.decisions.verify_integrity(),
            "total_decisions": ctx.decisions.count(),
        }

    @app.get("/decisions/by-source/{source}")
    def get_decisions_by_source(source: DecisionSource, limit: Optional[int] = None):
        return [d.model_dump(mode="json") for d in ctx.decisions.get_decisions_by_source(source, limit)]

    @app.get("/decisions/by-outcome/{outcome}")
    def get_decisions_by_outcome(outcome: DecisionOutcome, limit: Optional[int] = None):
        return [d.model_dump(mode="json") for d in ctx.decisions.get_decisions_by_outcome(outcome, limit)]

    @app.get("/decisions/{decision_id}")
    def get_decision(decision_id: str):
        decision = ctx.decisions.get_decision(decision_id)
        if not decision:
            raise HTTPException(404, "Decision not found")
        return decision.model_dump(mode="json")

    # === AUTHORITY ===

    @app.get("/authority/chain/{decision_id}")
    async def get_authority_chain(decision_id: str):
        chain = await ctx.authority.resolve_authority_chain(decision_id)
        if not chain:
            raise HTTPException(404, "Decision not found")
        return chain.model_dump(mode="json")

    @app.get("/authority/accountability/{decision_id}")
    def get_accountability(decision_id: str):
        return [a.model_dump(mode="json") for a in ctx.authority.answer_accountability(decision_id)]

    @app.post("/authority/approvals")
    def record_approval(req: ApprovalRequest):
        approval = ctx.authority.record_approval(
            req.approved_by, req.authority_type, req.target, req.justification
        )
        if approval is None:
            return {"status": "disabled"}
        return approval.model_dump(mode="json")

    @app.post("/authority/overrides")
    def record_override(req: OverrideRequest):
        override = ctx.authority.record_override(
            req.decision_id,
            req.overridden_by,
            req.justification,
            req.reason,
            req.duration_ms,
            outcome=req.outcome,
        )
        if override is None:
            return {"status": "disabled"}
        return _override_view(override)

    @app.get("/authority/overrides/active")
    def get_active_overrides():
        return [_override_view(o) for o in ctx.authority.get_active_overrides()]

    @app.get("/authority/stats")
    def get_authority_stats():
        return ctx.authority.get_authority_stats().model_dump(mode="json")

    # === MEMORY ===

    @app.post("/memory/scan")
    def scan_memory():
        """Rescan the ledger for patterns and repeated mistakes."""
        changed = ctx.memory.detect_patterns()
        mistakes = ctx.memory.detect_repeated_mistakes()
        return {
            "changed_patterns": [p.model_dump(mode="json") for p in changed],
            "repeated_mistakes": [m.model_dump(mode="json") for m in mistakes],
        }

    @app.get("/memory/patterns")
    def get_patterns(limit: Optional[int] = None):
        return [p.model_dump(mode="json") for p in ctx.memory.get_patterns(limit)]

    @app.get("/memory/repeated-mistakes")
    def get_repeated_mistakes():
        return [m.model_dump(mode="json") for m in ctx.memory.get_repeated_mistakes()]

    @app.post("/memory/incident-links")
    def link_incident(req: IncidentLinkRequest):
        link = ctx.memory.link_incident_to_decision(
            req.incident_id, req.decision_id, req.link_type, req.confidence
        )
        if link is None:
            return {"status": "disabled"}
        return link.model_dump(mode="json")

    @app.get("/memory/incident-links")
    def get_incident_links(decision_id: Optional[str] = None, incident_id: Optional[str] = None):
        links = ctx.memory.get_incident_links(decision_id=decision_id, incident_id=incident_id)
        return [link.model_dump(mode="json") for link in links]

    @app.post("/memory/snapshots")
    def capture_snapshot():
        snapshot = ctx.memory.capture_memory_snapshot()
        if snapshot is None:
            return {"status": "disabled"}
        return snapshot.model_dump(mode="json")

    # === FEEDBACK ===

    @app.post("/feedback/cycle")
    def run_feedback_cycle():
        """Run one feedback cycle over current Platform Memory findings."""
        return ctx.feedback.run_feedback_cycle().model_dump(mode="json")

    @app.get("/feedback/recommendations/pending")
    def get_pending_recommendations():
        return [r.model_dump(mode="json") for r in ctx.feedback.get_pending_recommendations()]

    @app.post("/feedback/recommendations/{recommendation_id}/acknowledge")
    def acknowledge_recommendation(recommendation_id: str, req: AcknowledgeRequest):
        if not ctx.feedback.acknowledge_recommendation(recommendation_id, req.actor):
            raise HTTPException(404, "Recommendation not found or not pending")
        return ctx.feedback.get_recommendation(recommendation_id).model_dump(mode="json")

    @app.get("/feedback/confidence/{source}")
    def get_confidence_adjustment(source: str):
        return {"source": source, "multiplier": ctx.feedback.get_confidence_adjustment(source)}

    @app.post("/feedback/confidence/{source}")
    def apply_confidence_adjustment(source: str, req: ConfidenceAdjustmentRequest):
        ctx.feedback.apply_confidence_adjustment(source, req.delta)
        return {"source": source, "multiplier": ctx.feedback.get_confidence_adjustment(source)}

    @app.get("/feedback/state")
    def get_feedback_state():
        return ctx.feedback.get_state().model_dump(mode="json")

    # === NARRATIVES ===

    @app.post("/narratives")
    def generate_narrative(req: NarrativeRequest):
        return ctx.narrative.generate_narrative(req).model_dump(mode="json")

    @app.get("/risk-report")
    def generate_risk_report():
        return ctx.narrative.generate_risk_report().model_dump(mode="json")

    # === STATUS ===

    @app.get("/status")
    def status():
        return {
            "enabled": ctx.enabled,
            "decisions": ctx.decisions.count(),
            "patterns": len(ctx.memory.get_patterns()),
            "pending_recommendations": len(ctx.feedback.get_pending_recommendations()),
            "active_overrides": len(ctx.authority.get_active_overrides()),
        }

    return app

"""
Narrative Generator — executive answers composed from every PCAL layer.

Answers a closed set of questions (NarrativeQuery) and produces aggregate
risk reports. Results are view objects owned by the caller; only generation
counters are kept here.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union
from uuid import uuid4

from pcal.authority.resolver import AuthorityChainResolver
from pcal.config import PCALSettings
from pcal.decision_stream.stream import DecisionStream
from pcal.feedback.loop import FeedbackLoop
from pcal.memory.platform_memory import PlatformMemory
from pcal.models.decision import (
    RISK_OUTCOMES,
    Decision,
    DecisionDomain,
    DecisionOutcome,
)
from pcal.models.memory import (
    SEVERITY_RANK,
    IncidentLinkType,
    Pattern,
    PatternSeverity,
    PatternTrend,
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

logger = logging.getLogger(__name__)

SEVERITY_WEIGHT = {
    PatternSeverity.LOW: 1,
    PatternSeverity.MEDIUM: 2,
    PatternSeverity.HIGH: 5,
    PatternSeverity.CRITICAL: 10,
}
TREND_TOLERANCE = 0.05
MAX_ITEMS = 5


def _significance(confidence: float) -> str:
    if confidence < 50:
        return "high"
    if confidence < 75:
        return "medium"
    return "low"


def _extract_root_causes(decisions: List[Decision]) -> List[str]:
    """Most frequent (source, reason prefix) pairs."""
    causes = Counter(
        f"{d.source.value}: {' '.join(d.reason.split()[:5])}" for d in decisions
    )
    return [f"{cause} ({count}x)" for cause, count in causes.most_common(MAX_ITEMS)]


class WindowRates:
    """Failure and override rates over one time window."""

    def __init__(self, total: int, failures: int, overrides: int):
        self.total = total
        self.failures = failures
        self.overrides = overrides

    @property
    def failure_rate(self) -> float:
        return self.failures / self.total if self.total else 0.0

    @property
    def override_rate(self) -> float:
        return self.overrides / self.total if self.total else 0.0

    @property
    def risk_index(self) -> float:
        return self.failure_rate + self.override_rate


class NarrativeGenerator:
    """Reporting facade over the Decision Stream, authority, memory and feedback."""

    def __init__(
        self,
        decision_stream: DecisionStream,
        authority: AuthorityChainResolver,
        memory: PlatformMemory,
        feedback: FeedbackLoop,
        settings: Optional[PCALSettings] = None,
    ):
        self.decision_stream = decision_stream
        self.authority = authority
        self.memory = memory
        self.feedback = feedback
        self.settings = settings or decision_stream.settings
        self._narrative_counts: Dict[str, int] = defaultdict(int)
        self._risk_reports = 0
        self._last_generated_at: Optional[datetime] = None

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    # --- Narratives ---

    def generate_narrative(
        self,
        request: Union[NarrativeRequest, dict],
        current_time: Optional[datetime] = None,
    ) -> Narrative:
        """
        Answer one NarrativeQuery. A dict request is validated first, so an
        unknown query raises a ValidationError.
        """
        if not isinstance(request, NarrativeRequest):
            request = NarrativeRequest.model_validate(request)
        if current_time is None:
            current_time = datetime.utcnow()

        if not self.enabled:
            return Narrative(
                id=f"nar_{uuid4().hex[:12]}",
                query=request.query,
                generated_at=current_time,
                headline="Platform accountability is disabled",
                summary="PCAL is not enabled; no decisions are being tracked.",
            )

        query = request.query
        if query == NarrativeQuery.WHY_ROLLOUT_FAILED:
            narrative = self._rollout_failure(request.context.get("rollout_id"), current_time)
        elif query == NarrativeQuery.WHY_FEATURE_BLOCKED:
            narrative = self._feature_blocked(request.context.get("feature_id"), current_time)
        elif query == NarrativeQuery.RISKIEST_AREA:
            narrative = self._riskiest_area(current_time)
        elif query == NarrativeQuery.SAFETY_TREND:
            narrative = self._safety_trend(current_time)
        elif query == NarrativeQuery.PLATFORM_OVERVIEW:
            narrative = self._platform_overview(current_time)
        else:
            raise ValueError(f"Unhandled narrative query: {query}")

        self._narrative_counts[query.value] += 1
        self._last_generated_at = current_time
        logger.info(
            "narrative generated",
            extra={"query": query.value, "narrative_id": narrative.id},
        )
        return narrative

    def _rollout_failure(self, rollout_id: Optional[str], current_time: datetime) -> Narrative:
        blocked = self.decision_stream.get_decisions_by_outcome(DecisionOutcome.BLOCKED, limit=50)
        relevant = (
            [d for d in blocked if d.scope_id == rollout_id or d.id == rollout_id]
            if rollout_id else blocked
        )
        root_causes = _extract_root_causes(relevant)
        factors = self._contributing_factors(relevant, current_time)

        if rollout_id:
            headline = (
                f"Rollout {rollout_id} was blocked due to "
                f"{root_causes[0] if root_causes else 'multiple factors'}"
            )
        else:
            headline = f"Recent rollouts blocked: {len(blocked)} decisions"

        if relevant:
            sources = sorted({d.source.value for d in relevant})
            summary = (
                f"{len(relevant)} rollout decision(s) were blocked by {', '.join(sources)}. "
                f"Primary causes: {'; '.join(root_causes[:3])}."
            )
        else:
            summary = "No blocked rollouts found in the ledger."

        recommendations = ["Review blocking conditions before next rollout"]
        if any("readiness" in c.lower() for c in root_causes):
            recommendations.append("Address platform readiness issues")

        return self._narrative(
            NarrativeQuery.WHY_ROLLOUT_FAILED, current_time, headline, summary,
            timeline=self._timeline(relevant),
            root_causes=root_causes,
            contributing_factors=factors,
            recommendations=self._with_factor_advice(recommendations, factors),
        )

    def _feature_blocked(self, feature_id: Optional[str], current_time: datetime) -> Narrative:
        blocked = [
            d for d in self.decision_stream.get_decisions_by_outcome(DecisionOutcome.BLOCKED, limit=100)
            if d.domain == DecisionDomain.FEATURE
        ]
        relevant = [d for d in blocked if d.scope_id == feature_id] if feature_id else blocked
        root_causes = _extract_root_causes(relevant)
        factors = self._contributing_factors(relevant, current_time)

        if feature_id:
            by = relevant[0].source.value if relevant else "platform controls"
            headline = f"Feature {feature_id} was blocked by {by}"
        else:
            headline = f"{len(relevant)} feature decision(s) currently blocked"

        if relevant:
            sources = sorted({d.source.value for d in relevant})
            summary = f"{len(relevant)} feature decision(s) blocked by {', '.join(sources)}."
        else:
            summary = "No blocked features found."

        return self._narrative(
            NarrativeQuery.WHY_FEATURE_BLOCKED, current_time, headline, summary,
            timeline=self._timeline(relevant),
            root_causes=root_causes,
            contributing_factors=factors,
            recommendations=self._with_factor_advice(
                ["Check governor restrictions", "Review publish gate requirements"], factors
            ),
        )

    def _riskiest_area(self, current_time: datetime) -> Narrative:
        scores = self._area_scores(current_time)
        ranked = sorted(
            ((area, score) for area, score in scores.items() if score > 0),
            key=lambda item: item[1],
            reverse=True,
        )[:MAX_ITEMS]
        patterns = self.memory.get_patterns()
        overrides = self.authority.get_active_overrides(current_time)
        mistakes = self.memory.get_repeated_mistakes()

        if ranked:
            top_area, top_score = ranked[0]
            headline = f"Highest risk: {top_area}"
            summary = (
                f"{top_area} has the highest risk score ({top_score:g}). "
                f"{len(patterns)} patterns and {len(mistakes)} repeated mistakes are being tracked."
            )
        else:
            headline = "Highest risk: no clear risk area identified"
            summary = "No significant risk areas identified."

        return self._narrative(
            NarrativeQuery.RISKIEST_AREA, current_time, headline, summary,
            root_causes=[f"{area}: risk score {score:g}" for area, score in ranked],
            contributing_factors=[
                f"{len(patterns)} decision patterns detected",
                f"{len(mistakes)} repeated mistakes identified",
                f"{len(overrides)} overrides currently active",
            ],
            recommendations=[
                "Prioritize highest-risk subsystems for review",
                "Address repeated mistakes before they become incidents",
            ],
        )

    def _area_scores(self, current_time: datetime) -> Dict[str, float]:
        """Risk score per producing source."""
        scores: Dict[str, float] = defaultdict(float)
        for pattern in self.memory.get_patterns():
            if pattern.outcome in RISK_OUTCOMES and self.memory.is_qualifying(pattern):
                scores[pattern.source.value] += pattern.occurrences * SEVERITY_WEIGHT[pattern.severity]
        for override in self.authority.get_active_overrides(current_time):
            decision = self.decision_stream.get_decision(override.decision_id)
            if decision is not None:
                scores[decision.source.value] += 5
        for link in self.memory.get_incident_links():
            if link.link_type != IncidentLinkType.CAUSED_BY:
                continue
            decision = self.decision_stream.get_decision(link.decision_id)
            if decision is not None:
                scores[decision.source.value] += 10 * link.confidence / 100
        return scores

    def _safety_trend(self, current_time: datetime) -> Narrative:
        recent, prior = self._compare_windows(current_time)
        trend = self._trend(recent, prior)
        patterns = self.memory.get_patterns()
        increasing = sum(
            1 for p in patterns
            if p.trend == PatternTrend.INCREASING and self.memory.is_qualifying(p)
        )
        decreasing = sum(1 for p in patterns if p.trend == PatternTrend.DECREASING)
        stats = self.decision_stream.get_decision_stats()
        mistakes = self.memory.get_repeated_mistakes()

        headline = {
            SafetyTrend.SAFER: "Platform safety is improving",
            SafetyTrend.RISKIER: "Platform safety is declining - attention needed",
            SafetyTrend.SAME: "Platform safety is stable",
        }[trend]

        return self._narrative(
            NarrativeQuery.SAFETY_TREND, current_time, headline,
            summary=(
                f"Failure rate {recent.failure_rate:.0%} vs {prior.failure_rate:.0%} and "
                f"override rate {recent.override_rate:.0%} vs {prior.override_rate:.0%} "
                f"compared with the previous {self._period_label()}. "
                f"{increasing} pattern(s) are increasing."
            ),
            root_causes=[
                f"{decreasing} patterns decreasing",
                f"{increasing} patterns increasing",
                f"Average decision confidence: {stats.avg_confidence:.1f}%",
                f"{len(mistakes)} repeated mistakes identified",
            ],
            contributing_factors=[
                f"{stats.total} total decisions tracked",
                f"{stats.reversible_percent:g}% decisions are reversible",
            ],
            recommendations=[
                "Continue monitoring increasing patterns",
                "Address repeated mistakes systematically",
            ],
        )

    def _platform_overview(self, current_time: datetime) -> Narrative:
        stats = self.decision_stream.get_decision_stats()
        pending = self.feedback.get_pending_recommendations()
        return self._narrative(
            NarrativeQuery.PLATFORM_OVERVIEW, current_time,
            headline="Platform Status Overview",
            summary=(
                f"Tracking {stats.total} decisions across {len(stats.by_source)} sources. "
                f"Average confidence: {stats.avg_confidence:.1f}%. "
                f"{len(pending)} recommendation(s) awaiting acknowledgment."
            ),
            recommendations=[f"{r.action.value} → {r.target}" for r in pending[:MAX_ITEMS]]
            or ["Review dashboard for detailed status"],
        )

    # --- Narrative helpers ---

    def _narrative(
        self,
        query: NarrativeQuery,
        current_time: datetime,
        headline: str,
        summary: str,
        timeline: Optional[List[TimelineEvent]] = None,
        root_causes: Optional[List[str]] = None,
        contributing_factors: Optional[List[str]] = None,
        recommendations: Optional[List[str]] = None,
    ) -> Narrative:
        return Narrative(
            id=f"nar_{uuid4().hex[:12]}",
            query=query,
            generated_at=current_time,
            headline=headline,
            summary=summary,
            timeline=timeline or [],
            root_causes=root_causes or [],
            contributing_factors=contributing_factors or [],
            recommendations=(recommendations or [])[:MAX_ITEMS],
        )

    def _timeline(self, decisions: List[Decision]) -> List[TimelineEvent]:
        return [
            TimelineEvent(
                timestamp=d.timestamp,
                event=f"{d.source.value}: {d.reason}",
                significance=_significance(d.confidence),
                related_decisions=[d.id],
            )
            for d in decisions[:10]
        ]

    def _contributing_factors(
        self, decisions: List[Decision], current_time: datetime
    ) -> List[str]:
        factors = []
        low_confidence = [d for d in decisions if d.confidence < 70]
        if low_confidence:
            factors.append(f"{len(low_confidence)} decisions had low confidence")

        overridden = [
            d for d in decisions
            if d.override_of or self.authority.get_overrides_for_decision(d.id)
        ]
        if overridden:
            factors.append(f"{len(overridden)} decisions involved an override")

        bypassed = [
            d for d in decisions
            if self.authority.get_bypassed_policies(d.id, current_time)
        ]
        if bypassed:
            factors.append(f"{len(bypassed)} decisions went against a policy stance")

        ids = {d.id for d in decisions}
        related = [p for p in self.memory.get_patterns() if ids & set(p.linked_decisions)]
        if related:
            factors.append(f"Related to {len(related)} known patterns")

        incidents = {
            link.incident_id for link in self.memory.get_incident_links()
            if link.decision_id in ids
        }
        if incidents:
            factors.append(f"Linked to {len(incidents)} incident(s)")
        return factors

    @staticmethod
    def _with_factor_advice(recommendations: List[str], factors: List[str]) -> List[str]:
        if any("override" in f for f in factors):
            recommendations = recommendations + [
                "Review override frequency - consider policy adjustments"
            ]
        return recommendations

    # --- Window comparison ---

    def _period_label(self) -> str:
        days = self.settings.risk_window_ms / 86_400_000
        return f"{days:g} days" if days >= 1 else f"{self.settings.risk_window_ms / 3_600_000:g} hours"

    def _window_rates(self, start: datetime, end: datetime) -> WindowRates:
        decisions = self.decision_stream.get_decisions_between(start, end)
        failures = sum(
            1 for d in decisions
            if d.outcome in (DecisionOutcome.BLOCKED, DecisionOutcome.ESCALATED)
        )
        overrides = sum(
            1 for o in self.authority.get_all_overrides() if start < o.created_at <= end
        )
        return WindowRates(total=len(decisions), failures=failures, overrides=overrides)

    def _compare_windows(self, current_time: datetime) -> Tuple[WindowRates, WindowRates]:
        window = timedelta(milliseconds=self.settings.risk_window_ms)
        recent = self._window_rates(current_time - window, current_time)
        prior = self._window_rates(current_time - 2 * window, current_time - window)
        return recent, prior

    @staticmethod
    def _trend(recent: WindowRates, prior: WindowRates) -> SafetyTrend:
        if recent.total == 0 and prior.total == 0:
            return SafetyTrend.SAME
        delta = recent.risk_index - prior.risk_index
        if delta < -TREND_TOLERANCE:
            return SafetyTrend.SAFER
        if delta > TREND_TOLERANCE:
            return SafetyTrend.RISKIER
        return SafetyTrend.SAME

    # --- Risk report ---

    def generate_risk_report(self, current_time: Optional[datetime] = None) -> RiskReport:
        if current_time is None:
            current_time = datetime.utcnow()
        if not self.enabled:
            return RiskReport(
                id=f"risk_{uuid4().hex[:12]}",
                generated_at=current_time,
                safety_score=100,
                safety_trend=SafetyTrend.SAME,
                comparison_period=self._period_label(),
            )

        recent, prior = self._compare_windows(current_time)
        patterns = self.memory.get_patterns()
        mistakes = self.memory.get_repeated_mistakes()
        increasing_risk = [
            p for p in patterns
            if p.outcome in RISK_OUTCOMES and p.trend == PatternTrend.INCREASING
            and self.memory.is_qualifying(p)
        ]

        score = (
            100
            - 40 * recent.failure_rate
            - 30 * recent.override_rate
            - 5 * len(increasing_risk)
            - 3 * len(mistakes)
        )
        report = RiskReport(
            id=f"risk_{uuid4().hex[:12]}",
            generated_at=current_time,
            safety_score=round(max(0.0, min(100.0, score)), 1),
            safety_trend=self._trend(recent, prior),
            top_risks=self._top_risks(patterns),
            top_opportunities=self._top_opportunities(patterns, current_time),
            comparison_period=self._period_label(),
            recent_failure_rate=recent.failure_rate,
            prior_failure_rate=prior.failure_rate,
            recent_override_rate=recent.override_rate,
            prior_override_rate=prior.override_rate,
        )
        self._risk_reports += 1
        self._last_generated_at = current_time
        logger.info(
            "risk report generated",
            extra={"report_id": report.id, "safety_score": report.safety_score},
        )
        return report

    def _top_risks(self, patterns: List[Pattern]) -> List[SystemicRisk]:
        threshold = self.settings.pattern_threshold
        risky = sorted(
            (p for p in patterns if p.outcome in RISK_OUTCOMES and self.memory.is_qualifying(p)),
            key=lambda p: (SEVERITY_RANK[p.severity], p.occurrences),
            reverse=True,
        )
        return [
            SystemicRisk(
                id=f"risk_pattern_{p.id}",
                area=p.source.value,
                description=p.description,
                severity=p.severity.value,
                likelihood=min(1.0, p.occurrences / (threshold * 4)),
                impact=f"{p.occurrences} occurrences, {len(p.linked_incidents)} incidents",
                mitigations=[
                    "Urgent attention needed" if p.trend == PatternTrend.INCREASING
                    else "Monitor closely"
                ],
                trend=p.trend.value,
            )
            for p in risky[:MAX_ITEMS]
        ]

    def _top_opportunities(
        self, patterns: List[Pattern], current_time: datetime
    ) -> List[ImprovementOpportunity]:
        opportunities = []
        for p in patterns:
            if p.outcome in RISK_OUTCOMES and p.trend == PatternTrend.DECREASING:
                opportunities.append(ImprovementOpportunity(
                    id=f"opp_pattern_{p.id}",
                    area=p.source.value,
                    description=f"'{p.name}' is declining ({p.occurrences} this window)",
                    expected_impact="high" if SEVERITY_RANK[p.severity] >= 2 else "medium",
                    effort="low",
                    recommendation="Confirm which change reduced it and apply it elsewhere",
                ))

        if self.authority.get_authority_stats(current_time).active_overrides > 3:
            opportunities.append(ImprovementOpportunity(
                id="opp_overrides",
                area="governance",
                description="High number of active overrides suggests policies may be too restrictive",
                expected_impact="medium",
                effort="medium",
                recommendation="Review and adjust policies to reduce override frequency",
            ))

        stats = self.decision_stream.get_decision_stats()
        if stats.total and stats.avg_confidence < 70:
            opportunities.append(ImprovementOpportunity(
                id="opp_confidence",
                area="decision_quality",
                description="Average decision confidence is low",
                expected_impact="high",
                effort="high",
                recommendation="Improve signal quality for decision systems",
            ))

        mistakes = self.memory.get_repeated_mistakes()
        if mistakes:
            opportunities.append(ImprovementOpportunity(
                id="opp_mistakes",
                area="learning",
                description=f"{len(mistakes)} repeated mistakes identified",
                expected_impact="high",
                effort="medium",
                recommendation="Address top repeated mistakes systematically",
            ))
        return opportunities[:MAX_ITEMS]

    # --- Stats & maintenance ---

    def get_stats(self) -> NarrativeStats:
        return NarrativeStats(
            narratives_by_query=dict(self._narrative_counts),
            risk_reports=self._risk_reports,
            last_generated_at=self._last_generated_at,
        )

    def clear_all(self) -> None:
        self._narrative_counts.clear()
        self._risk_reports = 0
        self._last_generated_at = None

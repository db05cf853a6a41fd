"""
Feedback Loop — turns recurring risk into advisory recommendations.

The loop closes by convention: PCAL stores confidence multipliers and
recommendations; decision producers read them back and decide what to do.
Nothing here changes producer behavior directly.

Each cycle evaluates a fixed rule set against the Decision Stream, the
Authority Chain Resolver and Platform Memory:

  repeated_override       overrides piling up on one source
  recurring_pattern       an increasing pattern on a risk outcome
  post_approval_incident  approvals followed closely by escalations
  readiness_flapping      cutover readiness flipping back and forth
  wrong_approval          human approvals later blocked or escalated
  repeated_mistake        Platform Memory repeated-mistake findings

A rule firing produces a FeedbackSignal; each signal maps to one or more
Recommendations. A recommendation is skipped while an equivalent
(action, target) recommendation is still pending.
"""

import logging
from bisect import bisect_right
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from pcal.authority.resolver import AuthorityChainResolver
from pcal.config import PCALSettings
from pcal.decision_stream.stream import DecisionStream
from pcal.memory.platform_memory import PlatformMemory
from pcal.models.decision import (
    RISK_OUTCOMES,
    AuthorityType,
    DecisionOutcome,
    DecisionSource,
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
from pcal.models.memory import PatternSeverity, PatternTrend

logger = logging.getLogger(__name__)

READINESS_SOURCES = (DecisionSource.CUTOVER, DecisionSource.GLCP)
WRONG_APPROVAL_WINDOW = timedelta(hours=24)
MIN_CORRELATED_APPROVALS = 3
MIN_WRONG_APPROVALS = 3
OVERRIDE_TTL_FLOOR = 0.1


def _key(target: Union[str, DecisionSource]) -> str:
    return target.value if isinstance(target, DecisionSource) else str(target)


def _followed_within(times: List[datetime], moment: datetime, window: timedelta) -> bool:
    """True if a sorted timestamp lands strictly after `moment` and inside `window`."""
    i = bisect_right(times, moment)
    return i < len(times) and times[i] - moment < window


class FeedbackLoop:
    """Signal detection, recommendation lifecycle and adjustment state."""

    def __init__(
        self,
        decision_stream: DecisionStream,
        authority: AuthorityChainResolver,
        memory: PlatformMemory,
        settings: Optional[PCALSettings] = None,
    ):
        self.decision_stream = decision_stream
        self.authority = authority
        self.memory = memory
        self.settings = settings or decision_stream.settings

        self._signals: List[FeedbackSignal] = []
        self._recommendations: Dict[str, Recommendation] = {}
        self._automation_confidence: Dict[str, float] = {}
        self._approval_levels: Dict[str, int] = {}
        self._override_ttl_multipliers: Dict[str, float] = {}

        self._rules: List[Callable[[datetime], List[FeedbackSignal]]] = []
        self._register_default_rules()

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def _register_default_rules(self) -> None:
        self._rules.extend([
            self._detect_repeated_overrides,
            self._detect_recurring_patterns,
            self._detect_post_approval_incidents,
            self._detect_readiness_flapping,
            self._detect_wrong_approvals,
            self._detect_repeated_mistakes,
        ])

    # --- Cycle ---

    def run_feedback_cycle(self, current_time: Optional[datetime] = None) -> FeedbackCycleResult:
        """Evaluate every rule once and queue any new recommendations."""
        if not self.enabled:
            return FeedbackCycleResult(
                signals_detected=0, recommendations_generated=0, state=FeedbackState()
            )
        if current_time is None:
            current_time = datetime.utcnow()

        signals = self.detect_feedback_signals(current_time)
        recommendations = self._generate_recommendations(signals, current_time)

        return FeedbackCycleResult(
            signals_detected=len(signals),
            recommendations_generated=len(recommendations),
            signals=signals,
            recommendations=recommendations,
            state=self.get_state(),
        )

    def detect_feedback_signals(self, current_time: Optional[datetime] = None) -> List[FeedbackSignal]:
        if not self.enabled:
            return []
        if current_time is None:
            current_time = datetime.utcnow()

        detected: List[FeedbackSignal] = []
        for rule in self._rules:
            detected.extend(rule(current_time))

        self._signals.extend(detected)
        overflow = len(self._signals) - self.settings.signal_history_limit
        if overflow > 0:
            del self._signals[:overflow]

        if detected:
            logger.info(
                "feedback signals detected",
                extra={"count": len(detected), "types": sorted({s.type.value for s in detected})},
            )
        return detected

    # --- Signal rules ---

    def _signal(
        self,
        signal_type: SignalType,
        affected_area: str,
        count: int,
        high_above: int,
        current_time: datetime,
        **context,
    ) -> FeedbackSignal:
        return FeedbackSignal(
            id=f"sig_{uuid4().hex[:12]}",
            type=signal_type,
            severity=SignalSeverity.HIGH if count > high_above else SignalSeverity.MEDIUM,
            affected_area=affected_area,
            context={"count": count, **context},
            detected_at=current_time,
        )

    def _detect_repeated_overrides(self, current_time: datetime) -> List[FeedbackSignal]:
        """≥ override_threshold overrides on decisions of one source within the lookback."""
        since = current_time - timedelta(milliseconds=self.settings.override_lookback_ms)
        per_source: Counter = Counter()
        for override in self.authority.get_all_overrides():
            if not since <= override.created_at <= current_time:
                continue
            decision = self.decision_stream.get_decision(override.decision_id)
            if decision is None:
                continue  # Evicted or never ingested
            per_source[decision.source.value] += 1

        threshold = self.settings.override_threshold
        return [
            self._signal(
                SignalType.REPEATED_OVERRIDE, source, count, 10, current_time,
                threshold=threshold,
            )
            for source, count in sorted(per_source.items())
            if count >= threshold
        ]

    def _detect_recurring_patterns(self, current_time: datetime) -> List[FeedbackSignal]:
        """Risk-outcome patterns that qualify and are still growing."""
        signals = []
        for pattern in self.memory.get_patterns():
            if pattern.outcome not in RISK_OUTCOMES:
                continue
            if not self.memory.is_qualifying(pattern):
                continue
            if pattern.trend != PatternTrend.INCREASING:
                continue
            signal = self._signal(
                SignalType.RECURRING_PATTERN,
                pattern.source.value,
                pattern.occurrences,
                high_above=10,
                current_time=current_time,
                pattern_id=pattern.id,
                pattern_severity=pattern.severity.value,
                outcome=pattern.outcome.value,
            )
            if pattern.severity in (PatternSeverity.HIGH, PatternSeverity.CRITICAL):
                signal = signal.model_copy(update={"severity": SignalSeverity.HIGH})
            signals.append(signal)
        return signals

    def _detect_post_approval_incidents(self, current_time: datetime) -> List[FeedbackSignal]:
        """Approvals followed by an escalation within the correlation window."""
        window = timedelta(milliseconds=self.settings.incident_correlation_window_ms)
        decisions = self.decision_stream.all_decisions()
        escalated_at = sorted(
            d.timestamp for d in decisions if d.outcome == DecisionOutcome.ESCALATED
        )

        per_source: Counter = Counter()
        for approved in decisions:
            if approved.outcome != DecisionOutcome.APPROVED:
                continue
            if _followed_within(escalated_at, approved.timestamp, window):
                per_source[approved.source.value] += 1

        return [
            self._signal(SignalType.POST_APPROVAL_INCIDENT, source, count, 5, current_time)
            for source, count in sorted(per_source.items())
            if count >= MIN_CORRELATED_APPROVALS
        ]

    def _detect_readiness_flapping(self, current_time: datetime) -> List[FeedbackSignal]:
        """Cutover readiness changing outcome too often inside the flapping window."""
        since = current_time - timedelta(milliseconds=self.settings.flapping_window_ms)
        readiness = [
            d for d in self.decision_stream.get_decisions_between(since, current_time)
            if d.source in READINESS_SOURCES
        ]
        if len(readiness) < 2:
            return []

        changes = sum(
            1 for prev, cur in zip(readiness, readiness[1:]) if prev.outcome != cur.outcome
        )
        if changes < self.settings.flapping_threshold:
            return []
        return [self._signal(
            SignalType.READINESS_FLAPPING, "readiness", changes, 10, current_time,
            window_ms=self.settings.flapping_window_ms,
            threshold=self.settings.flapping_threshold,
        )]

    def _detect_wrong_approvals(self, current_time: datetime) -> List[FeedbackSignal]:
        """Human approvals later blocked or escalated in the same scope within 24h."""
        decisions = self.decision_stream.all_decisions()
        reversed_at: Dict[str, List[datetime]] = defaultdict(list)
        for d in decisions:
            if d.outcome in (DecisionOutcome.BLOCKED, DecisionOutcome.ESCALATED):
                reversed_at[d.scope_id or d.domain.value].append(d.timestamp)
        for times in reversed_at.values():
            times.sort()

        wrong = 0
        approvers: Counter = Counter()
        for approved in decisions:
            if approved.outcome != DecisionOutcome.APPROVED:
                continue
            if approved.authority != AuthorityType.HUMAN or not approved.actor:
                continue
            scope = approved.scope_id or approved.domain.value
            if _followed_within(
                reversed_at.get(scope, []), approved.timestamp, WRONG_APPROVAL_WINDOW
            ):
                wrong += 1
                approvers[approved.actor] += 1

        if wrong < MIN_WRONG_APPROVALS:
            return []
        return [self._signal(
            SignalType.WRONG_APPROVAL, "human_approval", wrong, 5, current_time,
            approvers=dict(approvers),
        )]

    def _detect_repeated_mistakes(self, current_time: datetime) -> List[FeedbackSignal]:
        return [
            self._signal(
                SignalType.REPEATED_MISTAKE,
                mistake.source.value,
                len(mistake.incident_ids),
                high_above=1,
                current_time=current_time,
                mistake_id=mistake.id,
                pattern_id=mistake.pattern_id,
            )
            for mistake in self.memory.get_repeated_mistakes()
        ]

    # --- Recommendations ---

    def _recommendations_for(self, signal: FeedbackSignal) -> List[Tuple[RecommendationAction, str, str, Optional[float]]]:
        area = signal.affected_area
        count = signal.context.get("count", 0)
        decay = self.settings.confidence_decay_rate

        if signal.type == SignalType.REPEATED_OVERRIDE:
            return [
                (RecommendationAction.LOWER_AUTOMATION_CONFIDENCE, area,
                 f"{count} human overrides of {area} decisions in the lookback window", decay),
                (RecommendationAction.SHORTEN_OVERRIDE_TTL, area,
                 f"Overrides of {area} are frequent; shorten how long they stay in force", 0.5),
            ]
        if signal.type == SignalType.RECURRING_PATTERN:
            recs = [
                (RecommendationAction.LOWER_AUTOMATION_CONFIDENCE, area,
                 f"'{signal.context.get('outcome')}' decisions from {area} recurred "
                 f"{count} times and are increasing", decay),
            ]
            if signal.context.get("pattern_severity") in ("high", "critical"):
                recs.append((
                    RecommendationAction.ESCALATE, area,
                    f"{signal.context.get('pattern_severity')} severity pattern on {area}", None,
                ))
            return recs
        if signal.type == SignalType.POST_APPROVAL_INCIDENT:
            return [
                (RecommendationAction.LOWER_AUTOMATION_CONFIDENCE, area,
                 f"{count} approvals from {area} were followed by escalations", decay),
                (RecommendationAction.INCREASE_APPROVAL_LEVEL, area,
                 "Post-approval incidents indicate insufficient review", 1),
            ]
        if signal.type == SignalType.READINESS_FLAPPING:
            hours = signal.context.get("window_ms", 0) / 3_600_000
            return [
                (RecommendationAction.FLAG_FOR_REVIEW, area,
                 f"{count} readiness state changes in {hours:g}h", None),
            ]
        if signal.type == SignalType.WRONG_APPROVAL:
            return [
                (RecommendationAction.REQUIRE_SECOND_APPROVAL, area,
                 f"{count} human approvals were later reversed", None),
                (RecommendationAction.LOWER_AUTOMATION_CONFIDENCE, area,
                 "Human approvals showing lower accuracy", decay),
            ]
        if signal.type == SignalType.REPEATED_MISTAKE:
            return [
                (RecommendationAction.REQUIRE_SECOND_APPROVAL, area,
                 f"Overrides of {area} decisions keep leading to incidents", None),
            ]
        raise ValueError(f"Unhandled signal type: {signal.type}")

    def _generate_recommendations(
        self, signals: List[FeedbackSignal], current_time: datetime
    ) -> List[Recommendation]:
        created: List[Recommendation] = []
        for signal in signals:
            for action, target, reason, value in self._recommendations_for(signal):
                if self._has_pending(action, target):
                    continue
                rec = Recommendation(
                    id=f"rec_{uuid4().hex[:12]}",
                    action=action,
                    target=target,
                    reason=reason,
                    suggested_value=value,
                    signal_id=signal.id,
                    signal_type=signal.type,
                    created_at=current_time,
                )
                self._recommendations[rec.id] = rec
                created.append(rec)
                logger.info(
                    "recommendation created",
                    extra={"recommendation_id": rec.id, "action": action.value, "target": target},
                )

        self._trim_acknowledged()
        return created

    def _has_pending(self, action: RecommendationAction, target: str) -> bool:
        return any(
            r.action == action and r.target == target
            and r.status == RecommendationStatus.PENDING
            for r in self._recommendations.values()
        )

    def _trim_acknowledged(self) -> None:
        """Keep history bounded. Pending recommendations are never dropped."""
        overflow = len(self._recommendations) - self.settings.recommendation_history_limit
        if overflow <= 0:
            return
        acknowledged = sorted(
            (r for r in self._recommendations.values()
             if r.status == RecommendationStatus.ACKNOWLEDGED),
            key=lambda r: r.acknowledged_at or r.created_at,
        )
        for rec in acknowledged[:overflow]:
            del self._recommendations[rec.id]

    def get_pending_recommendations(self) -> List[Recommendation]:
        if not self.enabled:
            return []
        return sorted(
            (r for r in self._recommendations.values()
             if r.status == RecommendationStatus.PENDING),
            key=lambda r: r.created_at,
        )

    def get_acknowledged_recommendations(self, limit: int = 50) -> List[Recommendation]:
        if not self.enabled:
            return []
        acknowledged = sorted(
            (r for r in self._recommendations.values()
             if r.status == RecommendationStatus.ACKNOWLEDGED),
            key=lambda r: r.acknowledged_at,
        )
        return acknowledged[-limit:]

    def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        if not self.enabled:
            return None
        return self._recommendations.get(recommendation_id)

    def acknowledge_recommendation(self, recommendation_id: str, actor: str) -> bool:
        """pending → acknowledged. False for unknown or already acknowledged ids."""
        if not self.enabled:
            return False
        rec = self._recommendations.get(recommendation_id)
        if rec is None or rec.status != RecommendationStatus.PENDING:
            return False

        self._recommendations[rec.id] = rec.model_copy(update={
            "status": RecommendationStatus.ACKNOWLEDGED,
            "acknowledged_by": actor,
            "acknowledged_at": datetime.utcnow(),
        })
        logger.info(
            "recommendation acknowledged",
            extra={"recommendation_id": rec.id, "acknowledged_by": actor},
        )
        return True

    # --- Adjustments read back by producers ---

    def get_confidence_adjustment(self, source: Union[str, DecisionSource]) -> float:
        if not self.enabled:
            return 1.0
        return self._automation_confidence.get(_key(source), 1.0)

    def apply_confidence_adjustment(self, source: Union[str, DecisionSource], delta: float) -> None:
        """
        Scale the stored multiplier by (1 - delta). Positive deltas lower
        confidence, negative deltas restore it. The result stays within
        [min_confidence / 100, 1.0].
        """
        if not -1.0 <= delta <= 1.0:
            raise ValueError(f"delta must be within [-1, 1], got {delta}")
        if not self.enabled:
            return

        key = _key(source)
        current = self._automation_confidence.get(key, 1.0)
        floor = self.settings.min_confidence / 100
        new_value = min(1.0, max(floor, current * (1 - delta)))
        self._automation_confidence[key] = new_value
        logger.info(
            "confidence adjusted",
            extra={"target": key, "from": current, "to": new_value},
        )

    def reset_confidence_adjustment(self, source: Union[str, DecisionSource]) -> None:
        self._automation_confidence.pop(_key(source), None)

    def get_approval_level_adjustment(self, target: str) -> int:
        if not self.enabled:
            return 0
        return self._approval_levels.get(_key(target), 0)

    def apply_approval_level_adjustment(self, target: str, increase: int) -> None:
        if not self.enabled:
            return
        key = _key(target)
        current = self._approval_levels.get(key, 0)
        self._approval_levels[key] = current + increase
        logger.info(
            "approval level adjusted",
            extra={"target": key, "from": current, "to": current + increase},
        )

    def get_override_ttl_multiplier(self, target: str) -> float:
        if not self.enabled:
            return 1.0
        return self._override_ttl_multipliers.get(_key(target), 1.0)

    def apply_override_ttl_multiplier(self, target: str, multiplier: float) -> None:
        if multiplier <= 0:
            raise ValueError(f"multiplier must be positive, got {multiplier}")
        if not self.enabled:
            return
        key = _key(target)
        current = self._override_ttl_multipliers.get(key, 1.0)
        new_value = max(OVERRIDE_TTL_FLOOR, current * multiplier)
        self._override_ttl_multipliers[key] = new_value
        logger.info(
            "override TTL multiplier adjusted",
            extra={"target": key, "from": current, "to": new_value},
        )

    # --- State & stats ---

    def get_state(self) -> FeedbackState:
        if not self.enabled:
            return FeedbackState()
        statuses = Counter(r.status for r in self._recommendations.values())
        return FeedbackState(
            automation_confidence=dict(self._automation_confidence),
            approval_level_overrides=dict(self._approval_levels),
            override_ttl_multipliers=dict(self._override_ttl_multipliers),
            pending_recommendations=statuses[RecommendationStatus.PENDING],
            acknowledged_recommendations=statuses[RecommendationStatus.ACKNOWLEDGED],
        )

    def get_signals(self, limit: int = 50) -> List[FeedbackSignal]:
        if not self.enabled:
            return []
        return self._signals[-limit:]

    def get_feedback_stats(self) -> FeedbackStats:
        if not self.enabled:
            return FeedbackStats()
        state = self.get_state()
        by_type: Dict[str, int] = defaultdict(int)
        for s in self._signals:
            by_type[s.type.value] += 1
        return FeedbackStats(
            total_signals=len(self._signals),
            signals_by_type=dict(by_type),
            pending_recommendations=state.pending_recommendations,
            acknowledged_recommendations=state.acknowledged_recommendations,
            confidence_adjustments=len(self._automation_confidence),
            approval_level_adjustments=len(self._approval_levels),
        )

    # --- Maintenance ---

    def clear_all(self) -> None:
        self._signals.clear()
        self._recommendations.clear()
        self._automation_confidence.clear()
        self._approval_levels.clear()
        self._override_ttl_multipliers.clear()

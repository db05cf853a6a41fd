"""Tests for the Feedback Loop rules, recommendations and adjustments."""

from datetime import datetime, timedelta

import pytest

from pcal.config import PCALSettings
from pcal.models import (
    DecisionDomain,
    DecisionOutcome,
    DecisionSource,
    RecommendationAction,
    RecommendationStatus,
    SignalSeverity,
    SignalType,
)
from pcal.runtime.context import PCALContext

NOW = datetime(2026, 3, 1, 12, 0)


def _make_context(**overrides) -> PCALContext:
    return PCALContext(PCALSettings(**overrides))


def _blocked_cutover(ctx, at):
    return ctx.decisions.ingest_decision(
        DecisionSource.CUTOVER,
        DecisionDomain.PLATFORM,
        DecisionOutcome.BLOCKED,
        "Readiness below threshold",
        timestamp=at,
    )


def _actions(recommendations):
    return {(r.action, r.target) for r in recommendations}


class TestRepeatedOverrides:
    def setup_method(self):
        self.ctx = _make_context()
        for i in range(3):
            decision = _blocked_cutover(self.ctx, NOW - timedelta(hours=3, minutes=i))
            self.ctx.authority.record_override(
                decision.id, "alice", "Push", "deadline", 600_000,
                created_at=NOW - timedelta(hours=2, minutes=i),
            )

    def test_signal_and_recommendations(self):
        result = self.ctx.feedback.run_feedback_cycle(NOW)

        assert [s.type for s in result.signals] == [SignalType.REPEATED_OVERRIDE]
        signal = result.signals[0]
        assert signal.affected_area == "cutover"
        assert signal.severity == SignalSeverity.MEDIUM
        assert signal.context["count"] == 3
        assert _actions(result.recommendations) == {
            (RecommendationAction.LOWER_AUTOMATION_CONFIDENCE, "cutover"),
            (RecommendationAction.SHORTEN_OVERRIDE_TTL, "cutover"),
        }

    def test_overrides_outside_lookback_are_ignored(self):
        later = NOW + timedelta(days=8)
        assert self.ctx.feedback.detect_feedback_signals(later) == []

    def test_below_threshold(self):
        ctx = _make_context(override_threshold=4)
        decision = _blocked_cutover(ctx, NOW)
        for _ in range(3):
            ctx.authority.record_override(decision.id, "alice", "Push", "x", 1000, created_at=NOW)
        assert ctx.feedback.detect_feedback_signals(NOW) == []


class TestRecurringPatterns:
    def test_increasing_low_severity_pattern(self):
        ctx = _make_context()
        for i in range(4):
            _blocked_cutover(ctx, NOW - timedelta(hours=2, minutes=i))
        ctx.memory.detect_patterns(NOW)

        result = ctx.feedback.run_feedback_cycle(NOW)
        assert [s.type for s in result.signals] == [SignalType.RECURRING_PATTERN]
        assert _actions(result.recommendations) == {
            (RecommendationAction.LOWER_AUTOMATION_CONFIDENCE, "cutover"),
        }
        assert result.recommendations[0].suggested_value == pytest.approx(0.1)

    def test_high_severity_pattern_escalates(self):
        ctx = _make_context()
        for i in range(8):
            _blocked_cutover(ctx, NOW - timedelta(hours=2, minutes=i))
        ctx.memory.detect_patterns(NOW)

        result = ctx.feedback.run_feedback_cycle(NOW)
        assert result.signals[0].severity == SignalSeverity.HIGH
        assert (RecommendationAction.ESCALATE, "cutover") in _actions(result.recommendations)

    def test_approved_patterns_are_not_risk(self):
        ctx = _make_context()
        for i in range(5):
            ctx.decisions.ingest_decision(
                "governor", "feature", "approved", "ok",
                timestamp=NOW - timedelta(hours=2, minutes=i),
            )
        ctx.memory.detect_patterns(NOW)
        assert ctx.feedback.detect_feedback_signals(NOW) == []

    def test_decreasing_pattern_does_not_fire(self):
        ctx = _make_context()
        for i in range(8):
            _blocked_cutover(ctx, NOW - timedelta(hours=30, minutes=i))
        for i in range(4):
            _blocked_cutover(ctx, NOW - timedelta(hours=2, minutes=i))
        ctx.memory.detect_patterns(NOW)
        assert ctx.feedback.detect_feedback_signals(NOW) == []


class TestPostApprovalIncidents:
    def test_approvals_followed_by_escalations(self):
        ctx = _make_context()
        for hours in (5, 4, 3):
            approved_at = NOW - timedelta(hours=hours)
            ctx.decisions.ingest_decision(
                "governor", "traffic", "approved", "Load within limits", timestamp=approved_at,
            )
            ctx.decisions.ingest_decision(
                "incident", "traffic", "escalated", "Error budget burn",
                timestamp=approved_at + timedelta(minutes=10),
            )

        result = ctx.feedback.run_feedback_cycle(NOW)
        assert [s.type for s in result.signals] == [SignalType.POST_APPROVAL_INCIDENT]
        assert result.signals[0].affected_area == "governor"
        assert _actions(result.recommendations) == {
            (RecommendationAction.LOWER_AUTOMATION_CONFIDENCE, "governor"),
            (RecommendationAction.INCREASE_APPROVAL_LEVEL, "governor"),
        }

    def test_escalation_outside_window_is_unrelated(self):
        ctx = _make_context()
        for hours in (10, 8, 6):
            approved_at = NOW - timedelta(hours=hours)
            ctx.decisions.ingest_decision("governor", "traffic", "approved", "ok", timestamp=approved_at)
            ctx.decisions.ingest_decision(
                "incident", "traffic", "escalated", "late",
                timestamp=approved_at + timedelta(minutes=90),
            )
        assert ctx.feedback.detect_feedback_signals(NOW) == []

    def test_escalation_must_come_strictly_after_the_approval(self):
        ctx = _make_context()
        for hours in (10, 8, 6):
            approved_at = NOW - timedelta(hours=hours)
            ctx.decisions.ingest_decision(
                "incident", "traffic", "escalated", "earlier",
                timestamp=approved_at - timedelta(minutes=5),
            )
            ctx.decisions.ingest_decision("governor", "traffic", "approved", "ok", timestamp=approved_at)
            ctx.decisions.ingest_decision(
                "incident", "traffic", "escalated", "same moment", timestamp=approved_at,
            )
        assert ctx.feedback.detect_feedback_signals(NOW) == []

    def test_full_ledger_of_alternating_outcomes(self):
        ctx = _make_context()
        pairs = ctx.settings.max_decisions // 2
        for i in range(pairs):
            approved_at = NOW - timedelta(minutes=20 * (pairs - i))
            ctx.decisions.ingest_decision("governor", "traffic", "approved", "ok", timestamp=approved_at)
            ctx.decisions.ingest_decision(
                "incident", "traffic", "escalated", "Error budget burn",
                timestamp=approved_at + timedelta(minutes=10),
            )

        signals = ctx.feedback.detect_feedback_signals(NOW)
        assert [s.type for s in signals] == [SignalType.POST_APPROVAL_INCIDENT]
        assert signals[0].context["count"] == pairs


class TestReadinessFlapping:
    def test_flapping_readiness(self):
        ctx = _make_context()
        outcomes = ["approved", "blocked", "approved", "blocked", "approved"]
        for i, outcome in enumerate(outcomes):
            ctx.decisions.ingest_decision(
                "cutover", "platform", outcome, "Readiness check",
                timestamp=NOW - timedelta(minutes=50 - i * 10),
            )

        result = ctx.feedback.run_feedback_cycle(NOW)
        assert [s.type for s in result.signals] == [SignalType.READINESS_FLAPPING]
        assert result.signals[0].context["count"] == 4
        rec = result.recommendations[0]
        assert rec.action == RecommendationAction.FLAG_FOR_REVIEW
        assert rec.target == "readiness"
        assert "4 readiness state changes in 1h" in rec.reason

    def test_stable_readiness(self):
        ctx = _make_context()
        for i in range(5):
            ctx.decisions.ingest_decision(
                "glcp", "platform", "approved", "Ready",
                timestamp=NOW - timedelta(minutes=i),
            )
        assert ctx.feedback.detect_feedback_signals(NOW) == []


class TestWrongApprovals:
    def test_human_approvals_later_reversed(self):
        ctx = _make_context()
        for i, actor in enumerate(["alice", "alice", "bob"]):
            approved_at = NOW - timedelta(hours=10 - i * 2)
            ctx.decisions.ingest_manual_decision(
                "deployment", "approved", "Ship it", actor=actor,
                scope_id="checkout", timestamp=approved_at,
            )
            ctx.decisions.ingest_decision(
                "governor", "deployment", "blocked", "Error budget exhausted",
                scope_id="checkout", timestamp=approved_at + timedelta(hours=1),
            )

        result = ctx.feedback.run_feedback_cycle(NOW)
        assert [s.type for s in result.signals] == [SignalType.WRONG_APPROVAL]
        signal = result.signals[0]
        assert signal.affected_area == "human_approval"
        assert signal.context["approvers"] == {"alice": 2, "bob": 1}
        assert _actions(result.recommendations) == {
            (RecommendationAction.REQUIRE_SECOND_APPROVAL, "human_approval"),
            (RecommendationAction.LOWER_AUTOMATION_CONFIDENCE, "human_approval"),
        }

    def test_other_scope_is_not_a_reversal(self):
        ctx = _make_context()
        for i in range(3):
            approved_at = NOW - timedelta(hours=10 - i * 2)
            ctx.decisions.ingest_manual_decision(
                "deployment", "approved", "Ship it", actor="alice",
                scope_id="checkout", timestamp=approved_at,
            )
            ctx.decisions.ingest_decision(
                "governor", "deployment", "blocked", "Budget",
                scope_id="search", timestamp=approved_at + timedelta(hours=1),
            )
        assert ctx.feedback.detect_feedback_signals(NOW) == []

    def test_reversal_at_window_edges_does_not_count(self):
        ctx = _make_context()
        for i in range(3):
            scope = f"checkout_{i}"
            approved_at = NOW - timedelta(days=3, hours=i)
            ctx.decisions.ingest_manual_decision(
                "deployment", "approved", "Ship it", actor="alice",
                scope_id=scope, timestamp=approved_at,
            )
            ctx.decisions.ingest_decision(
                "governor", "deployment", "blocked", "Same moment",
                scope_id=scope, timestamp=approved_at,
            )
            ctx.decisions.ingest_decision(
                "governor", "deployment", "blocked", "A day later",
                scope_id=scope, timestamp=approved_at + timedelta(hours=24),
            )
        assert ctx.feedback.detect_feedback_signals(NOW) == []


class TestRepeatedMistakeSignal:
    def test_mistake_requires_second_approval(self):
        ctx = _make_context()
        decisions = [_blocked_cutover(ctx, NOW - timedelta(hours=3, minutes=i)) for i in range(4)]
        ctx.authority.record_override(
            decisions[0].id, "alice", "Push", "deadline", 600_000,
            created_at=NOW - timedelta(hours=2),
        )
        ctx.memory.link_incident_to_decision(
            "inc_1", decisions[0].id, "caused_by", 90, linked_at=NOW - timedelta(hours=1),
        )

        result = ctx.run_scan(NOW)
        types = {s.type for s in result.signals}
        assert types == {SignalType.RECURRING_PATTERN, SignalType.REPEATED_MISTAKE}
        assert (RecommendationAction.REQUIRE_SECOND_APPROVAL, "cutover") in _actions(
            result.recommendations
        )

    def test_resolved_mistake_stops_signalling(self):
        ctx = _make_context()
        decisions = [_blocked_cutover(ctx, NOW - timedelta(hours=3, minutes=i)) for i in range(4)]
        ctx.authority.record_override(
            decisions[0].id, "alice", "Push", "deadline", 600_000,
            created_at=NOW - timedelta(hours=2),
        )
        ctx.memory.link_incident_to_decision(
            "inc_1", decisions[0].id, "caused_by", 90, linked_at=NOW - timedelta(hours=1),
        )
        for rec in ctx.run_scan(NOW).recommendations:
            ctx.feedback.acknowledge_recommendation(rec.id, "ops-lead")

        later = NOW + timedelta(days=3)
        result = ctx.run_scan(later)
        assert SignalType.REPEATED_MISTAKE not in {s.type for s in result.signals}
        assert result.recommendations_generated == 0

        report = ctx.narrative.generate_risk_report(later)
        assert "opp_mistakes" not in [o.id for o in report.top_opportunities]


class TestRecommendationLifecycle:
    def setup_method(self):
        self.ctx = _make_context()
        for i in range(4):
            _blocked_cutover(self.ctx, NOW - timedelta(hours=2, minutes=i))
        self.ctx.memory.detect_patterns(NOW)

    def test_pending_duplicate_is_suppressed(self):
        first = self.ctx.feedback.run_feedback_cycle(NOW)
        second = self.ctx.feedback.run_feedback_cycle(NOW)

        assert first.recommendations_generated == 1
        assert second.signals_detected == 1
        assert second.recommendations_generated == 0
        assert len(self.ctx.feedback.get_pending_recommendations()) == 1

    def test_acknowledge(self):
        rec = self.ctx.feedback.run_feedback_cycle(NOW).recommendations[0]

        assert self.ctx.feedback.acknowledge_recommendation(rec.id, "ops-lead")
        stored = self.ctx.feedback.get_recommendation(rec.id)
        assert stored.status == RecommendationStatus.ACKNOWLEDGED
        assert stored.acknowledged_by == "ops-lead"
        assert stored.acknowledged_at is not None
        assert self.ctx.feedback.get_pending_recommendations() == []
        assert self.ctx.feedback.get_acknowledged_recommendations() == [stored]

    def test_acknowledge_is_one_way(self):
        rec = self.ctx.feedback.run_feedback_cycle(NOW).recommendations[0]
        assert self.ctx.feedback.acknowledge_recommendation(rec.id, "a")
        assert not self.ctx.feedback.acknowledge_recommendation(rec.id, "b")
        assert self.ctx.feedback.get_recommendation(rec.id).acknowledged_by == "a"
        assert not self.ctx.feedback.acknowledge_recommendation("rec_missing", "a")

    def test_acknowledged_recommendation_can_be_raised_again(self):
        rec = self.ctx.feedback.run_feedback_cycle(NOW).recommendations[0]
        self.ctx.feedback.acknowledge_recommendation(rec.id, "ops-lead")

        again = self.ctx.feedback.run_feedback_cycle(NOW)
        assert again.recommendations_generated == 1
        assert again.recommendations[0].id != rec.id

    def test_recommendations_are_never_applied(self):
        self.ctx.feedback.run_feedback_cycle(NOW)
        assert self.ctx.feedback.get_confidence_adjustment("cutover") == 1.0
        assert self.ctx.feedback.get_state().pending_recommendations == 1

    def test_history_trim_keeps_pending(self):
        ctx = _make_context(recommendation_history_limit=1)
        for i in range(3):
            decision = _blocked_cutover(ctx, NOW - timedelta(hours=3, minutes=i))
            ctx.authority.record_override(
                decision.id, "alice", "Push", "x", 1000, created_at=NOW - timedelta(hours=1),
            )
        result = ctx.feedback.run_feedback_cycle(NOW)
        assert result.recommendations_generated == 2
        assert len(ctx.feedback.get_pending_recommendations()) == 2

    def test_signal_history_is_bounded(self):
        ctx = _make_context(signal_history_limit=2)
        for i in range(4):
            _blocked_cutover(ctx, NOW - timedelta(hours=2, minutes=i))
        ctx.memory.detect_patterns(NOW)
        for _ in range(5):
            ctx.feedback.run_feedback_cycle(NOW)
        assert len(ctx.feedback.get_signals()) == 2
        assert ctx.feedback.get_feedback_stats().total_signals == 2


class TestAdjustments:
    def setup_method(self):
        self.feedback = _make_context().feedback

    def test_confidence_defaults_to_one(self):
        assert self.feedback.get_confidence_adjustment("cutover") == 1.0

    def test_lowering_compounds(self):
        self.feedback.apply_confidence_adjustment("cutover", 0.2)
        assert self.feedback.get_confidence_adjustment("cutover") == pytest.approx(0.8)
        self.feedback.apply_confidence_adjustment(DecisionSource.CUTOVER, 0.2)
        assert self.feedback.get_confidence_adjustment("cutover") == pytest.approx(0.64)

    def test_floor_and_ceiling(self):
        self.feedback.apply_confidence_adjustment("cutover", 1.0)
        assert self.feedback.get_confidence_adjustment("cutover") == pytest.approx(0.2)
        self.feedback.apply_confidence_adjustment("cutover", -1.0)
        assert self.feedback.get_confidence_adjustment("cutover") == pytest.approx(0.4)

        self.feedback.apply_confidence_adjustment("governor", -0.5)
        assert self.feedback.get_confidence_adjustment("governor") == 1.0

    @pytest.mark.parametrize("delta", [1.5, -1.01])
    def test_out_of_range_delta(self, delta):
        with pytest.raises(ValueError):
            self.feedback.apply_confidence_adjustment("cutover", delta)

    def test_reset(self):
        self.feedback.apply_confidence_adjustment("cutover", 0.5)
        self.feedback.reset_confidence_adjustment("cutover")
        assert self.feedback.get_confidence_adjustment("cutover") == 1.0

    def test_approval_levels(self):
        self.feedback.apply_approval_level_adjustment("governor", 1)
        self.feedback.apply_approval_level_adjustment("governor", 1)
        assert self.feedback.get_approval_level_adjustment("governor") == 2
        assert self.feedback.get_approval_level_adjustment("cutover") == 0

    def test_override_ttl_multiplier(self):
        self.feedback.apply_override_ttl_multiplier("cutover", 0.5)
        assert self.feedback.get_override_ttl_multiplier("cutover") == pytest.approx(0.5)
        self.feedback.apply_override_ttl_multiplier("cutover", 0.1)
        assert self.feedback.get_override_ttl_multiplier("cutover") == pytest.approx(0.1)
        with pytest.raises(ValueError):
            self.feedback.apply_override_ttl_multiplier("cutover", 0)

    def test_state_reports_adjustments(self):
        self.feedback.apply_confidence_adjustment("cutover", 0.2)
        self.feedback.apply_approval_level_adjustment("governor", 1)
        state = self.feedback.get_state()
        assert state.automation_confidence == {"cutover": pytest.approx(0.8)}
        assert state.approval_level_overrides == {"governor": 1}


class TestDisabled:
    def test_cycle_is_empty(self):
        ctx = _make_context(enabled=False)
        result = ctx.feedback.run_feedback_cycle(NOW)
        assert result.signals_detected == 0
        assert result.recommendations_generated == 0
        assert ctx.feedback.get_confidence_adjustment("cutover") == 1.0

"""
Platform Memory — what keeps happening, and what it led to.

Pattern detection:
- Decisions are grouped by their (source, domain, outcome) signature.
- A signature qualifies as a pattern when its count inside the recency
  window (`pattern_window_ms`, ending now) is strictly greater than
  `pattern_threshold`.
- Trend compares the current window with the preceding window of equal
  length. Severity is banded by occurrences relative to the threshold.
- A pattern that stops qualifying is kept and recomputed, so its trend can
  report the decline.

Causal graph:
- Incident links are accumulating edges; repeated links between the same
  incident and decision are independent evidence and are all kept.

Repeated mistakes:
- A qualifying pattern where at least one of its decisions was overridden
  by a human and then linked as `caused_by` to an incident recorded at or
  after the override.
- Findings are recomputed on every scan; a pattern that stops qualifying
  drops its finding.

Scans only see the live ledger. Decisions evicted from the Decision Stream
simply stop contributing to counts.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union
from uuid import uuid4

from pcal.authority.resolver import AuthorityChainResolver
from pcal.config import PCALSettings
from pcal.decision_stream.stream import DecisionStream
from pcal.models.decision import Decision
from pcal.models.memory import (
    SEVERITY_RANK,
    IncidentLink,
    IncidentLinkType,
    MemorySnapshot,
    Pattern,
    PatternSeverity,
    PatternTrend,
    RepeatedMistake,
)

logger = logging.getLogger(__name__)


def severity_for(occurrences: int, threshold: int) -> PatternSeverity:
    """Monotonic banding of occurrences against the configured threshold."""
    ratio = occurrences / threshold
    if ratio >= 4:
        return PatternSeverity.CRITICAL
    if ratio >= 2.5:
        return PatternSeverity.HIGH
    if ratio >= 1.5:
        return PatternSeverity.MEDIUM
    return PatternSeverity.LOW


def trend_for(current: int, previous: int) -> PatternTrend:
    if current > previous:
        return PatternTrend.INCREASING
    if current < previous:
        return PatternTrend.DECREASING
    return PatternTrend.STABLE


class PlatformMemory:
    """Pattern store, incident graph and repeated-mistake finder."""

    def __init__(
        self,
        decision_stream: DecisionStream,
        authority: AuthorityChainResolver,
        settings: Optional[PCALSettings] = None,
    ):
        self.decision_stream = decision_stream
        self.authority = authority
        self.settings = settings or decision_stream.settings
        self._patterns: Dict[str, Pattern] = {}           # keyed by signature
        self._incident_links: List[IncidentLink] = []
        self._mistakes: Dict[str, RepeatedMistake] = {}   # keyed by signature
        self._snapshots: List[MemorySnapshot] = []

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    # --- Pattern detection ---

    def detect_patterns(self, current_time: Optional[datetime] = None) -> List[Pattern]:
        """
        Rescan the ledger and create or update patterns.
        Returns only the patterns that are new or changed by this scan.
        """
        if not self.enabled:
            return []
        if current_time is None:
            current_time = datetime.utcnow()

        window = timedelta(milliseconds=self.settings.pattern_window_ms)
        window_start = current_time - window
        current = self._group_by_signature(
            self.decision_stream.get_decisions_between(window_start, current_time)
        )
        previous = self._group_by_signature(
            self.decision_stream.get_decisions_between(window_start - window, window_start)
        )

        threshold = self.settings.pattern_threshold
        candidates = {
            sig for sig, decisions in current.items() if len(decisions) > threshold
        } | set(self._patterns)

        changed: List[Pattern] = []
        for signature in sorted(candidates):
            decisions = current.get(signature, [])
            existing = self._patterns.get(signature)
            if not decisions and existing is None:
                continue

            pattern = self._build_pattern(
                signature,
                decisions,
                previous_count=len(previous.get(signature, [])),
                existing=existing,
            )
            if existing is None or self._pattern_changed(existing, pattern):
                self._patterns[signature] = pattern
                changed.append(pattern)

        if changed:
            logger.info(
                "patterns updated",
                extra={"changed": len(changed), "total_patterns": len(self._patterns)},
            )
        return changed

    def _group_by_signature(self, decisions: List[Decision]) -> Dict[str, List[Decision]]:
        grouped: Dict[str, List[Decision]] = defaultdict(list)
        for d in decisions:
            grouped[d.pattern_signature].append(d)
        return grouped

    def _build_pattern(
        self,
        signature: str,
        decisions: List[Decision],
        previous_count: int,
        existing: Optional[Pattern],
    ) -> Pattern:
        occurrences = len(decisions)
        decision_ids = [d.id for d in decisions]
        members = set(decision_ids)
        incident_ids = sorted({
            link.incident_id
            for link in self._incident_links
            if link.decision_id in members
        })

        if decisions:
            sample = decisions[0]
            source, domain, outcome = sample.source, sample.domain, sample.outcome
            first_seen = min(d.timestamp for d in decisions)
            last_seen = max(d.timestamp for d in decisions)
        else:
            source, domain, outcome = existing.source, existing.domain, existing.outcome
            first_seen, last_seen = existing.first_seen, existing.last_seen

        if existing is not None:
            first_seen = min(first_seen, existing.first_seen)

        return Pattern(
            id=existing.id if existing else f"pat_{uuid4().hex[:12]}",
            signature=signature,
            name=f"{source.value} {outcome.value} in {domain.value}",
            source=source,
            domain=domain,
            outcome=outcome,
            occurrences=occurrences,
            severity=severity_for(occurrences, self.settings.pattern_threshold),
            trend=trend_for(occurrences, previous_count),
            linked_decisions=decision_ids,
            linked_incidents=incident_ids,
            first_seen=first_seen,
            last_seen=last_seen,
            description=(
                f"{source.value} produced {occurrences} '{outcome.value}' decision(s) "
                f"in {domain.value} this window (previous window: {previous_count})."
            ),
        )

    @staticmethod
    def _pattern_changed(old: Pattern, new: Pattern) -> bool:
        return (
            old.occurrences != new.occurrences
            or old.severity != new.severity
            or old.trend != new.trend
            or old.linked_decisions != new.linked_decisions
            or old.linked_incidents != new.linked_incidents
        )

    def get_patterns(self, limit: Optional[int] = None) -> List[Pattern]:
        """Current pattern set, most severe first."""
        if not self.enabled:
            return []
        ordered = sorted(
            self._patterns.values(),
            key=lambda p: (SEVERITY_RANK[p.severity], p.occurrences),
            reverse=True,
        )
        return ordered[:limit] if limit is not None else ordered

    def is_qualifying(self, pattern: Pattern) -> bool:
        return pattern.occurrences > self.settings.pattern_threshold

    # --- Causal graph ---

    def link_incident_to_decision(
        self,
        incident_id: str,
        decision_id: str,
        link_type: Union[IncidentLinkType, str],
        confidence: float,
        linked_at: Optional[datetime] = None,
    ) -> Optional[IncidentLink]:
        if not self.enabled:
            return None
        link = IncidentLink(
            id=f"link_{uuid4().hex[:12]}",
            incident_id=incident_id,
            decision_id=decision_id,
            link_type=link_type,
            confidence=confidence,
            linked_at=linked_at or datetime.utcnow(),
        )
        if self.decision_stream.get_decision(decision_id) is None:
            logger.warning(
                "incident linked to a decision not in the live ledger",
                extra={"incident_id": incident_id, "decision_id": decision_id},
            )
        self._incident_links.append(link)
        logger.info(
            "incident linked",
            extra={
                "incident_id": incident_id,
                "decision_id": decision_id,
                "link_type": link.link_type.value,
            },
        )
        return link

    def get_incident_links(
        self,
        decision_id: Optional[str] = None,
        incident_id: Optional[str] = None,
    ) -> List[IncidentLink]:
        if not self.enabled:
            return []
        return [
            link for link in self._incident_links
            if (decision_id is None or link.decision_id == decision_id)
            and (incident_id is None or link.incident_id == incident_id)
        ]

    def get_decisions_for_incident(self, incident_id: str) -> List[Decision]:
        """Live decisions an incident is linked to, in link order, without repeats."""
        seen = set()
        decisions = []
        for link in self.get_incident_links(incident_id=incident_id):
            if link.decision_id in seen:
                continue
            seen.add(link.decision_id)
            decision = self.decision_stream.get_decision(link.decision_id)
            if decision is not None:
                decisions.append(decision)
        return decisions

    # --- Repeated mistakes ---

    def detect_repeated_mistakes(
        self, current_time: Optional[datetime] = None
    ) -> List[RepeatedMistake]:
        """
        Qualifying patterns whose decisions include an override followed by
        a `caused_by` incident. Runs a pattern scan first. The stored
        findings are replaced by this scan's; a signature found again keeps
        its id.
        """
        if not self.enabled:
            return []
        if current_time is None:
            current_time = datetime.utcnow()
        self.detect_patterns(current_time)

        findings: List[RepeatedMistake] = []
        current: Dict[str, RepeatedMistake] = {}
        for pattern in self._patterns.values():
            if not self.is_qualifying(pattern):
                continue

            override_ids: List[str] = []
            incident_ids: List[str] = []
            decision_ids: List[str] = []
            for decision_id in pattern.linked_decisions:
                overrides = self.authority.get_overrides_for_decision(decision_id)
                if not overrides:
                    continue
                earliest_override = overrides[0].created_at
                caused = [
                    link for link in self.get_incident_links(decision_id=decision_id)
                    if link.link_type == IncidentLinkType.CAUSED_BY
                    and link.linked_at >= earliest_override
                ]
                if not caused:
                    continue
                decision_ids.append(decision_id)
                override_ids.extend(o.id for o in overrides)
                incident_ids.extend(link.incident_id for link in caused)

            if not decision_ids:
                continue

            existing = self._mistakes.get(pattern.signature)
            mistake = RepeatedMistake(
                id=existing.id if existing else f"mist_{uuid4().hex[:12]}",
                pattern_id=pattern.id,
                signature=pattern.signature,
                source=pattern.source,
                domain=pattern.domain,
                outcome=pattern.outcome,
                occurrences=pattern.occurrences,
                decision_ids=decision_ids,
                override_ids=override_ids,
                incident_ids=sorted(set(incident_ids)),
                description=(
                    f"'{pattern.name}' recurred {pattern.occurrences} times; "
                    f"{len(decision_ids)} of those decisions were overridden by a human "
                    f"and later caused {len(set(incident_ids))} incident(s)."
                ),
                recommendation=(
                    f"Require a second approval before overriding {pattern.source.value} "
                    f"decisions in {pattern.domain.value}."
                ),
                detected_at=current_time,
            )
            current[pattern.signature] = mistake
            findings.append(mistake)

        resolved = set(self._mistakes) - set(current)
        if resolved:
            logger.info("repeated mistakes resolved", extra={"signatures": sorted(resolved)})
        self._mistakes = current

        if findings:
            logger.info("repeated mistakes detected", extra={"count": len(findings)})
        return findings

    def get_repeated_mistakes(self) -> List[RepeatedMistake]:
        if not self.enabled:
            return []
        return list(self._mistakes.values())

    # --- Snapshots ---

    def capture_memory_snapshot(
        self, current_time: Optional[datetime] = None
    ) -> Optional[MemorySnapshot]:
        """Freeze the pattern set and decision counts for later comparison."""
        if not self.enabled:
            return None
        decisions = self.decision_stream.all_decisions()
        snapshot = MemorySnapshot(
            id=f"snap_{uuid4().hex[:12]}",
            captured_at=current_time or datetime.utcnow(),
            patterns=self.get_patterns(),
            total_decisions=len(decisions),
            decisions_by_outcome=dict(Counter(d.outcome.value for d in decisions)),
            decisions_by_source=dict(Counter(d.source.value for d in decisions)),
            incident_link_count=len(self._incident_links),
            repeated_mistake_count=len(self._mistakes),
        )
        self._snapshots.append(snapshot)
        return snapshot

    def get_snapshots(self, limit: int = 20) -> List[MemorySnapshot]:
        if not self.enabled:
            return []
        return self._snapshots[-limit:]

    # --- Maintenance ---

    def clear_all(self) -> None:
        self._patterns.clear()
        self._incident_links.clear()
        self._mistakes.clear()
        self._snapshots.clear()

"""
Decision Stream — the append-only ledger every other PCAL component reads.

Behavioral Contract:
- Append-only. A decision is never modified once ingested.
- Each decision carries a SHA-256 signature over its immutable fields
  (tamper-evidence and dedup key).
- Bounded: once the ledger holds more than `max_decisions` entries, the
  oldest entries are evicted. Eviction is the only way a decision leaves the
  ledger apart from `clear_all()`; every eviction is logged and counted.
- Queries never raise for missing data; unknown ids return None.
- When PCAL is disabled, ingestion is a no-op returning None and queries
  return empty results.
"""

import hashlib
import json
import logging
from collections import Counter, deque
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from pcal.config import PCALSettings
from pcal.models.decision import (
    AuthorityType,
    Decision,
    DecisionDomain,
    DecisionOutcome,
    DecisionSignal,
    DecisionSource,
    DecisionStats,
)

logger = logging.getLogger(__name__)


def compute_signature(decision: Decision) -> str:
    """
    Deterministic content hash of a decision.

    Canonical JSON (sorted keys) of every field except `id` and `signature`,
    so two decisions with identical content share a signature.
    """
    payload = decision.model_dump(mode="json", exclude={"id", "signature"})
    encoded = json.dumps(payload, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()


class DecisionStream:
    """
    In-memory, bounded decision ledger.
    Ordered oldest → newest internally; read APIs return newest first.
    """

    def __init__(self, settings: Optional[PCALSettings] = None):
        self.settings = settings or PCALSettings()
        self._ledger: Deque[Decision] = deque()
        self._index: Dict[str, Decision] = {}
        self._evicted_total = 0

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    # --- Ingestion ---

    def ingest_decision(
        self,
        source: Union[DecisionSource, str],
        domain: Union[DecisionDomain, str],
        outcome: Union[DecisionOutcome, str],
        reason: str,
        *,
        confidence: float = 100,
        signals: Optional[Iterable[Union[DecisionSignal, dict]]] = None,
        authority: Union[AuthorityType, str] = AuthorityType.SYSTEM,
        actor: Optional[str] = None,
        reversible: bool = True,
        scope_id: Optional[str] = None,
        override_of: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Decision]:
        """
        Record a decision. Invalid enum values or a human decision without an
        actor raise a ValidationError before anything is appended.
        """
        if not self.enabled:
            return None

        unsigned = Decision(
            id=f"dec_{uuid4().hex[:12]}",
            source=source,
            domain=domain,
            outcome=outcome,
            reason=reason,
            confidence=confidence,
            signals=tuple(signals or []),
            authority=authority,
            actor=actor,
            reversible=reversible,
            scope_id=scope_id,
            override_of=override_of,
            timestamp=timestamp or datetime.utcnow(),
        )
        decision = unsigned.model_copy(update={"signature": compute_signature(unsigned)})

        self._ledger.append(decision)
        self._index[decision.id] = decision
        logger.debug(
            "decision ingested",
            extra={
                "decision_id": decision.id,
                "source": decision.source.value,
                "outcome": decision.outcome.value,
            },
        )
        self._evict_overflow()
        return decision

    def ingest_manual_decision(
        self,
        domain: Union[DecisionDomain, str],
        outcome: Union[DecisionOutcome, str],
        reason: str,
        actor: str,
        **options,
    ) -> Optional[Decision]:
        """Record a decision made by a named human operator."""
        options.pop("authority", None)
        source = options.pop("source", DecisionSource.MANUAL)
        return self.ingest_decision(
            source,
            domain,
            outcome,
            reason,
            authority=AuthorityType.HUMAN,
            actor=actor,
            **options,
        )

    def _evict_overflow(self) -> None:
        """Drop the oldest decisions until the ledger fits `max_decisions`."""
        while len(self._ledger) > self.settings.max_decisions:
            evicted = self._ledger.popleft()
            self._index.pop(evicted.id, None)
            self._evicted_total += 1
            logger.info(
                "decision evicted from ledger",
                extra={
                    "decision_id": evicted.id,
                    "max_decisions": self.settings.max_decisions,
                    "evicted_total": self._evicted_total,
                },
            )

    # --- Queries ---

    def get_decision(self, decision_id: str) -> Optional[Decision]:
        if not self.enabled:
            return None
        return self._index.get(decision_id)

    def get_recent_decisions(self, limit: int = 50) -> List[Decision]:
        """Most recent decisions, newest first."""
        if not self.enabled or limit <= 0:
            return []
        recent = list(self._ledger)[-limit:]
        return list(reversed(recent))

    def get_decisions_by_source(
        self, source: Union[DecisionSource, str], limit: Optional[int] = None
    ) -> List[Decision]:
        source = DecisionSource(source)
        return self._filter(lambda d: d.source == source, limit)

    def get_decisions_by_outcome(
        self, outcome: Union[DecisionOutcome, str], limit: Optional[int] = None
    ) -> List[Decision]:
        outcome = DecisionOutcome(outcome)
        return self._filter(lambda d: d.outcome == outcome, limit)

    def get_decisions_between(self, start: datetime, end: datetime) -> List[Decision]:
        """Decisions with start < timestamp <= end, oldest first."""
        if not self.enabled:
            return []
        return [d for d in self._ledger if start < d.timestamp <= end]

    def all_decisions(self) -> List[Decision]:
        """The live ledger, oldest first."""
        if not self.enabled:
            return []
        return list(self._ledger)

    def _filter(self, predicate, limit: Optional[int]) -> List[Decision]:
        if not self.enabled:
            return []
        matches = []
        for decision in reversed(self._ledger):
            if predicate(decision):
                matches.append(decision)
                if limit is not None and len(matches) >= limit:
                    break
        return matches

    def count(self) -> int:
        return len(self._ledger) if self.enabled else 0

    # --- Aggregates ---

    def get_decision_stats(self) -> DecisionStats:
        """Fresh aggregate over the live ledger. Nothing is cached."""
        if not self.enabled or not self._ledger:
            return DecisionStats(evicted_total=self._evicted_total if self.enabled else 0)

        decisions = list(self._ledger)
        total = len(decisions)
        reversible = sum(1 for d in decisions if d.reversible)

        return DecisionStats(
            total=total,
            avg_confidence=sum(d.confidence for d in decisions) / total,
            outcome_breakdown=dict(Counter(d.outcome.value for d in decisions)),
            by_source=dict(Counter(d.source.value for d in decisions)),
            by_authority=dict(Counter(d.authority.value for d in decisions)),
            reversible_percent=round(100.0 * reversible / total, 2),
            evicted_total=self._evicted_total,
        )

    def verify_integrity(self) -> bool:
        """Verify no live decision has been tampered with."""
        for decision in self._ledger:
            if decision.signature != compute_signature(decision):
                return False
        return True

    # --- Maintenance ---

    def clear_all(self) -> None:
        """Destroy the ledger. Intended for test isolation only."""
        self._ledger.clear()
        self._index.clear()
        self._evicted_total = 0

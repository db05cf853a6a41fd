"""
PCAL context — one instance of every component, wired together.

Construct one per process (or per test). Components receive their
dependencies through the constructor; nothing is held at module level.
"""

from datetime import datetime
from typing import Optional

from pcal.authority.resolver import AuthorityChainResolver
from pcal.config import PCALSettings
from pcal.decision_stream.stream import DecisionStream
from pcal.feedback.loop import FeedbackLoop
from pcal.memory.platform_memory import PlatformMemory
from pcal.models.feedback import FeedbackCycleResult
from pcal.narrative.generator import NarrativeGenerator


class PCALContext:
    """Owns the Decision Stream and everything derived from it."""

    def __init__(self, settings: Optional[PCALSettings] = None):
        self.settings = settings or PCALSettings()
        self.decisions = DecisionStream(self.settings)
        self.authority = AuthorityChainResolver(self.decisions, self.settings)
        self.memory = PlatformMemory(self.decisions, self.authority, self.settings)
        self.feedback = FeedbackLoop(self.decisions, self.authority, self.memory, self.settings)
        self.narrative = NarrativeGenerator(
            self.decisions, self.authority, self.memory, self.feedback, self.settings
        )

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def run_scan(self, current_time: Optional[datetime] = None) -> FeedbackCycleResult:
        """Rescan memory, then run one feedback cycle over the fresh findings."""
        if current_time is None:
            current_time = datetime.utcnow()
        self.memory.detect_patterns(current_time)
        self.memory.detect_repeated_mistakes(current_time)
        return self.feedback.run_feedback_cycle(current_time)

    def clear_all(self) -> None:
        """Destroy every component's state. Not reversible."""
        self.narrative.clear_all()
        self.feedback.clear_all()
        self.memory.clear_all()
        self.authority.clear_all()
        self.decisions.clear_all()

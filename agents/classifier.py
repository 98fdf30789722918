"""Status classification strategies applied to assistant replies."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Sequence
from incidents.models import IncidentStatus, STATUS_PROGRESSION


def is_forward(current: IncidentStatus, proposed: IncidentStatus) -> bool:
    """Whether ``proposed`` is strictly later than ``current`` in the progression."""
    if current not in STATUS_PROGRESSION or proposed not in STATUS_PROGRESSION:
        return False
    return STATUS_PROGRESSION.index(proposed) > STATUS_PROGRESSION.index(current)


class StatusClassifier(ABC):
    """Proposes the next incident status from free text. Best effort, never authoritative."""

    @abstractmethod
    def classify(self, text: str, current: IncidentStatus) -> Optional[IncidentStatus]:
        """
        Suggest a status transition.

        Args:
            text: Assistant reply to inspect
            current: Status before this reply

        Returns:
            Next status, or None when the text gives no signal
        """
        pass


class KeywordStatusClassifier(StatusClassifier):
    """Case-insensitive phrase matching over model output."""

    ROOT_CAUSE_PHRASES: Sequence[str] = ("root cause", "identified the issue")
    REMEDIATION_PHRASES: Sequence[str] = ("to fix", "remediation", "steps to resolve")

    def __init__(
        self,
        root_cause_phrases: Optional[Sequence[str]] = None,
        remediation_phrases: Optional[Sequence[str]] = None
    ):
        self.root_cause_phrases = tuple(
            phrase.lower() for phrase in (root_cause_phrases or self.ROOT_CAUSE_PHRASES)
        )
        self.remediation_phrases = tuple(
            phrase.lower() for phrase in (remediation_phrases or self.REMEDIATION_PHRASES)
        )

    def classify(self, text: str, current: IncidentStatus) -> Optional[IncidentStatus]:
        lowered = (text or "").lower()

        if current == IncidentStatus.INVESTIGATING and any(
            phrase in lowered for phrase in self.root_cause_phrases
        ):
            return IncidentStatus.IDENTIFIED

        if current in (IncidentStatus.INVESTIGATING, IncidentStatus.IDENTIFIED) and any(
            phrase in lowered for phrase in self.remediation_phrases
        ):
            return IncidentStatus.MITIGATING

        return None

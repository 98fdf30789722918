"""Incident record data model."""
import copy
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class IncidentStatus(str, Enum):
    """Lifecycle states of an incident."""
    INVESTIGATING = "investigating"
    IDENTIFIED = "identified"
    MITIGATING = "mitigating"
    RESOLVED = "resolved"
    MONITORING = "monitoring"  # Side state, reachable only via explicit update


# Forward order used by the status classifier. MONITORING is deliberately absent.
STATUS_PROGRESSION = [
    IncidentStatus.INVESTIGATING,
    IncidentStatus.IDENTIFIED,
    IncidentStatus.MITIGATING,
    IncidentStatus.RESOLVED,
]


class Severity(str, Enum):
    """Incident priority classification."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TimelineEventType(str, Enum):
    """Kinds of audit events recorded on the incident timeline."""
    DETECTION = "detection"
    ANALYSIS = "analysis"
    ACTION = "action"
    UPDATE = "update"
    RESOLUTION = "resolution"


class MessageRole(str, Enum):
    """Authors of conversation messages."""
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class TimelineEvent:
    """Append-only audit record of something that happened to an incident."""
    timestamp: datetime
    type: TimelineEventType
    description: str
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "description": self.description,
            "data": copy.deepcopy(self.data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimelineEvent":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            type=TimelineEventType(data["type"]),
            description=data["description"],
            data=data.get("data"),
        )


@dataclass
class Message:
    """One conversation message."""
    role: MessageRole
    content: str
    timestamp: datetime

    def as_prompt(self) -> Dict[str, str]:
        """Shape consumed by the inference port."""
        return {"role": self.role.value, "content": self.content}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=MessageRole(data["role"]),
            content=data["content"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class IncidentRecord:
    """
    Full state of one incident.

    ``timeline`` and ``history`` only ever grow. ``end_time`` is stamped the
    first time the status is set to resolved and never cleared.
    """
    id: str
    severity: Severity
    title: str
    description: str
    start_time: datetime
    status: IncidentStatus = IncidentStatus.INVESTIGATING
    affected_systems: List[str] = field(default_factory=list)
    end_time: Optional[datetime] = None
    root_cause: Optional[str] = None
    remediation_steps: Optional[List[str]] = None
    timeline: List[TimelineEvent] = field(default_factory=list)
    history: List[Message] = field(default_factory=list)

    def add_event(
        self,
        event_type: TimelineEventType,
        description: str,
        data: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> TimelineEvent:
        """Append a timeline event and return it."""
        event = TimelineEvent(
            timestamp=timestamp or utcnow(),
            type=event_type,
            description=description,
            data=data,
        )
        self.timeline.append(event)
        return event

    def has_event_key(self, dedupe_key: str) -> bool:
        """Whether a timeline event tagged with ``dedupe_key`` was already recorded."""
        return any(
            event.data and event.data.get("dedupe_key") == dedupe_key
            for event in self.timeline
        )

    def age_minutes(self, now: Optional[datetime] = None) -> int:
        """Whole minutes elapsed since the incident started."""
        elapsed = (now or utcnow()) - self.start_time
        return max(int(elapsed.total_seconds() // 60), 0)

    def copy(self) -> "IncidentRecord":
        """Independent snapshot of this record."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "severity": self.severity.value,
            "status": self.status.value,
            "description": self.description,
            "affected_systems": list(self.affected_systems),
            "start_time": _format_time(self.start_time),
            "end_time": _format_time(self.end_time),
            "root_cause": self.root_cause,
            "remediation_steps": (
                list(self.remediation_steps) if self.remediation_steps is not None else None
            ),
            "timeline": [event.to_dict() for event in self.timeline],
            "history": [message.to_dict() for message in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IncidentRecord":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            title=data["title"],
            severity=Severity(data["severity"]),
            status=IncidentStatus(data["status"]),
            description=data["description"],
            affected_systems=list(data.get("affected_systems") or []),
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=_parse_time(data.get("end_time")),
            root_cause=data.get("root_cause"),
            remediation_steps=data.get("remediation_steps"),
            timeline=[TimelineEvent.from_dict(event) for event in data.get("timeline", [])],
            history=[Message.from_dict(message) for message in data.get("history", [])],
        )

    def summary(self) -> Dict[str, Any]:
        """Lightweight listing entry."""
        return {
            "id": self.id,
            "title": self.title,
            "severity": self.severity.value,
            "status": self.status.value,
            "start_time": _format_time(self.start_time),
        }

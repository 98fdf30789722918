"""Incident records, their storage, and the analysis step log."""
from .models import (
    IncidentRecord,
    IncidentStatus,
    Message,
    MessageRole,
    Severity,
    TimelineEvent,
    TimelineEventType,
)
from .store import (
    FileIncidentStore,
    IncidentRepository,
    IncidentStore,
    KeyedLock,
    InMemoryIncidentStore,
    get_incident_store,
)
from .checkpoints import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    RunStatus,
    WorkflowRun,
    get_checkpoint_store,
)

__all__ = [
    "IncidentRecord",
    "IncidentStatus",
    "Message",
    "MessageRole",
    "Severity",
    "TimelineEvent",
    "TimelineEventType",
    "FileIncidentStore",
    "IncidentRepository",
    "IncidentStore",
    "KeyedLock",
    "InMemoryIncidentStore",
    "get_incident_store",
    "CheckpointStore",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "RunStatus",
    "WorkflowRun",
    "get_checkpoint_store",
]

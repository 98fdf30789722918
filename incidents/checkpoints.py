"""Persisted step log for analysis workflow runs."""
import copy
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from core.config import settings
from core.logging import get_logger
from .models import utcnow
from .store import JsonDocumentDirectory

logger = get_logger(__name__)


class RunStatus(str, Enum):
    """Lifecycle of a workflow run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkflowRun:
    """
    Durable cursor for one pipeline execution.

    ``outputs`` holds the recorded result of every completed step keyed by
    step name; a step present there is never executed again. ``wake_at``
    holds the persisted wake-up time of each durable sleep.
    """
    run_id: str
    incident_id: str
    params: Dict[str, Any]
    status: RunStatus = RunStatus.RUNNING
    current_step: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    wake_at: Dict[str, str] = field(default_factory=dict)
    attempts: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return copy.deepcopy(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowRun":
        """Create from dictionary."""
        data = copy.deepcopy(data)
        data["status"] = RunStatus(data["status"])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return cls(**data)


class CheckpointStore(ABC):
    """Abstract base class for workflow run storage."""

    @abstractmethod
    def load(self, run_id: str) -> Optional[WorkflowRun]:
        """Load a run, or None if unknown."""
        pass

    @abstractmethod
    def save(self, run: WorkflowRun) -> None:
        """Persist a run, replacing any previous version."""
        pass

    @abstractmethod
    def list_runs(self) -> List[WorkflowRun]:
        """List all stored runs."""
        pass

    def pending_runs(self) -> List[WorkflowRun]:
        """Runs that started but neither completed nor failed."""
        return [run for run in self.list_runs() if run.status == RunStatus.RUNNING]


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local run storage."""

    def __init__(self):
        self._runs: Dict[str, Dict[str, Any]] = {}

    def load(self, run_id: str) -> Optional[WorkflowRun]:
        data = self._runs.get(run_id)
        return WorkflowRun.from_dict(data) if data is not None else None

    def save(self, run: WorkflowRun) -> None:
        run.updated_at = utcnow()
        self._runs[run.run_id] = run.to_dict()

    def list_runs(self) -> List[WorkflowRun]:
        return [WorkflowRun.from_dict(data) for data in self._runs.values()]


class FileCheckpointStore(CheckpointStore):
    """Local filesystem run storage: one JSON step log per run."""

    def __init__(self, base_path: Optional[str] = None):
        self._documents = JsonDocumentDirectory(base_path or settings.workflows_path)
        logger.info("File checkpoint store initialized", base_path=str(self._documents.base_path))

    def load(self, run_id: str) -> Optional[WorkflowRun]:
        data = self._documents.read(run_id)
        return WorkflowRun.from_dict(data) if data is not None else None

    def save(self, run: WorkflowRun) -> None:
        run.updated_at = utcnow()
        self._documents.write(run.run_id, run.to_dict())

    def list_runs(self) -> List[WorkflowRun]:
        runs = []
        for key in self._documents.keys():
            data = self._documents.read(key)
            if data is not None:
                runs.append(WorkflowRun.from_dict(data))
        return runs


def get_checkpoint_store() -> CheckpointStore:
    """Get checkpoint store instance based on configuration."""
    backend = settings.storage_backend

    if backend == "file":
        return FileCheckpointStore()

    elif backend == "memory":
        return InMemoryCheckpointStore()

    else:
        raise ValueError(f"Unknown storage backend: {backend}")

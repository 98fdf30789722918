"""Incident record storage and per-incident serialized access."""
import asyncio
import json
import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional
from core.config import settings
from core.errors import NotFoundError
from core.logging import get_logger
from .models import IncidentRecord

logger = get_logger(__name__)


class JsonDocumentDirectory:
    """One JSON document per key inside a directory, written atomically."""

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe_key = key.replace("/", "_").replace("\\", "_")
        return self.base_path / f"{safe_key}.json"

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def write(self, key: str, data: Dict[str, Any]) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def keys(self) -> List[str]:
        return sorted(path.stem for path in self.base_path.glob("*.json"))


class IncidentStore(ABC):
    """Abstract base class for durable per-incident key-value storage."""

    @abstractmethod
    def load(self, incident_id: str) -> Optional[IncidentRecord]:
        """
        Load an incident record.

        Args:
            incident_id: Incident identifier

        Returns:
            Record, or None if the incident does not exist
        """
        pass

    @abstractmethod
    def save(self, record: IncidentRecord) -> None:
        """
        Persist an incident record, replacing any previous version.

        Args:
            record: Record to store
        """
        pass

    @abstractmethod
    def list_ids(self) -> List[str]:
        """List identifiers of all stored incidents."""
        pass


class InMemoryIncidentStore(IncidentStore):
    """Process-local store. Records are serialized so callers never share objects."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}

    def load(self, incident_id: str) -> Optional[IncidentRecord]:
        data = self._records.get(incident_id)
        return IncidentRecord.from_dict(data) if data is not None else None

    def save(self, record: IncidentRecord) -> None:
        self._records[record.id] = record.to_dict()

    def list_ids(self) -> List[str]:
        return sorted(self._records)


class FileIncidentStore(IncidentStore):
    """Local filesystem store: one JSON document per incident."""

    def __init__(self, base_path: Optional[str] = None):
        """
        Initialize file storage.

        Args:
            base_path: Directory for incident documents (defaults to settings.incidents_path)
        """
        self._documents = JsonDocumentDirectory(base_path or settings.incidents_path)
        logger.info("File incident store initialized", base_path=str(self._documents.base_path))

    def load(self, incident_id: str) -> Optional[IncidentRecord]:
        data = self._documents.read(incident_id)
        return IncidentRecord.from_dict(data) if data is not None else None

    def save(self, record: IncidentRecord) -> None:
        self._documents.write(record.id, record.to_dict())
        logger.debug(
            "Saved incident record",
            incident_id=record.id,
            history=len(record.history),
            timeline=len(record.timeline)
        )

    def list_ids(self) -> List[str]:
        return self._documents.keys()


class KeyedLock:
    """
    One asyncio lock per key, kept only while some task holds or awaits it.

    Keys are arbitrary caller input (including ids that do not exist), so
    entries are dropped as soon as their last user leaves.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class IncidentRepository:
    """
    Serialized access to incident records.

    Every read and read-modify-write against one incident goes through that
    incident's lock, so operations on a single incident are linearizable while
    different incidents proceed independently. Callers must not hold a lock
    across slow calls such as inference.
    """

    def __init__(self, store: IncidentStore):
        self.store = store
        self._locks = KeyedLock()

    def _lock(self, incident_id: str):
        return self._locks.hold(incident_id)

    async def create(self, record: IncidentRecord) -> IncidentRecord:
        """Store a new record. Fails if the id is already taken."""
        async with self._lock(record.id):
            if self.store.load(record.id) is not None:
                raise ValueError(f"Incident already exists: {record.id}")
            self.store.save(record)
        logger.info("Incident record created", incident_id=record.id, severity=record.severity.value)
        return record.copy()

    async def get(self, incident_id: str) -> IncidentRecord:
        """Consistent snapshot of a record. Raises NotFoundError if absent."""
        async with self._lock(incident_id):
            record = self.store.load(incident_id)
        if record is None:
            raise NotFoundError(incident_id)
        return record

    async def exists(self, incident_id: str) -> bool:
        async with self._lock(incident_id):
            return self.store.load(incident_id) is not None

    @asynccontextmanager
    async def mutate(self, incident_id: str) -> AsyncIterator[IncidentRecord]:
        """
        Load, yield for modification, and persist a record under its lock.

        Changes are discarded if the block raises.
        """
        async with self._lock(incident_id):
            record = self.store.load(incident_id)
            if record is None:
                raise NotFoundError(incident_id)
            yield record
            self.store.save(record)

    def list_ids(self) -> List[str]:
        return self.store.list_ids()


def get_incident_store() -> IncidentStore:
    """
    Get incident store instance based on configuration.

    Returns:
        IncidentStore instance
    """
    backend = settings.storage_backend

    if backend == "file":
        return FileIncidentStore()

    elif backend == "memory":
        return InMemoryIncidentStore()

    else:
        raise ValueError(f"Unknown storage backend: {backend}")

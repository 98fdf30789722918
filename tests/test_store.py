"""Tests for incident record storage and the workflow step log."""
import asyncio
import json
import pytest
from core.errors import NotFoundError
from incidents.checkpoints import FileCheckpointStore, RunStatus, WorkflowRun
from incidents.models import IncidentRecord, MessageRole, Message, TimelineEventType
from incidents.store import FileIncidentStore, InMemoryIncidentStore, KeyedLock


def test_record_dict_round_trip(make_record):
    record = make_record(
        affected_systems=["db"],
        root_cause="Disk full",
        remediation_steps=["1. Free space"],
    )
    record.add_event(TimelineEventType.DETECTION, "Detected", {"source": "pager"})
    record.history.append(Message(MessageRole.USER, "hi", record.start_time))

    assert IncidentRecord.from_dict(record.to_dict()) == record


def test_file_store_persists_json_documents(tmp_path, make_record):
    store = FileIncidentStore(str(tmp_path))
    record = make_record()
    record.add_event(TimelineEventType.DETECTION, "Detected")

    store.save(record)

    assert store.list_ids() == ["INC-test-1"]
    on_disk = json.loads((tmp_path / "INC-test-1.json").read_text())
    assert on_disk["id"] == "INC-test-1"
    assert on_disk["end_time"] is None
    assert FileIncidentStore(str(tmp_path)).load("INC-test-1") == record
    assert store.load("missing") is None


def test_in_memory_store_returns_independent_copies(make_record):
    store = InMemoryIncidentStore()
    store.save(make_record())

    loaded = store.load("INC-test-1")
    loaded.title = "changed"

    assert store.load("INC-test-1").title == "Checkout errors"


@pytest.mark.asyncio
async def test_repository_mutate_persists_on_success(repository, make_record):
    await repository.create(make_record())

    async with repository.mutate("INC-test-1") as record:
        record.root_cause = "Bad config"

    assert (await repository.get("INC-test-1")).root_cause == "Bad config"


@pytest.mark.asyncio
async def test_repository_mutate_discards_on_error(repository, make_record):
    await repository.create(make_record())

    with pytest.raises(RuntimeError):
        async with repository.mutate("INC-test-1") as record:
            record.root_cause = "half-written"
            raise RuntimeError("boom")

    assert (await repository.get("INC-test-1")).root_cause is None


@pytest.mark.asyncio
async def test_repository_missing_incident(repository):
    with pytest.raises(NotFoundError):
        await repository.get("nope")
    with pytest.raises(NotFoundError):
        async with repository.mutate("nope"):
            pass
    assert not await repository.exists("nope")
    assert repository.list_ids() == []


@pytest.mark.asyncio
async def test_repository_rejects_duplicate_ids(repository, make_record):
    await repository.create(make_record())
    with pytest.raises(ValueError):
        await repository.create(make_record())


def test_file_checkpoint_store_round_trip(tmp_path):
    store = FileCheckpointStore(str(tmp_path))
    run = WorkflowRun(run_id="run-1", incident_id="INC-1", params={"severity": "high"})
    run.outputs["initial-analysis"] = "text"
    run.wake_at["wait-for-mitigation"] = "2024-05-01T12:05:00+00:00"
    store.save(run)

    other = WorkflowRun(run_id="run-2", incident_id="INC-2", params={}, status=RunStatus.COMPLETED)
    store.save(other)

    loaded = FileCheckpointStore(str(tmp_path)).load("run-1")
    assert loaded.outputs == {"initial-analysis": "text"}
    assert loaded.wake_at == {"wait-for-mitigation": "2024-05-01T12:05:00+00:00"}
    assert loaded.status == RunStatus.RUNNING
    assert [pending.run_id for pending in store.pending_runs()] == ["run-1"]


@pytest.mark.asyncio
async def test_keyed_lock_serializes_and_forgets_released_keys():
    locks = KeyedLock()
    order = []

    async def worker(name):
        async with locks.hold("INC-1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"), worker("c"))

    assert order == ["a-in", "a-out", "b-in", "b-out", "c-in", "c-out"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_releases_key_on_error():
    locks = KeyedLock()
    with pytest.raises(RuntimeError):
        async with locks.hold("INC-1"):
            assert len(locks) == 1
            raise RuntimeError("boom")
    assert len(locks) == 0

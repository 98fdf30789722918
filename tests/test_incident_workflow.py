"""Tests for the staged incident analysis workflow."""
import asyncio
import pytest
from agents.incident_workflow import extract_remediation_steps, format_delay
from core.errors import ParseError
from incidents.checkpoints import RunStatus
from incidents.models import IncidentStatus, MessageRole, Severity
from conftest import INITIAL_ANALYSIS, MONITORING, REMEDIATION_PLAN, ROOT_CAUSE

EXPECTED_STEPS = [
    "1. Roll back the orders service deploy",
    "2. Raise the pool size to 200",
    "3. Add a pool saturation alert",
]


def run_for(checkpoint_store, incident_id):
    runs = [run for run in checkpoint_store.list_runs() if run.incident_id == incident_id]
    assert len(runs) == 1
    return runs[0]


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def automated_checks(record):
    return [
        message for message in record.history
        if message.content.startswith("[Automated Check]")
    ]


def test_extract_remediation_steps():
    assert extract_remediation_steps(REMEDIATION_PLAN) == EXPECTED_STEPS
    assert extract_remediation_steps("Restart the service and watch it.") == []
    assert extract_remediation_steps("") == []
    with pytest.raises(ParseError):
        extract_remediation_steps(None)


def test_format_delay():
    assert format_delay(300) == "5 minutes"
    assert format_delay(60) == "1 minute"
    assert format_delay(0.5) == "0.5 seconds"


@pytest.mark.asyncio
async def test_high_severity_pipeline_writes_back_results(service, inference, checkpoint_store):
    incident_id = await service.create_incident(
        "Checkout returns 504",
        "high",
        title="Checkout outage",
        logs="ERROR pool exhausted",
        metrics={"p99_ms": 1200},
    )
    await service.workflow.wait_idle()

    record = await service.get_record(incident_id)
    assert record.root_cause == ROOT_CAUSE
    assert record.remediation_steps == EXPECTED_STEPS
    assert record.history[0].role == MessageRole.ASSISTANT
    assert record.history[0].content == f"Initial automated analysis completed:\n\n{INITIAL_ANALYSIS}"
    assert automated_checks(record) == []
    assert record.status == IncidentStatus.INVESTIGATING

    descriptions = [event.description for event in record.timeline]
    assert descriptions[0] == "Incident detected and initialized"
    assert "Root cause identified" in descriptions
    assert "Remediation plan created" in descriptions

    run = run_for(checkpoint_store, incident_id)
    assert run.status == RunStatus.COMPLETED
    assert "wait-for-mitigation" not in run.outputs
    summary = run.outputs["post-incident-summary"]
    assert summary["monitoring"] == MONITORING
    assert summary["remediation_steps"] == EXPECTED_STEPS


@pytest.mark.asyncio
async def test_steps_use_their_own_prompts_and_sampling(service, inference):
    await service.create_incident(
        "Checkout returns 504", "high", logs="ERROR pool exhausted", metrics={"p99_ms": 1200}
    )
    await service.workflow.wait_idle()

    initial = inference.calls_matching("initial assessment")
    assert len(initial) == 1
    assert (initial[0]["temperature"], initial[0]["max_tokens"]) == (0.3, 1024)
    prompt = initial[0]["messages"][1]["content"]
    assert "Severity: high" in prompt
    assert "Logs:\nERROR pool exhausted" in prompt
    assert '"p99_ms": 1200' in prompt

    root_cause = inference.calls_matching("senior SRE")[0]
    assert (root_cause["temperature"], root_cause["max_tokens"]) == (0.4, 1536)
    assert f"Initial Analysis: {INITIAL_ANALYSIS}" in root_cause["messages"][1]["content"]

    remediation = inference.calls_matching("remediation runbook")[0]
    assert (remediation["temperature"], remediation["max_tokens"]) == (0.5, 2048)
    assert f"Root Cause: {ROOT_CAUSE}" in remediation["messages"][1]["content"]

    monitoring = inference.calls_matching("observability expert")[0]
    assert (monitoring["temperature"], monitoring["max_tokens"]) == (0.6, 1536)
    assert len(inference.calls) == 4


@pytest.mark.asyncio
async def test_critical_incident_gets_one_verification_reminder(service, checkpoint_store):
    incident_id = await service.create_incident("Database primary down", "critical")
    await service.workflow.wait_idle()

    record = await service.get_record(incident_id)
    reminders = automated_checks(record)
    assert len(reminders) == 1
    assert reminders[0].role == MessageRole.ASSISTANT
    assert "Please verify that mitigation steps have been applied and are effective." in (
        reminders[0].content
    )
    run = run_for(checkpoint_store, incident_id)
    assert run.status == RunStatus.COMPLETED
    assert run.outputs["verify-mitigation"]["posted"] is True


@pytest.mark.asyncio
async def test_verification_survives_restart_during_delay(service_factory, inference, checkpoint_store):
    first = service_factory(verification_delay=0.5)
    incident_id = await first.create_incident("Database primary down", "critical")

    await wait_for(
        lambda: "wait-for-mitigation" in run_for(checkpoint_store, incident_id).wake_at
    )
    await first.shutdown()
    calls_before_restart = len(inference.calls)

    record = await first.get_record(incident_id)
    assert automated_checks(record) == []
    assert run_for(checkpoint_store, incident_id).status == RunStatus.RUNNING

    second = service_factory(verification_delay=0.5)
    resumed = await second.startup()
    await second.workflow.wait_idle()

    assert resumed == [run_for(checkpoint_store, incident_id).run_id]
    record = await second.get_record(incident_id)
    assert len(automated_checks(record)) == 1
    assert len(inference.calls) == calls_before_restart
    assert run_for(checkpoint_store, incident_id).status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_verification_skipped_when_already_resolved(service_factory, checkpoint_store):
    service = service_factory(verification_delay=0.3)
    incident_id = await service.create_incident("Database primary down", "critical")

    await wait_for(
        lambda: "wait-for-mitigation" in run_for(checkpoint_store, incident_id).wake_at
    )
    await service.update_status(incident_id, status="resolved")
    await service.workflow.wait_idle()

    record = await service.get_record(incident_id)
    assert automated_checks(record) == []
    assert record.timeline[-1].description == "Mitigation check skipped: incident already resolved"
    assert run_for(checkpoint_store, incident_id).outputs["verify-mitigation"]["skipped"] is True


@pytest.mark.asyncio
async def test_verification_posted_regardless_when_skip_disabled(service_factory, checkpoint_store):
    service = service_factory(verification_delay=0.3, skip_verification_if_resolved=False)
    incident_id = await service.create_incident("Database primary down", "critical")

    await wait_for(
        lambda: "wait-for-mitigation" in run_for(checkpoint_store, incident_id).wake_at
    )
    await service.update_status(incident_id, status="resolved")
    await service.workflow.wait_idle()

    record = await service.get_record(incident_id)
    assert len(automated_checks(record)) == 1


@pytest.mark.asyncio
async def test_transient_failure_is_retried(service, inference, checkpoint_store):
    inference.fail("remediation runbook", times=1)

    incident_id = await service.create_incident("Checkout returns 504", "high")
    await service.workflow.wait_idle()

    run = run_for(checkpoint_store, incident_id)
    assert run.status == RunStatus.COMPLETED
    assert run.attempts["generate-remediation"] == 2
    assert run.attempts["initial-analysis"] == 1
    assert len(inference.calls_matching("initial assessment")) == 1
    assert (await service.get_record(incident_id)).remediation_steps == EXPECTED_STEPS


@pytest.mark.asyncio
async def test_permanent_failure_halts_and_keeps_partial_results(service, inference, checkpoint_store):
    inference.fail("senior SRE")

    incident_id = await service.create_incident("Checkout returns 504", "high")
    await service.workflow.wait_idle()

    run = run_for(checkpoint_store, incident_id)
    assert run.status == RunStatus.FAILED
    assert run.attempts["root-cause-analysis"] == 2
    assert "model unavailable" in run.error
    assert "generate-remediation" not in run.outputs

    record = await service.get_record(incident_id)
    assert record.root_cause is None
    assert record.history[0].content.startswith("Initial automated analysis completed:")
    halted = record.timeline[-1]
    assert halted.description == "Automated analysis halted at step: root-cause-analysis"
    assert halted.data["run_id"] == run.run_id


@pytest.mark.asyncio
async def test_unparseable_plan_degrades_to_no_steps(service, inference):
    inference.replies["remediation runbook"] = "Restart everything and hope."

    incident_id = await service.create_incident("Checkout returns 504", "medium")
    await service.workflow.wait_idle()

    record = await service.get_record(incident_id)
    assert record.root_cause == ROOT_CAUSE
    assert record.remediation_steps == []


@pytest.mark.asyncio
async def test_resumed_run_replays_recorded_steps(service, inference, repository, make_record):
    await repository.create(make_record(severity=Severity.LOW))
    run = service.workflow.create_run({
        "incident_id": "INC-test-1",
        "severity": "low",
        "description": "Users reporting 504 errors",
        "logs": None,
        "metrics": None,
    })
    run.outputs["initial-analysis"] = "Recorded triage notes"
    run.outputs["update-initial-analysis"] = True
    service.workflow.checkpoints.save(run)

    summary = await service.workflow.run(run.run_id)

    assert inference.calls_matching("initial assessment") == []
    root_cause_prompt = inference.calls_matching("senior SRE")[0]["messages"][1]["content"]
    assert "Initial Analysis: Recorded triage notes" in root_cause_prompt
    assert summary["initial_analysis"] == "Recorded triage notes"
    assert (await repository.get("INC-test-1")).history == []

    again = await service.workflow.run(run.run_id)
    assert again == summary
    assert len(inference.calls) == 3

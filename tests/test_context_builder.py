"""Tests for incident context assembly."""
from datetime import timedelta
from agents.context_builder import INCIDENT_SYSTEM_PROMPT, build_incident_context
from incidents.models import IncidentStatus


def test_context_lists_core_metadata(make_record):
    record = make_record(status=IncidentStatus.IDENTIFIED)
    now = record.start_time + timedelta(minutes=42, seconds=59)

    context = build_incident_context(record, now=now)

    assert context.startswith(INCIDENT_SYSTEM_PROMPT)
    assert "CURRENT INCIDENT CONTEXT:" in context
    assert "- Incident ID: INC-test-1" in context
    assert "- Title: Checkout errors" in context
    assert "- Status: identified" in context
    assert "- Severity: high" in context
    assert "- Description: Users reporting 504 errors" in context
    assert context.endswith("- Incident Duration: 42 minutes")


def test_optional_lines_are_omitted_when_unset(make_record):
    context = build_incident_context(make_record(), now=make_record().start_time)

    assert "Affected Systems" not in context
    assert "Known Root Cause" not in context
    assert "Remediation Steps" not in context


def test_optional_lines_rendered_when_set(make_record):
    record = make_record(
        affected_systems=["api-gateway", "orders"],
        remediation_steps=["1. Roll back", "2. Scale out"],
    )

    context = build_incident_context(record, now=record.start_time)

    assert "- Affected Systems: api-gateway, orders" in context
    assert "- Remediation Steps: 1. Roll back; 2. Scale out" in context


def test_empty_remediation_list_is_omitted(make_record):
    context = build_incident_context(make_record(remediation_steps=[]), now=make_record().start_time)
    assert "Remediation Steps" not in context


def test_root_cause_changes_exactly_one_line(make_record):
    without = make_record()
    with_cause = make_record(root_cause="Pool exhaustion")
    now = without.start_time + timedelta(minutes=5)

    before = build_incident_context(without, now=now).splitlines()
    after = build_incident_context(with_cause, now=now).splitlines()

    added = [line for line in after if line not in before]
    assert added == ["- Known Root Cause: Pool exhaustion"]
    assert [line for line in after if line != added[0]] == before


def test_context_is_recomputed_from_current_age(make_record):
    record = make_record()
    early = build_incident_context(record, now=record.start_time + timedelta(minutes=1))
    late = build_incident_context(record, now=record.start_time + timedelta(minutes=90))

    assert "- Incident Duration: 1 minutes" in early
    assert "- Incident Duration: 90 minutes" in late

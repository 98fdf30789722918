"""Builds the system-role context injected into every incident chat call."""
from __future__ import annotations

from datetime import datetime
from textwrap import dedent
from typing import List, Optional
from incidents.models import IncidentRecord

INCIDENT_SYSTEM_PROMPT = dedent(
    """
    You are an expert AI incident response assistant specialized in diagnosing and resolving system outages and performance issues.

    Your role is to help engineers:
    1. IDENTIFY: Quickly determine what failed or is failing
    2. IMPACT: Assess what systems and users are affected
    3. ROOT CAUSE: Determine why the failure occurred
    4. REMEDIATION: Provide clear, actionable steps to fix the issue
    5. PREVENTION: Suggest measures to prevent future occurrences

    Guidelines:
    - Be concise and actionable - engineers need quick answers during incidents
    - Prioritize the most likely causes first
    - Provide specific commands, configurations, or code changes when possible
    - Ask clarifying questions only if absolutely necessary for accurate diagnosis
    - Consider common patterns: traffic spikes, deployment issues, resource exhaustion, network problems, dependency failures
    - Always think about blast radius and safe rollback options
    - Format responses with clear headers and bullet points for easy scanning

    Remember: Speed and accuracy are critical during incidents. Every second counts.
    """
).strip()


def build_incident_context(record: IncidentRecord, now: Optional[datetime] = None) -> str:
    """
    Combine the persona prompt with live incident metadata.

    Recomputed on every call since status, root cause and age change between
    turns. Optional lines are omitted when their field is unset or empty.
    """
    lines: List[str] = [
        INCIDENT_SYSTEM_PROMPT,
        "",
        "CURRENT INCIDENT CONTEXT:",
        f"- Incident ID: {record.id}",
        f"- Title: {record.title}",
        f"- Status: {record.status.value}",
        f"- Severity: {record.severity.value}",
        f"- Description: {record.description}",
    ]

    if record.affected_systems:
        lines.append(f"- Affected Systems: {', '.join(record.affected_systems)}")

    if record.root_cause:
        lines.append(f"- Known Root Cause: {record.root_cause}")

    if record.remediation_steps:
        lines.append(f"- Remediation Steps: {'; '.join(record.remediation_steps)}")

    lines.append(f"- Incident Duration: {record.age_minutes(now)} minutes")

    return "\n".join(lines)

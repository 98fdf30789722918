"""State definitions for the incident analysis workflow."""
from typing import TypedDict, List, Dict, Any, Optional


class WorkflowParams(TypedDict, total=False):
    """Inputs captured when an incident is created."""

    incident_id: str
    severity: str
    description: str
    logs: Optional[str]
    metrics: Optional[Any]


class IncidentPipelineState(TypedDict, total=False):
    """State threaded through the analysis graph."""

    # Inputs
    run_id: str
    incident_id: str
    severity: str
    description: str
    logs: Optional[str]
    metrics: Optional[Any]

    # Step outputs
    initial_analysis: Optional[str]
    root_cause: Optional[str]
    remediation_plan: Optional[str]
    remediation_steps: List[str]
    monitoring: Optional[str]
    summary: Optional[Dict[str, Any]]
    verification: Optional[Dict[str, Any]]


class PostIncidentSummary(TypedDict):
    """Aggregated result of a completed analysis run."""

    incident_id: str
    run_id: str
    severity: str
    description: str
    initial_analysis: str
    root_cause: str
    remediation: str
    remediation_steps: List[str]
    monitoring: str
    timestamp: str

"""Pydantic models for API requests and responses."""
from typing import List, Dict, Any, Optional
from pydantic import BaseModel, Field


class CreateIncidentRequest(BaseModel):
    """Request model for opening an incident."""
    title: Optional[str] = Field(default=None, description="Short incident title")
    description: str = Field(default="", description="What is happening (required)")
    severity: Optional[str] = Field(
        default=None,
        description="One of critical, high, medium, low (required)",
        examples=["high"]
    )
    affected_systems: List[str] = Field(
        default_factory=list,
        description="Systems known to be affected"
    )
    logs: Optional[str] = Field(default=None, description="Raw log excerpt for the initial analysis")
    metrics: Optional[Any] = Field(default=None, description="Raw metrics payload for the initial analysis")


class CreateIncidentResponse(BaseModel):
    """Response model for incident creation."""
    incident_id: str
    status: str = "created"
    message: str = "Incident created and analysis workflow triggered"


class ChatRequest(BaseModel):
    """Request model for a conversation turn."""
    incident_id: str = Field(default="", description="Incident identifier (required)")
    message: str = Field(default="", description="Engineer's message (required)")


class ChatResponse(BaseModel):
    """Response model for a conversation turn."""
    response: str
    incident: Dict[str, Any]
    history: List[Dict[str, Any]]


class StatusUpdateRequest(BaseModel):
    """Explicit status, root cause and remediation overrides. Omitted fields are untouched."""
    status: Optional[str] = Field(
        default=None,
        description="investigating, identified, mitigating, resolved or monitoring"
    )
    root_cause: Optional[str] = None
    remediation_steps: Optional[List[str]] = None


class IncidentSummary(BaseModel):
    """Listing entry for an incident."""
    id: str
    title: str
    severity: str
    status: str
    start_time: str


class IncidentListResponse(BaseModel):
    """Response model for listing incidents."""
    incidents: List[IncidentSummary]
    total: int


class HistoryResponse(BaseModel):
    """Response model for conversation history."""
    incident_id: str
    history: List[Dict[str, Any]]


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    service: str
    version: str
    storage_backend: str

"""Error taxonomy shared by the incident core and the HTTP layer."""


class IncidentError(Exception):
    """Base class for errors raised by incident operations."""


class ValidationError(IncidentError):
    """Required input is missing or malformed. Never retried."""


class NotFoundError(IncidentError):
    """Operation targeted an incident id that does not exist."""

    def __init__(self, incident_id: str):
        super().__init__(f"Incident not found: {incident_id}")
        self.incident_id = incident_id


class ServiceError(IncidentError):
    """Inference or transcription call failed. Retryable at the caller's discretion."""


class ParseError(IncidentError):
    """Model output could not be parsed into the expected structure."""

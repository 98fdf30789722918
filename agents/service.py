"""Router-facing incident operations with their collaborators wired together."""
from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Optional, Sequence
from core.errors import ValidationError
from core.llm import InferencePort, LLMService, TranscriptionPort
from core.logging import get_logger
from incidents.checkpoints import CheckpointStore, get_checkpoint_store
from incidents.models import (
    IncidentRecord,
    Message,
    Severity,
    TimelineEventType,
    utcnow,
)
from incidents.store import IncidentRepository, IncidentStore, get_incident_store
from .classifier import StatusClassifier
from .conversation import ConversationEngine, ConversationTurn
from .incident_workflow import IncidentWorkflow
from .report import ReportCompiler, ReportFormat
from .voice import VoiceAgent, VoiceResult

logger = get_logger(__name__)


def new_incident_id() -> str:
    """Unique, roughly time-ordered incident identifier."""
    return f"INC-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class IncidentService:
    """Facade over the conversation engine, analysis workflow and report compiler."""

    def __init__(
        self,
        repository: IncidentRepository,
        conversation: ConversationEngine,
        workflow: IncidentWorkflow,
        reports: ReportCompiler,
        voice: VoiceAgent
    ):
        self.repository = repository
        self.conversation = conversation
        self.workflow = workflow
        self.reports = reports
        self.voice = voice

    async def create_incident(
        self,
        description: str,
        severity: str,
        title: Optional[str] = None,
        affected_systems: Optional[Sequence[str]] = None,
        logs: Optional[str] = None,
        metrics: Optional[Any] = None
    ) -> str:
        """
        Open an incident and start its analysis workflow in the background.

        Returns:
            New incident id

        Raises:
            ValidationError: Missing description or missing/unknown severity
        """
        if not description or not description.strip():
            raise ValidationError("description is required")
        if not severity:
            raise ValidationError("severity is required")
        try:
            parsed_severity = Severity(severity)
        except ValueError as exc:
            raise ValidationError(f"Invalid severity: {severity!r}") from exc

        incident_id = new_incident_id()
        systems = [system for system in (affected_systems or []) if system]
        record = IncidentRecord(
            id=incident_id,
            severity=parsed_severity,
            title=title or f"Incident {incident_id}",
            description=description,
            start_time=utcnow(),
            affected_systems=systems,
        )
        record.add_event(
            TimelineEventType.DETECTION,
            "Incident detected and initialized",
            {
                "title": record.title,
                "description": description,
                "severity": parsed_severity.value,
                "affected_systems": systems,
            },
            timestamp=record.start_time,
        )
        await self.repository.create(record)

        run_id = await self.workflow.start({
            "incident_id": incident_id,
            "severity": parsed_severity.value,
            "description": description,
            "logs": logs,
            "metrics": metrics,
        })
        logger.info(
            "Incident created and analysis workflow triggered",
            incident_id=incident_id,
            run_id=run_id,
            severity=parsed_severity.value
        )
        return incident_id

    async def post_message(self, incident_id: str, text: str) -> ConversationTurn:
        return await self.conversation.post_message(incident_id, text)

    async def get_record(self, incident_id: str) -> IncidentRecord:
        return await self.repository.get(incident_id)

    async def get_history(self, incident_id: str) -> List[Message]:
        record = await self.repository.get(incident_id)
        return record.history

    async def list_incidents(self) -> List[Dict[str, Any]]:
        """Summaries of all incidents, newest first."""
        records = [
            await self.repository.get(incident_id)
            for incident_id in self.repository.list_ids()
        ]
        records.sort(key=lambda record: record.start_time, reverse=True)
        return [record.summary() for record in records]

    async def update_status(
        self,
        incident_id: str,
        status: Optional[str] = None,
        root_cause: Optional[str] = None,
        remediation_steps: Optional[Sequence[str]] = None
    ) -> IncidentRecord:
        return await self.conversation.update_status(
            incident_id,
            status=status,
            root_cause=root_cause,
            remediation_steps=remediation_steps,
        )

    async def get_report(self, incident_id: str, report_format: ReportFormat = "markdown") -> str:
        return await self.reports.generate(incident_id, report_format)

    async def handle_voice(
        self,
        audio: bytes,
        incident_id: Optional[str] = None,
        mime_type: str = "audio/webm"
    ) -> VoiceResult:
        return await self.voice.handle_audio(audio, incident_id=incident_id, mime_type=mime_type)

    async def startup(self) -> List[str]:
        """Resume analysis runs interrupted by a previous shutdown."""
        resumed = await self.workflow.resume_pending()
        if resumed:
            logger.info("Resumed pending analysis runs", count=len(resumed))
        return resumed

    async def shutdown(self) -> None:
        await self.workflow.shutdown()


def build_incident_service(
    inference: Optional[InferencePort] = None,
    transcriber: Optional[TranscriptionPort] = None,
    incident_store: Optional[IncidentStore] = None,
    checkpoint_store: Optional[CheckpointStore] = None,
    classifier: Optional[StatusClassifier] = None,
    **workflow_options: Any
) -> IncidentService:
    """
    Wire the incident core.

    Collaborators default to the configured Gemini client and storage
    backend; tests pass fakes and in-memory stores instead.
    """
    if inference is None or transcriber is None:
        llm_service = LLMService()
        inference = inference or llm_service
        transcriber = transcriber or llm_service

    repository = IncidentRepository(incident_store or get_incident_store())
    conversation = ConversationEngine(repository, inference, classifier=classifier)
    workflow = IncidentWorkflow(
        conversation,
        inference,
        checkpoint_store or get_checkpoint_store(),
        **workflow_options
    )
    reports = ReportCompiler(repository, inference)
    voice = VoiceAgent(transcriber, conversation)
    return IncidentService(repository, conversation, workflow, reports, voice)


_incident_service: Optional[IncidentService] = None


def get_incident_service() -> IncidentService:
    """Process-wide service instance, created on first use."""
    global _incident_service
    if _incident_service is None:
        _incident_service = build_incident_service()
    return _incident_service


def set_incident_service(service: Optional[IncidentService]) -> None:
    """Replace the process-wide service (used by tests and custom entry points)."""
    global _incident_service
    _incident_service = service

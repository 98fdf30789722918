"""Conversation engine: context-aware chat turns and explicit status updates."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
from core.config import settings
from core.errors import ServiceError, ValidationError
from core.llm import InferencePort
from core.logging import get_logger
from incidents.models import (
    IncidentRecord,
    IncidentStatus,
    Message,
    MessageRole,
    TimelineEventType,
    utcnow,
)
from incidents.store import IncidentRepository, KeyedLock
from .classifier import KeywordStatusClassifier, StatusClassifier, is_forward
from .context_builder import build_incident_context

logger = get_logger(__name__)

# Timeline entries produced when the classifier advances the status.
TRANSITION_EVENTS = {
    IncidentStatus.IDENTIFIED: (TimelineEventType.ANALYSIS, "Root cause identified by AI"),
    IncidentStatus.MITIGATING: (TimelineEventType.ACTION, "Remediation in progress"),
}


@dataclass
class ConversationTurn:
    """Outcome of one chat turn."""
    assistant_text: str
    record: IncidentRecord


class ConversationEngine:
    """
    Owns the turn-taking protocol for one incident conversation.

    The user message and the assistant reply are appended together once
    inference succeeds; a failed turn leaves the record untouched. Turns on
    the same incident are queued, but the record itself is only locked for
    the read-modify-write after the model has answered.
    """

    def __init__(
        self,
        repository: IncidentRepository,
        inference: InferencePort,
        classifier: Optional[StatusClassifier] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ):
        self.repository = repository
        self.inference = inference
        self.classifier = classifier or KeywordStatusClassifier()
        self.temperature = settings.chat_temperature if temperature is None else temperature
        self.max_tokens = settings.chat_max_tokens if max_tokens is None else max_tokens
        self._turn_locks = KeyedLock()

    def _turn_lock(self, incident_id: str):
        return self._turn_locks.hold(incident_id)

    async def post_message(self, incident_id: str, text: str) -> ConversationTurn:
        """
        Run one chat turn against an incident.

        Args:
            incident_id: Incident identifier
            text: Engineer's message

        Returns:
            Assistant reply and the record snapshot after the turn

        Raises:
            ValidationError: Missing incident id or message
            NotFoundError: Unknown incident
            ServiceError: Inference failed; nothing was persisted
        """
        if not incident_id or not incident_id.strip():
            raise ValidationError("incident_id is required")
        if not text or not text.strip():
            raise ValidationError("message is required")

        async with self._turn_lock(incident_id):
            record = await self.repository.get(incident_id)
            user_message = Message(role=MessageRole.USER, content=text, timestamp=utcnow())

            prompt = [{"role": "system", "content": build_incident_context(record)}]
            prompt.extend(message.as_prompt() for message in record.history)
            prompt.append(user_message.as_prompt())

            logger.info(
                "Conversation turn started",
                incident_id=incident_id,
                history=len(record.history),
                message_length=len(text)
            )

            try:
                reply = await self.inference.infer(
                    prompt,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens
                )
            except ServiceError as exc:
                logger.error("Conversation turn failed", incident_id=incident_id, error=str(exc))
                raise

            async with self.repository.mutate(incident_id) as current:
                current.history.append(user_message)
                current.history.append(
                    Message(role=MessageRole.ASSISTANT, content=reply, timestamp=utcnow())
                )
                current.add_event(
                    TimelineEventType.UPDATE,
                    "AI analysis performed",
                    {"user_message": text, "ai_response": reply},
                )
                transitions = self.apply_classification(current, reply)
                snapshot = current.copy()

        logger.info(
            "Conversation turn completed",
            incident_id=incident_id,
            status=snapshot.status.value,
            transitions=[status.value for status in transitions]
        )
        return ConversationTurn(assistant_text=reply, record=snapshot)

    def apply_classification(self, record: IncidentRecord, text: str) -> List[IncidentStatus]:
        """
        Advance the record's status as far as the classifier allows.

        Only strictly forward transitions are taken, each producing exactly one
        timeline event, so re-applying the same text is a no-op.
        """
        applied: List[IncidentStatus] = []
        while True:
            proposed = self.classifier.classify(text, record.status)
            if proposed is None or not is_forward(record.status, proposed):
                return applied
            record.status = proposed
            event_type, description = TRANSITION_EVENTS.get(
                proposed, (TimelineEventType.UPDATE, f"Status changed to: {proposed.value}")
            )
            record.add_event(event_type, description)
            applied.append(proposed)

    async def update_status(
        self,
        incident_id: str,
        status: Optional[str] = None,
        root_cause: Optional[str] = None,
        remediation_steps: Optional[Sequence[str]] = None
    ) -> IncidentRecord:
        """
        Explicitly overwrite status, root cause and/or remediation steps.

        Each provided field appends one timeline event. Setting status to
        resolved stamps end_time the first time only.
        """
        new_status: Optional[IncidentStatus] = None
        if status is not None:
            try:
                new_status = IncidentStatus(status)
            except ValueError as exc:
                raise ValidationError(f"Invalid status: {status!r}") from exc

        steps: Optional[List[str]] = None
        if remediation_steps is not None:
            if isinstance(remediation_steps, str) or not all(
                isinstance(item, str) for item in remediation_steps
            ):
                raise ValidationError("remediation_steps must be a list of strings")
            steps = list(remediation_steps)

        async with self.repository.mutate(incident_id) as record:
            if new_status is not None:
                previous = record.status
                record.status = new_status
                record.add_event(
                    TimelineEventType.UPDATE,
                    f"Status changed to: {new_status.value}",
                    {"previous_status": previous.value, "status": new_status.value},
                )
                if new_status == IncidentStatus.RESOLVED and record.end_time is None:
                    record.end_time = max(utcnow(), record.start_time)

            if root_cause is not None:
                record.root_cause = root_cause
                record.add_event(
                    TimelineEventType.ANALYSIS,
                    "Root cause identified",
                    {"root_cause": root_cause},
                )

            if steps is not None:
                record.remediation_steps = steps
                record.add_event(
                    TimelineEventType.ACTION,
                    "Remediation plan created",
                    {"remediation_steps": steps},
                )

            snapshot = record.copy()

        logger.info(
            "Incident status updated",
            incident_id=incident_id,
            status=snapshot.status.value,
            root_cause_set=root_cause is not None,
            remediation_steps=len(steps) if steps is not None else None
        )
        return snapshot

    async def post_system_message(
        self,
        incident_id: str,
        content: str,
        dedupe_key: str,
        description: str = "Automated message posted",
        data: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Post an automation-authored message into the conversation.

        The message is stored with the assistant role so subsequent chat turns
        see it as prior context. A post whose ``dedupe_key`` was already
        recorded is skipped, which makes replays after a restart harmless.

        Returns:
            True if the message was appended, False if it was a duplicate
        """
        async with self.repository.mutate(incident_id) as record:
            if record.has_event_key(dedupe_key):
                logger.info(
                    "Skipping duplicate automated message",
                    incident_id=incident_id,
                    dedupe_key=dedupe_key
                )
                return False
            record.history.append(
                Message(role=MessageRole.ASSISTANT, content=content, timestamp=utcnow())
            )
            record.add_event(
                TimelineEventType.UPDATE,
                description,
                {**(data or {}), "dedupe_key": dedupe_key, "message": content},
            )

        logger.info("Automated message posted", incident_id=incident_id, dedupe_key=dedupe_key)
        return True

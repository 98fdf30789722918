"""Shared fakes and fixtures for the incident core tests."""
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Sequence
import pytest
from core.errors import ServiceError
from core.logging import configure_logging
from agents.service import build_incident_service
from incidents.checkpoints import InMemoryCheckpointStore
from incidents.models import IncidentRecord, Severity
from incidents.store import IncidentRepository, InMemoryIncidentStore

configure_logging()

INITIAL_ANALYSIS = "Likely affected: API gateway. Impact: elevated 504s. First step: check upstream latency."
ROOT_CAUSE = "Connection pool exhaustion in the orders service after the 14:02 deploy."
REMEDIATION_PLAN = (
    "Remediation checklist:\n"
    "1. Roll back the orders service deploy\n"
    "   2. Raise the pool size to 200\n"
    "Notes: watch error rate\n"
    "3. Add a pool saturation alert\n"
)
MONITORING = "Alert on pool saturation above 80%. Track p99 latency per upstream."
EXECUTIVE_SUMMARY = "On the affected day the orders service degraded. The pool was exhausted."
CHAT_REPLY = "Check the load balancer health checks first."


class FakeInference:
    """Scripted inference port keyed on substrings of the system prompt."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.replies: Dict[str, str] = {
            "initial assessment": INITIAL_ANALYSIS,
            "senior SRE": ROOT_CAUSE,
            "remediation runbook": REMEDIATION_PLAN,
            "observability expert": MONITORING,
            "incident reports": EXECUTIVE_SUMMARY,
        }
        self.chat_reply = CHAT_REPLY
        self._failures: Dict[str, Dict[str, Any]] = {}

    def fail(self, key: str, error: Optional[Exception] = None, times: Optional[int] = None) -> None:
        """Make calls whose system prompt contains ``key`` raise, ``times`` times or forever."""
        self._failures[key] = {"error": error or ServiceError("model unavailable"), "times": times}

    def heal(self, key: str) -> None:
        self._failures.pop(key, None)

    def calls_matching(self, key: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if key in call["messages"][0]["content"]]

    async def infer(self, messages: Sequence[Dict[str, str]], temperature: float, max_tokens: int) -> str:
        system = messages[0]["content"]
        self.calls.append({
            "messages": [dict(message) for message in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        })

        for key, failure in list(self._failures.items()):
            if key in system:
                if failure["times"] is not None:
                    failure["times"] -= 1
                    if failure["times"] <= 0:
                        self._failures.pop(key)
                raise failure["error"]

        for key, reply in self.replies.items():
            if key in system:
                return reply
        return self.chat_reply


class FakeTranscriber:
    """Transcription port returning a fixed transcript."""

    def __init__(self, transcript: str = "What changed in the last hour?"):
        self.transcript = transcript
        self.calls: List[bytes] = []

    async def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> str:
        self.calls.append(audio)
        return self.transcript


@pytest.fixture
def inference() -> FakeInference:
    return FakeInference()


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def incident_store() -> InMemoryIncidentStore:
    return InMemoryIncidentStore()


@pytest.fixture
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def repository(incident_store) -> IncidentRepository:
    return IncidentRepository(incident_store)


@pytest.fixture
def service_factory(inference, transcriber, incident_store, checkpoint_store):
    """Build services sharing the same stores, as separate processes would."""
    def factory(**options):
        workflow_options = {
            "verification_delay": 0,
            "step_attempts": 2,
            "retry_min_wait": 0,
            "retry_max_wait": 0,
        }
        workflow_options.update(options)
        return build_incident_service(
            inference=inference,
            transcriber=transcriber,
            incident_store=incident_store,
            checkpoint_store=checkpoint_store,
            **workflow_options
        )
    return factory


@pytest.fixture
def service(service_factory):
    return service_factory()


@pytest.fixture
def make_record():
    """Factory for standalone incident records."""
    def factory(**overrides) -> IncidentRecord:
        values = {
            "id": "INC-test-1",
            "severity": Severity.HIGH,
            "title": "Checkout errors",
            "description": "Users reporting 504 errors",
            "start_time": datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
        }
        values.update(overrides)
        return IncidentRecord(**values)
    return factory

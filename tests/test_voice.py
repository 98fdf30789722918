"""Tests for voice turns."""
import pytest
import pytest_asyncio
from agents.conversation import ConversationEngine
from agents.voice import VoiceAgent
from core.errors import NotFoundError
from incidents.models import MessageRole
from conftest import CHAT_REPLY


@pytest_asyncio.fixture
async def agent(repository, inference, transcriber, make_record):
    await repository.create(make_record())
    return VoiceAgent(transcriber, ConversationEngine(repository, inference))


@pytest.mark.asyncio
async def test_transcript_becomes_a_chat_turn(agent, repository, transcriber):
    result = await agent.handle_audio(b"\x00\x01", incident_id="INC-test-1", mime_type="audio/ogg")

    assert result.transcript == transcriber.transcript
    assert result.turn.assistant_text == CHAT_REPLY
    assert transcriber.calls == [b"\x00\x01"]
    record = await repository.get("INC-test-1")
    assert record.history[0].role == MessageRole.USER
    assert record.history[0].content == transcriber.transcript


@pytest.mark.asyncio
async def test_transcription_only_without_incident(agent, inference):
    result = await agent.handle_audio(b"audio")

    assert result.turn is None
    assert result.transcript == "What changed in the last hour?"
    assert inference.calls == []


@pytest.mark.asyncio
async def test_silent_audio_posts_nothing(agent, repository, transcriber, inference):
    transcriber.transcript = "   "

    result = await agent.handle_audio(b"audio", incident_id="INC-test-1")

    assert result.transcript == ""
    assert result.turn is None
    assert (await repository.get("INC-test-1")).history == []
    assert inference.calls == []


@pytest.mark.asyncio
async def test_unknown_incident_raises(agent):
    with pytest.raises(NotFoundError):
        await agent.handle_audio(b"audio", incident_id="INC-missing")

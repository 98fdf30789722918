"""Voice turns: speech-to-text feeding the conversation engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from core.llm import TranscriptionPort
from core.logging import get_logger
from .conversation import ConversationEngine, ConversationTurn

logger = get_logger(__name__)


@dataclass
class VoiceResult:
    """Transcript plus the chat turn it triggered, if any."""
    transcript: str
    turn: Optional[ConversationTurn] = None


class VoiceAgent:
    """Transcribes recorded audio and, when bound to an incident, chats with it."""

    def __init__(self, transcriber: TranscriptionPort, conversation: ConversationEngine):
        self.transcriber = transcriber
        self.conversation = conversation

    async def handle_audio(
        self,
        audio: bytes,
        incident_id: Optional[str] = None,
        mime_type: str = "audio/webm"
    ) -> VoiceResult:
        """
        Transcribe audio and run a conversation turn with the transcript.

        Empty transcripts count as no input: nothing is posted.
        """
        transcript = (await self.transcriber.transcribe(audio, mime_type=mime_type)).strip()
        logger.info(
            "Audio transcribed",
            incident_id=incident_id,
            audio_bytes=len(audio),
            transcript_length=len(transcript)
        )

        if not transcript or not incident_id:
            return VoiceResult(transcript=transcript)

        turn = await self.conversation.post_message(incident_id, transcript)
        return VoiceResult(transcript=transcript, turn=turn)

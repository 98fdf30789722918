"""LLM client wrapper for Google Gemini: chat inference and speech-to-text."""
from typing import Any, Dict, List, Protocol, Sequence, Tuple
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from tenacity import retry, stop_after_attempt, wait_exponential
from core.config import settings
from core.errors import ServiceError
from core.logging import get_logger

logger = get_logger(__name__)

TRANSCRIPTION_PROMPT = (
    "Transcribe the spoken words in this audio verbatim. "
    "Return only the transcript text. If nothing intelligible is said, return an empty string."
)


class InferencePort(Protocol):
    """Capability consumed by every component that talks to the model."""

    async def infer(
        self,
        messages: Sequence[Dict[str, str]],
        temperature: float,
        max_tokens: int
    ) -> str:
        ...


class TranscriptionPort(Protocol):
    """Speech-to-text capability used by the voice interface."""

    async def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> str:
        ...


def to_langchain_messages(messages: Sequence[Dict[str, str]]) -> List[BaseMessage]:
    """Map {role, content} dicts onto langchain message classes."""
    converted: List[BaseMessage] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        elif role == "user":
            converted.append(HumanMessage(content=content))
        else:
            raise ValueError(f"Unsupported message role: {role!r}")
    return converted


def response_text(content: Any) -> str:
    """Flatten a chat model response body into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content or "")


class LLMService:
    """Service for interacting with Google Gemini LLM."""

    def __init__(
        self,
        model: str | None = None,
        transcription_model: str | None = None,
        api_key: str | None = None
    ):
        """Initialize the LLM service. Model clients are created on first use."""
        self.model = model or settings.llm_model
        self.transcription_model = transcription_model or settings.transcription_model
        self._api_key = api_key or settings.get_google_api_key()
        self._clients: Dict[Tuple[str, float, int], ChatGoogleGenerativeAI] = {}
        logger.info(
            "LLM service initialized",
            model=self.model,
            transcription_model=self.transcription_model
        )

    def _client(self, model: str, temperature: float, max_tokens: int) -> ChatGoogleGenerativeAI:
        key = (model, temperature, max_tokens)
        if key not in self._clients:
            if not self._api_key:
                raise ServiceError("GOOGLE_API_KEY is not configured")
            self._clients[key] = ChatGoogleGenerativeAI(
                model=model,
                google_api_key=self._api_key,
                temperature=temperature,
                max_output_tokens=max_tokens,
                timeout=settings.llm_request_timeout,
            )
        return self._clients[key]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        reraise=True
    )
    async def _ainvoke(self, llm: ChatGoogleGenerativeAI, messages: List[BaseMessage]) -> Any:
        response = await llm.ainvoke(messages)
        return response.content

    async def infer(
        self,
        messages: Sequence[Dict[str, str]],
        temperature: float,
        max_tokens: int
    ) -> str:
        """
        Run one chat completion.

        Args:
            messages: Ordered {role, content} dicts (system, user, assistant)
            temperature: Sampling temperature for this call
            max_tokens: Output length bound for this call

        Returns:
            Generated text response

        Raises:
            ServiceError: When the model call fails after retries
        """
        llm = self._client(self.model, temperature, max_tokens)
        try:
            content = await self._ainvoke(llm, to_langchain_messages(messages))
        except ServiceError:
            raise
        except Exception as e:
            logger.error("Failed to generate LLM response", error=str(e))
            raise ServiceError(f"Inference failed: {e}") from e

        text = response_text(content)
        logger.debug(
            "Generated LLM response",
            message_count=len(messages),
            response_length=len(text)
        )
        return text

    async def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> str:
        """
        Transcribe recorded speech.

        Args:
            audio: Raw encoded audio bytes
            mime_type: Container/codec of the recording

        Returns:
            Transcript text, empty when nothing intelligible was said
        """
        if not audio:
            return ""

        llm = self._client(self.transcription_model, 0.0, 1024)
        message = HumanMessage(content=[
            {"type": "text", "text": TRANSCRIPTION_PROMPT},
            {"type": "media", "mime_type": mime_type, "data": audio},
        ])
        try:
            content = await self._ainvoke(llm, [message])
        except ServiceError:
            raise
        except Exception as e:
            logger.error("Failed to transcribe audio", error=str(e), audio_bytes=len(audio))
            raise ServiceError(f"Transcription failed: {e}") from e

        transcript = response_text(content).strip()
        logger.debug("Transcribed audio", audio_bytes=len(audio), transcript_length=len(transcript))
        return transcript

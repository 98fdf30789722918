"""API routes for the incident response assistant."""
import base64
import binascii
import json
from typing import Any, Dict, NoReturn, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Response, WebSocket, status
from app.models import (
    ChatRequest,
    ChatResponse,
    CreateIncidentRequest,
    CreateIncidentResponse,
    HistoryResponse,
    IncidentListResponse,
    IncidentSummary,
    StatusUpdateRequest,
)
from agents.conversation import ConversationTurn
from agents.service import IncidentService, get_incident_service
from core.errors import IncidentError, NotFoundError, ServiceError, ValidationError
from core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["api"])


def raise_http_error(exc: Exception) -> NoReturn:
    """Translate core errors into HTTP errors."""
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ServiceError):
        raise HTTPException(status_code=502, detail=str(exc))
    raise HTTPException(status_code=500, detail=str(exc))


def chat_payload(turn: ConversationTurn) -> Dict[str, Any]:
    record = turn.record.to_dict()
    return {
        "response": turn.assistant_text,
        "incident": record,
        "history": record["history"],
    }


@router.post(
    "/incidents",
    response_model=CreateIncidentResponse,
    status_code=status.HTTP_201_CREATED
)
async def create_incident(
    request: CreateIncidentRequest,
    service: IncidentService = Depends(get_incident_service)
) -> CreateIncidentResponse:
    """
    Open an incident and trigger the automated analysis workflow.

    Args:
        request: Incident details

    Returns:
        New incident id
    """
    try:
        incident_id = await service.create_incident(
            description=request.description,
            severity=request.severity,
            title=request.title,
            affected_systems=request.affected_systems,
            logs=request.logs,
            metrics=request.metrics,
        )
    except IncidentError as exc:
        logger.warning("Incident creation rejected", error=str(exc))
        raise_http_error(exc)

    return CreateIncidentResponse(incident_id=incident_id)


@router.get("/incidents", response_model=IncidentListResponse)
async def list_incidents(
    service: IncidentService = Depends(get_incident_service)
) -> IncidentListResponse:
    """List all incidents, newest first."""
    incidents = [IncidentSummary(**summary) for summary in await service.list_incidents()]
    return IncidentListResponse(incidents=incidents, total=len(incidents))


@router.get("/incidents/{incident_id}")
async def get_incident(
    incident_id: str,
    service: IncidentService = Depends(get_incident_service)
) -> Dict[str, Any]:
    """Get the full incident record."""
    try:
        record = await service.get_record(incident_id)
    except IncidentError as exc:
        raise_http_error(exc)
    return record.to_dict()


@router.get("/incidents/{incident_id}/history", response_model=HistoryResponse)
async def get_history(
    incident_id: str,
    service: IncidentService = Depends(get_incident_service)
) -> HistoryResponse:
    """Get the incident's conversation history."""
    try:
        history = await service.get_history(incident_id)
    except IncidentError as exc:
        raise_http_error(exc)
    return HistoryResponse(
        incident_id=incident_id,
        history=[message.to_dict() for message in history]
    )


@router.post("/incidents/{incident_id}/status")
async def update_status(
    incident_id: str,
    request: StatusUpdateRequest,
    service: IncidentService = Depends(get_incident_service)
) -> Dict[str, Any]:
    """Explicitly set status, root cause and/or remediation steps."""
    try:
        record = await service.update_status(
            incident_id,
            status=request.status,
            root_cause=request.root_cause,
            remediation_steps=request.remediation_steps,
        )
    except IncidentError as exc:
        raise_http_error(exc)
    return {"success": True, "incident": record.to_dict()}


@router.get("/incidents/{incident_id}/report")
async def get_report(
    incident_id: str,
    report_format: str = Query(default="markdown", alias="format"),
    service: IncidentService = Depends(get_incident_service)
) -> Response:
    """
    Generate a post-incident report.

    Args:
        incident_id: Incident identifier
        report_format: "markdown" (default) or "json"

    Returns:
        Report document as an attachment
    """
    try:
        document = await service.get_report(incident_id, report_format)
    except IncidentError as exc:
        logger.error(
            "Report generation failed",
            incident_id=incident_id,
            format=report_format,
            error=str(exc)
        )
        raise_http_error(exc)

    if report_format == "json":
        media_type, extension = "application/json", "json"
    else:
        media_type, extension = "text/markdown", "md"

    return Response(
        content=document,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="incident-{incident_id}-report.{extension}"'
        }
    )


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    service: IncidentService = Depends(get_incident_service)
) -> ChatResponse:
    """Run one context-aware conversation turn against an incident."""
    try:
        turn = await service.post_message(request.incident_id, request.message)
    except IncidentError as exc:
        logger.warning("Chat turn failed", incident_id=request.incident_id, error=str(exc))
        raise_http_error(exc)
    return ChatResponse(**chat_payload(turn))


@router.websocket("/voice")
async def voice(
    websocket: WebSocket,
    incident_id: Optional[str] = None,
    service: IncidentService = Depends(get_incident_service)
):
    """
    Voice and text chat over a WebSocket.

    Frames:
        binary                                         raw audio for the bound incident
        {"type": "voice", "audio": <base64>, "incidentId": ...}
        {"type": "text", "message": ..., "incidentId": ...}
    """
    await websocket.accept()
    logger.info("Voice socket opened", incident_id=incident_id)

    while True:
        frame = await websocket.receive()
        if frame["type"] == "websocket.disconnect":
            break

        try:
            if frame.get("bytes") is not None:
                await _handle_audio(websocket, service, frame["bytes"], incident_id)
                continue

            data = json.loads(frame.get("text") or "{}")
            if not isinstance(data, dict):
                raise ValidationError("Frame must be a JSON object")
            target = data.get("incidentId") or data.get("incident_id") or incident_id

            if data.get("type") == "voice":
                try:
                    audio = base64.b64decode(data.get("audio") or "", validate=True)
                except (binascii.Error, ValueError) as exc:
                    raise ValidationError(f"Invalid base64 audio: {exc}") from exc
                await _handle_audio(
                    websocket, service, audio, target, data.get("mimeType", "audio/webm")
                )
            elif data.get("type") == "text":
                turn = await service.post_message(target or "", data.get("message") or "")
                await websocket.send_json({"type": "response", "data": chat_payload(turn)})
            else:
                raise ValidationError(f"Unsupported frame type: {data.get('type')!r}")

        except (IncidentError, json.JSONDecodeError) as exc:
            logger.warning("Voice frame failed", incident_id=incident_id, error=str(exc))
            await websocket.send_json({"type": "error", "message": str(exc)})

    logger.info("Voice socket closed", incident_id=incident_id)


async def _handle_audio(
    websocket: WebSocket,
    service: IncidentService,
    audio: bytes,
    incident_id: Optional[str],
    mime_type: str = "audio/webm"
) -> None:
    await websocket.send_json({"type": "processing", "message": "Processing audio..."})
    result = await service.handle_voice(audio, incident_id=incident_id, mime_type=mime_type)
    await websocket.send_json({"type": "transcription", "text": result.transcript})
    if result.turn is not None:
        await websocket.send_json({"type": "response", "data": chat_payload(result.turn)})

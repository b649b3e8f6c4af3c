from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from mintflow.config import settings
from mintflow.errors import CaptureError
from mintflow.models import CaptureConstraints, CaptureSession
from mintflow.routes.errors import http_error

router = APIRouter(prefix="/api/capture", tags=["capture"])


class CaptureStart(BaseModel):
    max_duration_seconds: float | None = None
    device: int | str | None = None


def _session_dict(request: Request, session: CaptureSession) -> dict:
    capture = request.app.state.services.capture
    body = {
        "id": session.id,
        "state": session.state.value,
        "elapsed_seconds": round(capture.elapsed(session), 2),
        "max_duration_seconds": session.max_duration_seconds,
        "error": session.error,
    }
    blob = capture.blob(session.id)
    if blob is not None:
        body["size_bytes"] = blob.size_bytes
        body["mime_type"] = blob.mime_type
        body["duration_seconds"] = round(blob.duration_seconds, 2)
    return body


def _get_session(request: Request, capture_id: str) -> CaptureSession:
    session = request.app.state.services.capture.get(capture_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Capture {capture_id} not found")
    return session


@router.post("/start")
async def start_capture(body: CaptureStart, request: Request) -> dict:
    """Open the microphone and record until stopped or the duration limit."""
    max_seconds = (
        settings.max_capture_seconds if body.max_duration_seconds is None else body.max_duration_seconds
    )
    if max_seconds <= 0 or max_seconds > settings.max_capture_seconds:
        raise HTTPException(
            status_code=400,
            detail=f"max_duration_seconds must be in (0, {settings.max_capture_seconds}]",
        )
    constraints = CaptureConstraints(
        sample_rate=settings.sample_rate, channels=settings.channels, device=body.device
    )
    try:
        session = await request.app.state.services.capture.start(max_seconds, constraints)
    except CaptureError as e:
        raise http_error(e)
    return _session_dict(request, session)


@router.post("/{capture_id}/stop")
async def stop_capture(capture_id: str, request: Request) -> dict:
    session = _get_session(request, capture_id)
    try:
        await request.app.state.services.capture.stop(session)
    except CaptureError as e:
        raise http_error(e)
    return _session_dict(request, session)


@router.get("/{capture_id}")
async def get_capture(capture_id: str, request: Request) -> dict:
    return _session_dict(request, _get_session(request, capture_id))


@router.delete("/{capture_id}")
async def discard_capture(capture_id: str, request: Request) -> dict:
    """Drop a finished capture and its blob (e.g. after giving up on a failed upload)."""
    session = _get_session(request, capture_id)
    if not session.is_terminal:
        raise HTTPException(status_code=409, detail=f"Capture {capture_id} is still recording")
    request.app.state.services.capture.discard(capture_id)
    return {"id": capture_id, "discarded": True}

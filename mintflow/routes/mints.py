from typing import Literal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from mintflow.errors import PipelineError
from mintflow.models import (
    ContentMetadata,
    VideoContent,
    VoiceContent,
    visibility_from_members,
)
from mintflow.routes.errors import http_error, upload_status

router = APIRouter(prefix="/api/mints", tags=["mints"])


class MintCreate(BaseModel):
    capture_id: str
    room_id: str
    creator: str
    recipient: str | None = None
    kind: Literal["voice", "video"] = "voice"
    participants: list[str] = []
    whitelist: list[str] = []
    is_private: bool | None = None
    transcript: str | None = None
    summary: str | None = None


@router.post("")
async def create_mint(body: MintCreate, request: Request) -> dict:
    """Upload a finalized capture and mint it.  Returns once the mint is terminal."""
    services = request.app.state.services
    blob = services.capture.blob(body.capture_id)
    if blob is None:
        raise HTTPException(
            status_code=404, detail=f"No finalized capture {body.capture_id}"
        )

    if body.kind == "video":
        kind = VideoContent(
            participants=tuple(body.participants), summary=body.summary, transcript=body.transcript
        )
    else:
        kind = VoiceContent(transcript=body.transcript)
    metadata = ContentMetadata(
        kind=kind,
        room_id=body.room_id,
        creator=body.creator,
        duration_seconds=blob.duration_seconds,
    )
    visibility = visibility_from_members(body.whitelist, is_private=body.is_private)

    result = await services.pipeline.run(blob, metadata, visibility, recipient=body.recipient)
    if result.upload_failure is not None:
        # blob stays with the capture so the caller can retry the upload
        raise HTTPException(
            status_code=upload_status(result.upload_failure),
            detail={"reason": result.reason, "upload_failure": result.upload_failure.value},
        )
    services.capture.discard(body.capture_id)
    return result.to_dict()


@router.get("")
async def list_pending_mints(request: Request) -> dict:
    """Mints still waiting in Submitted, ready for a recheck."""
    try:
        pending = await request.app.state.services.coordinator.pending()
    except PipelineError as e:
        raise http_error(e)
    return {"pending": [mint.snapshot() for mint in pending]}


@router.get("/{request_id}")
async def get_mint(request_id: str, request: Request) -> dict:
    try:
        mint = await request.app.state.services.coordinator.get(request_id)
    except PipelineError as e:
        raise http_error(e)
    if mint is None:
        raise HTTPException(status_code=404, detail=f"Mint {request_id} not found")
    return mint.snapshot()


@router.post("/{request_id}/recheck")
async def recheck_mint(request_id: str, request: Request) -> dict:
    """Verify a mint that timed out waiting for confirmation."""
    services = request.app.state.services
    try:
        mint = await services.coordinator.get(request_id)
        if mint is None:
            raise HTTPException(status_code=404, detail=f"Mint {request_id} not found")
        result = await services.pipeline.recheck(mint)
    except PipelineError as e:
        raise http_error(e)
    return result.to_dict()

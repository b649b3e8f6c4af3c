from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from mintflow.errors import NotFoundError, PipelineError
from mintflow.models import TokenRecord, whitelist_members
from mintflow.routes.errors import http_error

router = APIRouter(prefix="/api", tags=["content"])


def _token_dict(token: TokenRecord) -> dict:
    return {
        "token_id": token.token_id,
        "content_id": token.content_id,
        "owner": token.owner,
        "room_id": token.room_id,
        "kind": token.kind,
        "whitelist": whitelist_members(token.visibility),
        "created_at": token.created_at.isoformat(),
    }


@router.get("/content/{content_id}")
async def get_content(content_id: str, request: Request) -> Response:
    """Read stored bytes back through the gateway fallback list."""
    try:
        data = await request.app.state.services.storage.resolve(content_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.reason)
    return Response(content=data, media_type="application/octet-stream")


@router.get("/tokens")
async def list_tokens(
    request: Request, room_id: str | None = None, creator: str | None = None
) -> list[dict]:
    try:
        tokens = await request.app.state.services.tokens.list_tokens(room_id=room_id, creator=creator)
    except PipelineError as e:
        raise http_error(e)
    return [_token_dict(t) for t in tokens]

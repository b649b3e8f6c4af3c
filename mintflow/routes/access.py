import re

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from mintflow.services.grants import subject_key

router = APIRouter(prefix="/api/access", tags=["access"])

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


class PurchaseCreate(BaseModel):
    buyer: str


def _require_address(value: str) -> str:
    if not _ADDRESS.match(value):
        raise HTTPException(status_code=400, detail=f"'{value}' is not a wallet address")
    return value.lower()


@router.get("/{subject}")
async def check_access(subject: str, request: Request, content_id: str | None = None) -> dict:
    """Grant state for a wallet: AI access, or access to one content id."""
    address = _require_address(subject)
    grant = await request.app.state.services.cache.check(subject_key(address, content_id))
    return grant.to_dict()


@router.post("/purchase")
async def purchase_access(body: PurchaseCreate, request: Request) -> dict:
    buyer = _require_address(body.buyer)
    result = await request.app.state.services.purchase.purchase(buyer)
    return result.to_dict()


@router.post("/prune")
async def prune_access(request: Request) -> dict:
    removed = await request.app.state.services.cache.prune()
    return {"removed": removed}

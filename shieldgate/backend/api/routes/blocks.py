"""
api/routes/blocks.py

GET  /api/blocks               - active blocks, most recent first
POST /api/blocks               - manual block (duration_minutes null = permanent)
POST /api/blocks/{id}/unblock  - active -> manual_unblock
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ...engine.admin import AdminService
from ..deps import get_admin, require_admin
from ..serializers import BlockCreateRequest, BlockResponse

router = APIRouter(prefix="/blocks", tags=["blocks"])


@router.get("", response_model=list[BlockResponse])
async def list_blocks(
    _actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> list[dict]:
    return [b.to_dict() for b in admin.list_active_blocks()]


@router.post("", response_model=BlockResponse, status_code=201)
async def create_block(
    body: BlockCreateRequest,
    actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> dict:
    record = admin.block_ip(
        actor,
        body.ip,
        reason=body.reason,
        duration_minutes=body.duration_minutes,
        scope=body.scope,
    )
    return record.to_dict()


@router.post("/{block_id}/unblock", response_model=BlockResponse)
async def unblock(
    block_id: int,
    actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> dict:
    record = admin.unblock(actor, block_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Block {block_id} not found")
    return record.to_dict()

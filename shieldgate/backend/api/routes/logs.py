"""
api/routes/logs.py

GET    /api/logs  - paginated request log, newest first
DELETE /api/logs  - clear the request log
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from ...engine.admin import AdminService
from ..deps import get_admin, require_admin
from ..serializers import PaginatedResponse

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("", response_model=PaginatedResponse)
async def list_logs(
    page:     Annotated[int,        Query(ge=1)]         = 1,
    limit:    Annotated[int,        Query(ge=1, le=500)] = 50,
    status:   Annotated[str | None, Query()]             = None,
    ip:       Annotated[str | None, Query()]             = None,
    endpoint: Annotated[str | None, Query()]             = None,
    _actor:   str = Depends(require_admin),
    admin:    AdminService = Depends(get_admin),
) -> PaginatedResponse:
    offset = (page - 1) * limit
    items, total = admin.get_logs(
        limit=limit, offset=offset, status=status, ip=ip, endpoint=endpoint,
    )
    return PaginatedResponse(
        items=items,
        total=total,
        page=page,
        limit=limit,
        has_more=(offset + limit) < total,
    )


@router.delete("")
async def clear_logs(
    actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> dict:
    return {"deleted": admin.clear_logs(actor)}

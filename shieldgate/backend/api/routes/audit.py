"""
api/routes/audit.py

GET /api/audit - paginated security audit log, newest first
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from ...engine.admin import AdminService
from ..deps import get_admin, require_admin
from ..serializers import PaginatedResponse

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=PaginatedResponse)
async def list_audit(
    page:   Annotated[int,        Query(ge=1)]         = 1,
    limit:  Annotated[int,        Query(ge=1, le=500)] = 50,
    action: Annotated[str | None, Query()]             = None,
    ip:     Annotated[str | None, Query()]             = None,
    _actor: str = Depends(require_admin),
    admin:  AdminService = Depends(get_admin),
) -> PaginatedResponse:
    offset = (page - 1) * limit
    items, total = admin.get_audit(limit=limit, offset=offset, action=action, ip=ip)
    return PaginatedResponse(
        items=items,
        total=total,
        page=page,
        limit=limit,
        has_more=(offset + limit) < total,
    )

"""
api/routes/maintenance.py

POST /api/maintenance/cleanup - run the retention sweep now
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ...engine.admin import AdminService
from ..deps import get_admin, require_admin
from ..serializers import CleanupResponse

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup(
    actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> CleanupResponse:
    return CleanupResponse(**admin.cleanup(actor))

"""
api/routes/dashboard.py

GET /api/dashboard                   - 24h summary for the admin dashboard
GET /api/dashboard/suspicious-count  - suspicious events in the last 5 minutes
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ...engine.admin import AdminService
from ..deps import get_admin, require_admin
from ..serializers import DashboardResponse

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("", response_model=DashboardResponse)
async def dashboard(
    _actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> DashboardResponse:
    return DashboardResponse(**admin.dashboard())


@router.get("/suspicious-count")
async def suspicious_count(
    _actor: str = Depends(require_admin),
    admin: AdminService = Depends(get_admin),
) -> dict:
    return {"count": admin.suspicious_count()}

"""
api/routes/stats.py

GET /api/stats - engine counters, in-memory state sizes, process metrics and
alert dispatcher counters
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ...engine.engine import DecisionEngine
from ...metrics import METRICS
from ..deps import get_dispatcher, get_engine, require_admin
from ..serializers import StatsResponse

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("", response_model=StatsResponse)
async def get_stats(
    _actor: str = Depends(require_admin),
    engine: DecisionEngine = Depends(get_engine),
    dispatcher=Depends(get_dispatcher),
) -> StatsResponse:
    return StatsResponse(
        engine=dict(engine.stats),
        state=engine.state.snapshot(),
        metrics=METRICS.as_dict(),
        alerts=dict(dispatcher.stats) if dispatcher is not None else {},
    )

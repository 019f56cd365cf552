"""
api/routes/ingest.py

POST /api/ingest/evaluate   - authenticated call site (full request context)
POST /api/ingest/public     - unauthenticated call site
GET  /api/ingest/precheck   - block-cache check alone (pass sensitive=true for
                              sensitive routes)

Blocked decisions are answered with 403; everything else with 200. The body
is always {"status", "rule", "block_duration_minutes"}.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ...engine.engine import DecisionEngine
from ...models import Decision, Identity, RequestContext
from ..deps import get_engine
from ..serializers import DecisionResponse, EvaluateRequest, PublicEvaluateRequest

router = APIRouter(prefix="/ingest", tags=["ingest"])


def _respond(decision: Decision) -> JSONResponse:
    return JSONResponse(
        status_code=403 if decision.blocked else 200,
        content=decision.to_dict(),
    )


@router.post("/evaluate", response_model=DecisionResponse)
async def evaluate(
    body: EvaluateRequest,
    engine: DecisionEngine = Depends(get_engine),
) -> JSONResponse:
    decision = await engine.evaluate(
        Identity(ip=body.ip, user_agent=body.user_agent),
        RequestContext(
            endpoint=body.endpoint,
            method=body.method,
            is_sensitive=body.is_sensitive,
            is_failed_login=body.is_failed_login,
            status_code=body.status_code,
            latency_ms=body.latency_ms,
        ),
    )
    return _respond(decision)


@router.post("/public", response_model=DecisionResponse)
async def evaluate_public(
    body: PublicEvaluateRequest,
    engine: DecisionEngine = Depends(get_engine),
) -> JSONResponse:
    decision = await engine.evaluate_public(
        body.ip, user_agent=body.user_agent, endpoint=body.endpoint, method=body.method,
    )
    return _respond(decision)


@router.get("/precheck", response_model=DecisionResponse)
async def precheck(
    ip: Annotated[str, Query(min_length=1)],
    sensitive: Annotated[bool, Query()] = False,
    engine: DecisionEngine = Depends(get_engine),
) -> JSONResponse:
    return _respond(await engine.precheck(ip, sensitive=sensitive))

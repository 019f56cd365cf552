"""
api/main.py

FastAPI application factory.

Process-wide objects (engine, admin service, dispatcher) are handed in by
main.py through set_services(); route modules reach them through small
dependency functions so tests can swap them with app.dependency_overrides or
by calling set_services() with in-memory instances.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import InvalidRuleError, StorageUnavailableError
from .routes import audit as audit_router
from .routes import blocks as blocks_router
from .routes import config as config_router
from .routes import dashboard as dashboard_router
from .routes import ingest as ingest_router
from .routes import logs as logs_router
from .routes import maintenance as maintenance_router
from .routes import rules as rules_router
from .routes import stats as stats_router

logger = logging.getLogger(__name__)

_engine = None
_admin = None
_dispatcher = None


def set_services(engine, admin, dispatcher=None) -> None:
    global _engine, _admin, _dispatcher
    _engine = engine
    _admin = admin
    _dispatcher = dispatcher


def get_engine():
    if _engine is None:
        raise RuntimeError("Engine not initialised - call set_services() first")
    return _engine


def get_admin():
    if _admin is None:
        raise RuntimeError("AdminService not initialised - call set_services() first")
    return _admin


def get_dispatcher():
    return _dispatcher


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("FastAPI startup")
        yield
        logger.info("FastAPI shutdown")

    app = FastAPI(
        title="ShieldGate - Request Rate Limiter & Abuse Blocker",
        version="1.0.0",
        description="Per-request block/allow decisions with escalating IP blocks",
        lifespan=lifespan,
    )

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable(_: Request, exc: StorageUnavailableError) -> JSONResponse:
        logger.error("Storage unavailable while serving request: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "storage unavailable"})

    @app.exception_handler(InvalidRuleError)
    async def invalid_rule(_: Request, exc: InvalidRuleError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    # REST routers
    app.include_router(ingest_router.router,      prefix="/api")
    app.include_router(rules_router.router,       prefix="/api")
    app.include_router(blocks_router.router,      prefix="/api")
    app.include_router(logs_router.router,        prefix="/api")
    app.include_router(audit_router.router,       prefix="/api")
    app.include_router(config_router.router,      prefix="/api")
    app.include_router(maintenance_router.router, prefix="/api")
    app.include_router(dashboard_router.router,   prefix="/api")
    app.include_router(stats_router.router,       prefix="/api")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "engine_ready": _engine is not None}

    return app

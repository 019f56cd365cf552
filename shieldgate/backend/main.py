from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import NoReturn

import uvicorn

from .api.main import create_app, set_services
from .config import settings
from .engine import AdminService, DecisionEngine, build_dispatcher, build_engine
from .metrics import METRICS
from .storage import Database
from .storage.migrations import apply_migrations

logger = logging.getLogger("shieldgate.main")


# ---------------------------------------------------------------------------
# Periodic tasks
# ---------------------------------------------------------------------------

async def cleanup_loop(
    admin: AdminService,
    shutdown_event: asyncio.Event,
    interval: float,
) -> None:
    """Run the retention sweep every `interval` seconds until shutdown."""
    logger.info("Retention cleanup every %.0fs", interval)
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass
        try:
            await asyncio.to_thread(admin.cleanup)
        except Exception as exc:
            logger.error("Retention cleanup failed: %s", exc)
    logger.info("Cleanup loop exiting")


async def stats_logger(
    engine: DecisionEngine,
    shutdown_event: asyncio.Event,
    interval: float = 60.0,
) -> None:
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass
        logger.info(
            "METRICS engine=%s state=%s process=%s",
            engine.stats, engine.state.snapshot(), METRICS.as_dict(),
        )


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

async def run(host: str, port: int, db_path: str) -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler(_signum, _frame) -> None:
        logger.info("Shutdown signal received")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    # Storage
    db = Database(db_path)
    db.init_schema()
    applied = apply_migrations(db)
    if applied:
        logger.info("Applied migration(s): %s", applied)

    # Engine + management
    dispatcher = build_dispatcher(db, settings)
    engine = build_engine(db, settings, dispatcher=dispatcher)
    admin = AdminService(db, engine.state, settings)
    if settings.SEED_DEFAULT_RULES:
        admin.seed_default_rules()

    dispatcher.start()
    set_services(engine, admin, dispatcher)

    # FastAPI + uvicorn
    app = create_app()
    uv_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",
        loop="none",
    )
    uv_server = uvicorn.Server(uv_config)

    tasks = [
        asyncio.create_task(
            cleanup_loop(admin, shutdown_event, settings.CLEANUP_INTERVAL_SECONDS),
            name="cleanup",
        ),
        asyncio.create_task(stats_logger(engine, shutdown_event), name="stats"),
        asyncio.create_task(uv_server.serve(),                      name="api"),
    ]

    logger.info(
        "ShieldGate - API=http://%s:%d db=%r webhook=%s",
        host, port, db_path, "configured" if settings.ALERT_WEBHOOK_URL else "from config table",
    )
    logger.info("Active rules: %s", [r.name for r in engine.state.rules.get_rules()])

    await shutdown_event.wait()

    uv_server.should_exit = True
    for t in tasks[:-1]:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await dispatcher.stop()
    db.close()
    logger.info("Final stats - engine=%s alerts=%s", engine.stats, dispatcher.stats)
    logger.info("ShieldGate stopped cleanly")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ShieldGate request rate limiter")
    parser.add_argument("--host", default=settings.API_HOST)
    parser.add_argument("--port", type=int, default=settings.API_PORT)
    parser.add_argument("--db",   default=settings.DB_PATH, dest="db_path")
    parser.add_argument(
        "--log-level", default=settings.LOG_LEVEL.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args(argv)


def main() -> NoReturn:
    args = _parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    if not 0 < args.port < 65536:
        print(f"ERROR: invalid --port: {args.port}", file=sys.stderr)
        sys.exit(1)

    asyncio.run(run(host=args.host, port=args.port, db_path=args.db_path))
    sys.exit(0)


if __name__ == "__main__":
    main()

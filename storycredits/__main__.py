"""Main entry point for the credit ledger service."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta

import logfire
from aiohttp import web

from storycredits.config import settings
from storycredits.db import init_db_manager
from storycredits.maintenance import run_maintenance_loop
from storycredits.payments import WebhookGate
from storycredits.webapp.server import create_app

# Configure logfire with basic settings
logfire.configure(
    token=settings.logfire_token,
    service_name=settings.app_name,
    environment=settings.environment,
)

# Auto-instrument integrations
logfire.instrument_pydantic(record="failure")

logging.basicConfig(
    level=logging.WARNING,
    format="[%(asctime)s][%(name)s][%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logfire.LogfireLoggingHandler(),
    ],
)


async def main() -> None:
    logger = logging.getLogger("Main")
    logger.info(f"Environment: {settings.environment}")

    db = init_db_manager(
        settings.database_url,
        echo=settings.environment == "dev",
    )
    await db.connect()
    logfire.instrument_sqlalchemy(engine=db.engine.sync_engine)

    gate = WebhookGate(
        db, dedup_window=timedelta(seconds=settings.webhook_dedup_window_seconds)
    )
    app = create_app(
        db,
        gate,
        secrets=settings.provider_secrets,
        admin_token=settings.admin_api_token,
    )
    missing = [name for name, secret in settings.provider_secrets.items() if not secret]
    if missing:
        logger.warning(f"Webhooks will be rejected as unverified for: {missing}")

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.webapp_host, settings.webapp_port)
    await site.start()
    logger.info(f"Listening on {settings.webapp_host}:{settings.webapp_port}")

    maintenance = asyncio.create_task(
        run_maintenance_loop(
            db,
            gate,
            interval=settings.maintenance_interval_seconds,
            webhook_retention_days=settings.webhook_retention_days,
            grant_retention_days=settings.grant_retention_days,
            replay_after=timedelta(seconds=settings.replay_after_seconds),
        )
    )

    try:
        await asyncio.Event().wait()
    finally:
        maintenance.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await maintenance
        await runner.cleanup()
        await db.disconnect()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("App stopped! Good bye.")
    except Exception:
        logfire.fatal("App crashed", _exc_info=True)
        raise

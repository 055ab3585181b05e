"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tutorqueue.config import Settings
from tutorqueue.db.engine import create_engine, create_tables

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: create engine/tables, optionally start Discord bot and scheduler."""
    settings: Settings = app.state.settings
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    app.state.engine = engine

    # Start Discord bot if configured
    discord_bot = None
    from tutorqueue.discord.bot import is_discord_enabled

    if is_discord_enabled(settings):
        from tutorqueue.discord.bot import start_discord_bot

        discord_bot = await start_discord_bot(settings, engine)
        logger.info("discord_bot_integration_started")
    else:
        logger.info("discord_bot_integration_disabled")
    app.state.discord_bot = discord_bot

    # Start APScheduler for queue schedules and member purging
    from apscheduler.schedulers.asyncio import AsyncIOScheduler
    from apscheduler.triggers.cron import CronTrigger

    from tutorqueue.core.scheduler_runner import tick_schedules

    scheduler = AsyncIOScheduler(timezone=settings.timezone)
    scheduler.add_job(
        tick_schedules,
        trigger=CronTrigger.from_crontab(
            settings.tutorqueue_schedule_cron, timezone=settings.timezone
        ),
        kwargs={
            "engine": engine,
            "settings": settings,
            "on_changes": discord_bot.announce_schedule_changes if discord_bot else None,
        },
        id="tick_schedules",
        name="Apply queue schedules",
        replace_existing=True,
    )
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info(
        "scheduler_started cron=%s timezone=%s auto_schedule=%s",
        settings.tutorqueue_schedule_cron,
        settings.tutorqueue_timezone,
        settings.tutorqueue_auto_schedule,
    )

    yield

    scheduler.shutdown(wait=False)
    logger.info("scheduler_stopped")

    if discord_bot is not None:
        await discord_bot.close()
        logger.info("discord_bot_integration_stopped")

    await engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the TutorQueue FastAPI application."""
    settings = settings or Settings()

    logging.basicConfig(
        level=getattr(logging, settings.tutorqueue_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="TutorQueue",
        version=APP_VERSION,
        description="Discord bot for tutoring queues, sessions and member verification",
        docs_url="/docs" if settings.tutorqueue_env != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.tutorqueue_env}

    return app


app = create_app()

"""Scheduled queue maintenance.

Provides ``tick_schedules`` which APScheduler invokes on the cron cadence
defined by ``settings.tutorqueue_schedule_cron``. Each tick locks and
unlocks schedule-driven queues and purges members whose rejoin grace
period has run out.

Database errors are logged but never propagated so the scheduler keeps
running.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tutorqueue.config import Settings
from tutorqueue.core.queues import QueueService, QueueStateService
from tutorqueue.db.engine import get_session
from tutorqueue.db.repository import Repository
from tutorqueue.models.queue import ScheduleChange

logger = logging.getLogger(__name__)

ChangeListener = Callable[[list[ScheduleChange]], Awaitable[None]]


async def tick_schedules(
    engine: AsyncEngine,
    settings: Settings,
    now: datetime | None = None,
    on_changes: ChangeListener | None = None,
) -> list[ScheduleChange]:
    """Apply queue schedules and purge departed members.

    ``on_changes`` is awaited with the applied changes after they commit,
    so the bot can announce them.
    """
    now = now or datetime.now(settings.timezone)
    changes: list[ScheduleChange] = []

    if settings.tutorqueue_auto_schedule:
        try:
            async with get_session(engine) as session:
                service = QueueStateService(Repository(session), timezone=settings.timezone)
                changes = await service.check_schedules(now)
        except SQLAlchemyError:
            logger.exception("tick_schedules_error")
            return []
        for change in changes:
            logger.info(
                "schedule_applied guild=%s queue=%s action=%s",
                change.guild_id,
                change.queue_name,
                change.action,
            )

    try:
        async with get_session(engine) as session:
            await QueueService(
                Repository(session), grace_seconds=settings.tutorqueue_rejoin_grace_seconds
            ).purge_departed_members(now)
    except SQLAlchemyError:
        logger.exception("purge_departed_members_error")

    if changes and on_changes is not None:
        await on_changes(changes)
    return changes

"""Discord bot helpers: DB session context and direct messages."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import discord
from sqlalchemy.ext.asyncio import AsyncEngine

from tutorqueue.db.engine import get_session
from tutorqueue.db.repository import Repository

logger = logging.getLogger(__name__)


@asynccontextmanager
async def db_session(
    engine: AsyncEngine,
) -> AsyncGenerator[Repository, None]:
    """Yield a Repository bound to a fresh async session."""
    async with get_session(engine) as session:
        yield Repository(session)


async def send_dm(
    client: discord.Client,
    user_id: int | str,
    content: str | discord.Embed,
) -> bool:
    """Send a direct message. Returns False instead of raising when it fails.

    Users who disabled DMs from server members raise ``Forbidden``; that is
    expected and only logged.
    """
    try:
        user = client.get_user(int(user_id)) or await client.fetch_user(int(user_id))
        if isinstance(content, discord.Embed):
            await user.send(embed=content)
        else:
            await user.send(content)
    except (discord.Forbidden, discord.NotFound, discord.HTTPException) as exc:
        logger.info("dm_failed user=%s err=%s", user_id, exc)
        return False
    logger.info("dm_sent user=%s", user_id)
    return True

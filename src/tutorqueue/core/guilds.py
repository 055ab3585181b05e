"""Guild registration and role mappings."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, NamedTuple

from tutorqueue.core.errors import GuildNotFoundError
from tutorqueue.db.models import InternalRole

if TYPE_CHECKING:
    from tutorqueue.db.repository import Repository

logger = logging.getLogger(__name__)


class LiveGuild(NamedTuple):
    """The parts of a Discord guild the database keeps."""

    id: str
    name: str
    member_count: int = 0


class GuildService:
    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    async def add_guild(self, guild_id: str, name: str, member_count: int = 0) -> bool:
        """Register a guild. Returns False if it was already known."""
        added = await self.repo.add_guild(guild_id, name, member_count)
        if added:
            logger.info("guild_added guild=%s name=%s", guild_id, name)
        return added

    async def sync_guilds(self, live: Iterable[LiveGuild]) -> int:
        """Add guilds the bot is in but the database lacks; refresh the rest.

        Returns the number of guilds added.
        """
        known = await self.repo.get_all_guild_ids()
        added = 0
        for guild in live:
            if guild.id in known:
                await self.repo.update_guild(guild.id, guild.name, guild.member_count)
            elif await self.add_guild(guild.id, guild.name, guild.member_count):
                added += 1
        logger.info("guild_sync_complete known=%d added=%d", len(known), added)
        return added

    async def set_role(self, guild_id: str, role_type: InternalRole, role_id: str) -> None:
        if await self.repo.get_guild(guild_id) is None:
            raise GuildNotFoundError(guild_id)
        await self.repo.set_role_mapping(guild_id, role_type, role_id)
        logger.info("role_mapped guild=%s role_type=%s role=%s", guild_id, role_type, role_id)

    async def get_role(self, guild_id: str, role_type: InternalRole) -> str | None:
        return await self.repo.get_role_mapping(guild_id, role_type)

    async def get_all_roles(self, guild_id: str) -> dict[InternalRole, str]:
        mappings = await self.repo.get_role_mappings(guild_id)
        return {
            InternalRole(role_type): role_id
            for role_type, role_id in mappings.items()
            if role_type in InternalRole._value2member_map_
        }

    async def set_welcome(self, guild_id: str, title: str | None, text: str | None) -> None:
        if not await self.repo.set_guild_welcome(guild_id, title, text):
            raise GuildNotFoundError(guild_id)

    async def get_welcome(self, guild_id: str) -> tuple[str | None, str | None]:
        guild = await self.repo.get_guild(guild_id)
        if guild is None:
            return None, None
        return guild.welcome_title, guild.welcome_text

"""Member verification via signed tokens, and lookups of verified members."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

from tutorqueue.core.errors import (
    InvalidTokenError,
    TokenAlreadyUsedError,
    UserNotVerifiedError,
    WrongServerError,
)
from tutorqueue.core.tokens import TokenData, read_token
from tutorqueue.db.models import InternalRole

if TYPE_CHECKING:
    from tutorqueue.db.models import VerifiedUserRow
    from tutorqueue.db.repository import Repository

logger = logging.getLogger(__name__)

IdType = Literal["discord", "tu", "moodle"]


class UserService:
    def __init__(self, repo: Repository, token_secret: str) -> None:
        self.repo = repo
        self.token_secret = token_secret

    def decode_token(self, token: str) -> TokenData:
        data = read_token(self.token_secret, token)
        if data is None:
            raise InvalidTokenError()
        return data

    async def verify_user(self, guild_id: str, discord_id: str, token: str) -> list[InternalRole]:
        """Redeem a token for a member and record the roles it grants.

        Raises:
            InvalidTokenError: the token does not decode.
            WrongServerError: the token was issued for another guild.
            TokenAlreadyUsedError: another member already redeemed this Moodle ID.
        """
        data = self.decode_token(token)
        if data.server_id != guild_id:
            raise WrongServerError(data.server_id)

        if data.moodle_id:
            existing = await self.repo.find_verified_user(guild_id, "moodle", data.moodle_id)
            if existing is not None and existing.discord_id != discord_id:
                logger.warning(
                    "token_reused guild=%s moodle=%s owner=%s",
                    guild_id,
                    data.moodle_id,
                    existing.discord_id,
                )
                raise TokenAlreadyUsedError()

        await self.repo.upsert_verified_user(
            guild_id,
            discord_id,
            tu_id=data.tu_id or None,
            moodle_id=data.moodle_id or None,
            roles=[str(role) for role in data.roles],
        )
        logger.info("user_verified guild=%s user=%s roles=%s", guild_id, discord_id, data.roles)
        return list(data.roles)

    async def get_user_roles(self, guild_id: str, discord_id: str) -> list[InternalRole]:
        """Roles saved for a member, used to restore them when they rejoin."""
        user = await self.repo.get_verified_user(guild_id, discord_id)
        if user is None:
            return []
        return [
            InternalRole(role) for role in user.roles or [] if role in InternalRole._value2member_map_
        ]

    async def search_user(self, guild_id: str, id_type: IdType, value: str) -> VerifiedUserRow:
        user = await self.repo.find_verified_user(guild_id, id_type, value)
        if user is None:
            raise UserNotVerifiedError()
        return user

"""Tests for member verification."""

import pytest

from tutorqueue.core.errors import (
    InvalidTokenError,
    TokenAlreadyUsedError,
    UserNotVerifiedError,
    WrongServerError,
)
from tutorqueue.core.tokens import issue_token
from tutorqueue.core.users import UserService
from tutorqueue.db.models import InternalRole
from tutorqueue.db.repository import Repository

SECRET = "test-secret"


@pytest.fixture
async def users(repo: Repository) -> UserService:
    await repo.add_guild("g1", "Guild One")
    return UserService(repo, SECRET)


def _token(server_id: str = "g1", moodle_id: str = "m1") -> str:
    return issue_token(SECRET, server_id, "tu1", moodle_id, [InternalRole.VERIFIED])


class TestVerify:
    async def test_verify_records_user(self, users: UserService):
        roles = await users.verify_user("g1", "d1", _token())
        assert roles == [InternalRole.VERIFIED]
        assert await users.get_user_roles("g1", "d1") == [InternalRole.VERIFIED]

    async def test_invalid_token(self, users: UserService):
        with pytest.raises(InvalidTokenError):
            await users.verify_user("g1", "d1", "garbage")

    async def test_token_for_other_guild(self, users: UserService):
        with pytest.raises(WrongServerError) as exc_info:
            await users.verify_user("g1", "d1", _token(server_id="g2"))
        assert exc_info.value.expected_server_id == "g2"

    async def test_token_used_by_someone_else(self, users: UserService):
        await users.verify_user("g1", "d1", _token())
        with pytest.raises(TokenAlreadyUsedError):
            await users.verify_user("g1", "d2", _token())

    async def test_same_user_can_verify_again(self, users: UserService):
        await users.verify_user("g1", "d1", _token())
        assert await users.verify_user("g1", "d1", _token()) == [InternalRole.VERIFIED]


class TestLookup:
    async def test_search_by_each_id(self, users: UserService):
        await users.verify_user("g1", "d1", _token())
        for id_type, value in (("discord", "d1"), ("tu", "tu1"), ("moodle", "m1")):
            user = await users.search_user("g1", id_type, value)
            assert user.discord_id == "d1"

    async def test_search_unknown(self, users: UserService):
        with pytest.raises(UserNotVerifiedError):
            await users.search_user("g1", "discord", "nobody")

    async def test_roles_of_unknown_user(self, users: UserService):
        assert await users.get_user_roles("g1", "nobody") == []

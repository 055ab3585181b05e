"""Tests for database layer: engine, ORM models, repository round-trips."""

from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncEngine

from tutorqueue.db.engine import get_session
from tutorqueue.db.models import InternalRole
from tutorqueue.db.repository import Repository


class TestTableCreation:
    async def test_all_tables_created(self, engine: AsyncEngine):
        async with engine.connect() as conn:
            tables = await conn.run_sync(
                lambda sync_conn: sync_conn.dialect.get_table_names(sync_conn)
            )
        expected = {
            "guilds",
            "role_mappings",
            "queues",
            "queue_members",
            "sessions",
            "session_students",
            "queue_schedules",
            "verified_users",
        }
        assert expected.issubset(set(tables))


class TestGuilds:
    async def test_add_guild_is_insert_or_ignore(self, repo: Repository):
        assert await repo.add_guild("g1", "Guild One", 10) is True
        assert await repo.add_guild("g1", "Renamed", 20) is False
        guild = await repo.get_guild("g1")
        assert guild is not None
        assert guild.name == "Guild One"

    async def test_update_and_ids(self, repo: Repository):
        await repo.add_guild("g1", "Guild One")
        await repo.add_guild("g2", "Guild Two")
        await repo.update_guild("g1", "New Name", 42)
        guild = await repo.get_guild("g1")
        assert (guild.name, guild.member_count) == ("New Name", 42)
        assert await repo.get_all_guild_ids() == {"g1", "g2"}

    async def test_role_mapping_upsert(self, repo: Repository):
        await repo.add_guild("g1", "Guild One")
        await repo.set_role_mapping("g1", InternalRole.TUTOR, "100")
        await repo.set_role_mapping("g1", InternalRole.TUTOR, "200")
        await repo.set_role_mapping("g1", InternalRole.ADMIN, "300")
        assert await repo.get_role_mapping("g1", InternalRole.TUTOR) == "200"
        assert await repo.get_role_mappings("g1") == {"tutor": "200", "admin": "300"}


class TestCascade:
    async def test_deleting_queue_removes_members_and_sessions(self, engine: AsyncEngine):
        async with get_session(engine) as session:
            repo = Repository(session)
            await repo.add_guild("g1", "Guild One")
            queue = await repo.create_queue("g1", "alpha")
            await repo.add_queue_member(queue.id, "s1")
            await repo.create_session(queue.id, "t1")
            queue_id = queue.id

        async with get_session(engine) as session:
            repo = Repository(session)
            assert await repo.delete_queue("g1", "alpha") is True

        async with get_session(engine) as session:
            repo = Repository(session)
            assert await repo.get_queue_member(queue_id, "s1") is None
            assert await repo.count_active_sessions(queue_id) == 0


class TestSessions:
    async def test_end_active_sessions_filters_by_tutor(self, repo: Repository):
        await repo.add_guild("g1", "Guild One")
        queue = await repo.create_queue("g1", "alpha")
        await repo.create_session(queue.id, "t1")
        await repo.create_session(queue.id, "t2")

        now = datetime.now(UTC)
        assert await repo.end_active_sessions("g1", now, tutor_id="t1") == [("t1", queue.id)]
        assert await repo.count_active_sessions(queue.id) == 1
        assert await repo.end_active_sessions("g1", now) == [("t2", queue.id)]
        assert await repo.end_active_sessions("g1", now) == []
        assert await repo.count_active_sessions(queue.id) == 0

    async def test_active_sessions_with_stats(self, repo: Repository):
        await repo.add_guild("g1", "Guild One")
        queue = await repo.create_queue("g1", "alpha")
        session = await repo.create_session(queue.id, "t1")
        await repo.add_session_student(session.id, "s1")
        await repo.add_session_student(session.id, "s2")

        rows = await repo.get_active_sessions_with_stats("g1")
        assert [(s.tutor_id, name, count) for s, name, count in rows] == [("t1", "alpha", 2)]


class TestVerifiedUsers:
    async def test_upsert_and_find(self, repo: Repository):
        await repo.add_guild("g1", "Guild One")
        await repo.upsert_verified_user("g1", "d1", "tu1", "m1", ["verified"])
        await repo.upsert_verified_user("g1", "d1", "tu1", "m1", ["verified", "tutor"])

        user = await repo.find_verified_user("g1", "moodle", "m1")
        assert user is not None
        assert user.discord_id == "d1"
        assert user.roles == ["verified", "tutor"]
        assert await repo.find_verified_user("g1", "tu", "tu1") is not None
        assert await repo.find_verified_user("g2", "discord", "d1") is None

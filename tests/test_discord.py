"""Tests for the Discord bot integration.

All Discord objects are mocked. Commands run against a real in-memory
database so the handlers exercise the services end to end.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import discord
import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tutorqueue.config import Settings
from tutorqueue.core.errors import ErrorKind, MissingBotTokenError, QueueLockedError
from tutorqueue.core.guilds import GuildService
from tutorqueue.core.queues import QueueService, QueueStateService
from tutorqueue.db.engine import get_session
from tutorqueue.db.models import InternalRole
from tutorqueue.db.repository import Repository
from tutorqueue.discord.bot import TutorQueueBot, is_discord_enabled, start_discord_bot
from tutorqueue.discord.embeds import (
    build_error_embed,
    build_queue_summary_embed,
    build_schedule_embed,
)
from tutorqueue.discord.helpers import send_dm
from tutorqueue.discord.messages import DB_UNAVAILABLE, ERROR_TITLES, GENERIC_ERROR
from tutorqueue.models.queue import QueueSummary, ScheduleChange, ScheduleEntry

GUILD_ID = 111


def make_interaction(**overrides) -> AsyncMock:
    """Build a fully-configured Discord interaction mock."""
    interaction = AsyncMock(spec=discord.Interaction)
    interaction.response = AsyncMock()
    interaction.followup = AsyncMock()
    interaction.guild_id = overrides.get("guild_id", GUILD_ID)
    interaction.guild = MagicMock(spec=discord.Guild)
    interaction.guild.id = GUILD_ID
    interaction.guild.name = "Guild One"
    interaction.guild.member_count = 10
    interaction.guild.get_role = MagicMock(return_value=None)
    interaction.command = None
    interaction.user = MagicMock(spec=discord.Member)
    interaction.user.id = overrides.get("user_id", 12345)
    interaction.user.guild = interaction.guild
    interaction.user.roles = []
    interaction.user.guild_permissions = discord.Permissions(
        administrator=overrides.get("admin", False)
    )
    interaction.user.send = AsyncMock()
    return interaction


def sent_embed(interaction: AsyncMock) -> discord.Embed:
    return interaction.followup.send.call_args.kwargs["embed"]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings_discord_enabled() -> Settings:
    """Settings with Discord enabled."""
    return Settings(
        tutorqueue_env="development",
        database_url="sqlite+aiosqlite:///:memory:",
        discord_bot_token="test-token-not-real",
        discord_guild_id="987654321",
        discord_enabled=True,
        token_secret="test-secret",
    )


@pytest.fixture
def bot(settings: Settings, engine: AsyncEngine) -> TutorQueueBot:
    return TutorQueueBot(settings=settings, engine=engine)


@pytest.fixture
async def seeded(engine: AsyncEngine) -> AsyncEngine:
    """A guild with one open queue named alpha."""
    async with get_session(engine) as session:
        repo = Repository(session)
        await repo.add_guild(str(GUILD_ID), "Guild One")
        await QueueService(repo).create_queue(str(GUILD_ID), "alpha", "Algebra help")
    return engine


@pytest.fixture
async def with_waiting_room(seeded: AsyncEngine) -> AsyncEngine:
    """Alpha gets waiting room 700 and private log 900; verified maps to role 800."""
    async with get_session(seeded) as session:
        repo = Repository(session)
        queues = QueueService(repo)
        await queues.set_waiting_room(str(GUILD_ID), "alpha", "700")
        await queues.set_private_log_channel(str(GUILD_ID), "alpha", "900")
        await GuildService(repo).set_role(str(GUILD_ID), InternalRole.VERIFIED, "800")
    return seeded


def make_waiting_room(guild: MagicMock) -> MagicMock:
    """Attach a voice channel and a verified role to a mocked guild."""
    channel = MagicMock(spec=discord.VoiceChannel)
    channel.id = 700
    channel.overwrites_for = MagicMock(return_value=discord.PermissionOverwrite(speak=True))
    channel.set_permissions = AsyncMock()
    guild.get_channel = MagicMock(return_value=channel)
    guild.get_role = MagicMock(return_value=MagicMock(spec=discord.Role))
    return channel


# ---------------------------------------------------------------------------
# Enablement and construction
# ---------------------------------------------------------------------------


class TestIsDiscordEnabled:
    def test_enabled_with_token(self, settings_discord_enabled: Settings) -> None:
        assert is_discord_enabled(settings_discord_enabled) is True

    def test_disabled_when_flag_false(self) -> None:
        settings = Settings(discord_bot_token="some-token", discord_enabled=False, token_secret="x")
        assert is_discord_enabled(settings) is False

    def test_disabled_when_token_empty(self) -> None:
        settings = Settings(discord_bot_token="", discord_enabled=True, token_secret="x")
        assert is_discord_enabled(settings) is False


class TestTutorQueueBotInit:
    def test_bot_creation(self, settings: Settings) -> None:
        bot = TutorQueueBot(settings=settings)
        assert bot.settings is settings
        assert bot.engine is None
        assert bot.intents.members is True
        assert bot.intents.voice_states is True

    def test_bot_has_command_groups(self, settings: Settings) -> None:
        bot = TutorQueueBot(settings=settings)
        command_names = {cmd.name for cmd in bot.tree.get_commands()}
        assert command_names == {"admin", "queue", "tutor", "verify"}

    def test_admin_subgroups(self, settings: Settings) -> None:
        bot = TutorQueueBot(settings=settings)
        admin = bot.tree.get_command("admin")
        assert isinstance(admin, discord.app_commands.Group)
        assert {cmd.name for cmd in admin.commands} == {
            "queue",
            "queue-schedule",
            "session",
            "role",
            "user",
        }


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


class TestPlumbing:
    async def test_no_engine_reports_unavailable(self, settings: Settings) -> None:
        bot = TutorQueueBot(settings=settings)
        interaction = make_interaction()
        await bot._handle_join(interaction, "alpha")
        interaction.response.send_message.assert_called_once_with(DB_UNAVAILABLE, ephemeral=True)
        interaction.followup.send.assert_not_called()

    async def test_with_repo_without_engine(self, settings: Settings) -> None:
        bot = TutorQueueBot(settings=settings)
        interaction = make_interaction()
        action = AsyncMock()
        assert await bot._with_repo(interaction, action) is None
        interaction.followup.send.assert_awaited_once_with(DB_UNAVAILABLE, ephemeral=True)
        action.assert_not_awaited()

    async def test_database_error_sends_generic_message(
        self, bot: TutorQueueBot, seeded: AsyncEngine
    ) -> None:
        interaction = make_interaction()
        with patch.object(
            QueueStateService,
            "get_queue_summary",
            new=AsyncMock(side_effect=SQLAlchemyError("boom")),
        ):
            await bot._handle_queue_summary(interaction, "alpha")
        assert sent_embed(interaction).description == GENERIC_ERROR


class TestQueueCommands:
    async def test_create_registers_guild(self, bot: TutorQueueBot, engine: AsyncEngine) -> None:
        interaction = make_interaction(admin=True)
        await bot._handle_queue_create(interaction, "alpha", "Algebra help")

        assert sent_embed(interaction).title == "Queue Created"
        async with get_session(engine) as session:
            repo = Repository(session)
            assert await repo.get_guild(str(GUILD_ID)) is not None
            assert await repo.get_queue_by_name(str(GUILD_ID), "alpha") is not None

    async def test_duplicate_queue(self, bot: TutorQueueBot, seeded: AsyncEngine) -> None:
        interaction = make_interaction(admin=True)
        await bot._handle_queue_create(interaction, "alpha", "")
        assert sent_embed(interaction).title == ERROR_TITLES[ErrorKind.QUEUE_EXISTS]

    async def test_summary_fields(self, bot: TutorQueueBot, seeded: AsyncEngine) -> None:
        interaction = make_interaction()
        await bot._handle_queue_summary(interaction, "alpha")
        embed = sent_embed(interaction)
        assert embed.title == "Queue: alpha"
        fields = {field.name: field.value for field in embed.fields}
        assert fields["Students in Queue"] == "0"
        assert fields["Locked"] == "No"

    async def test_lock_twice_reports_state(self, bot: TutorQueueBot, seeded: AsyncEngine) -> None:
        first = make_interaction(admin=True)
        await bot._handle_queue_lock(first, "alpha", locked=True)
        assert sent_embed(first).title == "Queue Locked"

        second = make_interaction(admin=True)
        await bot._handle_queue_lock(second, "alpha", locked=True)
        embed = sent_embed(second)
        assert embed.title == ERROR_TITLES[ErrorKind.QUEUE_STATE]
        assert "already locked" in embed.description

    async def test_lock_denies_waiting_room_connect(
        self, bot: TutorQueueBot, with_waiting_room: AsyncEngine
    ) -> None:
        interaction = make_interaction(admin=True)
        channel = make_waiting_room(interaction.guild)

        await bot._handle_queue_lock(interaction, "alpha", locked=True)

        assert sent_embed(interaction).title == "Queue Locked"
        interaction.guild.get_channel.assert_called_once_with(700)
        interaction.guild.get_role.assert_called_with(800)
        channel.set_permissions.assert_awaited_once()
        overwrite = channel.set_permissions.call_args.kwargs["overwrite"]
        assert overwrite.connect is False
        assert overwrite.speak is True
        assert channel.set_permissions.call_args.kwargs["reason"] == "Queue locked"

    async def test_unlock_restores_waiting_room_connect(
        self, bot: TutorQueueBot, with_waiting_room: AsyncEngine
    ) -> None:
        await bot._handle_queue_lock(make_interaction(admin=True), "alpha", locked=True)

        interaction = make_interaction(admin=True)
        channel = make_waiting_room(interaction.guild)
        await bot._handle_queue_lock(interaction, "alpha", locked=False)

        assert sent_embed(interaction).title == "Queue Unlocked"
        assert channel.set_permissions.call_args.kwargs["overwrite"].connect is True

    async def test_lock_without_waiting_room_skips_permissions(
        self, bot: TutorQueueBot, seeded: AsyncEngine
    ) -> None:
        interaction = make_interaction(admin=True)
        channel = make_waiting_room(interaction.guild)
        await bot._handle_queue_lock(interaction, "alpha", locked=True)
        assert sent_embed(interaction).title == "Queue Locked"
        channel.set_permissions.assert_not_awaited()

    async def test_permission_failure_still_confirms_lock(
        self, bot: TutorQueueBot, with_waiting_room: AsyncEngine
    ) -> None:
        interaction = make_interaction(admin=True)
        channel = make_waiting_room(interaction.guild)
        channel.set_permissions.side_effect = discord.Forbidden(
            MagicMock(status=403), "Missing Permissions"
        )
        await bot._handle_queue_lock(interaction, "alpha", locked=True)
        assert sent_embed(interaction).title == "Queue Locked"


class TestStudentCommands:
    async def test_join_and_leave(self, bot: TutorQueueBot, seeded: AsyncEngine) -> None:
        join = make_interaction(user_id=1)
        await bot._handle_join(join, None)
        embed = sent_embed(join)
        assert embed.title == "Joined Queue: alpha"
        assert embed.fields[0].value == "1"

        leave = make_interaction(user_id=1)
        await bot._handle_leave(leave)
        assert sent_embed(leave).title == "Left Queue"

    async def test_leave_without_queue(self, bot: TutorQueueBot, seeded: AsyncEngine) -> None:
        interaction = make_interaction(user_id=1)
        await bot._handle_leave(interaction)
        assert sent_embed(interaction).description == "You are not in any queue"

    async def test_leave_disconnects_from_waiting_room(
        self, bot: TutorQueueBot, with_waiting_room: AsyncEngine
    ) -> None:
        await bot._handle_join(make_interaction(user_id=1), "alpha")

        leave = make_interaction(user_id=1)
        leave.user.voice = MagicMock(spec=discord.VoiceState)
        leave.user.voice.channel = MagicMock(spec=discord.VoiceChannel)
        leave.user.voice.channel.id = 700
        leave.user.move_to = AsyncMock()
        await bot._handle_leave(leave)

        assert sent_embed(leave).title == "Left Queue"
        leave.user.move_to.assert_awaited_once_with(None, reason="Left the queue")

    async def test_leave_elsewhere_in_voice_stays_connected(
        self, bot: TutorQueueBot, with_waiting_room: AsyncEngine
    ) -> None:
        await bot._handle_join(make_interaction(user_id=1), "alpha")

        leave = make_interaction(user_id=1)
        leave.user.voice = MagicMock(spec=discord.VoiceState)
        leave.user.voice.channel = MagicMock(spec=discord.VoiceChannel)
        leave.user.voice.channel.id = 701
        leave.user.move_to = AsyncMock()
        await bot._handle_leave(leave)

        assert sent_embed(leave).title == "Left Queue"
        leave.user.move_to.assert_not_awaited()

    async def test_leave_with_several_queues_needs_a_name(
        self, bot: TutorQueueBot, seeded: AsyncEngine
    ) -> None:
        async with get_session(seeded) as session:
            await QueueService(Repository(session)).create_queue(str(GUILD_ID), "beta")
        await bot._handle_join(make_interaction(user_id=1), "alpha")
        await bot._handle_join(make_interaction(user_id=1), "beta")

        ambiguous = make_interaction(user_id=1)
        await bot._handle_leave(ambiguous)
        assert sent_embed(ambiguous).title == ERROR_TITLES[ErrorKind.AMBIGUOUS_QUEUE]

        named = make_interaction(user_id=1)
        await bot._handle_leave(named, "beta")
        assert sent_embed(named).description == "You have left the queue **beta**."

        async with get_session(seeded) as session:
            queues = QueueService(Repository(session))
            remaining = await queues.get_queues_by_user(str(GUILD_ID), "1")
        assert [queue.name for queue in remaining] == ["alpha"]

    async def test_leave_named_queue_not_joined(
        self, bot: TutorQueueBot, seeded: AsyncEngine
    ) -> None:
        interaction = make_interaction(user_id=1)
        await bot._handle_leave(interaction, "alpha")
        assert sent_embed(interaction).title == ERROR_TITLES[ErrorKind.NOT_IN_QUEUE]

    async def test_join_locked_queue(self, bot: TutorQueueBot, seeded: AsyncEngine) -> None:
        async with get_session(seeded) as session:
            await QueueStateService(Repository(session)).lock_queue(str(GUILD_ID), "alpha")

        interaction = make_interaction(user_id=1)
        await bot._handle_join(interaction, "alpha")
        embed = sent_embed(interaction)
        assert embed.title == ERROR_TITLES[ErrorKind.QUEUE_LOCKED]
        assert embed.description == str(QueueLockedError("alpha"))


class TestTutorCommands:
    async def test_next_requires_tutor_role(self, bot: TutorQueueBot, seeded: AsyncEngine) -> None:
        interaction = make_interaction(user_id=50)
        await bot._handle_next(interaction)
        assert sent_embed(interaction).title == ERROR_TITLES[ErrorKind.MISSING_ROLE]

    async def test_session_flow(self, bot: TutorQueueBot, seeded: AsyncEngine) -> None:
        await bot._handle_join(make_interaction(user_id=1), "alpha")

        start = make_interaction(user_id=50, admin=True)
        await bot._handle_session_start(start, "alpha")
        assert sent_embed(start).title == "Session Started"

        nxt = make_interaction(user_id=50, admin=True)
        with patch("tutorqueue.discord.bot.send_dm", new_callable=AsyncMock) as mock_dm:
            await bot._handle_next(nxt)
        assert sent_embed(nxt).description == "Your next student is <@1>."
        mock_dm.assert_awaited_once()
        assert mock_dm.call_args.args[1] == "1"

        end = make_interaction(user_id=50, admin=True)
        await bot._handle_session_end(end)
        assert sent_embed(end).title == "Session Ended"


class TestTerminate:
    async def test_terminate_all_without_sessions(
        self, bot: TutorQueueBot, seeded: AsyncEngine
    ) -> None:
        interaction = make_interaction(admin=True)
        await bot._handle_terminate(interaction, None)
        assert sent_embed(interaction).description == "No active sessions found on this server."

    async def test_terminate_all_counts_sessions(
        self, bot: TutorQueueBot, seeded: AsyncEngine
    ) -> None:
        async with get_session(seeded) as session:
            queues = QueueService(Repository(session))
            await queues.create_session(str(GUILD_ID), "alpha", "t1")
            await queues.create_session(str(GUILD_ID), "alpha", "t2")

        interaction = make_interaction(admin=True)
        await bot._handle_terminate(interaction, None)
        assert (
            sent_embed(interaction).description
            == "Successfully terminated **2** session(s) on this server."
        )

    async def test_terminate_one_tutor(self, bot: TutorQueueBot, seeded: AsyncEngine) -> None:
        async with get_session(seeded) as session:
            await QueueService(Repository(session)).create_session(str(GUILD_ID), "alpha", "77")

        tutor = MagicMock(spec=discord.Member)
        tutor.id = 77
        interaction = make_interaction(admin=True)
        await bot._handle_terminate(interaction, tutor)
        assert (
            sent_embed(interaction).description
            == "Successfully terminated **1** session(s) for <@77>."
        )

    async def test_terminate_all_logs_each_session(
        self, bot: TutorQueueBot, with_waiting_room: AsyncEngine
    ) -> None:
        async with get_session(with_waiting_room) as session:
            queues = QueueService(Repository(session))
            await queues.create_session(str(GUILD_ID), "alpha", "t1")
            await queues.create_session(str(GUILD_ID), "alpha", "t2")

        channel = AsyncMock(spec=discord.TextChannel)
        with patch.object(TutorQueueBot, "get_channel", return_value=channel) as get_channel:
            await bot._handle_terminate(make_interaction(admin=True), None)

        get_channel.assert_called_with(900)
        posted = sorted(call.args[0] for call in channel.send.await_args_list)
        assert posted == [
            "Session for <@t1> was forcefully terminated by admin (Terminate All).",
            "Session for <@t2> was forcefully terminated by admin (Terminate All).",
        ]

    async def test_terminate_one_tutor_logs_session(
        self, bot: TutorQueueBot, with_waiting_room: AsyncEngine
    ) -> None:
        async with get_session(with_waiting_room) as session:
            await QueueService(Repository(session)).create_session(str(GUILD_ID), "alpha", "77")

        tutor = MagicMock(spec=discord.Member)
        tutor.id = 77
        channel = AsyncMock(spec=discord.TextChannel)
        with patch.object(TutorQueueBot, "get_channel", return_value=channel):
            await bot._handle_terminate(make_interaction(admin=True), tutor)

        channel.send.assert_awaited_once_with(
            "Session for <@77> was forcefully terminated by admin."
        )


class TestScheduleAnnouncements:
    async def test_posts_to_public_log(self, bot: TutorQueueBot, seeded: AsyncEngine) -> None:
        async with get_session(seeded) as session:
            await QueueService(Repository(session)).set_public_log_channel(
                str(GUILD_ID), "alpha", "555"
            )

        channel = AsyncMock(spec=discord.TextChannel)
        with patch.object(TutorQueueBot, "get_channel", return_value=channel):
            await bot.announce_schedule_changes(
                [ScheduleChange(guild_id=str(GUILD_ID), queue_name="alpha", action="unlocked")]
            )
        channel.send.assert_awaited_once_with("Queue **alpha** is now opened.")

    async def test_scheduled_lock_denies_waiting_room_connect(
        self, bot: TutorQueueBot, with_waiting_room: AsyncEngine
    ) -> None:
        guild = MagicMock(spec=discord.Guild)
        waiting_room = make_waiting_room(guild)
        log_channel = AsyncMock(spec=discord.TextChannel)
        with (
            patch.object(TutorQueueBot, "get_guild", return_value=guild) as get_guild,
            patch.object(TutorQueueBot, "get_channel", return_value=log_channel),
        ):
            await bot.announce_schedule_changes(
                [ScheduleChange(guild_id=str(GUILD_ID), queue_name="alpha", action="locked")]
            )

        get_guild.assert_called_once_with(GUILD_ID)
        waiting_room.set_permissions.assert_awaited_once()
        assert waiting_room.set_permissions.call_args.kwargs["overwrite"].connect is False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestSendDm:
    async def test_forbidden_returns_false(self) -> None:
        user = AsyncMock()
        user.send.side_effect = discord.Forbidden(MagicMock(status=403), "Cannot send")
        client = MagicMock()
        client.get_user.return_value = user
        assert await send_dm(client, "42", "hello") is False

    async def test_sends_embed(self) -> None:
        user = AsyncMock()
        client = MagicMock()
        client.get_user.return_value = user
        embed = discord.Embed(title="Hi")
        assert await send_dm(client, 42, embed) is True
        user.send.assert_awaited_once_with(embed=embed)


class TestStartDiscordBot:
    async def test_start_returns_bot(self, settings_discord_enabled: Settings) -> None:
        with patch.object(TutorQueueBot, "start", new_callable=AsyncMock) as mock_start:
            bot = await start_discord_bot(settings_discord_enabled)
            assert isinstance(bot, TutorQueueBot)
            # Give the task a moment to start
            await asyncio.sleep(0.05)
            mock_start.assert_called_once_with("test-token-not-real")
            await bot.close()

    async def test_missing_token_raises(self) -> None:
        settings = Settings(discord_bot_token="", discord_enabled=True, token_secret="x")
        with (
            patch.object(TutorQueueBot, "start", new_callable=AsyncMock) as mock_start,
            pytest.raises(MissingBotTokenError),
        ):
            await start_discord_bot(settings)
        mock_start.assert_not_called()


# ---------------------------------------------------------------------------
# Embed builders
# ---------------------------------------------------------------------------


class TestEmbeds:
    def test_error_embed_title_from_kind(self) -> None:
        embed = build_error_embed(QueueLockedError("alpha"))
        assert embed.title == "Queue Locked"
        assert embed.description == 'Queue "alpha" is locked'

    def test_summary_without_description(self) -> None:
        summary = QueueSummary(id="q1", guild_id="g1", name="alpha", is_locked=True)
        embed = build_queue_summary_embed(summary)
        assert embed.description == "No description."
        assert embed.footer.text == "Queue ID: q1"
        assert {f.name: f.value for f in embed.fields}["Locked"] == "Yes"

    def test_schedule_embed(self) -> None:
        entries = [ScheduleEntry(day_of_week=1, start_time="09:00", end_time="12:00")]
        embed = build_schedule_embed("alpha", entries, schedule_enabled=True, shift_minutes=15)
        assert "Auto-lock is **enabled**." in embed.description
        assert "**Monday**: 09:00 - 12:00" in embed.description
        assert "15 minute(s) earlier" in embed.description

    def test_empty_schedule(self) -> None:
        embed = build_schedule_embed("alpha", [], schedule_enabled=False)
        assert "No schedules configured" in embed.description

"""Discord bot for TutorQueue.

Runs alongside FastAPI using the same event loop. Slash commands manage
queues, tutor sessions, schedules, role mappings and member verification.
Gateway events keep the guild table in sync, restore roles of returning
members and move members in and out of queues through waiting rooms.

The bot is optional: if DISCORD_BOT_TOKEN is not set, nothing starts.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, TypeVar

import discord
from discord import Intents, app_commands
from discord.ext import commands
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from tutorqueue.core.errors import (
    MissingBotTokenError,
    MissingRoleError,
    NoActiveSessionError,
    TutorQueueError,
)
from tutorqueue.core.guilds import GuildService, LiveGuild
from tutorqueue.core.queues import QueueService, QueueStateService
from tutorqueue.core.users import UserService
from tutorqueue.db.models import InternalRole
from tutorqueue.discord.embeds import (
    build_error_embed,
    build_join_embed,
    build_queue_list_embed,
    build_queue_members_embed,
    build_queue_summary_embed,
    build_role_summary_embed,
    build_schedule_embed,
    build_sessions_embed,
    build_success_embed,
    build_token_embed,
    build_user_embed,
    build_verified_embed,
    build_welcome_embed,
)
from tutorqueue.discord.helpers import db_session, send_dm
from tutorqueue.discord.messages import DB_UNAVAILABLE, GENERIC_ERROR

if TYPE_CHECKING:
    from tutorqueue.config import Settings
    from tutorqueue.db.repository import Repository
    from tutorqueue.models.queue import EndedSession, ScheduleChange

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLE_CHOICES = [app_commands.Choice(name=role.value, value=role.value) for role in InternalRole]
ID_TYPE_CHOICES = [
    app_commands.Choice(name="Discord", value="discord"),
    app_commands.Choice(name="TU ID", value="tu"),
    app_commands.Choice(name="Moodle ID", value="moodle"),
]
DEFAULT_LIST_LIMIT = 5


class TutorQueueBot(commands.Bot):
    """The TutorQueue Discord bot.

    Runs in-process with FastAPI. Every command opens one database session
    through ``db_session`` and delegates to the core services.
    """

    def __init__(self, settings: Settings, engine: AsyncEngine | None = None) -> None:
        intents = Intents.default()
        intents.members = True  # Needed to restore roles on rejoin
        intents.message_content = True  # Tokens can be pasted into a DM
        intents.voice_states = True

        super().__init__(
            command_prefix="!",
            intents=intents,
            description="TutorQueue -- tutoring queues, sessions and verification.",
        )
        self.settings = settings
        self.engine = engine
        self._setup_done: bool = False
        self._setup_commands()

    # --- Service factories ---

    def _queues(self, repo: Repository) -> QueueService:
        return QueueService(repo, grace_seconds=self.settings.tutorqueue_rejoin_grace_seconds)

    def _state(self, repo: Repository) -> QueueStateService:
        return QueueStateService(repo, timezone=self.settings.timezone)

    def _users(self, repo: Repository) -> UserService:
        return UserService(repo, self.settings.token_secret)

    # --- Command registration ---

    def _setup_commands(self) -> None:
        """Register slash command groups on the bot's command tree."""
        admin = app_commands.Group(
            name="admin",
            description="Admin commands",
            guild_only=True,
            default_permissions=discord.Permissions(administrator=True),
        )
        admin_queue = app_commands.Group(
            name="queue", description="Queue management commands", parent=admin
        )
        admin_schedule = app_commands.Group(
            name="queue-schedule", description="Queue opening hours", parent=admin
        )
        admin_session = app_commands.Group(
            name="session", description="Tutor session management", parent=admin
        )
        admin_role = app_commands.Group(name="role", description="Role mappings", parent=admin)
        admin_user = app_commands.Group(
            name="user", description="Verified user lookups", parent=admin
        )
        queue = app_commands.Group(name="queue", description="Queue commands", guild_only=True)
        tutor = app_commands.Group(name="tutor", description="Tutor commands", guild_only=True)
        tutor_session = app_commands.Group(
            name="session", description="Tutor session commands", parent=tutor
        )
        tutor_queue = app_commands.Group(
            name="queue", description="Tutor queue commands", parent=tutor
        )

        # /admin queue ...

        @admin_queue.command(name="create", description="Create a new queue")
        @app_commands.describe(name="The name of the queue", description="What the queue is for")
        async def queue_create(
            interaction: discord.Interaction, name: str, description: str = ""
        ) -> None:
            await self._handle_queue_create(interaction, name, description)

        @admin_queue.command(name="delete", description="Delete a queue")
        @app_commands.describe(name="The name of the queue")
        async def queue_delete(interaction: discord.Interaction, name: str) -> None:
            await self._handle_queue_delete(interaction, name)

        @admin_queue.command(name="list", description="List users in a queue")
        @app_commands.describe(name="Name of the queue", max_entries="Max number of users to show")
        async def queue_list(
            interaction: discord.Interaction, name: str, max_entries: int = DEFAULT_LIST_LIMIT
        ) -> None:
            await self._handle_queue_members(interaction, name, max_entries)

        @admin_queue.command(name="summary", description="Show a queue's state")
        @app_commands.describe(name="Name of the queue (omit to list all queues)")
        async def queue_summary(interaction: discord.Interaction, name: str | None = None) -> None:
            await self._handle_queue_summary(interaction, name)

        @admin_queue.command(name="lock", description="Lock a queue and disable its schedule")
        @app_commands.describe(name="The name of the queue to lock")
        async def queue_lock(interaction: discord.Interaction, name: str) -> None:
            await self._handle_queue_lock(interaction, name, locked=True)

        @admin_queue.command(name="unlock", description="Unlock a queue and disable its schedule")
        @app_commands.describe(name="The name of the queue to unlock")
        async def queue_unlock(interaction: discord.Interaction, name: str) -> None:
            await self._handle_queue_lock(interaction, name, locked=False)

        @admin_queue.command(name="auto-lock", description="Lock and unlock a queue by schedule")
        @app_commands.describe(name="The name of the queue", enabled="Follow the schedule")
        async def queue_auto_lock(
            interaction: discord.Interaction, name: str, enabled: bool = True
        ) -> None:
            await self._handle_auto_lock(interaction, name, enabled)

        @admin_queue.command(name="waiting-room", description="Set a queue's waiting room")
        @app_commands.describe(name="The name of the queue", channel="Voice channel to wait in")
        async def queue_waiting_room(
            interaction: discord.Interaction, name: str, channel: discord.VoiceChannel
        ) -> None:
            await self._handle_queue_channel(interaction, name, "waiting_room", channel)

        @admin_queue.command(name="log-channel-public", description="Set the public log channel")
        @app_commands.describe(name="The name of the queue", channel="Channel for public logs")
        async def queue_public_log(
            interaction: discord.Interaction, name: str, channel: discord.TextChannel
        ) -> None:
            await self._handle_queue_channel(interaction, name, "public_log", channel)

        @admin_queue.command(name="log-channel-private", description="Set the private log channel")
        @app_commands.describe(name="The name of the queue", channel="Channel for tutor logs")
        async def queue_private_log(
            interaction: discord.Interaction, name: str, channel: discord.TextChannel
        ) -> None:
            await self._handle_queue_channel(interaction, name, "private_log", channel)

        # /admin queue-schedule ...

        @admin_schedule.command(name="add", description="Set opening hours for a weekday")
        @app_commands.describe(
            name="The name of the queue",
            day="Day of the week, e.g. Monday",
            start="Opening time (HH:MM)",
            end="Closing time (HH:MM)",
        )
        async def schedule_add(
            interaction: discord.Interaction, name: str, day: str, start: str, end: str
        ) -> None:
            await self._handle_schedule_add(interaction, name, day, start, end)

        @admin_schedule.command(name="remove", description="Remove opening hours for a weekday")
        @app_commands.describe(name="The name of the queue", day="Day of the week")
        async def schedule_remove(interaction: discord.Interaction, name: str, day: str) -> None:
            await self._handle_schedule_remove(interaction, name, day)

        @admin_schedule.command(name="shift", description="Open and close earlier by N minutes")
        @app_commands.describe(name="The name of the queue", minutes="Minutes (negative = later)")
        async def schedule_shift(
            interaction: discord.Interaction, name: str, minutes: int
        ) -> None:
            await self._handle_schedule_shift(interaction, name, minutes)

        @admin_schedule.command(name="summary", description="Show a queue's opening hours")
        @app_commands.describe(name="The name of the queue")
        async def schedule_summary(interaction: discord.Interaction, name: str) -> None:
            await self._handle_schedule_summary(interaction, name)

        # /admin session ...

        @admin_session.command(name="terminate", description="End a tutor's active sessions")
        @app_commands.describe(user="The tutor whose sessions to end")
        async def session_terminate(
            interaction: discord.Interaction, user: discord.Member
        ) -> None:
            await self._handle_terminate(interaction, user)

        @admin_session.command(name="terminate-all", description="End all active sessions")
        async def session_terminate_all(interaction: discord.Interaction) -> None:
            await self._handle_terminate(interaction, None)

        @admin_session.command(name="list", description="List active sessions")
        async def session_list(interaction: discord.Interaction) -> None:
            await self._handle_session_list(interaction)

        # /admin role ...

        @admin_role.command(name="set", description="Map an internal role to a server role")
        @app_commands.describe(role_type="Internal role", role="Server role")
        @app_commands.choices(role_type=ROLE_CHOICES)
        async def role_set(
            interaction: discord.Interaction,
            role_type: app_commands.Choice[str],
            role: discord.Role,
        ) -> None:
            await self._handle_role_set(interaction, InternalRole(role_type.value), role)

        @admin_role.command(name="summary", description="Show role mappings")
        async def role_summary(interaction: discord.Interaction) -> None:
            await self._handle_role_summary(interaction)

        # /admin user ...

        @admin_user.command(name="search", description="Find a verified user")
        @app_commands.describe(id_type="Which ID to search by", value="The ID")
        @app_commands.choices(id_type=ID_TYPE_CHOICES)
        async def user_search(
            interaction: discord.Interaction,
            id_type: app_commands.Choice[str],
            value: str,
        ) -> None:
            await self._handle_user_search(interaction, id_type.value, value)

        @admin_user.command(name="decrypt-token", description="Show a token's contents")
        @app_commands.describe(token="The verification token")
        async def user_decrypt_token(interaction: discord.Interaction, token: str) -> None:
            await self._handle_decrypt_token(interaction, token)

        # /queue ...

        @queue.command(name="join", description="Join a queue")
        @app_commands.describe(name="Name of the queue (optional if there is only one)")
        async def queue_join(interaction: discord.Interaction, name: str | None = None) -> None:
            await self._handle_join(interaction, name)

        @queue.command(name="leave", description="Leave a queue")
        @app_commands.describe(name="Name of the queue (optional if you are in only one)")
        async def queue_leave(interaction: discord.Interaction, name: str | None = None) -> None:
            await self._handle_leave(interaction, name)

        @queue.command(name="summary", description="Show a queue and your position")
        @app_commands.describe(name="Name of the queue (optional if there is only one)")
        async def queue_user_summary(
            interaction: discord.Interaction, name: str | None = None
        ) -> None:
            await self._handle_queue_summary(interaction, name, require_one=True)

        # /tutor ...

        @tutor_session.command(name="start", description="Start a tutoring session on a queue")
        @app_commands.describe(name="Name of the queue (optional if there is only one)")
        async def tutor_session_start(
            interaction: discord.Interaction, name: str | None = None
        ) -> None:
            await self._handle_session_start(interaction, name)

        @tutor_session.command(name="end", description="End your tutoring session")
        async def tutor_session_end(interaction: discord.Interaction) -> None:
            await self._handle_session_end(interaction)

        @tutor_queue.command(name="next", description="Take the next student from your queue")
        async def tutor_queue_next(interaction: discord.Interaction) -> None:
            await self._handle_next(interaction)

        @tutor_queue.command(name="list", description="List students waiting in your queue")
        @app_commands.describe(max_entries="Max number of users to show")
        async def tutor_queue_list(
            interaction: discord.Interaction, max_entries: int = DEFAULT_LIST_LIMIT
        ) -> None:
            await self._handle_tutor_list(interaction, max_entries)

        # /verify

        @self.tree.command(name="verify", description="Verify your account with a token")
        @app_commands.describe(token="Your verification token")
        @app_commands.guild_only()
        async def verify_command(interaction: discord.Interaction, token: str) -> None:
            await self._handle_verify(interaction, token)

        async def _queue_autocomplete(
            interaction: discord.Interaction,
            current: str,
        ) -> list[app_commands.Choice[str]]:
            return await self._autocomplete_queues(interaction, current)

        for command in (
            queue_join,
            queue_leave,
            queue_user_summary,
            tutor_session_start,
            queue_delete,
            queue_list,
            queue_summary,
            queue_lock,
            queue_unlock,
            queue_auto_lock,
            schedule_add,
            schedule_remove,
            schedule_shift,
            schedule_summary,
        ):
            command.autocomplete("name")(_queue_autocomplete)

        for group in (admin, queue, tutor):
            self.tree.add_command(group)

    async def _autocomplete_queues(
        self, interaction: discord.Interaction, current: str
    ) -> list[app_commands.Choice[str]]:
        if not self.engine or interaction.guild_id is None:
            return []
        try:
            async with db_session(self.engine) as repo:
                queues = await repo.get_queues_for_guild(str(interaction.guild_id))
        except SQLAlchemyError:
            logger.exception("discord_autocomplete_queues_error")
            return []
        needle = current.lower()
        return [
            app_commands.Choice(name=q.name, value=q.name)
            for q in queues
            if needle in q.name.lower()
        ][:25]

    # --- Lifecycle ---

    async def setup_hook(self) -> None:
        """Called when the bot is ready to start. Syncs slash commands."""
        if self.settings.discord_guild_id:
            guild = discord.Object(id=int(self.settings.discord_guild_id))
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            logger.info("discord_commands_synced guild_id=%s", self.settings.discord_guild_id)
        else:
            await self.tree.sync()
            logger.info("discord_commands_synced globally")

    async def on_ready(self) -> None:
        """Called when the bot has connected to Discord.

        on_ready fires on every reconnect, not just the first connection.
        Guard the guild sync to run only once.
        """
        user = self.user
        logger.info("discord_bot_ready user=%s", user.name if user else "unknown")
        if self._setup_done or not self.engine:
            return
        live = [LiveGuild(str(g.id), g.name, g.member_count or 0) for g in self.guilds]
        try:
            async with db_session(self.engine) as repo:
                await GuildService(repo).sync_guilds(live)
        except SQLAlchemyError:
            logger.exception("discord_guild_sync_error")
            return
        self._setup_done = True

    async def on_guild_join(self, guild: discord.Guild) -> None:
        if not self.engine:
            return
        try:
            async with db_session(self.engine) as repo:
                await GuildService(repo).add_guild(str(guild.id), guild.name, guild.member_count or 0)
        except SQLAlchemyError:
            logger.exception("discord_guild_join_error guild=%s", guild.id)

    async def on_member_join(self, member: discord.Member) -> None:
        """Restore saved roles of a returning member and send the welcome DM."""
        if member.bot or not self.engine:
            return
        guild_id = str(member.guild.id)
        try:
            async with db_session(self.engine) as repo:
                roles = await self._users(repo).get_user_roles(guild_id, str(member.id))
                title, text = await GuildService(repo).get_welcome(guild_id)
                restored = await self._apply_roles(repo, member, roles)
        except SQLAlchemyError:
            logger.exception("discord_member_join_error guild=%s user=%s", guild_id, member.id)
            return
        if restored:
            logger.info("roles_reapplied guild=%s user=%s roles=%s", guild_id, member.id, restored)
        await send_dm(self, member.id, build_welcome_embed(member.guild.name, title, text))

    async def on_message(self, message: discord.Message) -> None:
        """Treat a DM to the bot as a verification token."""
        if message.author.bot or message.guild is not None or not self.engine:
            return
        token = message.content.strip()
        if not token:
            return
        try:
            async with db_session(self.engine) as repo:
                users = self._users(repo)
                data = users.decode_token(token)
                guild = self.get_guild(int(data.server_id))
                if guild is None:
                    await message.channel.send(
                        embed=build_error_embed(
                            "The server for this token could not be found.", "Server Not Found"
                        )
                    )
                    return
                member = guild.get_member(message.author.id)
                if member is None:
                    await message.channel.send(
                        embed=build_error_embed(
                            f"You are not a member of **{guild.name}**. "
                            "Please join the server first, then verify.",
                            "Verification Failed",
                        )
                    )
                    return
                roles = await users.verify_user(str(guild.id), str(member.id), token)
                names = await self._apply_roles(repo, member, roles)
        except TutorQueueError as exc:
            await message.channel.send(embed=build_error_embed(exc))
            return
        except SQLAlchemyError:
            logger.exception("discord_dm_verify_error user=%s", message.author.id)
            await message.channel.send(embed=build_error_embed(GENERIC_ERROR))
            return
        await message.channel.send(embed=build_verified_embed(names, guild.name))

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        """Join or leave a queue by entering or leaving its waiting room."""
        if member.bot or not self.engine or before.channel == after.channel:
            return
        guild_id = str(member.guild.id)
        user_id = str(member.id)
        # Leave and join commit separately so a refused join keeps the leave.
        try:
            if before.channel is not None:
                async with db_session(self.engine) as repo:
                    queues = self._queues(repo)
                    left = await queues.get_queue_by_waiting_room(guild_id, str(before.channel.id))
                    waiting = [q.id for q in await queues.get_queues_by_user(guild_id, user_id)]
                    if left is not None and left.id in waiting:
                        await queues.leave_queue(guild_id, left.name, user_id)
            if after.channel is not None:
                async with db_session(self.engine) as repo:
                    queues = self._queues(repo)
                    joined = await queues.get_queue_by_waiting_room(guild_id, str(after.channel.id))
                    result = (
                        await queues.join_queue(guild_id, joined.name, user_id)
                        if joined is not None
                        else None
                    )
                if result is not None:
                    await send_dm(
                        self,
                        member.id,
                        build_join_embed(result.queue_name, result.position, result.restored),
                    )
        except TutorQueueError as exc:
            logger.info("waiting_room_refused user=%s reason=%s", user_id, exc)
        except SQLAlchemyError:
            logger.exception("discord_voice_state_error guild=%s user=%s", guild_id, user_id)

    async def announce_schedule_changes(self, changes: Iterable[ScheduleChange]) -> None:
        """Post scheduler lock changes to each queue's public log channel."""
        if not self.engine:
            return
        for change in changes:
            try:
                async with db_session(self.engine) as repo:
                    queue = await repo.get_queue_by_name(change.guild_id, change.queue_name)
                    channel_id = queue.public_log_channel_id if queue else None
                    waiting_room_id = queue.waiting_room_id if queue else None
                    role_id = await repo.get_role_mapping(change.guild_id, InternalRole.VERIFIED)
            except SQLAlchemyError:
                logger.exception("schedule_announce_error queue=%s", change.queue_name)
                continue
            await self._set_waiting_room_access(
                self.get_guild(int(change.guild_id)),
                waiting_room_id,
                role_id,
                locked=change.action == "locked",
            )
            verb = "opened" if change.action == "unlocked" else "closed"
            await self._log_to_channel(
                channel_id, f"Queue **{change.queue_name}** is now {verb}."
            )

    # --- Shared plumbing ---

    async def _begin(self, interaction: discord.Interaction, ephemeral: bool = True) -> bool:
        """Defer the interaction. Returns False if the command cannot run."""
        if not self.engine or interaction.guild_id is None:
            await interaction.response.send_message(DB_UNAVAILABLE, ephemeral=True)
            return False
        await interaction.response.defer(ephemeral=ephemeral)
        return True

    async def _with_repo(
        self,
        interaction: discord.Interaction,
        action: Callable[[Repository], Awaitable[T]],
    ) -> T | None:
        """Run ``action`` in one DB session.

        Domain errors and database errors are reported to the user here;
        None means the user has already been told what went wrong.
        """
        if not self.engine:
            await interaction.followup.send(DB_UNAVAILABLE, ephemeral=True)
            return None
        try:
            async with db_session(self.engine) as repo:
                return await action(repo)
        except TutorQueueError as exc:
            await interaction.followup.send(embed=build_error_embed(exc), ephemeral=True)
        except SQLAlchemyError:
            logger.exception(
                "discord_command_db_error command=%s",
                interaction.command.qualified_name if interaction.command else "unknown",
            )
            await interaction.followup.send(embed=build_error_embed(GENERIC_ERROR), ephemeral=True)
        return None

    async def _run(
        self,
        interaction: discord.Interaction,
        action: Callable[[Repository], Awaitable[discord.Embed]],
        ephemeral: bool = True,
    ) -> None:
        """Defer, build an embed inside one DB session, and send it."""
        if not await self._begin(interaction, ephemeral=ephemeral):
            return
        embed = await self._with_repo(interaction, action)
        if embed is not None:
            await interaction.followup.send(embed=embed, ephemeral=ephemeral)

    async def _require_role(
        self, repo: Repository, interaction: discord.Interaction, role_type: InternalRole
    ) -> None:
        """Raise MissingRoleError unless the member holds the mapped role or is an administrator."""
        member = interaction.user
        if not isinstance(member, discord.Member):
            raise MissingRoleError(role_type)
        if member.guild_permissions.administrator:
            return
        role_id = await repo.get_role_mapping(str(member.guild.id), role_type)
        if role_id is None or all(str(role.id) != role_id for role in member.roles):
            raise MissingRoleError(role_type)

    async def _apply_roles(
        self, repo: Repository, member: discord.Member, roles: Iterable[InternalRole]
    ) -> list[str]:
        """Give a member the server roles mapped to ``roles``. Returns their names."""
        mappings = await repo.get_role_mappings(str(member.guild.id))
        to_add = [
            role
            for role_type in roles
            if (role_id := mappings.get(role_type)) is not None
            and (role := member.guild.get_role(int(role_id))) is not None
        ]
        if not to_add:
            return []
        try:
            await member.add_roles(*to_add, reason="TutorQueue verification")
        except (discord.Forbidden, discord.HTTPException) as exc:
            logger.warning("role_assign_failed user=%s err=%s", member.id, exc)
            return []
        return [role.name for role in to_add]

    async def _set_session_role(
        self, guild: discord.Guild, members: Iterable[discord.Member], active: bool
    ) -> None:
        """Add or remove the active-session role on tutors."""
        if not self.engine:
            return
        async with db_session(self.engine) as repo:
            role_id = await repo.get_role_mapping(str(guild.id), InternalRole.ACTIVE_SESSION)
        role = guild.get_role(int(role_id)) if role_id else None
        if role is None:
            return
        for member in members:
            try:
                if active:
                    await member.add_roles(role, reason="Tutor session started")
                else:
                    await member.remove_roles(role, reason="Tutor session ended")
            except (discord.Forbidden, discord.HTTPException) as exc:
                logger.warning("session_role_update_failed user=%s err=%s", member.id, exc)

    async def _set_waiting_room_access(
        self,
        guild: discord.Guild | None,
        waiting_room_id: str | None,
        verified_role_id: str | None,
        locked: bool,
    ) -> None:
        """Deny or restore Connect on a queue's waiting room for the verified role."""
        if guild is None or not waiting_room_id or not verified_role_id:
            return
        channel = guild.get_channel(int(waiting_room_id))
        role = guild.get_role(int(verified_role_id))
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)) or role is None:
            return
        overwrite = channel.overwrites_for(role)
        overwrite.connect = not locked
        try:
            await channel.set_permissions(
                role, overwrite=overwrite, reason="Queue locked" if locked else "Queue unlocked"
            )
        except (discord.Forbidden, discord.HTTPException) as exc:
            logger.warning("waiting_room_access_failed channel=%s err=%s", waiting_room_id, exc)

    async def _disconnect_from_waiting_room(
        self, member: discord.User | discord.Member, waiting_room_id: str | None
    ) -> None:
        """Drop a member out of the waiting room voice channel after they leave its queue."""
        if not waiting_room_id or not isinstance(member, discord.Member):
            return
        channel = member.voice.channel if member.voice else None
        if channel is None or str(channel.id) != waiting_room_id:
            return
        try:
            await member.move_to(None, reason="Left the queue")
        except (discord.Forbidden, discord.HTTPException) as exc:
            logger.warning("waiting_room_disconnect_failed user=%s err=%s", member.id, exc)

    async def _log_to_channel(self, channel_id: str | None, content: str) -> None:
        """Post to a queue log channel. Failures are logged and dropped."""
        if not channel_id:
            return
        try:
            channel = self.get_channel(int(channel_id)) or await self.fetch_channel(int(channel_id))
            if isinstance(channel, discord.abc.Messageable):
                await channel.send(content)
        except (discord.Forbidden, discord.NotFound, discord.HTTPException) as exc:
            logger.warning("queue_log_failed channel=%s err=%s", channel_id, exc)

    # --- Admin: queues ---

    async def _handle_queue_create(
        self, interaction: discord.Interaction, name: str, description: str
    ) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            if interaction.guild is not None:
                await GuildService(repo).add_guild(
                    guild_id, interaction.guild.name, interaction.guild.member_count or 0
                )
            await self._queues(repo).create_queue(guild_id, name, description)
            return build_success_embed("Queue Created", f"**{name}**\n{description}".strip())

        await self._run(interaction, action)

    async def _handle_queue_delete(self, interaction: discord.Interaction, name: str) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            if not await self._queues(repo).delete_queue(guild_id, name):
                return build_error_embed(f'Queue "{name}" not found', "Queue Not Found")
            return build_success_embed("Queue Deleted", f"Queue **{name}** has been deleted.")

        await self._run(interaction, action)

    async def _handle_queue_members(
        self, interaction: discord.Interaction, name: str, limit: int
    ) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            queues = self._queues(repo)
            members = await queues.get_queue_members(guild_id, name, limit=max(limit, 1))
            queue = await queues.resolve_queue(guild_id, name)
            total = await repo.count_waiting_members(queue.id)
            return build_queue_members_embed(queue.name, members, total)

        await self._run(interaction, action)

    async def _handle_queue_summary(
        self,
        interaction: discord.Interaction,
        name: str | None,
        require_one: bool = False,
    ) -> None:
        """Summarize one queue, or list all of them when no name is given."""
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            if name is None and not require_one:
                return build_queue_list_embed(await self._queues(repo).list_queues(guild_id))
            queue = await self._queues(repo).resolve_queue(guild_id, name)
            summary = await self._state(repo).get_queue_summary(guild_id, queue.name)
            embed = build_queue_summary_embed(summary)
            position = await repo.get_member_position(queue.id, str(interaction.user.id))
            if require_one and position is not None:
                embed.add_field(name="Your Position", value=str(position), inline=True)
            return embed

        await self._run(interaction, action)

    async def _handle_queue_lock(
        self, interaction: discord.Interaction, name: str, locked: bool
    ) -> None:
        if not await self._begin(interaction):
            return
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> tuple[str | None, str | None]:
            state = self._state(repo)
            if locked:
                await state.lock_queue(guild_id, name)
            else:
                await state.unlock_queue(guild_id, name)
            queue = await repo.get_queue_by_name(guild_id, name)
            role_id = await repo.get_role_mapping(guild_id, InternalRole.VERIFIED)
            return (queue.waiting_room_id if queue else None), role_id

        outcome = await self._with_repo(interaction, action)
        if outcome is None:
            return
        waiting_room_id, role_id = outcome
        await self._set_waiting_room_access(interaction.guild, waiting_room_id, role_id, locked)
        if locked:
            embed = build_success_embed("Queue Locked", f"Queue **{name}** has been locked.")
        else:
            embed = build_success_embed("Queue Unlocked", f"Queue **{name}** has been unlocked.")
        await interaction.followup.send(embed=embed, ephemeral=True)

    async def _handle_auto_lock(
        self, interaction: discord.Interaction, name: str, enabled: bool
    ) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            await self._state(repo).set_schedule_enabled(guild_id, name, enabled)
            if enabled:
                return build_success_embed(
                    "Auto Mode Enabled", f"Enabled automatic scheduling for queue **{name}**."
                )
            return build_success_embed(
                "Auto Mode Disabled", f"Disabled automatic scheduling for queue **{name}**."
            )

        await self._run(interaction, action)

    async def _handle_queue_channel(
        self,
        interaction: discord.Interaction,
        name: str,
        kind: str,
        channel: discord.abc.GuildChannel,
    ) -> None:
        guild_id = str(interaction.guild_id)
        channel_id = str(channel.id)

        async def action(repo: Repository) -> discord.Embed:
            queues = self._queues(repo)
            if kind == "waiting_room":
                await queues.set_waiting_room(guild_id, name, channel_id)
                title = "Waiting Room Set"
            elif kind == "public_log":
                await queues.set_public_log_channel(guild_id, name, channel_id)
                title = "Public Log Channel Set"
            else:
                await queues.set_private_log_channel(guild_id, name, channel_id)
                title = "Private Log Channel Set"
            return build_success_embed(title, f"Queue **{name}** now uses <#{channel_id}>.")

        await self._run(interaction, action)

    # --- Admin: schedules ---

    async def _handle_schedule_add(
        self, interaction: discord.Interaction, name: str, day: str, start: str, end: str
    ) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            await self._queues(repo).add_schedule(guild_id, name, day, start, end)
            return build_success_embed(
                "Schedule Added",
                f"Queue **{name}** is open on **{day.capitalize()}** from {start} to {end}.",
            )

        await self._run(interaction, action)

    async def _handle_schedule_remove(
        self, interaction: discord.Interaction, name: str, day: str
    ) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            if not await self._queues(repo).remove_schedule(guild_id, name, day):
                return build_error_embed(
                    f"Queue **{name}** has no schedule on **{day.capitalize()}**.", "Schedule"
                )
            return build_success_embed(
                "Schedule Removed",
                f"Removed schedule for queue **{name}** on **{day.capitalize()}**.",
            )

        await self._run(interaction, action)

    async def _handle_schedule_shift(
        self, interaction: discord.Interaction, name: str, minutes: int
    ) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            await self._queues(repo).set_schedule_shift(guild_id, name, minutes)
            return build_success_embed(
                "Schedule Shift Set", f"Schedule for queue **{name}** shifted by {minutes} minutes."
            )

        await self._run(interaction, action)

    async def _handle_schedule_summary(self, interaction: discord.Interaction, name: str) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            queues = self._queues(repo)
            entries = await queues.get_schedules(guild_id, name)
            queue = await queues.resolve_queue(guild_id, name)
            return build_schedule_embed(
                queue.name, entries, queue.schedule_enabled, queue.schedule_shift_minutes
            )

        await self._run(interaction, action)

    # --- Admin: sessions ---

    async def _handle_terminate(
        self, interaction: discord.Interaction, user: discord.Member | None
    ) -> None:
        if not await self._begin(interaction):
            return
        guild = interaction.guild
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> list[EndedSession]:
            state = self._state(repo)
            return await state.end_sessions(guild_id, str(user.id) if user is not None else None)

        ended = await self._with_repo(interaction, action)
        if ended is None:
            return
        count = len(ended)
        suffix = " (Terminate All)" if user is None else ""
        for session in ended:
            await self._log_to_channel(
                session.private_log_channel_id,
                f"Session for <@{session.tutor_id}> was forcefully terminated by admin{suffix}.",
            )

        if user is None:
            if count == 0:
                embed = build_success_embed(
                    "Terminate All Sessions", "No active sessions found on this server."
                )
            else:
                embed = build_success_embed(
                    "Terminate All Sessions",
                    f"Successfully terminated **{count}** session(s) on this server.",
                )
        elif count == 0:
            embed = build_success_embed(
                "Terminate Session", f"No active sessions found for <@{user.id}>."
            )
        else:
            embed = build_success_embed(
                "Terminate Session",
                f"Successfully terminated **{count}** session(s) for <@{user.id}>.",
            )

        if count and guild is not None:
            await self._clear_session_roles(guild, user)
        await interaction.followup.send(embed=embed, ephemeral=True)

    async def _clear_session_roles(
        self, guild: discord.Guild, user: discord.Member | None
    ) -> None:
        if user is not None:
            await self._set_session_role(guild, [user], active=False)
            return
        if not self.engine:
            return
        async with db_session(self.engine) as repo:
            role_id = await repo.get_role_mapping(str(guild.id), InternalRole.ACTIVE_SESSION)
        role = guild.get_role(int(role_id)) if role_id else None
        if role is not None:
            await self._set_session_role(guild, list(role.members), active=False)

    async def _handle_session_list(self, interaction: discord.Interaction) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            return build_sessions_embed(await self._queues(repo).get_all_active_sessions(guild_id))

        await self._run(interaction, action)

    # --- Admin: roles and users ---

    async def _handle_role_set(
        self, interaction: discord.Interaction, role_type: InternalRole, role: discord.Role
    ) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            guilds = GuildService(repo)
            if interaction.guild is not None:
                await guilds.add_guild(
                    guild_id, interaction.guild.name, interaction.guild.member_count or 0
                )
            await guilds.set_role(guild_id, role_type, str(role.id))
            return build_success_embed(
                "Role Mapping Updated", f"Internal role **{role_type}** is now <@&{role.id}>."
            )

        await self._run(interaction, action)

    async def _handle_role_summary(self, interaction: discord.Interaction) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            return build_role_summary_embed(await GuildService(repo).get_all_roles(guild_id))

        await self._run(interaction, action)

    async def _handle_user_search(
        self, interaction: discord.Interaction, id_type: str, value: str
    ) -> None:
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> discord.Embed:
            user = await self._users(repo).search_user(guild_id, id_type, value)  # type: ignore[arg-type]
            return build_user_embed(user)

        await self._run(interaction, action)

    async def _handle_decrypt_token(self, interaction: discord.Interaction, token: str) -> None:
        async def action(repo: Repository) -> discord.Embed:
            return build_token_embed(self._users(repo).decode_token(token))

        await self._run(interaction, action)

    # --- Students ---

    async def _handle_join(self, interaction: discord.Interaction, name: str | None) -> None:
        if not await self._begin(interaction):
            return
        guild_id = str(interaction.guild_id)
        user_id = str(interaction.user.id)

        async def action(repo: Repository) -> tuple[discord.Embed, str | None]:
            queues = self._queues(repo)
            queue = await queues.resolve_queue(guild_id, name)
            result = await queues.join_queue(guild_id, queue.name, user_id)
            embed = build_join_embed(result.queue_name, result.position, result.restored)
            return embed, queue.private_log_channel_id

        outcome = await self._with_repo(interaction, action)
        if outcome is None:
            return
        embed, log_channel = outcome
        await interaction.followup.send(embed=embed, ephemeral=True)
        await self._log_to_channel(log_channel, f"<@{user_id}> joined the queue.")

    async def _handle_leave(self, interaction: discord.Interaction, name: str | None = None) -> None:
        if not await self._begin(interaction):
            return
        guild_id = str(interaction.guild_id)
        user_id = str(interaction.user.id)

        async def action(repo: Repository) -> tuple[str, str | None, str | None]:
            queues = self._queues(repo)
            queue = await queues.resolve_membership(guild_id, user_id, name)
            await queues.leave_queue(guild_id, queue.name, user_id)
            return queue.name, queue.private_log_channel_id, queue.waiting_room_id

        outcome = await self._with_repo(interaction, action)
        if outcome is None:
            return
        queue_name, log_channel, waiting_room_id = outcome
        await self._disconnect_from_waiting_room(interaction.user, waiting_room_id)
        await interaction.followup.send(
            embed=build_success_embed("Left Queue", f"You have left the queue **{queue_name}**."),
            ephemeral=True,
        )
        await self._log_to_channel(log_channel, f"<@{user_id}> left the queue.")

    async def _handle_verify(self, interaction: discord.Interaction, token: str) -> None:
        if not await self._begin(interaction):
            return
        member = interaction.user
        guild_id = str(interaction.guild_id)

        async def action(repo: Repository) -> list[str]:
            roles = await self._users(repo).verify_user(guild_id, str(member.id), token)
            if isinstance(member, discord.Member):
                return await self._apply_roles(repo, member, roles)
            return []

        names = await self._with_repo(interaction, action)
        if names is not None:
            await interaction.followup.send(embed=build_verified_embed(names), ephemeral=True)

    # --- Tutors ---

    async def _handle_session_start(
        self, interaction: discord.Interaction, name: str | None
    ) -> None:
        if not await self._begin(interaction):
            return
        guild_id = str(interaction.guild_id)
        tutor_id = str(interaction.user.id)

        async def action(repo: Repository) -> tuple[str, str | None]:
            await self._require_role(repo, interaction, InternalRole.TUTOR)
            queues = self._queues(repo)
            queue = await queues.resolve_queue(guild_id, name)
            await queues.create_session(guild_id, queue.name, tutor_id)
            return queue.name, queue.private_log_channel_id

        outcome = await self._with_repo(interaction, action)
        if outcome is None:
            return
        queue_name, log_channel = outcome
        if interaction.guild is not None and isinstance(interaction.user, discord.Member):
            await self._set_session_role(interaction.guild, [interaction.user], active=True)
        await interaction.followup.send(
            embed=build_success_embed(
                "Session Started", f"You started a session on queue **{queue_name}**."
            ),
            ephemeral=True,
        )
        await self._log_to_channel(log_channel, f"<@{tutor_id}> started a session.")

    async def _handle_session_end(self, interaction: discord.Interaction) -> None:
        if not await self._begin(interaction):
            return
        guild_id = str(interaction.guild_id)
        tutor_id = str(interaction.user.id)

        async def action(repo: Repository) -> tuple[str, str | None]:
            queues = self._queues(repo)
            session = await queues.end_session(guild_id, tutor_id)
            queue = await queues.get_queue_by_id(session.queue_id)
            if queue is None:
                return "", None
            return queue.name, queue.private_log_channel_id

        outcome = await self._with_repo(interaction, action)
        if outcome is None:
            return
        queue_name, log_channel = outcome
        if interaction.guild is not None and isinstance(interaction.user, discord.Member):
            await self._set_session_role(interaction.guild, [interaction.user], active=False)
        await interaction.followup.send(
            embed=build_success_embed(
                "Session Ended", f"Your session on queue **{queue_name}** has ended."
            ),
            ephemeral=True,
        )
        await self._log_to_channel(log_channel, f"<@{tutor_id}> ended their session.")

    async def _handle_next(self, interaction: discord.Interaction) -> None:
        if not await self._begin(interaction):
            return
        guild_id = str(interaction.guild_id)
        tutor_id = str(interaction.user.id)

        async def action(repo: Repository) -> str:
            await self._require_role(repo, interaction, InternalRole.TUTOR)
            return await self._queues(repo).pick_next_student(guild_id, tutor_id)

        student_id = await self._with_repo(interaction, action)
        if student_id is None:
            return
        await send_dm(self, student_id, f"<@{tutor_id}> is ready to help you now.")
        await interaction.followup.send(
            embed=build_success_embed("Next Student", f"Your next student is <@{student_id}>."),
            ephemeral=True,
        )

    async def _handle_tutor_list(self, interaction: discord.Interaction, limit: int) -> None:
        guild_id = str(interaction.guild_id)
        tutor_id = str(interaction.user.id)

        async def action(repo: Repository) -> discord.Embed:
            await self._require_role(repo, interaction, InternalRole.TUTOR)
            queues = self._queues(repo)
            active = await queues.get_active_session(guild_id, tutor_id)
            if active is None:
                raise NoActiveSessionError()
            _, queue = active
            members = await queues.get_queue_members(guild_id, queue.name, limit=max(limit, 1))
            total = await repo.count_waiting_members(queue.id)
            return build_queue_members_embed(queue.name, members, total)

        await self._run(interaction, action)


def is_discord_enabled(settings: Settings) -> bool:
    """Check whether Discord integration should be started.

    Returns True only when discord_enabled is True and a token is set.
    """
    return bool(settings.discord_enabled and settings.discord_bot_token)


async def start_discord_bot(
    settings: Settings,
    engine: AsyncEngine | None = None,
) -> TutorQueueBot:
    """Create and start the Discord bot in the current event loop.

    Returns the bot instance so the caller can stop it during shutdown.
    The bot runs as a background task; this function returns immediately
    after starting it.

    Raises MissingBotTokenError when no bot token is configured.
    """
    if not settings.discord_bot_token:
        raise MissingBotTokenError()
    bot = TutorQueueBot(settings=settings, engine=engine)

    async def _run_bot() -> None:
        try:
            await bot.start(settings.discord_bot_token)
        except asyncio.CancelledError:
            logger.info("discord_bot_cancelled")
        except discord.LoginFailure:
            logger.exception("discord_bot_login_failed")
        except (discord.HTTPException, discord.GatewayNotFound, discord.ConnectionClosed):
            logger.exception("discord_bot_error")
        finally:
            if not bot.is_closed():
                await bot.close()

    asyncio.create_task(_run_bot(), name="discord-bot")
    logger.info("discord_bot_started")
    return bot

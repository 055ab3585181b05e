"""Discord embed builders for TutorQueue.

Each builder takes domain data and returns a styled embed ready to send.
Builders never touch the database.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import discord

from tutorqueue.core.schedule import day_name
from tutorqueue.discord.messages import error_title

if TYPE_CHECKING:
    from tutorqueue.core.errors import TutorQueueError
    from tutorqueue.core.tokens import TokenData
    from tutorqueue.db.models import InternalRole, QueueMemberRow, VerifiedUserRow
    from tutorqueue.models.queue import (
        ActiveSessionInfo,
        QueueStats,
        QueueSummary,
        ScheduleEntry,
    )

COLOR_QUEUE = 0x3498DB  # Blue: queue state
COLOR_SUCCESS = 0x2ECC71  # Green: completed actions
COLOR_ERROR = 0xE74C3C  # Red: failures
COLOR_SESSION = 0x9B59B6  # Purple: tutor sessions
COLOR_WELCOME = 0x1ABC9C  # Teal: onboarding


def _unix(value: datetime) -> int:
    """Unix seconds for a Discord timestamp tag. Naive values are UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp())


def build_success_embed(title: str, description: str) -> discord.Embed:
    return discord.Embed(title=title, description=description, color=COLOR_SUCCESS)


def build_error_embed(error: TutorQueueError | str, title: str = "Error") -> discord.Embed:
    """Build an embed for a failed command.

    The title comes from the error's kind when a domain error is given.
    """
    if isinstance(error, str):
        return discord.Embed(title=title, description=error, color=COLOR_ERROR)

    return discord.Embed(title=error_title(error.kind), description=str(error), color=COLOR_ERROR)


def build_queue_summary_embed(summary: QueueSummary) -> discord.Embed:
    embed = discord.Embed(
        title=f"Queue: {summary.name}",
        description=summary.description or "No description.",
        color=COLOR_QUEUE,
    )
    embed.add_field(name="Students in Queue", value=str(summary.member_count), inline=True)
    embed.add_field(name="Active Sessions", value=str(summary.session_count), inline=True)
    embed.add_field(name="Locked", value="Yes" if summary.is_locked else "No", inline=True)
    embed.add_field(
        name="Auto Schedule",
        value="Enabled" if summary.schedule_enabled else "Disabled",
        inline=True,
    )
    embed.set_footer(text=f"Queue ID: {summary.id}")
    return embed


def build_queue_list_embed(queues: Sequence[QueueStats]) -> discord.Embed:
    embed = discord.Embed(title="Queues", color=COLOR_QUEUE)
    if not queues:
        embed.description = "No queues found on this server."
        return embed
    for queue in queues:
        lock = " (locked)" if queue.is_locked else ""
        embed.add_field(
            name=f"{queue.name}{lock}",
            value=(
                f"{queue.description or 'No description.'}\n"
                f"Students: **{queue.member_count}** | Sessions: **{queue.session_count}**"
            ),
            inline=False,
        )
    return embed


def build_queue_members_embed(
    queue_name: str, members: Sequence[QueueMemberRow], total: int | None = None
) -> discord.Embed:
    embed = discord.Embed(title=f"Queue Members: {queue_name}", color=COLOR_QUEUE)
    if not members:
        embed.description = "The queue is empty."
        return embed
    lines = [
        f"**{i}.** <@{member.user_id}> (joined <t:{_unix(member.joined_at)}:R>)"
        for i, member in enumerate(members, 1)
    ]
    embed.description = "\n".join(lines)
    if total is not None and total > len(members):
        embed.set_footer(text=f"Showing {len(members)} of {total} students")
    return embed


def build_join_embed(queue_name: str, position: int, restored: bool = False) -> discord.Embed:
    title = "Rejoined Queue" if restored else f"Joined Queue: {queue_name}"
    description = (
        f"You have rejoined the queue **{queue_name}** and kept your position."
        if restored
        else f"You joined the queue **{queue_name}**."
    )
    embed = discord.Embed(title=title, description=description, color=COLOR_SUCCESS)
    embed.add_field(name="Position", value=str(position), inline=True)
    return embed


def build_schedule_embed(
    queue_name: str,
    entries: Sequence[ScheduleEntry],
    schedule_enabled: bool,
    shift_minutes: int = 0,
) -> discord.Embed:
    auto = "Auto-lock is **enabled**." if schedule_enabled else "Auto-lock is **disabled**."
    embed = discord.Embed(title=f"Schedule Summary: {queue_name}", color=COLOR_QUEUE)
    if not entries:
        embed.description = f"{auto}\n\nNo schedules configured for this queue."
        return embed
    lines = [
        f"**{day_name(entry.day_of_week)}**: {entry.start_time} - {entry.end_time}"
        for entry in entries
    ]
    if shift_minutes:
        lines.append(f"\nShift: {shift_minutes} minute(s) earlier")
    embed.description = f"{auto}\n\n" + "\n".join(lines)
    return embed


def build_sessions_embed(sessions: Sequence[ActiveSessionInfo]) -> discord.Embed:
    embed = discord.Embed(title="Active Sessions", color=COLOR_SESSION)
    if not sessions:
        embed.description = "No active sessions found on this server."
        return embed
    for session in sessions:
        embed.add_field(
            name=session.queue_name,
            value=(
                f"Tutor: <@{session.tutor_id}>\n"
                f"Started: <t:{_unix(session.start_time)}:R>\n"
                f"Students: **{session.student_count}**"
            ),
            inline=False,
        )
    return embed


def build_role_summary_embed(mappings: dict[InternalRole, str]) -> discord.Embed:
    embed = discord.Embed(title="Role Mappings Summary", color=COLOR_QUEUE)
    if not mappings:
        embed.description = "No roles configured. Use `/admin role set` to map roles."
        return embed
    embed.description = "\n".join(
        f"**{role_type}**: <@&{role_id}>" for role_type, role_id in sorted(mappings.items())
    )
    return embed


def build_user_embed(user: VerifiedUserRow) -> discord.Embed:
    embed = discord.Embed(title="User Information", color=COLOR_QUEUE)
    embed.add_field(name="Discord", value=f"<@{user.discord_id}>", inline=True)
    embed.add_field(name="TU ID", value=user.tu_id or "-", inline=True)
    embed.add_field(name="Moodle ID", value=user.moodle_id or "-", inline=True)
    embed.add_field(name="Roles", value=", ".join(user.roles or []) or "-", inline=False)
    return embed


def build_token_embed(data: TokenData) -> discord.Embed:
    embed = discord.Embed(title="Decoded Token", color=COLOR_QUEUE)
    embed.add_field(name="Server ID", value=data.server_id, inline=True)
    embed.add_field(name="Version", value=data.version_id, inline=True)
    embed.add_field(name="TU ID", value=data.tu_id or "-", inline=True)
    embed.add_field(name="Moodle ID", value=data.moodle_id or "-", inline=True)
    embed.add_field(name="Roles", value=", ".join(data.roles), inline=False)
    return embed


def build_verified_embed(role_names: Sequence[str], guild_name: str | None = None) -> discord.Embed:
    where = f" in **{guild_name}**" if guild_name else ""
    roles = "\n".join(f"• {name}" for name in role_names) or "• (no server roles mapped yet)"
    return discord.Embed(
        title="Verification Successful",
        description=f"You have been verified{where}!\n\n**Roles granted:**\n{roles}",
        color=COLOR_SUCCESS,
    )


def build_welcome_embed(
    guild_name: str, title: str | None = None, text: str | None = None
) -> discord.Embed:
    """Welcome DM for a new member. Guild-configured text overrides the default."""
    embed = discord.Embed(
        title=title or f"Welcome to {guild_name}!",
        description=text
        or (
            "To get full access to the server, you need to verify your account.\n\n"
            "**How to verify:**\n"
            "• If you have a verification token, simply paste it in this DM\n"
            "• Alternatively, use the `/verify` command in the server with your token\n\n"
            "Once verified, you'll receive your roles automatically!"
        ),
        color=COLOR_WELCOME,
    )
    embed.set_footer(text="For further information, please see the Moodle course.")
    return embed

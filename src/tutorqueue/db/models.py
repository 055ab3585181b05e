"""SQLAlchemy ORM models for the TutorQueue database.

Tables: guilds, role_mappings, queues, queue_members, sessions,
session_students, queue_schedules, verified_users. Everything hangs off a
guild and is removed with it.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class InternalRole(StrEnum):
    """Bot-level roles an admin maps onto server roles."""

    ADMIN = "admin"
    TUTOR = "tutor"
    VERIFIED = "verified"
    ACTIVE_SESSION = "active_session"


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class GuildRow(Base):
    __tablename__ = "guilds"

    id: Mapped[str] = mapped_column(String(30), primary_key=True)  # Discord guild ID
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    welcome_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    welcome_title: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    queues: Mapped[list[QueueRow]] = relationship(
        back_populates="guild", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_guilds_name", "name"),
        Index("ix_guilds_member_count", "member_count"),
    )


class RoleMappingRow(Base):
    """Maps an InternalRole to a Discord role ID within one guild."""

    __tablename__ = "role_mappings"

    guild_id: Mapped[str] = mapped_column(
        ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True
    )
    role_type: Mapped[str] = mapped_column(String(30), primary_key=True)
    role_id: Mapped[str] = mapped_column(String(30), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)


class QueueRow(Base):
    __tablename__ = "queues"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    guild_id: Mapped[str] = mapped_column(
        ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    waiting_room_id: Mapped[str | None] = mapped_column(String(30), nullable=True)
    public_log_channel_id: Mapped[str | None] = mapped_column(String(30), nullable=True)
    private_log_channel_id: Mapped[str | None] = mapped_column(String(30), nullable=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    schedule_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    schedule_shift_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    guild: Mapped[GuildRow] = relationship(back_populates="queues")

    __table_args__ = (
        Index("ix_queues_guild_id", "guild_id"),
        UniqueConstraint("guild_id", "name", name="uq_queue_guild_name"),
    )


class QueueMemberRow(Base):
    """A user waiting in a queue. ``left_at`` is set during the rejoin grace period."""

    __tablename__ = "queue_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    queue_id: Mapped[str] = mapped_column(
        ForeignKey("queues.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(30), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    left_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_queue_members_queue_joined", "queue_id", "joined_at"),
        UniqueConstraint("queue_id", "user_id", name="uq_queue_member"),
    )


class SessionRow(Base):
    """A tutor's session on a queue. Active while ``end_time`` is NULL."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    queue_id: Mapped[str] = mapped_column(
        ForeignKey("queues.id", ondelete="CASCADE"), nullable=False
    )
    tutor_id: Mapped[str] = mapped_column(String(30), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, default=_now)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_sessions_queue_id", "queue_id"),
        Index("ix_sessions_tutor_id", "tutor_id"),
    )


class SessionStudentRow(Base):
    """A student picked from the queue during a session."""

    __tablename__ = "session_students"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    student_id: Mapped[str] = mapped_column(String(30), nullable=False)
    channel_id: Mapped[str | None] = mapped_column(String(30), nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (Index("ix_session_students_session_id", "session_id"),)


class QueueScheduleRow(Base):
    """Opening hours of a queue for one weekday (0=Sunday .. 6=Saturday)."""

    __tablename__ = "queue_schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    queue_id: Mapped[str] = mapped_column(
        ForeignKey("queues.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)

    __table_args__ = (
        UniqueConstraint("queue_id", "day_of_week", name="uq_queue_schedule_day"),
    )


class VerifiedUserRow(Base):
    """A member who redeemed a verification token in a guild."""

    __tablename__ = "verified_users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    guild_id: Mapped[str] = mapped_column(
        ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    discord_id: Mapped[str] = mapped_column(String(30), nullable=False)
    tu_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    moodle_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    roles: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    __table_args__ = (
        UniqueConstraint("discord_id", "guild_id", name="uq_verified_user_guild"),
        Index("ix_verified_users_moodle", "guild_id", "moodle_id"),
        Index("ix_verified_users_tu", "guild_id", "tu_id"),
    )

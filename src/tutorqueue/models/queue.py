"""Queue view models returned by the service layer.

Plain data, detached from ORM sessions so they can be rendered after the
session closes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class QueueSummary(BaseModel):
    """Display-ready state of one queue."""

    id: str
    guild_id: str
    name: str
    description: str = ""
    is_locked: bool = False
    schedule_enabled: bool = False
    member_count: int = Field(default=0, ge=0)
    session_count: int = Field(default=0, ge=0)


class QueueStats(BaseModel):
    """A queue with its waiting-member and active-session counts."""

    id: str
    name: str
    description: str = ""
    is_locked: bool = False
    member_count: int = 0
    session_count: int = 0


class ActiveSessionInfo(BaseModel):
    id: str
    queue_id: str
    queue_name: str
    tutor_id: str
    start_time: datetime
    student_count: int = 0


class ScheduleEntry(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str


class JoinResult(BaseModel):
    """Outcome of a queue join. ``restored`` means the grace period kept the old position."""

    queue_name: str
    position: int = Field(ge=1)
    restored: bool = False


class ScheduleChange(BaseModel):
    """A lock-state change applied by the schedule check."""

    guild_id: str
    queue_name: str
    action: Literal["locked", "unlocked"]


class EndedSession(BaseModel):
    """A tutor session closed by an admin termination."""

    tutor_id: str
    queue_name: str
    private_log_channel_id: str | None = None

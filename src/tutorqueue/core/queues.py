"""Queue management: lock state, sessions, membership and schedules.

``QueueStateService`` owns the lock/schedule flags and session termination.
``QueueService`` owns everything a queue's members and tutors do day to
day. Both work on a ``Repository`` bound to one database session, so each
call commits or rolls back as a unit.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from tutorqueue.core.errors import (
    AlreadyInQueueError,
    AmbiguousQueueError,
    GuildNotFoundError,
    NoActiveSessionError,
    NotInAnyQueueError,
    NotInQueueError,
    QueueAlreadyExistsError,
    QueueEmptyError,
    QueueLockedError,
    QueueNotFoundError,
    QueueStateError,
    SessionAlreadyActiveError,
    TutorCannotJoinQueueError,
)
from tutorqueue.core.schedule import (
    is_open,
    parse_day_of_week,
    validate_time_format,
    validate_time_range,
    weekday_index,
)
from tutorqueue.models.queue import (
    ActiveSessionInfo,
    EndedSession,
    JoinResult,
    QueueStats,
    QueueSummary,
    ScheduleChange,
    ScheduleEntry,
)

if TYPE_CHECKING:
    from tutorqueue.db.models import QueueMemberRow, QueueRow, SessionRow
    from tutorqueue.db.repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_REJOIN_GRACE_SECONDS = 60


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


async def _require_queue(repo: Repository, guild_id: str, queue_name: str) -> QueueRow:
    queue = await repo.get_queue_by_name(guild_id, queue_name)
    if queue is None:
        raise QueueNotFoundError(queue_name)
    return queue


class QueueStateService:
    """Lock state, schedule toggles and session termination for queues."""

    def __init__(self, repo: Repository, timezone: ZoneInfo | None = None) -> None:
        self.repo = repo
        self.timezone = timezone or ZoneInfo("UTC")

    async def set_schedule_enabled(self, guild_id: str, queue_name: str, enabled: bool) -> None:
        """Turn automatic schedule locking on or off. Idempotent."""
        queue = await _require_queue(self.repo, guild_id, queue_name)
        await self.repo.update_queue(queue.id, schedule_enabled=enabled)
        logger.info(
            "queue_schedule_enabled guild=%s queue=%s enabled=%s", guild_id, queue_name, enabled
        )

    async def set_queue_lock_state(self, guild_id: str, queue_name: str, locked: bool) -> None:
        """Set the lock flag alone, leaving the schedule flag untouched.

        Raises QueueStateError if the queue is already in the requested state.
        """
        queue = await _require_queue(self.repo, guild_id, queue_name)
        if queue.is_locked == locked:
            raise QueueStateError(queue_name, locked)
        await self.repo.update_queue(queue.id, is_locked=locked)
        logger.info("queue_lock_state guild=%s queue=%s locked=%s", guild_id, queue_name, locked)

    async def lock_queue(self, guild_id: str, queue_name: str) -> None:
        """Manually lock a queue. Disables its schedule in the same write."""
        await self._set_manual_lock(guild_id, queue_name, locked=True)

    async def unlock_queue(self, guild_id: str, queue_name: str) -> None:
        """Manually unlock a queue. Disables its schedule in the same write."""
        await self._set_manual_lock(guild_id, queue_name, locked=False)

    async def _set_manual_lock(self, guild_id: str, queue_name: str, locked: bool) -> None:
        queue = await _require_queue(self.repo, guild_id, queue_name)
        if queue.is_locked == locked:
            raise QueueStateError(queue_name, locked)
        await self.repo.update_queue(queue.id, is_locked=locked, schedule_enabled=False)
        logger.info(
            "queue_%s guild=%s queue=%s schedule_enabled=False",
            "locked" if locked else "unlocked",
            guild_id,
            queue_name,
        )

    async def terminate_all_sessions(self, guild_id: str) -> int:
        """End every active session in the guild. Returns how many were ended."""
        return len(await self.end_sessions(guild_id))

    async def terminate_sessions_by_user(self, guild_id: str, user_id: str) -> int:
        """End the active sessions one tutor holds in the guild."""
        return len(await self.end_sessions(guild_id, user_id))

    async def end_sessions(
        self, guild_id: str, user_id: str | None = None
    ) -> list[EndedSession]:
        """End active sessions in the guild, or only one tutor's, and describe each."""
        ended = await self.repo.end_active_sessions(guild_id, datetime.now(UTC), tutor_id=user_id)
        queues: dict[str, QueueRow | None] = {}
        result: list[EndedSession] = []
        for tutor_id, queue_id in ended:
            if queue_id not in queues:
                queues[queue_id] = await self.repo.get_queue(queue_id)
            queue = queues[queue_id]
            result.append(
                EndedSession(
                    tutor_id=tutor_id,
                    queue_name=queue.name if queue else "",
                    private_log_channel_id=queue.private_log_channel_id if queue else None,
                )
            )
        logger.info(
            "sessions_terminated guild=%s tutor=%s count=%d", guild_id, user_id or "*", len(result)
        )
        return result

    async def get_queue_summary(self, guild_id: str, queue_name: str) -> QueueSummary:
        queue = await _require_queue(self.repo, guild_id, queue_name)
        return QueueSummary(
            id=queue.id,
            guild_id=queue.guild_id,
            name=queue.name,
            description=queue.description or "",
            is_locked=queue.is_locked,
            schedule_enabled=queue.schedule_enabled,
            member_count=await self.repo.count_waiting_members(queue.id),
            session_count=await self.repo.count_active_sessions(queue.id),
        )

    async def check_schedules(self, now: datetime | None = None) -> list[ScheduleChange]:
        """Lock or unlock every schedule-enabled queue to match its opening hours.

        A queue with no entry for today counts as closed. The schedule flag
        stays on, so the next check keeps driving the queue.
        """
        now = now or datetime.now(self.timezone)
        today = weekday_index(now)
        changes: list[ScheduleChange] = []

        for queue in await self.repo.get_schedule_enabled_queues():
            entry = await self.repo.get_schedule_for_day(queue.id, today)
            should_open = entry is not None and is_open(
                now, entry.start_time, entry.end_time, queue.schedule_shift_minutes
            )
            if queue.is_locked != should_open:
                # Already locked while closed, or unlocked while open.
                continue
            await self.set_queue_lock_state(queue.guild_id, queue.name, not should_open)
            changes.append(
                ScheduleChange(
                    guild_id=queue.guild_id,
                    queue_name=queue.name,
                    action="unlocked" if should_open else "locked",
                )
            )
        return changes


class QueueService:
    """Queue CRUD, membership, tutor sessions and schedule entries."""

    def __init__(
        self,
        repo: Repository,
        grace_seconds: int = DEFAULT_REJOIN_GRACE_SECONDS,
    ) -> None:
        self.repo = repo
        self.grace = timedelta(seconds=grace_seconds)

    # --- Queues ---

    async def create_queue(self, guild_id: str, name: str, description: str = "") -> QueueRow:
        if await self.repo.get_guild(guild_id) is None:
            raise GuildNotFoundError(guild_id)
        if await self.repo.get_queue_by_name(guild_id, name) is not None:
            raise QueueAlreadyExistsError(name)
        queue = await self.repo.create_queue(guild_id, name, description)
        logger.info("queue_created guild=%s queue=%s", guild_id, name)
        return queue

    async def get_queue_by_name(self, guild_id: str, name: str) -> QueueRow | None:
        return await self.repo.get_queue_by_name(guild_id, name)

    async def get_queue_by_id(self, queue_id: str) -> QueueRow | None:
        return await self.repo.get_queue(queue_id)

    async def get_queue_by_waiting_room(self, guild_id: str, channel_id: str) -> QueueRow | None:
        return await self.repo.get_queue_by_waiting_room(guild_id, channel_id)

    async def list_queues(self, guild_id: str) -> list[QueueStats]:
        return [
            QueueStats(
                id=queue.id,
                name=queue.name,
                description=queue.description or "",
                is_locked=queue.is_locked,
                member_count=members,
                session_count=sessions,
            )
            for queue, members, sessions in await self.repo.get_queue_stats(guild_id)
        ]

    async def delete_queue(self, guild_id: str, name: str) -> bool:
        deleted = await self.repo.delete_queue(guild_id, name)
        if deleted:
            logger.info("queue_deleted guild=%s queue=%s", guild_id, name)
        return deleted

    async def resolve_queue(self, guild_id: str, name: str | None = None) -> QueueRow:
        """Find a queue by name, or the guild's only queue when no name is given."""
        if name:
            return await _require_queue(self.repo, guild_id, name)
        queues = await self.repo.get_queues_for_guild(guild_id)
        if not queues:
            raise QueueNotFoundError("default")
        if len(queues) > 1:
            raise AmbiguousQueueError()
        return queues[0]

    async def set_waiting_room(self, guild_id: str, name: str, channel_id: str | None) -> None:
        queue = await _require_queue(self.repo, guild_id, name)
        await self.repo.update_queue(queue.id, waiting_room_id=channel_id)

    async def set_public_log_channel(self, guild_id: str, name: str, channel_id: str | None) -> None:
        queue = await _require_queue(self.repo, guild_id, name)
        await self.repo.update_queue(queue.id, public_log_channel_id=channel_id)

    async def set_private_log_channel(
        self, guild_id: str, name: str, channel_id: str | None
    ) -> None:
        queue = await _require_queue(self.repo, guild_id, name)
        await self.repo.update_queue(queue.id, private_log_channel_id=channel_id)

    # --- Membership ---

    async def join_queue(
        self,
        guild_id: str,
        name: str,
        user_id: str,
        now: datetime | None = None,
    ) -> JoinResult:
        """Add a user to the back of a queue.

        A user who left less than the grace period ago gets their old
        position back instead.
        """
        now = now or datetime.now(UTC)
        queue = await _require_queue(self.repo, guild_id, name)
        if queue.is_locked:
            raise QueueLockedError(name)
        if await self.repo.get_active_session(guild_id, user_id) is not None:
            raise TutorCannotJoinQueueError()

        restored = False
        member = await self.repo.get_queue_member(queue.id, user_id)
        if member is not None:
            if member.left_at is None:
                raise AlreadyInQueueError(name)
            if now - _as_utc(member.left_at) <= self.grace:
                member.left_at = None
                restored = True
            else:
                await self.repo.delete_queue_member(member)
                member = None
        if member is None:
            await self.repo.add_queue_member(queue.id, user_id)

        position = await self.repo.get_member_position(queue.id, user_id)
        logger.info(
            "queue_joined guild=%s queue=%s user=%s restored=%s", guild_id, name, user_id, restored
        )
        return JoinResult(queue_name=queue.name, position=position or 1, restored=restored)

    async def leave_queue(
        self,
        guild_id: str,
        name: str,
        user_id: str,
        now: datetime | None = None,
    ) -> None:
        """Mark a member as departed. The row stays until the grace period ends."""
        queue = await _require_queue(self.repo, guild_id, name)
        member = await self.repo.get_queue_member(queue.id, user_id)
        if member is None or member.left_at is not None:
            raise NotInQueueError(name)
        member.left_at = now or datetime.now(UTC)
        await self.repo.session.flush()
        logger.info("queue_left guild=%s queue=%s user=%s", guild_id, name, user_id)

    async def get_queue_members(
        self, guild_id: str, name: str, limit: int | None = None
    ) -> list[QueueMemberRow]:
        queue = await _require_queue(self.repo, guild_id, name)
        return await self.repo.get_waiting_members(queue.id, limit=limit)

    async def get_queue_position(self, guild_id: str, name: str, user_id: str) -> int:
        queue = await _require_queue(self.repo, guild_id, name)
        position = await self.repo.get_member_position(queue.id, user_id)
        if position is None:
            raise NotInQueueError(name)
        return position

    async def get_queue_by_user(self, guild_id: str, user_id: str) -> QueueRow | None:
        """The queue a user joined first among those they wait in, if any."""
        queues = await self.repo.get_waiting_queues(guild_id, user_id)
        return queues[0] if queues else None

    async def get_queues_by_user(self, guild_id: str, user_id: str) -> list[QueueRow]:
        return await self.repo.get_waiting_queues(guild_id, user_id)

    async def resolve_membership(
        self, guild_id: str, user_id: str, name: str | None = None
    ) -> QueueRow:
        """Pick the queue a leave applies to.

        A named queue is looked up directly. Without a name the user must be
        waiting in exactly one queue.
        """
        if name:
            return await _require_queue(self.repo, guild_id, name)
        queues = await self.repo.get_waiting_queues(guild_id, user_id)
        if not queues:
            raise NotInAnyQueueError()
        if len(queues) > 1:
            raise AmbiguousQueueError()
        return queues[0]

    async def purge_departed_members(self, now: datetime | None = None) -> int:
        """Delete members whose grace period has run out."""
        cutoff = (now or datetime.now(UTC)) - self.grace
        # Stored timestamps come back naive, so compare against naive UTC.
        count = await self.repo.purge_departed_members(cutoff.astimezone(UTC).replace(tzinfo=None))
        if count:
            logger.info("queue_members_purged count=%d", count)
        return count

    # --- Sessions ---

    async def create_session(self, guild_id: str, name: str, tutor_id: str) -> SessionRow:
        queue = await _require_queue(self.repo, guild_id, name)
        if await self.repo.get_active_session(guild_id, tutor_id) is not None:
            raise SessionAlreadyActiveError()
        session = await self.repo.create_session(queue.id, tutor_id)
        logger.info("session_started guild=%s queue=%s tutor=%s", guild_id, name, tutor_id)
        return session

    async def end_session(self, guild_id: str, tutor_id: str) -> SessionRow:
        active = await self.repo.get_active_session(guild_id, tutor_id)
        if active is None:
            raise NoActiveSessionError()
        session, queue = active
        session.end_time = datetime.now(UTC)
        await self.repo.session.flush()
        logger.info("session_ended guild=%s queue=%s tutor=%s", guild_id, queue.name, tutor_id)
        return session

    async def get_active_session(
        self, guild_id: str, tutor_id: str
    ) -> tuple[SessionRow, QueueRow] | None:
        return await self.repo.get_active_session(guild_id, tutor_id)

    async def get_all_active_sessions(self, guild_id: str) -> list[ActiveSessionInfo]:
        return [
            ActiveSessionInfo(
                id=session.id,
                queue_id=session.queue_id,
                queue_name=queue_name,
                tutor_id=session.tutor_id,
                start_time=_as_utc(session.start_time),
                student_count=count,
            )
            for session, queue_name, count in await self.repo.get_active_sessions_with_stats(
                guild_id
            )
        ]

    async def pick_next_student(
        self, guild_id: str, tutor_id: str, channel_id: str | None = None
    ) -> str:
        """Take the first waiting member off the tutor's queue. Returns their user ID."""
        active = await self.repo.get_active_session(guild_id, tutor_id)
        if active is None:
            raise NoActiveSessionError()
        session, queue = active
        waiting = await self.repo.get_waiting_members(queue.id, limit=1)
        if not waiting:
            raise QueueEmptyError(queue.name)
        student = waiting[0]
        await self.repo.delete_queue_member(student)
        await self.repo.add_session_student(session.id, student.user_id, channel_id)
        logger.info(
            "student_picked guild=%s queue=%s tutor=%s student=%s",
            guild_id,
            queue.name,
            tutor_id,
            student.user_id,
        )
        return student.user_id

    # --- Schedules ---

    async def add_schedule(
        self, guild_id: str, name: str, day: str, start: str, end: str
    ) -> ScheduleEntry:
        """Set the opening hours for one weekday, replacing any previous entry."""
        day_of_week = parse_day_of_week(day)
        validate_time_format(start)
        validate_time_format(end)
        validate_time_range(start, end)
        queue = await _require_queue(self.repo, guild_id, name)
        row = await self.repo.upsert_schedule(queue.id, day_of_week, start, end)
        logger.info(
            "schedule_set guild=%s queue=%s day=%d start=%s end=%s",
            guild_id,
            name,
            day_of_week,
            start,
            end,
        )
        return ScheduleEntry(
            day_of_week=row.day_of_week, start_time=row.start_time, end_time=row.end_time
        )

    async def remove_schedule(self, guild_id: str, name: str, day: str) -> bool:
        day_of_week = parse_day_of_week(day)
        queue = await _require_queue(self.repo, guild_id, name)
        return await self.repo.delete_schedule(queue.id, day_of_week)

    async def get_schedules(self, guild_id: str, name: str) -> list[ScheduleEntry]:
        queue = await _require_queue(self.repo, guild_id, name)
        return [
            ScheduleEntry(
                day_of_week=row.day_of_week, start_time=row.start_time, end_time=row.end_time
            )
            for row in await self.repo.get_schedules(queue.id)
        ]

    async def set_schedule_shift(self, guild_id: str, name: str, minutes: int) -> None:
        """Move every opening window ``minutes`` earlier (negative moves it later)."""
        queue = await _require_queue(self.repo, guild_id, name)
        await self.repo.update_queue(queue.id, schedule_shift_minutes=minutes)
        logger.info("schedule_shift guild=%s queue=%s minutes=%d", guild_id, name, minutes)

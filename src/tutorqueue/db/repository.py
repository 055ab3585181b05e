"""Repository pattern for database access.

Wraps SQLAlchemy async sessions. Every guild-scoped lookup filters on
``guild_id`` so one server can never see another server's queues.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tutorqueue.db.models import (
    GuildRow,
    QueueMemberRow,
    QueueRow,
    QueueScheduleRow,
    RoleMappingRow,
    SessionRow,
    SessionStudentRow,
    VerifiedUserRow,
)


class Repository:
    """Async repository for all database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Guilds ---

    async def get_guild(self, guild_id: str) -> GuildRow | None:
        return await self.session.get(GuildRow, guild_id)

    async def get_all_guild_ids(self) -> set[str]:
        result = await self.session.execute(select(GuildRow.id))
        return set(result.scalars().all())

    async def add_guild(self, guild_id: str, name: str, member_count: int = 0) -> bool:
        """Insert a guild unless it already exists. Returns True if a row was added."""
        stmt = (
            sqlite_insert(GuildRow)
            .values(id=guild_id, name=name, member_count=member_count)
            .on_conflict_do_nothing(index_elements=["id"])
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0  # type: ignore[union-attr]

    async def update_guild(self, guild_id: str, name: str, member_count: int) -> None:
        row = await self.get_guild(guild_id)
        if row is None:
            return
        row.name = name
        row.member_count = member_count
        await self.session.flush()

    async def set_guild_welcome(self, guild_id: str, title: str | None, text: str | None) -> bool:
        row = await self.get_guild(guild_id)
        if row is None:
            return False
        row.welcome_title = title
        row.welcome_text = text
        await self.session.flush()
        return True

    # --- Role mappings ---

    async def set_role_mapping(self, guild_id: str, role_type: str, role_id: str) -> None:
        """Upsert the Discord role mapped to an internal role."""
        row = await self.session.get(RoleMappingRow, (guild_id, role_type))
        if row is not None:
            row.role_id = role_id
        else:
            row = RoleMappingRow(guild_id=guild_id, role_type=role_type, role_id=role_id)
            self.session.add(row)
        await self.session.flush()

    async def get_role_mapping(self, guild_id: str, role_type: str) -> str | None:
        row = await self.session.get(RoleMappingRow, (guild_id, role_type))
        return row.role_id if row else None

    async def get_role_mappings(self, guild_id: str) -> dict[str, str]:
        stmt = select(RoleMappingRow).where(RoleMappingRow.guild_id == guild_id)
        result = await self.session.execute(stmt)
        return {row.role_type: row.role_id for row in result.scalars().all()}

    # --- Queues ---

    async def create_queue(self, guild_id: str, name: str, description: str = "") -> QueueRow:
        row = QueueRow(guild_id=guild_id, name=name, description=description)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_queue(self, queue_id: str) -> QueueRow | None:
        return await self.session.get(QueueRow, queue_id)

    async def get_queue_by_name(self, guild_id: str, name: str) -> QueueRow | None:
        stmt = select(QueueRow).where(QueueRow.guild_id == guild_id, QueueRow.name == name)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_queue_by_waiting_room(self, guild_id: str, channel_id: str) -> QueueRow | None:
        stmt = select(QueueRow).where(
            QueueRow.guild_id == guild_id,
            QueueRow.waiting_room_id == channel_id,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_queues_for_guild(self, guild_id: str) -> list[QueueRow]:
        stmt = select(QueueRow).where(QueueRow.guild_id == guild_id).order_by(QueueRow.name)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_queue_stats(self, guild_id: str) -> list[tuple[QueueRow, int, int]]:
        """Return (queue, waiting member count, active session count) per queue."""
        members = (
            select(QueueMemberRow.queue_id, func.count(QueueMemberRow.id).label("n"))
            .where(QueueMemberRow.left_at.is_(None))
            .group_by(QueueMemberRow.queue_id)
            .subquery()
        )
        sessions = (
            select(SessionRow.queue_id, func.count(SessionRow.id).label("n"))
            .where(SessionRow.end_time.is_(None))
            .group_by(SessionRow.queue_id)
            .subquery()
        )
        stmt = (
            select(
                QueueRow,
                func.coalesce(members.c.n, 0),
                func.coalesce(sessions.c.n, 0),
            )
            .outerjoin(members, members.c.queue_id == QueueRow.id)
            .outerjoin(sessions, sessions.c.queue_id == QueueRow.id)
            .where(QueueRow.guild_id == guild_id)
            .order_by(QueueRow.name)
        )
        result = await self.session.execute(stmt)
        return [(row, int(m), int(s)) for row, m, s in result.all()]

    async def update_queue(self, queue_id: str, **values: object) -> None:
        """Write one or more queue columns in a single UPDATE."""
        stmt = (
            update(QueueRow)
            .where(QueueRow.id == queue_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        await self.session.execute(stmt)

    async def delete_queue(self, guild_id: str, name: str) -> bool:
        stmt = delete(QueueRow).where(QueueRow.guild_id == guild_id, QueueRow.name == name)
        result = await self.session.execute(stmt)
        return result.rowcount > 0  # type: ignore[union-attr]

    async def get_schedule_enabled_queues(self) -> list[QueueRow]:
        stmt = select(QueueRow).where(QueueRow.schedule_enabled.is_(True))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # --- Queue members ---

    async def get_queue_member(self, queue_id: str, user_id: str) -> QueueMemberRow | None:
        stmt = select(QueueMemberRow).where(
            QueueMemberRow.queue_id == queue_id,
            QueueMemberRow.user_id == user_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_queue_member(self, queue_id: str, user_id: str) -> QueueMemberRow:
        row = QueueMemberRow(queue_id=queue_id, user_id=user_id)
        self.session.add(row)
        await self.session.flush()
        return row

    async def delete_queue_member(self, member: QueueMemberRow) -> None:
        await self.session.delete(member)
        await self.session.flush()

    async def get_waiting_members(
        self, queue_id: str, limit: int | None = None
    ) -> list[QueueMemberRow]:
        """Members still in the queue, front of the queue first."""
        stmt = (
            select(QueueMemberRow)
            .where(QueueMemberRow.queue_id == queue_id, QueueMemberRow.left_at.is_(None))
            .order_by(QueueMemberRow.joined_at, QueueMemberRow.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_waiting_members(self, queue_id: str) -> int:
        stmt = select(func.count(QueueMemberRow.id)).where(
            QueueMemberRow.queue_id == queue_id,
            QueueMemberRow.left_at.is_(None),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def get_member_position(self, queue_id: str, user_id: str) -> int | None:
        """1-based position of a waiting user, or None if not waiting."""
        members = await self.get_waiting_members(queue_id)
        for index, member in enumerate(members, start=1):
            if member.user_id == user_id:
                return index
        return None

    async def get_waiting_queues(self, guild_id: str, user_id: str) -> list[QueueRow]:
        """Queues a user is currently waiting in within a guild, earliest join first."""
        stmt = (
            select(QueueRow)
            .join(QueueMemberRow, QueueRow.id == QueueMemberRow.queue_id)
            .where(
                QueueRow.guild_id == guild_id,
                QueueMemberRow.user_id == user_id,
                QueueMemberRow.left_at.is_(None),
            )
            .order_by(QueueMemberRow.joined_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def purge_departed_members(self, cutoff: datetime) -> int:
        """Delete members who left before *cutoff*. Returns rows removed."""
        stmt = delete(QueueMemberRow).where(
            QueueMemberRow.left_at.is_not(None),
            QueueMemberRow.left_at < cutoff,
        ).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount  # type: ignore[union-attr]

    # --- Sessions ---

    async def create_session(self, queue_id: str, tutor_id: str) -> SessionRow:
        row = SessionRow(queue_id=queue_id, tutor_id=tutor_id)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_active_session(
        self, guild_id: str, tutor_id: str
    ) -> tuple[SessionRow, QueueRow] | None:
        stmt = (
            select(SessionRow, QueueRow)
            .join(QueueRow, QueueRow.id == SessionRow.queue_id)
            .where(
                QueueRow.guild_id == guild_id,
                SessionRow.tutor_id == tutor_id,
                SessionRow.end_time.is_(None),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        row = result.first()
        return (row[0], row[1]) if row else None

    async def end_active_sessions(
        self,
        guild_id: str,
        end_time: datetime,
        tutor_id: str | None = None,
    ) -> list[tuple[str, str]]:
        """End active sessions in a guild (optionally for one tutor) in one UPDATE.

        Returns (tutor_id, queue_id) for each session ended. The rows come from
        the statement itself, so two concurrent callers never both report the
        same session.
        """
        guild_queues = select(QueueRow.id).where(QueueRow.guild_id == guild_id)
        stmt = update(SessionRow).where(
            SessionRow.queue_id.in_(guild_queues),
            SessionRow.end_time.is_(None),
        )
        if tutor_id is not None:
            stmt = stmt.where(SessionRow.tutor_id == tutor_id)
        stmt = (
            stmt.values(end_time=end_time)
            .returning(SessionRow.tutor_id, SessionRow.queue_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return [(tutor, queue_id) for tutor, queue_id in result.all()]

    async def count_active_sessions(self, queue_id: str) -> int:
        stmt = select(func.count(SessionRow.id)).where(
            SessionRow.queue_id == queue_id,
            SessionRow.end_time.is_(None),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def get_active_sessions_with_stats(
        self, guild_id: str
    ) -> list[tuple[SessionRow, str, int]]:
        """Return (session, queue name, students helped) for active sessions."""
        stmt = (
            select(SessionRow, QueueRow.name, func.count(SessionStudentRow.id))
            .join(QueueRow, QueueRow.id == SessionRow.queue_id)
            .outerjoin(SessionStudentRow, SessionStudentRow.session_id == SessionRow.id)
            .where(QueueRow.guild_id == guild_id, SessionRow.end_time.is_(None))
            .group_by(SessionRow.id, QueueRow.name)
            .order_by(SessionRow.start_time)
        )
        result = await self.session.execute(stmt)
        return [(session, name, int(count)) for session, name, count in result.all()]

    async def add_session_student(
        self, session_id: str, student_id: str, channel_id: str | None = None
    ) -> SessionStudentRow:
        row = SessionStudentRow(session_id=session_id, student_id=student_id, channel_id=channel_id)
        self.session.add(row)
        await self.session.flush()
        return row

    # --- Schedules ---

    async def upsert_schedule(
        self, queue_id: str, day_of_week: int, start_time: str, end_time: str
    ) -> QueueScheduleRow:
        row = await self.get_schedule_for_day(queue_id, day_of_week)
        if row is not None:
            row.start_time = start_time
            row.end_time = end_time
        else:
            row = QueueScheduleRow(
                queue_id=queue_id,
                day_of_week=day_of_week,
                start_time=start_time,
                end_time=end_time,
            )
            self.session.add(row)
        await self.session.flush()
        return row

    async def delete_schedule(self, queue_id: str, day_of_week: int) -> bool:
        stmt = delete(QueueScheduleRow).where(
            QueueScheduleRow.queue_id == queue_id,
            QueueScheduleRow.day_of_week == day_of_week,
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0  # type: ignore[union-attr]

    async def get_schedules(self, queue_id: str) -> list[QueueScheduleRow]:
        stmt = (
            select(QueueScheduleRow)
            .where(QueueScheduleRow.queue_id == queue_id)
            .order_by(QueueScheduleRow.day_of_week)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_schedule_for_day(self, queue_id: str, day_of_week: int) -> QueueScheduleRow | None:
        stmt = select(QueueScheduleRow).where(
            QueueScheduleRow.queue_id == queue_id,
            QueueScheduleRow.day_of_week == day_of_week,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # --- Verified users ---

    async def get_verified_user(self, guild_id: str, discord_id: str) -> VerifiedUserRow | None:
        return await self.find_verified_user(guild_id, "discord", discord_id)

    async def find_verified_user(
        self, guild_id: str, id_type: str, value: str
    ) -> VerifiedUserRow | None:
        """Look up a verified user by discord, tu or moodle ID."""
        column = {
            "discord": VerifiedUserRow.discord_id,
            "tu": VerifiedUserRow.tu_id,
            "moodle": VerifiedUserRow.moodle_id,
        }[id_type]
        stmt = (
            select(VerifiedUserRow)
            .where(VerifiedUserRow.guild_id == guild_id, column == value)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_verified_user(
        self,
        guild_id: str,
        discord_id: str,
        tu_id: str | None,
        moodle_id: str | None,
        roles: list[str],
    ) -> VerifiedUserRow:
        row = await self.get_verified_user(guild_id, discord_id)
        if row is not None:
            row.tu_id = tu_id
            row.moodle_id = moodle_id
            row.roles = list(roles)
        else:
            row = VerifiedUserRow(
                guild_id=guild_id,
                discord_id=discord_id,
                tu_id=tu_id,
                moodle_id=moodle_id,
                roles=list(roles),
            )
            self.session.add(row)
        await self.session.flush()
        return row

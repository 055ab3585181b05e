"""Domain errors.

Every error carries an ``ErrorKind`` so the Discord layer can pick a
presentation without matching on message text. The message itself is
always safe to show to the user who triggered it.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    QUEUE_NOT_FOUND = "queue_not_found"
    GUILD_NOT_FOUND = "guild_not_found"
    USER_NOT_VERIFIED = "user_not_verified"
    NO_ACTIVE_SESSION = "no_active_session"
    QUEUE_LOCKED = "queue_locked"
    QUEUE_STATE = "queue_state"
    QUEUE_EXISTS = "queue_exists"
    QUEUE_EMPTY = "queue_empty"
    AMBIGUOUS_QUEUE = "ambiguous_queue"
    ALREADY_IN_QUEUE = "already_in_queue"
    NOT_IN_QUEUE = "not_in_queue"
    SESSION_ALREADY_ACTIVE = "session_already_active"
    TUTOR_CANNOT_JOIN = "tutor_cannot_join"
    INVALID_SCHEDULE = "invalid_schedule"
    INVALID_TOKEN = "invalid_token"
    TOKEN_USED = "token_used"
    WRONG_SERVER = "wrong_server"
    MISSING_ROLE = "missing_role"
    MISSING_BOT_TOKEN = "missing_bot_token"


class TutorQueueError(Exception):
    """Base class for all domain errors."""

    kind: ErrorKind

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class NotFoundError(TutorQueueError):
    """The requested guild, queue, user or session context does not exist."""


class QueueError(TutorQueueError):
    kind = ErrorKind.QUEUE_STATE


class UserError(TutorQueueError):
    kind = ErrorKind.INVALID_TOKEN


class ConfigError(TutorQueueError):
    kind = ErrorKind.MISSING_BOT_TOKEN


# --- Not found ---


class QueueNotFoundError(NotFoundError):
    kind = ErrorKind.QUEUE_NOT_FOUND

    def __init__(self, queue_name: str) -> None:
        super().__init__(f'Queue "{queue_name}" not found')
        self.queue_name = queue_name


class GuildNotFoundError(NotFoundError):
    kind = ErrorKind.GUILD_NOT_FOUND

    def __init__(self, guild_id: str) -> None:
        super().__init__(f"Server {guild_id} is not registered with the bot")
        self.guild_id = guild_id


class UserNotVerifiedError(NotFoundError):
    kind = ErrorKind.USER_NOT_VERIFIED

    def __init__(self) -> None:
        super().__init__("User is not verified on this server")


class NoActiveSessionError(NotFoundError):
    kind = ErrorKind.NO_ACTIVE_SESSION

    def __init__(self) -> None:
        super().__init__("You do not have an active session.")


# --- Queue ---


class QueueLockedError(QueueError):
    kind = ErrorKind.QUEUE_LOCKED

    def __init__(self, queue_name: str) -> None:
        super().__init__(f'Queue "{queue_name}" is locked')


class QueueStateError(QueueError):
    """The queue is already in the requested lock state."""

    def __init__(self, queue_name: str, locked: bool) -> None:
        state = "locked" if locked else "unlocked"
        super().__init__(f'Queue "{queue_name}" is already {state}.')


class QueueAlreadyExistsError(QueueError):
    kind = ErrorKind.QUEUE_EXISTS

    def __init__(self, queue_name: str) -> None:
        super().__init__(f'A queue named "{queue_name}" already exists in this server')


class QueueEmptyError(QueueError):
    kind = ErrorKind.QUEUE_EMPTY

    def __init__(self, queue_name: str) -> None:
        super().__init__(f'Queue "{queue_name}" is empty')


class AmbiguousQueueError(QueueError):
    kind = ErrorKind.AMBIGUOUS_QUEUE

    def __init__(self) -> None:
        super().__init__("Multiple queues found. Please specify a queue name.")


class AlreadyInQueueError(QueueError):
    kind = ErrorKind.ALREADY_IN_QUEUE

    def __init__(self, queue_name: str) -> None:
        super().__init__(f'Already in queue "{queue_name}"')


class NotInQueueError(QueueError):
    kind = ErrorKind.NOT_IN_QUEUE

    def __init__(self, queue_name: str) -> None:
        super().__init__(f'Not in queue "{queue_name}"')


class NotInAnyQueueError(QueueError):
    kind = ErrorKind.NOT_IN_QUEUE

    def __init__(self) -> None:
        super().__init__("You are not in any queue")


class SessionAlreadyActiveError(QueueError):
    kind = ErrorKind.SESSION_ALREADY_ACTIVE

    def __init__(self) -> None:
        super().__init__("You already have an active session")


class TutorCannotJoinQueueError(QueueError):
    kind = ErrorKind.TUTOR_CANNOT_JOIN

    def __init__(self) -> None:
        super().__init__("You cannot join a queue while you have an active session")


class InvalidScheduleError(QueueError):
    kind = ErrorKind.INVALID_SCHEDULE


class InvalidScheduleDayError(InvalidScheduleError):
    def __init__(self, day: str) -> None:
        super().__init__(f'Invalid day of week: "{day}"')


class InvalidTimeFormatError(InvalidScheduleError):
    def __init__(self, value: str) -> None:
        super().__init__(f'Invalid time format: "{value}". Use HH:MM (24h).')


class InvalidTimeRangeError(InvalidScheduleError):
    def __init__(self, start: str, end: str) -> None:
        super().__init__(f"Start time {start} must be before end time {end}.")


# --- Users / verification ---


class InvalidTokenError(UserError):
    kind = ErrorKind.INVALID_TOKEN

    def __init__(self) -> None:
        super().__init__("Invalid token provided")


class TokenAlreadyUsedError(UserError):
    kind = ErrorKind.TOKEN_USED

    def __init__(self) -> None:
        super().__init__("This token has already been used by another user")


class WrongServerError(UserError):
    kind = ErrorKind.WRONG_SERVER

    def __init__(self, expected_server_id: str) -> None:
        super().__init__(f"This token is for a different server (ID: {expected_server_id})")
        self.expected_server_id = expected_server_id


class MissingRoleError(UserError):
    kind = ErrorKind.MISSING_ROLE

    def __init__(self, role_type: str) -> None:
        super().__init__(f"You need the {role_type} role to use this command")
        self.role_type = role_type


# --- Config ---


class MissingBotTokenError(ConfigError):
    def __init__(self) -> None:
        super().__init__("Could not find DISCORD_BOT_TOKEN in your environment")

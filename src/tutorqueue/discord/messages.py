"""User-facing titles for domain errors, keyed by ``ErrorKind``."""

from __future__ import annotations

from tutorqueue.core.errors import ErrorKind

GENERIC_ERROR = "Something went wrong. Please try again or contact an admin."
DB_UNAVAILABLE = "The database is temporarily unavailable. Try again in a moment."

ERROR_TITLES: dict[ErrorKind, str] = {
    ErrorKind.QUEUE_NOT_FOUND: "Queue Not Found",
    ErrorKind.GUILD_NOT_FOUND: "Server Not Registered",
    ErrorKind.USER_NOT_VERIFIED: "User Not Verified",
    ErrorKind.NO_ACTIVE_SESSION: "No Active Session",
    ErrorKind.QUEUE_LOCKED: "Queue Locked",
    ErrorKind.QUEUE_STATE: "Queue State",
    ErrorKind.QUEUE_EXISTS: "Queue Already Exists",
    ErrorKind.QUEUE_EMPTY: "Queue Empty",
    ErrorKind.AMBIGUOUS_QUEUE: "Multiple Queues",
    ErrorKind.ALREADY_IN_QUEUE: "Already in Queue",
    ErrorKind.NOT_IN_QUEUE: "Not in Queue",
    ErrorKind.SESSION_ALREADY_ACTIVE: "Session Already Active",
    ErrorKind.TUTOR_CANNOT_JOIN: "Active Tutor Session",
    ErrorKind.INVALID_SCHEDULE: "Invalid Schedule",
    ErrorKind.INVALID_TOKEN: "Invalid Token",
    ErrorKind.TOKEN_USED: "Token Already Used",
    ErrorKind.WRONG_SERVER: "Wrong Server",
    ErrorKind.MISSING_ROLE: "Missing Role",
    ErrorKind.MISSING_BOT_TOKEN: "Configuration Error",
}


def error_title(kind: ErrorKind) -> str:
    return ERROR_TITLES.get(kind, "Error")

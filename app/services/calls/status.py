"""
Provider call status -> canonical session status.
Pure functions, no I/O.
"""
from enum import Enum


class CallStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    FAILED = "failed"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED,
    CallStatus.BUSY,
    CallStatus.NO_ANSWER,
    CallStatus.FAILED,
    CallStatus.CANCELED,
})

# Provider spellings that are not simply a canonical value with '-' or ' ' separators
_ALIASES = {
    "answered": CallStatus.IN_PROGRESS,
}

_CANONICAL = {status.value: status for status in CallStatus}


def normalize_status(raw: object) -> CallStatus:
    """Map a provider status string to CallStatus. Never raises; unrecognized -> UNKNOWN."""
    if isinstance(raw, CallStatus):
        return raw
    if not isinstance(raw, str):
        return CallStatus.UNKNOWN
    key = raw.strip().lower().replace("-", "_").replace(" ", "_")
    if key in _ALIASES:
        return _ALIASES[key]
    return _CANONICAL.get(key, CallStatus.UNKNOWN)


def is_terminal(status: object) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES

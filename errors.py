"""Errors raised by the room engine and surfaced to callers."""


class RoomEngineError(Exception):
    """Base class for room engine errors."""


class ValidationError(RoomEngineError):
    """Rejected input: empty content, unknown reply target, bad room key."""


class QuotaExceeded(RoomEngineError):
    """A guest has used up their lifetime message allowance."""

    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(f"Guest message limit reached ({count}/{limit})")


class SessionClosed(RoomEngineError):
    """Operation attempted on a room session that has been torn down."""

"""Engine error taxonomy.

Every rejection the engine can produce maps to one exception class with a
stable ``kind`` string, so callers can render a specific message without
matching on text. Precondition errors are raised before any store mutation.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors."""

    kind = "engine_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class NotFoundError(EngineError):
    """A referenced record does not exist."""

    kind = "not_found"

    def __init__(self, collection: str, record_id: str, message: str | None = None) -> None:
        super().__init__(message or f"{collection}/{record_id} not found")
        self.collection = collection
        self.record_id = record_id


class AlreadyMarkedError(EngineError):
    kind = "already_marked"


class EventNotEndedError(EngineError):
    kind = "event_not_ended"


class MissingBirthdayError(EngineError):
    kind = "missing_birthday"


class InvalidRatingError(EngineError):
    kind = "invalid_rating"


class UnauthorizedError(EngineError):
    kind = "unauthorized"


class SelfActionError(EngineError):
    """The caller targeted themselves (self-follow, marking own adventure done)."""

    kind = "self_action"


class UnavailableError(EngineError):
    """Store I/O failed or timed out."""

    kind = "unavailable"


class ConflictError(EngineError):
    """A guarded write found the record changed underneath it.

    Internal to the engine: services translate it into one of the public
    kinds (or retry) before it reaches a caller.
    """

    kind = "conflict"

    def __init__(self, collection: str, record_id: str, field: str) -> None:
        super().__init__(f"{collection}/{record_id}: guard on {field!r} failed")
        self.collection = collection
        self.record_id = record_id
        self.field = field

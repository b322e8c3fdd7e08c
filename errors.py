"""
Error taxonomy for the learning progress engine.

Each error carries the HTTP status the blueprints render it with.
"""

from __future__ import annotations


class ProgressError(Exception):
    """Base class for errors surfaced to callers."""

    status_code = 500
    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class InvalidInput(ProgressError):
    status_code = 400
    code = "invalid_input"


class InvalidQuality(InvalidInput):
    code = "invalid_quality"


class InvalidPeriod(InvalidInput):
    code = "invalid_period"


class NotFound(ProgressError):
    status_code = 404
    code = "not_found"


class Forbidden(ProgressError):
    status_code = 403
    code = "forbidden"


class Conflict(ProgressError):
    """Duplicate create-once write. Handled internally as a no-op."""

    status_code = 409
    code = "conflict"


class Unavailable(ProgressError):
    """Persistence failed mid unit-of-work; nothing was committed."""

    status_code = 503
    code = "unavailable"


class StaleWrite(Exception):
    """A compare-and-swap lost the race for an entity row; retry the unit of work."""

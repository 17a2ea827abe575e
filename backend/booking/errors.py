from __future__ import annotations

from datetime import datetime
from typing import Any


class BookingError(Exception):
    """Base class for errors surfaced to API callers.

    ``code`` is the stable machine-readable name; ``detail`` carries extra
    fields merged into the JSON error body.
    """

    code = "booking_error"
    status_code = 500

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        for key, value in self.detail.items():
            body[key] = value.isoformat() if isinstance(value, datetime) else value
        return body


class Unauthorized(BookingError):
    code = "unauthorized"
    status_code = 401


class Forbidden(BookingError):
    code = "forbidden"
    status_code = 403


class NotFound(BookingError):
    code = "not_found"
    status_code = 404


class InvalidInput(BookingError):
    code = "invalid_input"
    status_code = 400


class Conflict(BookingError):
    code = "conflict"
    status_code = 409

    def __init__(
        self,
        message: str,
        *,
        occurrence_index: int | None = None,
        occurrence_start: datetime | None = None,
        **detail: Any,
    ) -> None:
        super().__init__(
            message,
            occurrence_index=occurrence_index,
            occurrence_start=occurrence_start,
            **detail,
        )
        self.occurrence_index = occurrence_index
        self.occurrence_start = occurrence_start


class UpstreamFailure(BookingError):
    code = "upstream_failure"
    status_code = 502


class DuplicateSeriesMember(Exception):
    """Raised by repositories when (series_id, recurrence_index) already exists."""

    def __init__(self, series_id: str, recurrence_index: int) -> None:
        super().__init__(f"{series_id}#{recurrence_index} already exists")
        self.series_id = series_id
        self.recurrence_index = recurrence_index

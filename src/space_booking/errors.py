from __future__ import annotations


class ReservationError(Exception):
    """Base class for domain errors raised by the reservation engine."""

    code = "reservation_error"
    message = "Reservation request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class NotFoundError(ReservationError):
    code = "not_found"


class ReservationNotFound(NotFoundError):
    code = "reservation_not_found"
    message = "Reservation not found"


class SpaceNotFound(NotFoundError):
    code = "space_not_found"
    message = "Space not found"


class ReservationValidationError(ReservationError):
    code = "validation_error"


class InvalidDate(ReservationValidationError):
    code = "invalid_date"
    message = "Invalid date format (use YYYY-MM-DD)"


class DateInPast(ReservationValidationError):
    code = "date_in_past"
    message = "Cannot reserve dates in the past"


class DateTooFarInFuture(ReservationValidationError):
    code = "date_too_far_in_future"
    message = "Cannot reserve more than 1 week in advance"


class InvalidTime(ReservationValidationError):
    code = "invalid_time"
    message = "Invalid time format (use HH:MM)"


class StartAfterEnd(ReservationValidationError):
    code = "start_after_end"
    message = "Start time must be before end time"


class IncompleteTimeRange(ReservationValidationError):
    code = "incomplete_time_range"
    message = "Start and end time must be given together"


class NotAMeetingRoom(ReservationValidationError):
    code = "not_a_meeting_room"
    message = "Only meeting-room groups can be cleaned up"


class CannotUpdateCancelled(ReservationError):
    code = "cannot_update_cancelled"
    message = "Cannot update cancelled reservation"


class ConflictError(ReservationError):
    code = "conflict"


class ReservationAlreadyExists(ConflictError):
    code = "reservation_already_exists"
    message = "Space is already reserved for this time slot"


class StorageError(RuntimeError):
    """The persistent store failed; details stay in the logs."""

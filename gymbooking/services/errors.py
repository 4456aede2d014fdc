from __future__ import annotations

from typing import Any, Dict, Optional


class BookingError(Exception):
    """Base error for the booking service layer."""

    code = "booking_error"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.message}


class InvalidRequest(BookingError):
    code = "invalid_request"


class AccountBlocked(BookingError):
    code = "account_blocked"
    status_code = 403

    def __init__(self, message: str = "You cannot book classes while your account is blocked"):
        super().__init__(message)


class QuotaExceeded(BookingError):
    code = "quota_exceeded"
    status_code = 403

    def __init__(self, remaining: int = 0, limit: Optional[int] = None, message: Optional[str] = None):
        self.remaining = remaining
        self.limit = limit
        if message is None:
            if not limit:
                message = "Your subscription does not include classes"
            else:
                message = f"You have reached your limit of {limit} classes this month"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"remaining": self.remaining, "limit": self.limit})
        return data


class CancellationWindowClosed(BookingError):
    code = "cancellation_window_closed"
    status_code = 409

    def __init__(self, window_minutes: int):
        self.window_minutes = window_minutes
        super().__init__(
            f"Bookings cannot be cancelled less than {window_minutes} minutes before the class; "
            "it still counts against your monthly quota"
        )


class DuplicateBooking(BookingError):
    code = "duplicate_booking"
    status_code = 409

    def __init__(self, message: str = "You are already booked for this class"):
        super().__init__(message)


class CapacityRace(BookingError):
    """A concurrent writer took the seat, waitlist position or quota slot first."""

    code = "capacity_race"
    status_code = 409

    def __init__(self, message: str = "The class changed while booking, please try again"):
        super().__init__(message)


class ScheduleConflict(BookingError):
    code = "schedule_conflict"
    status_code = 409


class NotFound(BookingError):
    code = "not_found"
    status_code = 404


class ClassTypeNotFound(NotFound):
    def __init__(self, message: str = "Class not found"):
        super().__init__(message)


class ScheduleNotFound(NotFound):
    def __init__(self, message: str = "Booking unavailable: the class schedule no longer exists"):
        super().__init__(message)


class InstanceNotFound(NotFound):
    def __init__(self, message: str = "Booking unavailable: this class is not scheduled on that date"):
        super().__init__(message)


class BookingNotFound(NotFound):
    def __init__(self, message: str = "Booking not found"):
        super().__init__(message)


class MemberNotFound(NotFound):
    def __init__(self, message: str = "Member not found"):
        super().__init__(message)

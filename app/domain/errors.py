from __future__ import annotations

PROBLEM_TYPE_BASE = "https://tours.example.com/problems"


class DomainError(Exception):
    """Business rule violation rendered as a problem-details response."""

    status_code = 400
    title = "Domain Error"
    code = "domain-error"

    def __init__(self, detail: str | None = None, errors: list[dict[str, str]] | None = None) -> None:
        self.detail = detail or self.title
        self.errors = errors or []
        super().__init__(self.detail)

    @property
    def type(self) -> str:
        return f"{PROBLEM_TYPE_BASE}/{self.code}"


class TourNotFound(DomainError):
    status_code = 404
    title = "Tour not found"
    code = "tour-not-found"


class BookingNotFound(DomainError):
    status_code = 404
    title = "Booking not found"
    code = "booking-not-found"


class SlotNotFound(DomainError):
    status_code = 404
    title = "Availability slot not found"
    code = "slot-not-found"


class NoGuideAssigned(DomainError):
    status_code = 422
    title = "Tour has no guide"
    code = "no-guide-assigned"


class DateNotAvailable(DomainError):
    status_code = 409
    title = "Date not available"
    code = "date-not-available"


class CapacityExceeded(DomainError):
    status_code = 409
    title = "Not enough spots available"
    code = "capacity-exceeded"

    def __init__(self, available: int) -> None:
        self.available = available
        super().__init__(
            f"Not enough spots available. Only {available} spots left.",
            errors=[{"field": "group_size", "message": f"available={available}"}],
        )


class CapacityBelowBooked(DomainError):
    status_code = 409
    title = "Capacity below booked spots"
    code = "capacity-below-booked"


class Forbidden(DomainError):
    status_code = 403
    title = "Forbidden"
    code = "forbidden"


class BookingAlreadyCancelled(DomainError):
    status_code = 409
    title = "Booking already cancelled"
    code = "booking-already-cancelled"


class InvalidTransition(DomainError):
    status_code = 409
    title = "Invalid booking transition"
    code = "invalid-transition"


class DuplicateCheckoutSession(DomainError):
    status_code = 409
    title = "Duplicate checkout session"
    code = "duplicate-checkout-session"

    def __init__(self, checkout_session_id: str | None = None, request_key: str | None = None) -> None:
        self.checkout_session_id = checkout_session_id
        self.request_key = request_key
        super().__init__("A booking already exists for this checkout session")


class ReservationUnavailable(DomainError):
    status_code = 503
    title = "Reservation temporarily unavailable"
    code = "reservation-unavailable"

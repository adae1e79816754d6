"""Error taxonomy of the booking service.

Every error carries a stable ``code`` and the HTTP status it maps to at the
request boundary (see ``main.py``).
"""


class BookingServiceError(Exception):
    code = "booking_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookingServiceError):
    """Malformed or missing input. Never worth retrying."""
    code = "validation_error"
    status_code = 400


class NotFoundError(BookingServiceError):
    code = "not_found"
    status_code = 404


class ListingNotFoundError(NotFoundError):
    code = "listing_not_found"


class ForbiddenError(BookingServiceError):
    code = "forbidden"
    status_code = 403


class CapacityExceededError(BookingServiceError):
    """The requested quantity is not free for the window. The client may retry with other dates."""
    code = "capacity_exceeded"
    status_code = 409


class InvalidTransitionError(BookingServiceError):
    code = "invalid_transition"
    status_code = 409


class ConcurrencyConflictError(BookingServiceError):
    """Lost a race on a listing's capacity. Retried internally before surfacing."""
    code = "concurrency_conflict"
    status_code = 409


class ServiceUnavailableError(BookingServiceError):
    """A collaborating service could not be reached or answered nonsense."""
    code = "upstream_unavailable"
    status_code = 503

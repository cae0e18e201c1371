"""
Error taxonomy for the rental booking core.

ValidationError and DateRangeConflict are expected, user-recoverable
failures. InvalidTransition signals a logic bug and is never recovered.
UpstreamUnavailable means a collaborator service is down and the caller
must degrade without substituting zero or "accepted".
"""


class RentalError(Exception):
    """Base class for every error raised by the rentals core."""

    default_message = "Rental operation failed."

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(RentalError):
    """Bad input shape or range, fixable by the user."""

    default_message = "Invalid input."

    def __init__(self, message=None, errors=None):
        super().__init__(message)
        self.errors = errors or {}


class DurationOutOfRange(ValidationError):
    """Requested rental length violates the product's min/max days."""

    def __init__(self, bound: int, days: int, kind: str):
        self.bound = bound
        self.days = days
        self.kind = kind
        if kind == "min":
            message = (f"Rental duration must be at least {bound} day(s), "
                       f"got {days}.")
        else:
            message = (f"Rental duration cannot exceed {bound} day(s), "
                       f"got {days}.")
        super().__init__(message, errors={"duration": [message]})


class DateRangeConflict(RentalError):
    """The server rejected a booking because the dates were taken."""

    default_message = "The selected dates are no longer available."

    def __init__(self, message=None, dates=None):
        super().__init__(message)
        self.dates = list(dates or [])


class InvalidTransition(RentalError):
    """A lifecycle action was attempted from a state that does not allow it."""

    def __init__(self, rental_status, action, payment_status=None):
        self.rental_status = rental_status
        self.payment_status = payment_status
        self.action = action
        message = (f"Cannot {action} a rental in status '{rental_status}'")
        if payment_status is not None:
            message += f" with payment status '{payment_status}'"
        super().__init__(message + ".")


class ReconciliationFlagged(RentalError):
    """A flagged slip verdict was accepted without an explicit override."""

    def __init__(self, result):
        self.result = result
        fields = ", ".join(result.mismatches) or "unknown"
        super().__init__(
            f"Payment slip needs manual review (mismatched: {fields})."
        )


class UpstreamUnavailable(RentalError):
    """A collaborating service (fee schedule, slip OCR, marketplace) is down."""

    def __init__(self, service: str, message=None):
        self.service = service
        super().__init__(message or f"{service} is currently unavailable.")


class SubmissionInProgress(RentalError):
    default_message = "A submission is already in progress."


class MarketplaceAPIError(RentalError):
    """Non-recoverable HTTP failure from the marketplace API."""

    def __init__(self, status_code: int, message=None, payload=None):
        self.status_code = status_code
        self.payload = payload or {}
        super().__init__(
            message or f"Marketplace API error: {status_code}"
        )

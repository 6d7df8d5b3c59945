class BookingError(Exception):
    """Base for every error the booking engine reports to its callers."""

    code = "BookingError"


class ValidationError(BookingError):
    code = "ValidationError"


class InvalidSlotError(ValidationError):
    code = "InvalidSlot"


class FacilityClosedError(BookingError):
    code = "FacilityClosed"


class SlotFullError(BookingError):
    code = "SlotFull"


class CapacityExceededError(SlotFullError):
    """Raised by a capacity ledger when a reserve would overshoot capacity."""


class DuplicateBookingError(BookingError):
    code = "DuplicateBooking"


class DailyLimitExceededError(BookingError):
    code = "DailyLimitExceeded"


class NotFoundError(BookingError):
    code = "NotFound"


class ForbiddenError(BookingError):
    code = "Forbidden"


class InvalidTransitionError(BookingError):
    code = "InvalidTransition"


class StaleStateError(BookingError):
    code = "StaleState"


class InconsistentLedgerError(BookingError):
    """Compensating release failed; ledger and store need manual reconciliation."""

    code = "Inconsistent"

from fastapi import HTTPException, status

from ..domain.errors import (
    BookingError,
    DailyLimitExceededError,
    DuplicateBookingError,
    FacilityClosedError,
    ForbiddenError,
    InconsistentLedgerError,
    InvalidTransitionError,
    NotFoundError,
    SlotFullError,
    StaleStateError,
    ValidationError,
)

_STATUS_BY_ERROR: list[tuple[type[BookingError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (FacilityClosedError, status.HTTP_409_CONFLICT),
    (SlotFullError, status.HTTP_409_CONFLICT),
    (DuplicateBookingError, status.HTTP_409_CONFLICT),
    (DailyLimitExceededError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (StaleStateError, status.HTTP_412_PRECONDITION_FAILED),
    (InconsistentLedgerError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def to_http_exception(exc: BookingError) -> HTTPException:
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    return HTTPException(status_code=status_code, detail={"error": exc.code, "message": str(exc)})

class BookingCoreError(ValueError):
    """Base class for user-visible booking-core errors."""

    code = "error"


class BookingValidationError(BookingCoreError):
    code = "validation_error"


class NotFoundError(BookingCoreError):
    code = "not_found"


class AlreadyExistsError(BookingCoreError):
    code = "already_exists"


class NotEligibleError(BookingCoreError):
    code = "not_eligible"


class UnauthorizedError(BookingCoreError):
    code = "unauthorized"


class InvalidStateError(BookingCoreError):
    code = "invalid_state"


class HasActiveBookingsError(InvalidStateError):
    code = "has_active_bookings"


class ConflictError(BookingCoreError):
    code = "conflict"


class DuplicateReviewError(BookingCoreError):
    code = "duplicate_review"

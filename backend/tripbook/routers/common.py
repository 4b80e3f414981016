from fastapi import HTTPException, Request

from tripbook.container import Container
from tripbook.services.errors import (
    AlreadyExistsError,
    BookingCoreError,
    ConflictError,
    DuplicateReviewError,
    InvalidStateError,
    NotEligibleError,
    NotFoundError,
    UnauthorizedError,
)

_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (NotEligibleError, 403),
    (UnauthorizedError, 403),
    (AlreadyExistsError, 409),
    (InvalidStateError, 409),
    (ConflictError, 409),
    (DuplicateReviewError, 409),
)


def get_container(request: Request) -> Container:
    return request.app.state.container


def raise_booking_http_error(exc: BookingCoreError) -> None:
    detail = {"code": exc.code, "message": str(exc)}
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=detail)
    raise HTTPException(status_code=400, detail=detail)

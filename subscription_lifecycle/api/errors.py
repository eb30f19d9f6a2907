"""Map lifecycle exceptions onto HTTP responses"""
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..core.config import settings
from ..core.exceptions import (
    BookingServiceError,
    CancellationBlockedError,
    DowngradeBlockedError,
    EligibilityError,
    ExternalGatewayError,
    InvalidBillingPeriodError,
    InvalidPerkTypeError,
    InvalidStateError,
    InvalidTierError,
    NoOpError,
    NotFoundError,
    SubscriptionLifecycleError,
)

logger = logging.getLogger(__name__)

# Checked in order; first isinstance match wins
STATUS_CODES = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTierError, status.HTTP_400_BAD_REQUEST),
    (InvalidBillingPeriodError, status.HTTP_400_BAD_REQUEST),
    (InvalidPerkTypeError, status.HTTP_400_BAD_REQUEST),
    (NoOpError, status.HTTP_409_CONFLICT),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (CancellationBlockedError, status.HTTP_409_CONFLICT),
    (DowngradeBlockedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (EligibilityError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ExternalGatewayError, status.HTTP_502_BAD_GATEWAY),
    (BookingServiceError, status.HTTP_502_BAD_GATEWAY),
)


def status_code_for(exc: SubscriptionLifecycleError) -> int:
    for exc_type, code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def lifecycle_exception_handler(request: Request, exc: SubscriptionLifecycleError) -> JSONResponse:
    status_code = status_code_for(exc)
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, DowngradeBlockedError):
        content["restrictions"] = exc.restrictions

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}", extra={"code": exc.code})
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}", extra={"code": exc.code})

    return JSONResponse(status_code=status_code, content=content)


async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    detail = str(exc) if settings.ENVIRONMENT == "development" else "Internal server error"
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": detail, "code": "internal_error"}
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SubscriptionLifecycleError, lifecycle_exception_handler)
    app.add_exception_handler(Exception, unexpected_exception_handler)

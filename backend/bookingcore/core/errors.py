"""
Error taxonomy for the booking core.

Every error carries the HTTP status it maps to so the API layer can
translate it without knowing about individual error types.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse

from bookingcore.core.logging import get_logger

logger = get_logger(__name__)


class CoreError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class AuthenticationError(CoreError):
    """Bad or missing signature, token or shared secret."""

    status_code = status.HTTP_401_UNAUTHORIZED


class AuthorizationError(CoreError):
    """Caller is authenticated but lacks the required capability."""

    status_code = status.HTTP_403_FORBIDDEN


class ValidationError(CoreError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(CoreError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(CoreError):
    """Illegal state transition or a lost optimistic-concurrency race."""

    status_code = status.HTTP_409_CONFLICT


class DeliveryError(CoreError):
    """
    A single endpoint rejected a delivery.

    `permanent` is set when the endpoint is gone for good (404/410) and the
    subscription behind it should be deactivated.
    """

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str = "", permanent: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.permanent = permanent
        self.endpoint_status = status_code


class PersistenceError(CoreError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_error", error_type=type(exc).__name__, error=exc.message)
    else:
        logger.info("request_rejected", error_type=type(exc).__name__, error=exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )

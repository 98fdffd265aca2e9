from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from logs import get_logger

logger = get_logger(__name__)


class TrackerError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)


class DuplicateUsername(TrackerError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Username already exists"


class InvalidCredentials(TrackerError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Invalid credentials"


class Unauthenticated(TrackerError):
    """No usable token was presented."""

    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Not authenticated"


class Unauthorized(TrackerError):
    """A token was presented but its signature or expiry check failed."""

    status_code = status.HTTP_403_FORBIDDEN
    message = "Invalid or expired token"


class NotFound(TrackerError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Expense not found"


class ValidationError(TrackerError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid input"


class StorageFailure(TrackerError):
    message = "Storage unavailable"


class NotificationFailure(TrackerError):
    message = "Notification could not be delivered"


class IdentityProviderError(TrackerError):
    status_code = status.HTTP_502_BAD_GATEWAY
    message = "External sign-in failed"


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TrackerError)
    async def tracker_error_handler(request: Request, exc: TrackerError):
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(part) for part in first["loc"] if part != "body")
            message = f"{field}: {first['msg']}" if field else first["msg"]
        else:
            message = ValidationError.message
        return error_response(status.HTTP_400_BAD_REQUEST, message)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(SQLAlchemyError)
    async def storage_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(
            "storage_error", path=request.url.path, error=str(exc), exc_info=exc
        )
        return error_response(StorageFailure.status_code, StorageFailure.message)

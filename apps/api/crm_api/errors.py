from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from crm_api.context import get_correlation_id


logger = logging.getLogger("crm_api.errors")


class ApiError(Exception):
    """Base error carried to the client as an error envelope.

    ``message`` is the only text the client sees; raw store and identity
    details belong in the server log.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "InternalError"
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, *, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class MissingCredential(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "MissingCredential"
    default_message = "Missing or invalid authorization header"


class InvalidOrExpiredToken(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "InvalidOrExpiredToken"
    default_message = "Invalid or expired token"


class UserNotProvisioned(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UserNotProvisioned"
    default_message = "User not found in database"


class UserDeactivated(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "UserDeactivated"
    default_message = "User account is deactivated"


class InvalidCredentials(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "InvalidCredentials"
    default_message = "Invalid login credentials"


class UserNotFound(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "UserNotFound"
    default_message = "User not found"


class IdentityError(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "IdentityError"
    default_message = "Failed to create user"


class UserCreationFailed(ApiError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "UserCreationFailed"
    default_message = "Error creating user record"


class IdentityUnavailable(ApiError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "IdentityUnavailable"
    default_message = "Identity service unavailable"


class ValidationError(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "ValidationError"
    default_message = "Request validation failed"


class InvalidReference(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "InvalidReference"
    default_message = "Referenced record does not exist"


class NotFound(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NotFound"
    default_message = "Record not found"


class DuplicateRecord(ApiError):
    status_code = status.HTTP_409_CONFLICT
    code = "DuplicateRecord"
    default_message = "Duplicate record"


class RecordInUse(ApiError):
    status_code = status.HTTP_409_CONFLICT
    code = "RecordInUse"
    default_message = "Record is referenced by other records"


class InsufficientPermissions(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "InsufficientPermissions"
    default_message = "Insufficient permissions"


class InvalidColumnReference(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "InvalidColumnReference"
    default_message = "Invalid column reference"


class StoreOperationFailed(ApiError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "StoreOperationFailed"
    default_message = "Database operation failed"


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=asdict(payload))


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    field_errors: list[dict[str, str]] = []
    for error in exc.errors():
        field_parts = [str(part) for part in error.get("loc", []) if part != "body"]
        field_errors.append(
            {
                "field": ".".join(field_parts) or "body",
                "code": str(error.get("type", "validation_error")),
                "message": str(error.get("msg", "Validation failed")),
            }
        )

    missing = [item["field"] for item in field_errors if item["code"] == "missing"]
    if missing:
        message = f"Missing required field: {', '.join(missing)}"
    else:
        message = ValidationError.default_message
    return error_response(
        request,
        status_code=ValidationError.status_code,
        code=ValidationError.code,
        message=message,
        details=field_errors,
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_error", exc_info=exc, extra={"path": request.url.path, "error": str(exc)})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code=ApiError.code,
        message=ApiError.default_message,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)

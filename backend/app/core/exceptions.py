"""
Custom exceptions and error handlers for consistent error responses.

Every domain error carries an ErrorKind; the HTTP status and error code are
derived from the kind, never from the route that raised it.
"""

import enum
import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import IntegrityError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    """Domain error taxonomy."""
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    INVALID_STATE = "INVALID_STATE"
    CONFLICT = "CONFLICT"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL = "INTERNAL"


KIND_STATUS = {
    ErrorKind.INVALID_ARGUMENT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class AppException(Exception):
    """Base application exception."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, error_code: str, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return KIND_STATUS[self.kind]


class InvalidArgumentError(AppException):
    """Raised for missing or malformed input, including currency mismatches."""

    kind = ErrorKind.INVALID_ARGUMENT

    def __init__(self, message: str, details: Dict[str, Any] = None, error_code: str = "ERR_INVALID_ARGUMENT"):
        super().__init__(message=message, error_code=error_code, details=details)


class MissingAccountError(InvalidArgumentError):
    """Raised when a sub-ledger row is confirmed without an account."""

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            message=f"{resource} {resource_id} has no account assigned",
            details={"resource": resource, "id": resource_id},
            error_code="ERR_MISSING_ACCOUNT",
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND",
            details={"resource": resource, "id": resource_id}
        )


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    kind = ErrorKind.FORBIDDEN

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(message=message, error_code="ERR_FORBIDDEN", details=details)


class InvalidStateError(AppException):
    """Raised when an entity is in the wrong status for the requested operation."""

    kind = ErrorKind.INVALID_STATE

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message=message, error_code="ERR_INVALID_STATE", details=details)


class ConflictError(AppException):
    """Raised when the operation collides with an in-flight approval request."""

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message=message, error_code="ERR_CONFLICT", details=details)


class AuthenticationError(AppException):
    """Raised when the actor header is missing or names an unknown user."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message=message, error_code="ERR_AUTH")


# Constraint names the translator recognises
PENDING_APPROVAL_INDEX = "uq_approval_requests_pending_entity"


def translate_integrity_error(exc: IntegrityError) -> AppException:
    """Map a storage constraint violation to a domain error."""
    text = str(exc.orig) if exc.orig is not None else str(exc)
    lowered = text.lower()

    if PENDING_APPROVAL_INDEX in lowered or "approval_requests.entity_type" in lowered:
        return ConflictError("A pending approval request already exists for this entity")
    if "not null" in lowered:
        return InvalidArgumentError("A required field is missing", details={"constraint": "not_null"})
    if "foreign key" in lowered:
        return InvalidArgumentError("A referenced record does not exist", details={"constraint": "foreign_key"})
    if "check constraint" in lowered:
        return InvalidArgumentError("A value is out of the allowed range", details={"constraint": "check"})
    if "unique" in lowered:
        return ConflictError("A record with the same identity already exists")

    return AppException("An internal server error occurred", error_code="ERR_INTERNAL_SERVER")


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Handler for constraint violations that escaped service-level validation."""
    translated = translate_integrity_error(exc)
    if translated.kind == ErrorKind.INTERNAL:
        logger.error("Unmapped integrity error: %s", exc)
    return await app_exception_handler(request, translated)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": jsonable_encoder(exc.errors())
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )

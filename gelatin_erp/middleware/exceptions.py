"""Domain exceptions and handlers for consistent error responses.

Every error leaves the API as:

    {"error": {"code": "...", "message": "...", "details": {...}}}

Services raise the domain exceptions below; routers let them propagate and
the handlers registered here translate them.
"""

import logging
import traceback
from typing import Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class GelatinERPException(Exception):
    """Base exception for application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class BusinessLogicError(GelatinERPException):
    """Exception for business logic violations."""

    def __init__(
        self,
        message: str,
        error_code: str = "BUSINESS_LOGIC_ERROR",
        details: dict | None = None,
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code=error_code,
            details=details,
        )


class ResourceNotFoundError(GelatinERPException):
    """Exception for resources not found."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
            details={"resource": resource, "id": identifier},
        )


class ConflictError(GelatinERPException):
    """Base for state conflicts (409)."""

    def __init__(self, message: str, error_code: str, details: dict | None = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code=error_code,
            details=details,
        )


# ── Blending / batch registry ───────────────────────────────


class InvalidRangeError(BusinessLogicError):
    def __init__(self, minimum: float, maximum: float, field: str = "target_bloom"):
        super().__init__(
            message=f"Invalid {field} range: minimum {minimum} exceeds maximum {maximum}",
            error_code="INVALID_RANGE",
            details={"field": field, "min": minimum, "max": maximum},
        )


class InvalidQuantityError(BusinessLogicError):
    def __init__(self, message: str, batch_id: str | None = None, field: str = "bags"):
        super().__init__(
            message=message,
            error_code="INVALID_QUANTITY",
            details={"field": field, "batch_id": batch_id},
        )
        self.batch_id = batch_id


class BatchUnavailableError(ConflictError):
    def __init__(self, batch_id: str, reason: str, batch_number: int | None = None):
        label = f"Batch {batch_number}" if batch_number is not None else f"Batch {batch_id}"
        super().__init__(
            message=f"{label} is not available: {reason}",
            error_code="BATCH_UNAVAILABLE",
            details={"batch_id": batch_id, "batch_number": batch_number, "reason": reason},
        )
        self.batch_id = batch_id


class AlreadyUsedError(ConflictError):
    def __init__(self, batch_id: str, used_in_ref: str | None = None):
        where = f" in {used_in_ref}" if used_in_ref else ""
        super().__init__(
            message=f"Batch {batch_id} is already used{where}",
            error_code="ALREADY_USED",
            details={"batch_id": batch_id, "used_in_ref": used_in_ref},
        )
        self.batch_id = batch_id


class DuplicateBatchNumberError(ConflictError):
    def __init__(self, batch_number: int, fiscal_year: str, batch_type: str):
        super().__init__(
            message=(
                f"Batch number {batch_number} already exists for "
                f"{batch_type} batches in {fiscal_year}"
            ),
            error_code="DUPLICATE_BATCH_NUMBER",
            details={
                "field": "batch_number",
                "batch_number": batch_number,
                "fiscal_year": fiscal_year,
                "batch_type": batch_type,
            },
        )


class DuplicateLotNumberError(ConflictError):
    def __init__(self, lot_number: str, fiscal_year: str):
        super().__init__(
            message=f"Lot number {lot_number} already exists in {fiscal_year}",
            error_code="DUPLICATE_LOT_NUMBER",
            details={"field": "lot_number", "lot_number": lot_number, "fiscal_year": fiscal_year},
        )


class TransactionConflictError(ConflictError):
    """Concurrent write lost the race.  Retryable: re-read and try again."""

    def __init__(self, message: str = "Concurrent update detected. Please retry."):
        super().__init__(message=message, error_code="TRANSACTION_CONFLICT")


class PartialImportFailure(GelatinERPException):
    """Some import rows were skipped.  Not fatal; reported in the import result."""

    def __init__(self, skipped: list[dict]):
        self.skipped = skipped
        super().__init__(
            message=f"{len(skipped)} row(s) skipped during import",
            status_code=status.HTTP_200_OK,
            error_code="PARTIAL_IMPORT",
            details={"skipped": skipped},
        )


# ── Response helpers ────────────────────────────────────────


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
) -> JSONResponse:
    """Create standardized error response."""
    content = {
        "error": {
            "code": error_code,
            "message": message,
        }
    }

    if details:
        content["error"]["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content,
    )


async def gelatin_erp_exception_handler(
    request: Request,
    exc: GelatinERPException,
) -> JSONResponse:
    """Handle domain exceptions."""
    logger.warning(
        f"Domain exception: {exc.error_code} - {exc.message}",
        extra={
            "error_code": exc.error_code,
            "path": request.url.path,
            "method": request.method,
        },
    )

    return create_error_response(
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.error_code,
        details=exc.details,
    )


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code}: {exc.detail}",
            extra={
                "path": request.url.path,
                "method": request.method,
            },
        )

    return create_error_response(
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError],
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(
        f"Validation error on {request.url.path}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def database_exception_handler(
    request: Request,
    exc: IntegrityError,
) -> JSONResponse:
    """Handle database integrity errors that escaped the service layer."""
    logger.error(
        f"Database integrity error on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    error_msg = str(exc.orig) if hasattr(exc, "orig") else str(exc)

    if "unique" in error_msg.lower():
        message = "A record with this value already exists"
        error_code = "DUPLICATE_RECORD"
    elif "foreign key" in error_msg.lower():
        message = "Referenced record does not exist"
        error_code = "FOREIGN_KEY_VIOLATION"
    elif "not null" in error_msg.lower():
        message = "Required field is missing"
        error_code = "NULL_VALUE_NOT_ALLOWED"
    else:
        message = "Database constraint violation"
        error_code = "INTEGRITY_ERROR"

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message=message,
        error_code=error_code,
    )


async def operational_exception_handler(
    request: Request,
    exc: OperationalError,
) -> JSONResponse:
    """Handle database operational errors (connection issues, etc.)."""
    logger.error(
        f"Database operational error on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    return create_error_response(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        message="Database temporarily unavailable. Please try again.",
        error_code="DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle all other unhandled exceptions."""
    logger.error(
        f"Unhandled exception on {request.url.path}: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc(),
        },
        exc_info=True,
    )

    return create_error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        error_code="INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    """Register all custom exception handlers with FastAPI app."""
    app.add_exception_handler(GelatinERPException, gelatin_erp_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, database_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

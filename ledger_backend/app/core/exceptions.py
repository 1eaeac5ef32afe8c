"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes, the ledger error taxonomy and global
exception handlers.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict, List

logger = logging.getLogger("ledger.errors")


class AppException(Exception):
    """Base application exception."""

    retryable = False

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


# Ledger error taxonomy

class ValidationFailed(AppException):
    """
    A postings batch does not balance or uses types the event may not emit.

    Never retryable: it means the event handling built a wrong batch.
    """

    def __init__(self, message: str, violations: List[str] = None, details: Dict[str, Any] = None):
        self.violations = violations or []
        payload = dict(details or {})
        if self.violations:
            payload["violations"] = self.violations
        super().__init__(
            message=message,
            error_code="ERR_LEDGER_VALIDATION",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=payload
        )


class StoreUnavailable(AppException):
    """Transient storage failure. Safe to retry thanks to idempotency keys."""

    retryable = True

    def __init__(self, message: str = "Ledger store temporarily unavailable", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_STORE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details
        )


class ReconciliationConflict(AppException):
    """An order event contradicts what was already posted for that order."""

    def __init__(self, order_id: str, message: str, details: Dict[str, Any] = None):
        self.order_id = order_id
        payload = {"order_id": order_id}
        payload.update(details or {})
        super().__init__(
            message=message,
            error_code="ERR_RECONCILIATION",
            status_code=status.HTTP_409_CONFLICT,
            details=payload
        )


class SettlementPending(AppException):
    """The payout rail has not confirmed the transfer yet; the settlement stays open."""

    def __init__(self, settlement_id: int):
        super().__init__(
            message=f"Settlement {settlement_id} is awaiting payout confirmation",
            error_code="ERR_SETTLEMENT_PENDING",
            status_code=status.HTTP_409_CONFLICT,
            details={"settlement_id": settlement_id}
        )


class SettlementAlreadyPaid(AppException):
    """Raised when an operator acts on a settlement that is already paid."""

    def __init__(self, settlement_id: int):
        super().__init__(
            message=f"Settlement {settlement_id} is already paid",
            error_code="ERR_SETTLEMENT_PAID",
            status_code=status.HTTP_409_CONFLICT,
            details={"settlement_id": settlement_id}
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    if isinstance(exc, (ValidationFailed, ReconciliationConflict)):
        logger.error("%s: %s", exc.error_code, exc.message, extra={"details": exc.details})
    elif exc.status_code >= 500:
        logger.warning("%s: %s", exc.error_code, exc.message)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
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
                "errors": jsonable_errors(exc)
            }
        }
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    """Pydantic error entries may carry exception objects in ctx."""
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(error)
    return errors


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

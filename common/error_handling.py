"""
Error taxonomy and standardized error responses for the credit ledger
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"

    # Ledger & marketplace rules
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INSUFFICIENT_LISTING_INVENTORY = "INSUFFICIENT_LISTING_INVENTORY"
    LISTING_NOT_ACTIVE = "LISTING_NOT_ACTIVE"
    SELF_TRADE_NOT_ALLOWED = "SELF_TRADE_NOT_ALLOWED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    PRICE_MISMATCH = "PRICE_MISMATCH"
    PAYMENT_NOT_CONFIRMED = "PAYMENT_NOT_CONFIRMED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    EXTERNAL_SERVICE_UNAVAILABLE = "EXTERNAL_SERVICE_UNAVAILABLE"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"

class BusinessLogicError(Exception):
    """Rejected operation; nothing was mutated"""
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, field: str = None, context: Dict[str, Any] = None, code: str = None):
        self.code = code or type(self).code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Infrastructure failure, optionally wrapping the error that caused it"""
    code = ErrorCodes.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, original_error: Exception = None, context: Dict[str, Any] = None, code: str = None):
        self.code = code or type(self).code
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(message)

class ValidationError(BusinessLogicError):
    code = ErrorCodes.VALIDATION_ERROR

class NotFound(BusinessLogicError):
    code = ErrorCodes.NOT_FOUND

class NotListingOwner(BusinessLogicError):
    code = ErrorCodes.FORBIDDEN

class InsufficientCredits(BusinessLogicError):
    code = ErrorCodes.INSUFFICIENT_CREDITS

class InsufficientListingInventory(BusinessLogicError):
    code = ErrorCodes.INSUFFICIENT_LISTING_INVENTORY

class ListingNotActive(BusinessLogicError):
    code = ErrorCodes.LISTING_NOT_ACTIVE

class SelfTradeNotAllowed(BusinessLogicError):
    code = ErrorCodes.SELF_TRADE_NOT_ALLOWED

class AlreadyCompleted(BusinessLogicError):
    code = ErrorCodes.ALREADY_COMPLETED

class PriceMismatch(BusinessLogicError):
    code = ErrorCodes.PRICE_MISMATCH

class PaymentNotConfirmed(BusinessLogicError):
    code = ErrorCodes.PAYMENT_NOT_CONFIRMED

class RateLimitExceeded(BusinessLogicError):
    code = ErrorCodes.RATE_LIMIT_EXCEEDED

class ExternalServiceUnavailable(ServiceError):
    code = ErrorCodes.EXTERNAL_SERVICE_UNAVAILABLE

class CompensationFailed(ServiceError):
    """A best-effort rollback failed; the ledger needs manual reconciliation"""
    code = ErrorCodes.COMPENSATION_FAILED

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    request_id: str = None
) -> JSONResponse:
    """Create standardized error response"""

    error_detail = ErrorDetail(
        code=error_code,
        message=message,
        field=field,
        context=context
    )

    error_response = StandardErrorResponse(
        error=error_detail,
        timestamp=time.time(),
        trace_id=trace_id,
        request_id=request_id
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump()
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business rule rejections"""

    status_code_map = {
        ErrorCodes.VALIDATION_ERROR: 400,
        ErrorCodes.NOT_FOUND: 404,
        ErrorCodes.FORBIDDEN: 403,
        ErrorCodes.INSUFFICIENT_CREDITS: 400,
        ErrorCodes.INSUFFICIENT_LISTING_INVENTORY: 409,
        ErrorCodes.LISTING_NOT_ACTIVE: 409,
        ErrorCodes.SELF_TRADE_NOT_ALLOWED: 400,
        ErrorCodes.ALREADY_COMPLETED: 409,
        ErrorCodes.PRICE_MISMATCH: 400,
        ErrorCodes.PAYMENT_NOT_CONFIRMED: 402,
        ErrorCodes.RATE_LIMIT_EXCEEDED: 429,
    }

    status_code = status_code_map.get(exc.code, 400)

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "request_id": request_id,
        "field": exc.field,
        "context": exc.context
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        trace_id=trace_id,
        request_id=request_id
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""

    status_code_map = {
        ErrorCodes.EXTERNAL_SERVICE_UNAVAILABLE: 503,
        ErrorCodes.COMPENSATION_FAILED: 500,
    }

    status_code = status_code_map.get(exc.code, 500)

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    log = logger.critical if exc.code == ErrorCodes.COMPENSATION_FAILED else logger.error
    log(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "request_id": request_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        context=exc.context,
        trace_id=trace_id,
        request_id=request_id
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request body validation exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id,
        "request_id": request_id,
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        trace_id=trace_id,
        request_id=request_id
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        403: ErrorCodes.FORBIDDEN,
        404: ErrorCodes.NOT_FOUND,
        429: ErrorCodes.RATE_LIMIT_EXCEEDED,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": trace_id,
        "request_id": request_id
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id,
        request_id=request_id
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "request_id": request_id,
        "traceback": traceback.format_exc()
    })

    # Don't expose internal error details
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
        request_id=request_id
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

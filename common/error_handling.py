"""
Error taxonomy and the JSON error envelope for the settlement API

Domain failures raise BusinessLogicError; infrastructure and upstream
failures raise ServiceError. Both are rendered by the handlers below as

    {"success": false, "error": {"code", "message", "field", "context"},
     "timestamp", "trace_id", "request_id"}
"""
from typing import Optional, Dict, Any, Tuple
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    # identity and ownership
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    # input
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_PRODUCT_TYPE = "INVALID_PRODUCT_TYPE"
    NOT_FOUND = "NOT_FOUND"

    # conflicts
    SLOT_UNAVAILABLE = "SLOT_UNAVAILABLE"
    PAYOUT_IN_PROGRESS = "PAYOUT_IN_PROGRESS"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    DUPLICATE_COUPON = "DUPLICATE_COUPON"

    # money and policy rules
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    MINIMUM_NOT_MET = "MINIMUM_NOT_MET"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    NOT_CONFIGURED = "NOT_CONFIGURED"

    # infrastructure
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"

    # payment gateway
    GATEWAY_ERROR = "GATEWAY_ERROR"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"

class BusinessLogicError(Exception):
    """A request that breaks a business rule; reported to the caller with its code."""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """A dependency (store, gateway) failed underneath an otherwise valid request."""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

BUSINESS_STATUS_CODES = {
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.INVALID_PRODUCT_TYPE: 400,
    ErrorCodes.UNAUTHORIZED: 403,
    ErrorCodes.FORBIDDEN: 403,
    ErrorCodes.INVALID_SIGNATURE: 401,
    ErrorCodes.SLOT_UNAVAILABLE: 409,
    ErrorCodes.PAYOUT_IN_PROGRESS: 409,
    ErrorCodes.ALREADY_CANCELLED: 409,
    ErrorCodes.DUPLICATE_COUPON: 409,
    ErrorCodes.INSUFFICIENT_BALANCE: 422,
    ErrorCodes.MINIMUM_NOT_MET: 422,
    ErrorCodes.POLICY_VIOLATION: 422,
    ErrorCodes.NOT_CONFIGURED: 422,
}

SERVICE_STATUS_CODES = {
    ErrorCodes.DATABASE_ERROR: 503,
    ErrorCodes.CIRCUIT_BREAKER_OPEN: 503,
    ErrorCodes.GATEWAY_ERROR: 502,
    ErrorCodes.GATEWAY_TIMEOUT: 504,
}

HTTP_STATUS_CODES = {
    400: ErrorCodes.VALIDATION_ERROR,
    401: ErrorCodes.INVALID_TOKEN,
    403: ErrorCodes.FORBIDDEN,
    404: ErrorCodes.NOT_FOUND,
}

def _request_ids(request: Request) -> Tuple[Optional[str], Optional[str]]:
    # set by the tracing middleware
    return getattr(request.state, "trace_id", None), getattr(request.state, "request_id", None)

def create_error_response(
    request: Request,
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
) -> JSONResponse:
    trace_id, request_id = _request_ids(request)
    body = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=trace_id,
        request_id=request_id,
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    trace_id, _ = _request_ids(request)
    logger.warning(f"Business rule rejected request: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "field": exc.field,
    })
    return create_error_response(
        request,
        exc.code,
        exc.message,
        status_code=BUSINESS_STATUS_CODES.get(exc.code, 400),
        field=exc.field,
        context=exc.context or None,
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    trace_id, _ = _request_ids(request)
    logger.error(f"Dependency failure: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "original_error": str(exc.original_error) if exc.original_error else None,
    })
    return create_error_response(request, exc.code, exc.message, status_code=SERVICE_STATUS_CODES.get(exc.code, 500))

async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    trace_id, _ = _request_ids(request)
    logger.error(f"Database error: {exc}", extra={"trace_id": trace_id})
    return create_error_response(request, ErrorCodes.DATABASE_ERROR, "The data store is unavailable, try again later.",
                                 status_code=503)

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")
    logger.warning(f"Invalid request on {request.url.path}: {message} ({field})")
    return create_error_response(
        request,
        ErrorCodes.VALIDATION_ERROR,
        f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(f"HTTP {exc.status_code} on {request.url.path}: {exc.detail}")
    return create_error_response(
        request,
        HTTP_STATUS_CODES.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR),
        str(exc.detail),
        status_code=exc.status_code,
    )

async def general_exception_handler(request: Request, exc: Exception):
    trace_id, _ = _request_ids(request)
    logger.error(f"Unexpected error: {exc}", extra={
        "trace_id": trace_id,
        "traceback": traceback.format_exc(),
    })
    # internals stay in the log
    return create_error_response(
        request,
        ErrorCodes.INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        status_code=500,
    )

def add_error_handlers(app):
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

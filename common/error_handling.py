"""
Error envelope shared by every route.

Domain errors carry a stable code; the handlers below turn them, request
validation failures, HTTP errors and storage failures into one JSON shape:
{"success": false, "error": {...}, "timestamp": ..., "trace_id": ...}
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
import logging
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
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_SPLIT = "INVALID_SPLIT"

    # Escrow workflow
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ESCROW_NOT_FOUND = "ESCROW_NOT_FOUND"
    ESCROW_ALREADY_FINALIZED = "ESCROW_ALREADY_FINALIZED"
    ESCROW_NOT_ACTIVE = "ESCROW_NOT_ACTIVE"
    MAX_EXTENSIONS_REACHED = "MAX_EXTENSIONS_REACHED"
    DISPUTE_NOT_FOUND = "DISPUTE_NOT_FOUND"
    DISPUTE_ALREADY_RESOLVED = "DISPUTE_ALREADY_RESOLVED"
    NOT_FOUND = "NOT_FOUND"

    # System
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"

class BusinessLogicError(Exception):
    """A rejected request the caller can act on: bad input, wrong state, or no permission."""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

BUSINESS_STATUS_CODES = {
    ErrorCodes.NOT_AUTHORIZED: 403,
    ErrorCodes.INSUFFICIENT_FUNDS: 400,
    ErrorCodes.INVALID_AMOUNT: 400,
    ErrorCodes.INVALID_SPLIT: 400,
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.PRODUCT_NOT_FOUND: 404,
    ErrorCodes.ORDER_NOT_FOUND: 404,
    ErrorCodes.ESCROW_NOT_FOUND: 404,
    ErrorCodes.DISPUTE_NOT_FOUND: 404,
    ErrorCodes.OUT_OF_STOCK: 409,
    ErrorCodes.ESCROW_ALREADY_FINALIZED: 409,
    ErrorCodes.ESCROW_NOT_ACTIVE: 409,
    ErrorCodes.MAX_EXTENSIONS_REACHED: 409,
    ErrorCodes.DISPUTE_ALREADY_RESOLVED: 409,
}

HTTP_STATUS_CODES = {
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    404: ErrorCodes.NOT_FOUND,
    503: ErrorCodes.SERVICE_UNAVAILABLE,
}

def _trace(request: Request) -> Dict[str, Optional[str]]:
    return {
        "trace_id": getattr(request.state, "trace_id", None),
        "request_id": getattr(request.state, "request_id", None),
    }

def create_error_response(request: Request, status_code: int, code: str, message: str,
                          field: str = None, context: Dict[str, Any] = None) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(code=code, message=message, field=field, context=context or None),
        timestamp=time.time(),
        **_trace(request),
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    logger.warning(f"Rejected {request.method} {request.url.path}: {exc.code} - {exc.message}",
                   extra={"error_code": exc.code, "context": exc.context, **_trace(request)})
    return create_error_response(
        request, BUSINESS_STATUS_CODES.get(exc.code, 400), exc.code, exc.message, exc.field, exc.context,
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(loc) for loc in first.get("loc", []))
    message = first.get("msg", "Validation error")
    logger.warning(f"Validation error on {field}: {message}", extra=_trace(request))
    return create_error_response(
        request, 400, ErrorCodes.VALIDATION_ERROR, f"Validation error on field '{field}': {message}", field,
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    code = HTTP_STATUS_CODES.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)
    logger.warning(f"HTTP {exc.status_code} on {request.url.path}: {exc.detail}", extra=_trace(request))
    return create_error_response(request, exc.status_code, code, str(exc.detail))

async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    # Driver messages can contain SQL and row data; log them, never return them
    logger.error(f"Database error on {request.url.path}: {type(exc).__name__}", exc_info=exc, extra=_trace(request))
    return create_error_response(
        request, 503, ErrorCodes.DATABASE_ERROR, "The operation could not be completed. Please retry.",
    )

async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.url.path}", exc_info=exc, extra=_trace(request))
    return create_error_response(
        request, 500, ErrorCodes.INTERNAL_SERVER_ERROR, "An unexpected error occurred. Please try again later.",
    )

def add_error_handlers(app):
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

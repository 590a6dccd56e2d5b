"""
Billing error taxonomy and exception handlers with request ID support
Standardized error response format: { code, message, details?, request_id }
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
from typing import Optional, Dict, Any

from .logging_config import get_request_id

logger = logging.getLogger(__name__)


class BillingError(ValueError):
    """
    Base class for every failure raised by the billing core

    Subclasses ValueError so callers that only know the generic contract
    (``except ValueError``) keep working.
    """
    code = "BILLING_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class MissingFieldError(BillingError):
    """A required attribute is absent"""
    code = "MISSING_FIELD"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, field: str, entity: Optional[str] = None):
        where = f" for {entity}" if entity else ""
        super().__init__(f"Missing required field '{field}'{where}", {"field": field})
        self.field = field


class InvalidValueError(BillingError):
    """A value is present but outside its domain"""
    code = "INVALID_VALUE"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvariantViolationError(BillingError):
    """Cross-field inconsistency"""
    code = "INVARIANT_VIOLATION"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class IllegalTransitionError(BillingError):
    """Requested status change is not allowed from the current state"""
    code = "ILLEGAL_TRANSITION"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, message: str, current: Optional[str] = None, target: Optional[str] = None):
        details = {}
        if current is not None:
            details["current_status"] = current
        if target is not None:
            details["target_status"] = target
        super().__init__(message, details)
        self.current = current
        self.target = target


class NotFoundError(BillingError):
    """Referenced id or guid is absent from the store"""
    code = "NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, entity: str, identifier: Any):
        super().__init__(f"{entity} {identifier} not found", {"entity": entity, "id": str(identifier)})


class PersistenceError(BillingError):
    """A store write did not take effect"""
    code = "PERSISTENCE_ERROR"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class ErrorResponse:
    """
    Standard error response format

    Schema: { code, message, status_code, request_id?, details? }
    """

    @staticmethod
    def create(
        message: str,
        code: str,
        status_code: int,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> dict:
        if request_id is None:
            request_id = get_request_id()

        response = {
            "code": code,
            "message": message,
            "status_code": status_code,
        }
        if request_id:
            response["request_id"] = request_id
        if details:
            response["details"] = details
        return response


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Map billing failures to their HTTP status"""
    request_id = get_request_id()
    details = dict(exc.details)
    if exc.retryable:
        details["retryable"] = True

    error_response = ErrorResponse.create(
        message=exc.message,
        code=exc.code,
        status_code=exc.http_status,
        request_id=request_id,
        details=details or None,
    )

    logger.warning(
        f"{exc.code}: {exc.message}",
        extra={"request_id": request_id, "path": request.url.path}
    )

    return JSONResponse(status_code=exc.http_status, content=error_response)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with request ID"""
    request_id = get_request_id()

    error_code_map = {
        400: "BAD_REQUEST",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        500: "INTERNAL_ERROR",
        503: "SERVICE_UNAVAILABLE"
    }
    error_code = error_code_map.get(exc.status_code, "HTTP_ERROR")

    detail = exc.detail
    error_message = str(detail) if detail else f"HTTP {exc.status_code} error"
    error_details = None
    if isinstance(detail, dict):
        error_message = detail.get("message", str(detail))
        error_code = detail.get("code", error_code)
        error_details = {k: v for k, v in detail.items() if k not in ["message", "code"]} or None

    error_response = ErrorResponse.create(
        message=error_message,
        code=error_code,
        status_code=exc.status_code,
        request_id=request_id,
        details=error_details,
    )

    logger.warning(
        f"HTTP {exc.status_code}: {detail}",
        extra={"request_id": request_id, "path": request.url.path}
    )

    return JSONResponse(status_code=exc.status_code, content=error_response)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation exceptions with request ID"""
    request_id = get_request_id()

    errors = exc.errors()
    error_messages = [f"{err['loc']}: {err['msg']}" for err in errors]
    detail = "; ".join(error_messages)

    error_response = ErrorResponse.create(
        message=f"Validation error: {detail}",
        code="VALIDATION_ERROR",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        request_id=request_id,
        details={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in errors]},
    )

    logger.warning(
        f"Validation error: {detail}",
        extra={"request_id": request_id, "path": request.url.path}
    )

    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=error_response)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle general exceptions with request ID"""
    request_id = get_request_id()

    # Don't expose internal error details in production
    from .config import config
    error_message = "Internal server error"
    error_details = None
    if config.ENV in ("dev", "test"):
        error_message = f"Internal server error: {str(exc)}"
        error_details = {"exception_type": type(exc).__name__}

    error_response = ErrorResponse.create(
        message=error_message,
        code="INTERNAL_ERROR",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        request_id=request_id,
        details=error_details,
    )

    logger.error(
        f"Unhandled exception: {str(exc)}",
        exc_info=True,
        extra={"request_id": request_id, "path": request.url.path}
    )

    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error_response)


def register_exception_handlers(app) -> None:
    """Attach all handlers to a FastAPI app"""
    app.add_exception_handler(BillingError, billing_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

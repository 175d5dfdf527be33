"""
Domain errors and the FastAPI handlers that turn them into JSON responses.
"""
import logging
from typing import Any, Optional

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class HemoBankError(Exception):
    """Base class for errors returned to the action handler."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(HemoBankError):
    """Entity absent, or outside the caller's hospital scope."""

    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class InvalidStateError(HemoBankError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_state"

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(message, current_state=current_state)
        self.current_state = current_state


class InsufficientStockError(HemoBankError):
    status_code = status.HTTP_409_CONFLICT
    code = "insufficient_stock"

    def __init__(self, available: int, required: int, message: Optional[str] = None):
        super().__init__(
            message or f"Insufficient stock. Available: {available}, Required: {required}",
            available=available,
            required=required,
        )
        self.available = available
        self.required = required


class InvalidTransitionError(HemoBankError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"


class InvalidInputError(HemoBankError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_input"


class NotAuthorizedError(HemoBankError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "not_authorized"


def _error_response(status_code: int, error: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


async def domain_exception_handler(request: Request, exc: HemoBankError):
    logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return _error_response(exc.status_code, exc.to_dict())


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(exc.status_code, {"code": "http_error", "message": exc.detail})


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        {"code": "validation_error", "message": "Request validation failed", "details": jsonable_encoder(exc.errors())},
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"code": "internal_error", "message": "Internal server error"},
    )

"""
Error kinds for the generation broker plus webhook exception handlers
Standardized error response format: { code, message, details?, update_id }
"""
import logging
from typing import Optional, Dict, Any

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class BotError(Exception):
    """Base exception for all broker errors"""
    code = "BOT_ERROR"


class ConfigurationError(BotError):
    """Missing or invalid limits/credentials. Fatal at startup."""
    code = "CONFIGURATION_ERROR"


class TransientRemoteError(BotError):
    """Network failure or 5xx from a provider; expected to clear on retry"""
    code = "TRANSIENT_REMOTE_ERROR"


class TerminalRemoteError(BotError):
    """Provider reported a definitive failure; never retried"""
    code = "TERMINAL_REMOTE_ERROR"


class TaskTimeoutError(BotError):
    """Attempt budget exhausted while the remote job was still running"""
    code = "TASK_TIMEOUT"
    
    def __init__(self, remote_task_id: str, attempts: int):
        super().__init__(f"Task {remote_task_id} still running after {attempts} attempts")
        self.remote_task_id = remote_task_id
        self.attempts = attempts


class QuotaUnavailableError(BotError):
    """Usage storage could not be read or written"""
    code = "QUOTA_UNAVAILABLE"


class QuotaExhausted(BotError):
    """Declined admission: not enough quota left for the requested resource"""
    code = "QUOTA_EXHAUSTED"
    
    def __init__(self, resource: str, remaining: Dict[str, int]):
        super().__init__(f"No {resource} requests left")
        self.resource = resource
        self.remaining = remaining


class AdmissionConflict(BotError):
    """Declined admission: a task of the same category is already in flight"""
    code = "ADMISSION_CONFLICT"
    
    def __init__(self, user_id: int, category: str):
        super().__init__(f"User {user_id} already has a {category} task in flight")
        self.user_id = user_id
        self.category = category


class ErrorResponse:
    """
    Standard error response format
    
    Schema: { code, message, details?, update_id }
    """
    
    @staticmethod
    def create(
        message: str,
        code: str,
        status_code: int,
        update_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> dict:
        """
        Create standardized error response
        
        Args:
            message: Human-readable error message
            code: Error code (e.g., "VALIDATION_ERROR", "AUTH_ERROR")
            status_code: HTTP status code
            update_id: Inbound update id from context (auto-fetched if None)
            details: Optional additional error details
        
        Returns:
            Dictionary with error details
        """
        if update_id is None:
            from .logging_config import get_update_id
            update_id = get_update_id()
        
        response = {
            "code": code,
            "message": message,
            "status_code": status_code,
        }
        if update_id is not None:
            response["update_id"] = update_id
        if details:
            response["details"] = details
        return response


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions raised by webhook routes"""
    error_code_map = {
        400: "BAD_REQUEST",
        401: "AUTH_ERROR",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        422: "VALIDATION_ERROR",
        500: "INTERNAL_ERROR",
        503: "SERVICE_UNAVAILABLE",
    }
    error_code = error_code_map.get(exc.status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code} error"
    
    logger.warning(f"HTTP {exc.status_code} on {request.url.path}: {message}")
    
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse.create(message=message, code=error_code, status_code=exc.status_code),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle malformed update payloads"""
    errors = exc.errors()
    detail = "; ".join(f"{err['loc']}: {err['msg']}" for err in errors)
    
    logger.warning(f"Validation error on {request.url.path}: {detail}")
    
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse.create(
            message=f"Validation error: {detail}",
            code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without leaking internals outside dev"""
    from .config import config
    
    message = "Internal server error"
    details = None
    if config.is_dev:
        message = f"Internal server error: {exc}"
        details = {"exception_type": type(exc).__name__}
    
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse.create(
            message=message,
            code="INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        ),
    )

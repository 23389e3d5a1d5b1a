"""
Structured API errors.

Every error leaving the API is one of eight codes with a fixed HTTP status and
a `{"code", "message", "details"}` body. Helpers log their context so handlers
can simply `raise not_found(...)`.
"""
import logging
from enum import Enum
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrCode(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_ARGUMENT = "invalid_argument"
    UNAUTHENTICATED = "unauthenticated"
    PERMISSION_DENIED = "permission_denied"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    ALREADY_EXISTS = "already_exists"
    INTERNAL = "internal"
    UNAVAILABLE = "unavailable"


HTTP_STATUS: dict[ErrCode, int] = {
    ErrCode.NOT_FOUND: 404,
    ErrCode.INVALID_ARGUMENT: 400,
    ErrCode.UNAUTHENTICATED: 401,
    ErrCode.PERMISSION_DENIED: 403,
    ErrCode.RESOURCE_EXHAUSTED: 429,
    ErrCode.ALREADY_EXISTS: 409,
    ErrCode.INTERNAL: 500,
    ErrCode.UNAVAILABLE: 503,
}


class APIError(HTTPException):
    def __init__(
        self,
        code: ErrCode,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        headers = {"WWW-Authenticate": "Bearer"} if code is ErrCode.UNAUTHENTICATED else None
        super().__init__(status_code=HTTP_STATUS[code], detail=message, headers=headers)
        self.code = code
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}


def not_found(message: str, details: dict[str, Any] | None = None) -> APIError:
    if details:
        logger.info("Not found details: %s", details)
    return APIError(ErrCode.NOT_FOUND, message, details)


def invalid_argument(message: str, details: dict[str, Any] | None = None) -> APIError:
    if details:
        logger.info("Invalid argument details: %s", details)
    return APIError(ErrCode.INVALID_ARGUMENT, message, details)


def unauthenticated(message: str = "Please login to continue") -> APIError:
    return APIError(ErrCode.UNAUTHENTICATED, message)


def permission_denied(message: str, details: dict[str, Any] | None = None) -> APIError:
    if details:
        logger.info("Permission denied details: %s", details)
    return APIError(ErrCode.PERMISSION_DENIED, message, details)


def resource_exhausted(message: str, details: dict[str, Any] | None = None) -> APIError:
    if details:
        logger.info("Resource exhausted details: %s", details)
    return APIError(ErrCode.RESOURCE_EXHAUSTED, message, details)


def already_exists(resource: str, identifier: str) -> APIError:
    logger.info("Already exists: resource=%s identifier=%s", resource, identifier)
    return APIError(
        ErrCode.ALREADY_EXISTS,
        f"{resource} with identifier '{identifier}' already exists",
    )


def internal(message: str = "An internal error occurred", internal_details: Any = None) -> APIError:
    # Internal details are logged, never sent to the client.
    if internal_details is not None:
        logger.error("Internal error details: %s", internal_details)
    return APIError(ErrCode.INTERNAL, message)


def unavailable(service: str, message: str | None = None) -> APIError:
    logger.info("Service unavailable: %s", service)
    return APIError(ErrCode.UNAVAILABLE, message or f"{service} is temporarily unavailable")


def wrap_error(error: BaseException, context: str | None = None) -> APIError:
    """Wrap an arbitrary exception into an APIError (APIErrors pass through)."""
    if isinstance(error, APIError):
        return error
    logger.error("Wrapped error (context=%s): %r", context, error, exc_info=error)
    return internal(str(error) or "An unexpected error occurred")


def validation_error(field: str, message: str, value: Any = None) -> APIError:
    return invalid_argument(
        f"Validation failed for '{field}': {message}",
        {"field": field, "value": str(value) if value is not None else None},
    )


def validation_errors(errors: list[dict[str, Any]]) -> APIError:
    return invalid_argument("Validation failed", {"errors": errors})


def broker_error(error: Any) -> APIError:
    """Map an upstream broker (Zerodha) failure onto an API error."""
    status_code = getattr(error, "status_code", None) or getattr(error, "status", None) or 500

    if status_code in (401, 403):
        return unauthenticated("Zerodha authentication failed. Please reconnect your account.")
    if status_code == 429:
        return resource_exhausted("Zerodha API rate limit exceeded. Please try again later.")
    if status_code >= 500:
        return unavailable("Zerodha", "Zerodha service is temporarily unavailable")
    return internal("Failed to fetch data from Zerodha", {"original_error": repr(error)})


def llm_error(error: Any) -> APIError:
    message = (str(error) or "LLM API error").lower()

    if "rate limit" in message or "quota" in message:
        return resource_exhausted("AI service rate limit reached. Please try again later.")
    if "timeout" in message or "timed out" in message:
        return unavailable("AI service", "AI service request timed out")
    return internal("Failed to process query with AI", {"original_error": repr(error)})


def payment_error(provider: str, error: Any) -> APIError:
    return internal(
        f"Payment processing failed ({provider})",
        {"provider": provider, "original_error": repr(error)},
    )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    error = validation_errors(errors)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())

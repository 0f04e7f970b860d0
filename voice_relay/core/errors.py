"""
Relay error taxonomy and HTTP exception handlers.

Errors are grouped by where they surface:
- FRAME: malformed or invalid client socket frames (counted, never fatal)
- UPSTREAM: realtime session open/send failures
- PIPELINE: chat completion or speech synthesis failures (HTTP 500)
- INTERNAL: programming errors such as registry collisions
"""

from enum import Enum
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from voice_relay.core.logging import get_logger

logger = get_logger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests, please try again later"
INTERNAL_ERROR_MESSAGE = "Internal server error"


class ErrorCategory(str, Enum):
    FRAME = "frame"
    UPSTREAM = "upstream"
    PIPELINE = "pipeline"
    INTERNAL = "internal"


class RelayError(Exception):
    """Base class for relay errors."""

    category: ErrorCategory = ErrorCategory.INTERNAL
    code: str = "RELAY_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class FrameValidationError(RelayError):
    """A client frame could not be parsed or failed validation."""

    category = ErrorCategory.FRAME
    code = "INVALID_FRAME"


class UpstreamSessionError(RelayError):
    """The realtime session could not be opened or rejected a request."""

    category = ErrorCategory.UPSTREAM
    code = "UPSTREAM_ERROR"


class SpeechPipelineError(RelayError):
    """Chat completion or speech synthesis failed."""

    category = ErrorCategory.PIPELINE
    code = "PIPELINE_ERROR"


class InputValidationError(RelayError):
    """An HTTP request body was rejected."""

    category = ErrorCategory.FRAME
    code = "INVALID_INPUT"


class DuplicateConnectionError(RelayError):
    """A connection id was registered twice."""

    code = "DUPLICATE_CONNECTION"


def error_body(message: str) -> dict:
    return {"error": message}


async def input_validation_handler(request: Request, exc: InputValidationError) -> JSONResponse:
    logger.info("request_rejected", path=request.url.path, reason=exc.message)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=error_body(exc.message))


async def pipeline_error_handler(request: Request, exc: SpeechPipelineError) -> JSONResponse:
    logger.error("speech_pipeline_failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error_body(INTERNAL_ERROR_MESSAGE))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error_body(INTERNAL_ERROR_MESSAGE))


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    # Called synchronously from SlowAPIMiddleware, so this must not be a coroutine.
    logger.warning("rate_limit_exceeded", path=request.url.path, limit=str(exc.detail))
    return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content=error_body(RATE_LIMIT_MESSAGE))


def add_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InputValidationError, input_validation_handler)
    app.add_exception_handler(SpeechPipelineError, pipeline_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

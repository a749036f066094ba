"""Catch-all error handler middleware."""

import logging
from typing import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from linkbio.config import settings
from linkbio.utils.logging_utils import redact_ip

logger = logging.getLogger(__name__)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Turn uncaught exceptions into an opaque 500.

    - Logs the exception with the request id (no query string, no body)
    - Never returns stack traces or store internals outside DEBUG
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Handle request and catch any uncaught exceptions."""
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", None)
            logger.error(
                "Unhandled %s | id=%s | method=%s | path=%s | ip=%s",
                type(exc).__name__,
                request_id,
                request.method,
                request.url.path,
                redact_ip(request.client.host if request.client else None),
                exc_info=settings.DEBUG,
            )

            if settings.DEBUG:
                content = {
                    "detail": "An error occurred processing your request",
                    "error": str(exc),
                    "type": type(exc).__name__,
                }
            else:
                content = {"detail": "An unexpected error occurred. Please try again later."}

            return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)

"""Request/response logging middleware."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from linkbio.core.logging_config import bind_request_context
from linkbio.utils.logging_utils import redact_ip, redact_query

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every request with an id and duration.

    Query strings are logged with ``token``, ``code``, ``state`` and
    ``password`` values masked, since the OAuth callback and the token bridge
    carry secrets in the URL.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request and log details."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        bind_request_context(request_id)

        start_time = time.perf_counter()
        method = request.method
        path = request.url.path
        query = redact_query(request.url.query)
        client_host = request.client.host if request.client else None

        logger.info(
            f"Request started | id={request_id} | method={method} | path={path} | "
            f"query={query or '-'} | ip={redact_ip(client_host)}"
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = int((time.perf_counter() - start_time) * 1000)
            logger.error(
                f"Request failed | id={request_id} | method={method} | path={path} | "
                f"duration={duration_ms}ms | error={type(e).__name__}"
            )
            raise

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        auth_source = getattr(request.state, "auth_source", "-")
        logger.info(
            f"Request completed | id={request_id} | method={method} | path={path} | "
            f"status={response.status_code} | duration={duration_ms}ms | auth={auth_source}"
        )

        response.headers["X-Request-ID"] = request_id
        return response

"""
Structured logging for the identity service.

structlog carries the service's own events (OAuth transitions, link refusals)
with request-scoped context; stdlib and uvicorn records go through
python-json-logger when JSON output is on. Credential-bearing fields are
masked before any renderer sees them.

Usage:
    setup_logging()                       # once, in the app lifespan
    logger = get_logger(__name__)
    logger.info("oauth_transition", flow_id="abc", to_state="complete")
"""

import logging
import sys
from typing import Any, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from linkbio.config import settings
from linkbio.utils.logging_utils import redact_email

REDACTED = "[redacted]"

# Event keys whose values are secrets in this service
SECRET_EVENT_KEYS = frozenset(
    {"token", "access_token", "code", "state", "password", "csrf", "session_id", "cookie"}
)

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite")


def redact_event_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: mask secrets and partially hide emails."""
    for key in event_dict.keys() & SECRET_EVENT_KEYS:
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    if isinstance(event_dict.get("email"), str):
        event_dict["email"] = redact_email(event_dict["email"])
    return event_dict


def bind_request_context(request_id: str, **values: Any) -> None:
    """Start a fresh log context for one request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **values)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def _use_json() -> bool:
    return settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production"


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    )
    return handler


def setup_logging() -> None:
    """
    Configure stdlib logging and structlog.

    JSON when ``LOG_FORMAT=json`` or in production, console output otherwise.
    Safe to call more than once.
    """
    use_json = _use_json()
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    root = logging.getLogger()
    root.handlers.clear()
    if use_json:
        root.addHandler(_json_handler())
    else:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(console)
    root.setLevel(level)

    # uvicorn installs its own handlers; route them through the root one
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    if settings.ENVIRONMENT == "production":
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    processors = [structlog.contextvars.merge_contextvars, redact_event_secrets]
    if use_json:
        # The root JsonFormatter adds timestamp, level and logger name
        processors += [structlog.processors.format_exc_info, structlog.stdlib.render_to_log_kwargs]
    else:
        processors += [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for ``name`` (usually ``__name__``)."""
    return structlog.get_logger(name)

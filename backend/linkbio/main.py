"""FastAPI main application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from linkbio.api.v1 import auth
from linkbio.config import settings
from linkbio.core.database import AsyncSessionLocal, close_db, init_db
from linkbio.core.logging_config import setup_logging
from linkbio.middleware.error_handler import ErrorHandlerMiddleware
from linkbio.middleware.request_logging import RequestLoggingMiddleware
from linkbio.middleware.security_headers import SecurityHeadersMiddleware
from linkbio.services.identity.errors import (
    AuthError,
    IdentityConflict,
    IdentityError,
)
from linkbio.services.identity.providers import close_oauth_provider
from linkbio.services.identity.sessions import session_manager
from linkbio.services.rate_limit_service import get_rate_limit_service

_logger = logging.getLogger(__name__)

_CONFLICT_MESSAGES = {
    "username": "Username already taken",
    "email": "Email already registered",
    "provider_id": "This sign-in is already linked to another account",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging()
    _logger.info("Starting %s %s (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT)

    if not settings.oauth_enabled:
        _logger.warning("Google OAuth client is not configured; /auth/oauth/start will fail")

    await init_db()
    async with AsyncSessionLocal() as db:
        await session_manager.purge_stale(db)

    yield

    _logger.info("Shutting down %s", settings.APP_NAME)
    await close_oauth_provider()
    await get_rate_limit_service().close()
    await close_db()


# Disable interactive API docs outside DEBUG
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Uncaught exceptions become an opaque 500
app.add_middleware(ErrorHandlerMiddleware)

# Security headers - Always apply (dev and production)
app.add_middleware(SecurityHeadersMiddleware)

# Request logging (outermost, so it also sees 500s produced above)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    # One generic answer for every credential failure
    _logger.info("Authentication failed on %s: %s", request.url.path, exc.code)
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": "Not authenticated"},
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(IdentityConflict)
async def identity_conflict_handler(request: Request, exc: IdentityConflict):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": _CONFLICT_MESSAGES.get(exc.field, "Conflict"),
            "code": exc.code,
        },
    )


@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError):
    request_id = getattr(request.state, "request_id", None)
    _logger.error("Identity store failure %s | id=%s | path=%s", exc.code, request_id, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred. Please try again later."},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    _logger.debug("Validation error on %s", request.url.path)
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"detail": errors})


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


app.include_router(auth.router, prefix="/auth", tags=["Authentication"])

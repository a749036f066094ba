"""Authentication API endpoints."""

import logging
import secrets
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from linkbio.api.v1.bridge_page import bridge_csp, render_bridge_page
from linkbio.config import settings
from linkbio.core.database import get_db
from linkbio.core.security import hash_password, verify_password
from linkbio.crud.user import user_crud
from linkbio.dependencies import get_current_identity
from linkbio.models.user import User
from linkbio.schemas.auth import (
    Identity,
    LoginRequest,
    RegisterRequest,
    TokenResponse,
    UsernameAvailability,
    UsernameRequest,
)
from linkbio.services.identity.errors import IdentityError, Unauthenticated
from linkbio.services.identity.minter import credential_minter
from linkbio.services.identity.oauth import OAuthOrchestrator
from linkbio.services.identity.providers import OAuthProvider, get_oauth_provider
from linkbio.services.identity.reservation import pending_usernames
from linkbio.services.identity.resolver import get_session_cookie
from linkbio.services.identity.sessions import (
    clear_session_cookie,
    session_manager,
    set_session_cookie,
)
from linkbio.services.rate_limit_service import get_rate_limit_service
from linkbio.utils.logging_utils import redact_email

router = APIRouter()
logger = logging.getLogger(__name__)

# Verified against when the email is unknown so both paths cost one argon2 check
DUMMY_PASSWORD_HASH = hash_password(secrets.token_urlsafe(32))
rate_limit_service = get_rate_limit_service()

LANDING_PATH = "/"
IDENTITY_PATH = "/auth/identity"
BRIDGE_PATH = "/auth/bridge"


def get_oauth_orchestrator(
    provider: OAuthProvider = Depends(get_oauth_provider),
) -> OAuthOrchestrator:
    return OAuthOrchestrator(provider)


def _error_redirect(code: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"{LANDING_PATH}?{urlencode({'error': code})}",
        status_code=status.HTTP_302_FOUND,
    )


async def _establish_login_session(
    request: Request, response: Response, db: AsyncSession, user: User
) -> None:
    """Replace any pre-login session with a fresh one bound to ``user``."""
    await session_manager.destroy(db, get_session_cookie(request))
    raw_session_id = await session_manager.establish(db, user.id)
    set_session_cookie(response, raw_session_id)


def _token_response(user: User) -> TokenResponse:
    return TokenResponse(
        access_token=credential_minter.mint(user),
        identity=Identity.model_validate(user),
    )


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/oauth/start")
async def oauth_start(
    request: Request,
    username: Optional[str] = None,
    correlation: Optional[str] = Query(None, max_length=128),
    db: AsyncSession = Depends(get_db),
    orchestrator: OAuthOrchestrator = Depends(get_oauth_orchestrator),
):
    """
    Begin the provider sign-in.

    An anonymous session is created when the visitor has none, so the
    callback can be bound to the browser that started the flow.
    """
    await rate_limit_service.check_rate_limit(
        request=request,
        max_requests=settings.LOGIN_RATE_LIMIT_PER_MINUTE,
        window_seconds=60,
    )

    raw_session_id = get_session_cookie(request)
    if not await session_manager.is_live(db, raw_session_id):
        await session_manager.purge_stale(db)
        raw_session_id = await session_manager.establish(db)

    url = await orchestrator.start(
        db,
        raw_session_id,
        pending_username=username,
        client_correlation=correlation,
    )
    response = RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)
    set_session_cookie(response, raw_session_id)
    return response


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    orchestrator: OAuthOrchestrator = Depends(get_oauth_orchestrator),
):
    """
    Provider redirect target.

    On success the pre-auth session is replaced by an authenticated one and
    the browser is sent to the token bridge. Every failure lands on ``/``
    with an ``error`` code.
    """
    if error:
        logger.warning("OAuth provider returned error=%s", error[:64])
        return _error_redirect("provider_auth_failed")

    raw_session_id = get_session_cookie(request)
    try:
        result = await orchestrator.complete(db, raw_session_id, state, code)
    except IdentityError as e:
        return _error_redirect(e.code)

    response = RedirectResponse(
        url=f"{BRIDGE_PATH}?{urlencode({'token': result.token, 'username': result.identity.username})}",
        status_code=status.HTTP_302_FOUND,
    )
    response.headers["Cache-Control"] = "no-store"
    response.headers["Referrer-Policy"] = "no-referrer"
    await _establish_login_session(request, response, db, result.identity)
    return response


@router.get("/bridge", response_class=HTMLResponse)
async def token_bridge(
    token: Optional[str] = None,
    username: Optional[str] = None,
):
    """
    Client token bridge.

    The page stores the token, removes it from the address bar, checks it
    against ``/auth/identity`` within ``BRIDGE_TIMEOUT_SECONDS`` and then
    enters the app, or shows a dismissable error.
    """
    nonce = secrets.token_urlsafe(16)
    return HTMLResponse(
        content=render_bridge_page(nonce, IDENTITY_PATH, LANDING_PATH),
        headers={
            "Cache-Control": "no-store",
            "Pragma": "no-cache",
            "Referrer-Policy": "no-referrer",
            "Content-Security-Policy": bridge_csp(nonce),
        },
    )


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@router.get("/identity", response_model=Identity)
async def get_identity(current_user: User = Depends(get_current_identity)):
    """Return the caller's live identity."""
    return current_user


@router.get("/token", response_model=TokenResponse)
async def exchange_session_for_token(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Mint a bearer token for the identity bound to the session cookie."""
    identity_id = await session_manager.resolve(db, get_session_cookie(request))
    user = await user_crud.get_by_id(db, identity_id) if identity_id else None
    if user is None or not user.is_active:
        raise Unauthenticated()
    return _token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    request: Request,
    response: Response,
    data: LoginRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Login with email and password.

    Returns a bearer token and sets a new session cookie.
    """
    await rate_limit_service.check_rate_limit(
        request=request,
        max_requests=settings.LOGIN_RATE_LIMIT_PER_MINUTE,
        window_seconds=60,
    )

    user = await user_crud.get_by_email(db, data.email)
    if user is None or not user.password_hash:
        verify_password(data.password, DUMMY_PASSWORD_HASH)
        logger.warning("Login failed: no password account for %s", redact_email(data.email))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not verify_password(data.password, user.password_hash) or not user.is_active:
        logger.warning("Login failed for %s", redact_email(data.email))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    await _establish_login_session(request, response, db, user)
    await user_crud.update_last_login(db, user.id)
    logger.info("Login succeeded for %s", redact_email(user.email))
    return _token_response(user)


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: Request,
    response: Response,
    data: RegisterRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Create a password account.

    Username and email conflicts are answered with 409.
    """
    await rate_limit_service.check_rate_limit(
        request=request,
        max_requests=settings.LOGIN_RATE_LIMIT_PER_MINUTE,
        window_seconds=60,
    )

    user = await user_crud.create(
        db,
        username=data.username,
        email=data.email,
        name=data.name,
        password=data.password,
    )
    logger.info("Registered %s", redact_email(user.email))

    await _establish_login_session(request, response, db, user)
    return _token_response(user)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Destroy the calling session only.

    Bearer-only callers have no server state to drop; the client discards
    its token.
    """
    destroyed = await session_manager.destroy(db, get_session_cookie(request))
    clear_session_cookie(response)
    logger.info("Logout for identity %s (session destroyed=%s)", current_user.id, destroyed)
    return {"message": "Successfully logged out"}


@router.post("/username", response_model=TokenResponse)
async def change_username(
    data: UsernameRequest,
    current_user: User = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """
    Rename the caller.

    409 when the name is taken, 422 when it is malformed. Returns a token
    re-minted with the new username; earlier tokens keep working and resolve
    to the new name.
    """
    if data.candidate != current_user.username:
        old_username = current_user.username
        await user_crud.update(db, current_user, username=data.candidate)
        logger.info("Renamed identity %s from %s to %s", current_user.id, old_username, data.candidate)
    return _token_response(current_user)


@router.get("/username/available/{candidate}", response_model=UsernameAvailability)
async def username_available(candidate: str, db: AsyncSession = Depends(get_db)):
    """Point-in-time availability; the name is only claimed when an account is created."""
    available = await pending_usernames.is_available(db, candidate)
    return UsernameAvailability(username=candidate.strip().lower(), available=available)

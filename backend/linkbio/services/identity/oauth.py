"""OAuth orchestrator: the server side of the authorization-code flow.

Flow states::

    IDLE -> REDIRECT_ISSUED -> CALLBACK_RECEIVED -> PROVIDER_VERIFIED
         -> IDENTITY_RESOLVED -> TOKEN_MINTED -> COMPLETE

with terminal failures CSRF_MISMATCH, PROVIDER_AUTH_FAILED and
IDENTITY_CREATION_FAILED. The ``state`` parameter sent to the provider is an
itsdangerous-signed ``{csrf, corr}`` payload; the CSRF token's hash is also
stored in ``oauth_states`` bound to the initiating session and consumed once.
"""

import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from itsdangerous import BadData, BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from linkbio.config import settings
from linkbio.core.logging_config import get_logger
from linkbio.core.security import generate_random_token, hash_token
from linkbio.crud.user import user_crud
from linkbio.models.oauth_state import OAuthState
from linkbio.models.user import User
from linkbio.services.identity.errors import (
    AccountLinkConflict,
    CsrfMismatch,
    IdentityCreationFailed,
    IdentityStoreError,
    InvalidCredential,
    ProviderAuthFailed,
    ProviderIdTaken,
    UsernameTaken,
)
from linkbio.services.identity.minter import CredentialMinter, credential_minter
from linkbio.services.identity.providers import OAuthProvider, ProviderProfile
from linkbio.services.identity.reservation import USERNAME_MAX_LENGTH, pending_usernames
from linkbio.utils.datetime_utils import utc_now

logger = get_logger(__name__)

STATE_SALT = "linkbio-oauth-state"
MAX_CREATE_ATTEMPTS = 5
_SUFFIX_DIGITS = 4
_NON_USERNAME_CHARS = re.compile(r"[^a-z0-9_]")


class OAuthFlowState(str, Enum):
    IDLE = "idle"
    REDIRECT_ISSUED = "redirect_issued"
    CALLBACK_RECEIVED = "callback_received"
    CSRF_MISMATCH = "csrf_mismatch"
    PROVIDER_VERIFIED = "provider_verified"
    PROVIDER_AUTH_FAILED = "provider_auth_failed"
    IDENTITY_RESOLVED = "identity_resolved"
    IDENTITY_CREATION_FAILED = "identity_creation_failed"
    TOKEN_MINTED = "token_minted"
    COMPLETE = "complete"


@dataclass
class OAuthResult:
    """Outcome of a completed callback."""

    identity: User
    token: str
    created: bool
    flow_id: str


def synthesize_username(profile: ProviderProfile) -> str:
    """
    Build a fallback username from the provider profile.

    The display name (or email local part) is slugged to ``[a-z0-9_]`` and a
    random numeric suffix is appended, e.g. ``jane_doe_0421``.
    """
    base = _NON_USERNAME_CHARS.sub("", "_".join(profile.name.lower().split()))
    if not base and profile.email:
        base = _NON_USERNAME_CHARS.sub("", profile.email.split("@", 1)[0].lower())
    base = base.strip("_") or "user"
    base = base[: USERNAME_MAX_LENGTH - _SUFFIX_DIGITS - 1]
    return f"{base}_{secrets.randbelow(10 ** _SUFFIX_DIGITS):0{_SUFFIX_DIGITS}d}"


class OAuthOrchestrator:
    """Drives one provider's authorization-code flow end to end."""

    def __init__(
        self,
        provider: OAuthProvider,
        minter: Optional[CredentialMinter] = None,
        state_secret: Optional[str] = None,
        state_ttl_seconds: Optional[int] = None,
    ) -> None:
        self.provider = provider
        self.minter = minter or credential_minter
        self.state_ttl_seconds = state_ttl_seconds or settings.OAUTH_STATE_TTL_SECONDS
        self._serializer = URLSafeTimedSerializer(
            state_secret or settings.STATE_SECRET_KEY, salt=STATE_SALT
        )

    async def start(
        self,
        db: AsyncSession,
        session_id: str,
        pending_username: Optional[str] = None,
        client_correlation: Optional[str] = None,
    ) -> str:
        """
        Issue CSRF state for a new flow and return the provider URL.

        Args:
            db: Database session
            session_id: Raw id of the (possibly anonymous) initiating session
            pending_username: Handle the visitor asked for before signing in
            client_correlation: Caller-supplied id echoed through the flow

        Returns:
            Authorization URL to redirect the browser to
        """
        flow_id = client_correlation or uuid.uuid4().hex[:16]
        log = logger.bind(flow_id=flow_id, provider=self.provider.provider_name)

        csrf_token = generate_random_token(32)
        now = utc_now()
        db.add(
            OAuthState(
                csrf_hash=hash_token(csrf_token),
                session_id=hash_token(session_id),
                pending_username=pending_usernames.set(pending_username),
                client_correlation=flow_id,
                issued_at=now,
                expires_at=now + timedelta(seconds=self.state_ttl_seconds),
            )
        )
        await db.commit()

        state = self._serializer.dumps({"csrf": csrf_token, "corr": flow_id})
        url = self.provider.build_authorize_url(state)
        self._transition(log, OAuthFlowState.IDLE, OAuthFlowState.REDIRECT_ISSUED,
                         has_pending_username=pending_username is not None)
        return url

    async def complete(
        self,
        db: AsyncSession,
        session_id: Optional[str],
        state: Optional[str],
        code: Optional[str],
    ) -> OAuthResult:
        """
        Handle the provider callback.

        Raises:
            CsrfMismatch: state is missing, forged, stale, replayed or bound
                to a different session; the provider is never contacted
            ProviderAuthFailed: the code exchange failed
            IdentityCreationFailed: a new account could not be written, or
                (AccountLinkConflict) the email matched an account this
                sign-in may not claim
            InvalidCredential: the matched account is disabled
        """
        flow_id = self.peek_correlation(state) or "unknown"
        log = logger.bind(flow_id=flow_id, provider=self.provider.provider_name)
        self._transition(log, OAuthFlowState.REDIRECT_ISSUED, OAuthFlowState.CALLBACK_RECEIVED)

        flow = await self._consume_state(db, session_id, state, log)

        if not code:
            self._fail(log, OAuthFlowState.PROVIDER_AUTH_FAILED, reason="missing_code")
            raise ProviderAuthFailed()
        try:
            profile = await self.provider.fetch_profile(code)
        except ProviderAuthFailed:
            self._fail(log, OAuthFlowState.PROVIDER_AUTH_FAILED, reason="exchange_failed")
            raise
        self._transition(log, OAuthFlowState.CALLBACK_RECEIVED, OAuthFlowState.PROVIDER_VERIFIED)

        try:
            identity, created = await self._resolve_identity(db, profile, flow.pending_username, log)
        except IdentityCreationFailed:
            self._fail(log, OAuthFlowState.IDENTITY_CREATION_FAILED)
            raise
        if not identity.is_active:
            log.warning("oauth_identity_disabled", identity_id=str(identity.id))
            raise InvalidCredential()
        self._transition(log, OAuthFlowState.PROVIDER_VERIFIED, OAuthFlowState.IDENTITY_RESOLVED,
                         identity_id=str(identity.id), created=created)

        token = self.minter.mint(identity)
        self._transition(log, OAuthFlowState.IDENTITY_RESOLVED, OAuthFlowState.TOKEN_MINTED)

        await user_crud.update_last_login(db, identity.id)
        self._transition(log, OAuthFlowState.TOKEN_MINTED, OAuthFlowState.COMPLETE)
        return OAuthResult(identity=identity, token=token, created=created, flow_id=flow_id)

    def peek_correlation(self, state: Optional[str]) -> Optional[str]:
        """Read the correlation id from a state value without trusting it."""
        if not state:
            return None
        try:
            _, payload = self._serializer.loads_unsafe(state)
        except BadData:
            return None
        if isinstance(payload, dict) and isinstance(payload.get("corr"), str):
            return payload["corr"][:128]
        return None

    async def _consume_state(self, db, session_id, state, log) -> OAuthState:
        if not state or not session_id:
            self._fail(log, OAuthFlowState.CSRF_MISMATCH, reason="missing_state_or_session")
            raise CsrfMismatch()

        try:
            payload = self._serializer.loads(state, max_age=self.state_ttl_seconds)
        except SignatureExpired:
            self._fail(log, OAuthFlowState.CSRF_MISMATCH, reason="state_expired")
            raise CsrfMismatch()
        except BadSignature:
            self._fail(log, OAuthFlowState.CSRF_MISMATCH, reason="bad_signature")
            raise CsrfMismatch()

        csrf_token = payload.get("csrf") if isinstance(payload, dict) else None
        if not csrf_token:
            self._fail(log, OAuthFlowState.CSRF_MISMATCH, reason="malformed_state")
            raise CsrfMismatch()

        csrf_hash = hash_token(csrf_token)
        now = utc_now()
        # Single use: only one request can flip used_at on a live, session-bound row
        result = await db.execute(
            update(OAuthState)
            .where(
                OAuthState.csrf_hash == csrf_hash,
                OAuthState.session_id == hash_token(session_id),
                OAuthState.used_at.is_(None),
                OAuthState.expires_at > now,
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount != 1:
            self._fail(log, OAuthFlowState.CSRF_MISMATCH, reason="not_issued_replayed_or_expired")
            raise CsrfMismatch()

        flow = await db.execute(select(OAuthState).where(OAuthState.csrf_hash == csrf_hash))
        return flow.scalar_one()

    async def _resolve_identity(self, db, profile: ProviderProfile, pending_username, log):
        existing = await user_crud.get_by_provider_id(db, profile.provider_id)
        if existing is not None:
            return existing, False

        if profile.email:
            by_email = await user_crud.get_by_email(db, profile.email)
            if by_email is not None:
                if by_email.provider_id is not None:
                    log.warning("oauth_email_link_refused", reason="bound_to_other_subject",
                                identity_id=str(by_email.id))
                    raise AccountLinkConflict()
                if by_email.password_hash is not None:
                    # Password signups never prove the address belongs to them
                    log.warning("oauth_email_link_refused", reason="unverified_password_account",
                                identity_id=str(by_email.id))
                    raise AccountLinkConflict()
                fields = {"provider_id": profile.provider_id}
                if not by_email.avatar and profile.avatar:
                    fields["avatar"] = profile.avatar
                try:
                    await user_crud.update(db, by_email, **fields)
                except ProviderIdTaken:
                    # A concurrent callback linked this subject first
                    existing = await user_crud.get_by_provider_id(db, profile.provider_id)
                    if existing is None:
                        raise IdentityCreationFailed()
                    return existing, False
                except IdentityStoreError as e:
                    raise IdentityCreationFailed() from e
                log.info("oauth_provider_linked_by_email", identity_id=str(by_email.id))
                return by_email, False

        return await self._create_identity(db, profile, pending_username, log)

    async def _create_identity(self, db, profile: ProviderProfile, pending_username, log):
        try:
            claimed = await pending_usernames.consume(db, pending_username)
        except IdentityStoreError as e:
            raise IdentityCreationFailed() from e
        if pending_username and claimed is None:
            log.info("oauth_pending_username_discarded")

        for attempt in range(MAX_CREATE_ATTEMPTS):
            candidate = claimed if (attempt == 0 and claimed) else synthesize_username(profile)
            try:
                identity = await user_crud.create(
                    db,
                    username=candidate,
                    email=profile.email,
                    name=profile.name,
                    avatar=profile.avatar,
                    provider_id=profile.provider_id,
                )
                return identity, True
            except UsernameTaken:
                log.info("oauth_username_collision", attempt=attempt)
                continue
            except ProviderIdTaken:
                existing = await user_crud.get_by_provider_id(db, profile.provider_id)
                if existing is None:
                    raise IdentityCreationFailed()
                return existing, False
            except IdentityStoreError as e:
                log.error("oauth_identity_create_error", error=type(e).__name__)
                raise IdentityCreationFailed() from e

        raise IdentityCreationFailed("No free username after retries")

    @staticmethod
    def _transition(log, from_state: OAuthFlowState, to_state: OAuthFlowState, **kw) -> None:
        log.info("oauth_transition", from_state=from_state.value, to_state=to_state.value, **kw)

    @staticmethod
    def _fail(log, to_state: OAuthFlowState, **kw) -> None:
        log.warning("oauth_flow_failed", to_state=to_state.value, **kw)

"""Server-side session manager.

The cookie holds a random opaque value; the ``sessions`` row is keyed by its
SHA-256 so a database read never yields a usable cookie.
"""

import logging
from datetime import timedelta
from typing import Callable, Optional
from uuid import UUID

from fastapi import Response
from sqlalchemy import delete, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from linkbio.config import settings
from linkbio.core.security import generate_random_token, hash_token
from linkbio.models.oauth_state import OAuthState
from linkbio.models.session import UserSession
from linkbio.models.user import User
from linkbio.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


class SessionManager:
    """Establish, resolve, update and destroy server-side sessions."""

    def __init__(self, ttl: Optional[timedelta] = None) -> None:
        self._ttl = ttl or timedelta(days=settings.SESSION_TTL_DAYS)

    async def establish(self, db: AsyncSession, identity_id: Optional[UUID] = None) -> str:
        """
        Write a new session record.

        Args:
            db: Database session
            identity_id: Identity to bind, or None for an anonymous session

        Returns:
            Raw session id for the cookie (never stored)
        """
        raw = generate_random_token(32)
        db.add(
            UserSession(
                id=hash_token(raw),
                identity_id=identity_id,
                expires_at=utc_now() + self._ttl,
            )
        )
        await db.commit()
        return raw

    async def resolve(self, db: AsyncSession, raw_session_id: Optional[str]) -> Optional[UUID]:
        """
        Return the identity id bound to a session.

        Reads the canonical field first. When only the alias is populated, the
        alias is trusted once it points at an existing identity and the
        canonical field is backfilled.
        """
        if not raw_session_id:
            return None

        session_key = hash_token(raw_session_id)
        result = await db.execute(select(UserSession).where(UserSession.id == session_key))
        record = result.scalar_one_or_none()
        if record is None or record.is_expired:
            return None

        if record.identity_id is not None:
            return record.identity_id

        if not record.alias_identity_ref:
            return None

        try:
            alias_id = UUID(record.alias_identity_ref)
        except ValueError:
            logger.warning("Ignoring malformed session alias reference")
            return None

        exists = await db.execute(select(User.id).where(User.id == alias_id))
        if exists.scalar_one_or_none() is None:
            return None

        await self._backfill(db, session_key, alias_id)
        return alias_id

    async def is_live(self, db: AsyncSession, raw_session_id: Optional[str]) -> bool:
        """True when the session exists and has not expired, bound or not."""
        if not raw_session_id:
            return False
        result = await db.execute(
            select(UserSession.expires_at).where(UserSession.id == hash_token(raw_session_id))
        )
        expires_at = result.scalar_one_or_none()
        return expires_at is not None and expires_at > utc_now()

    async def _backfill(self, db: AsyncSession, session_key: str, identity_id: UUID) -> None:
        # Only writes while the canonical field is still empty, so repeating it is harmless
        result = await db.execute(
            update(UserSession)
            .where(UserSession.id == session_key, UserSession.identity_id.is_(None))
            .values(identity_id=identity_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.commit()
        if result.rowcount:
            logger.info("Backfilled canonical identity on session from alias")

    async def update(
        self,
        db: AsyncSession,
        raw_session_id: str,
        mutator: Callable[[UserSession], None],
    ) -> Optional[UserSession]:
        """
        Atomically read, modify and write one session record.

        The row is locked (``SELECT ... FOR UPDATE``) and the mutation is
        committed in the same transaction.

        Returns:
            The updated record, or None if the session is missing or expired
        """
        result = await db.execute(
            select(UserSession)
            .where(UserSession.id == hash_token(raw_session_id))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None or record.is_expired:
            # Ends the transaction (and the row lock) without expiring loaded objects
            await db.commit()
            return None

        mutator(record)
        await db.commit()
        return record

    async def destroy(self, db: AsyncSession, raw_session_id: Optional[str]) -> bool:
        """Delete one session record. Other sessions are untouched."""
        if not raw_session_id:
            return False
        result = await db.execute(
            delete(UserSession).where(UserSession.id == hash_token(raw_session_id))
        )
        await db.commit()
        return bool(result.rowcount)

    async def purge_stale(self, db: AsyncSession) -> int:
        """
        Delete auth state that can never be used again.

        Removes spent or expired OAuth flows, expired sessions, and anonymous
        sessions older than one flow lifetime that hold no live flow.

        Returns:
            Number of rows deleted
        """
        now = utc_now()
        abandoned_before = now - timedelta(seconds=settings.OAUTH_STATE_TTL_SECONDS)

        flows = await db.execute(
            delete(OAuthState)
            .where(or_(OAuthState.used_at.is_not(None), OAuthState.expires_at <= now))
            .execution_options(synchronize_session=False)
        )
        live_flow = exists().where(OAuthState.session_id == UserSession.id).correlate(UserSession)
        sessions = await db.execute(
            delete(UserSession)
            .where(
                or_(
                    UserSession.expires_at <= now,
                    (UserSession.identity_id.is_(None))
                    & (UserSession.alias_identity_ref.is_(None))
                    & (UserSession.created_at < abandoned_before)
                    & ~live_flow,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        deleted = (flows.rowcount or 0) + (sessions.rowcount or 0)
        if deleted:
            logger.info("Purged %d stale session and OAuth flow rows", deleted)
        return deleted


def set_session_cookie(response: Response, raw_session_id: str) -> None:
    """Attach the session cookie to a response."""
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=raw_session_id,
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite="lax",
        max_age=settings.SESSION_TTL_DAYS * 24 * 60 * 60,
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    """Expire the session cookie on the client."""
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


session_manager = SessionManager()

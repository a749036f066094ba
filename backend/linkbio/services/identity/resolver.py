"""Identity resolver: reduces a request's credentials to one live identity."""

import logging
from abc import ABC, abstractmethod
from typing import ClassVar, Optional
from uuid import UUID

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from linkbio.config import settings
from linkbio.crud.user import user_crud
from linkbio.models.user import User
from linkbio.services.identity.errors import Unauthenticated
from linkbio.services.identity.minter import CredentialMinter, credential_minter
from linkbio.services.identity.sessions import SessionManager, session_manager

logger = logging.getLogger(__name__)


def get_session_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(settings.SESSION_COOKIE_NAME) or None


def get_bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class CredentialSource(ABC):
    """One way a request can carry a credential."""

    source_name: ClassVar[str]

    @abstractmethod
    def can_handle(self, request: Request) -> bool:
        """Cheap presence check. Must not raise."""

    @abstractmethod
    async def resolve_identity_id(self, request: Request, db: AsyncSession) -> Optional[UUID]:
        """Return the referenced identity id.

        Returns ``None`` on a miss so the resolver can try the next source.
        Raises ``InvalidCredential`` for a credential that is present but bad.
        """


class SessionCredentialSource(CredentialSource):
    """Server-side session cookie."""

    source_name = "session"

    def __init__(self, manager: Optional[SessionManager] = None) -> None:
        self._manager = manager or session_manager

    def can_handle(self, request: Request) -> bool:
        return get_session_cookie(request) is not None

    async def resolve_identity_id(self, request: Request, db: AsyncSession) -> Optional[UUID]:
        # Unknown, expired and anonymous sessions all fall through
        return await self._manager.resolve(db, get_session_cookie(request))


class BearerCredentialSource(CredentialSource):
    """``Authorization: Bearer`` token minted by this application."""

    source_name = "bearer"

    def __init__(self, minter: Optional[CredentialMinter] = None) -> None:
        self._minter = minter or credential_minter

    def can_handle(self, request: Request) -> bool:
        return get_bearer_token(request) is not None

    async def resolve_identity_id(self, request: Request, db: AsyncSession) -> Optional[UUID]:
        claims = self._minter.verify(get_bearer_token(request))
        return claims.identity_id


class IdentityResolver:
    """Ordered chain of credential sources.

    Each source that finds its credential on the request is asked for an
    identity id; the identity is then fetched live from the store. Cached
    claims (token username, email) never reach route handlers.
    """

    def __init__(self, sources: list[CredentialSource]) -> None:
        self._sources = sources

    async def resolve(self, request: Request, db: AsyncSession) -> User:
        """
        Resolve the request to a live, active identity.

        Raises:
            InvalidCredential: a bearer token was presented and failed verification
            Unauthenticated: no source produced a live identity
        """
        for source in self._sources:
            if not source.can_handle(request):
                continue

            identity_id = await source.resolve_identity_id(request, db)
            if identity_id is None:
                continue

            identity = await user_crud.get_by_id(db, identity_id)
            if identity is None or not identity.is_active:
                logger.info("Credential from %s references a missing or inactive identity",
                            source.source_name)
                continue

            request.state.auth_source = source.source_name
            return identity

        raise Unauthenticated()


def build_resolver() -> IdentityResolver:
    """Session first, bearer second."""
    return IdentityResolver([SessionCredentialSource(), BearerCredentialSource()])


identity_resolver = build_resolver()

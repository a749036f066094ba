"""Credential minter: issues and verifies the app's HS256 bearer tokens."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

from jose import ExpiredSignatureError, JWTError, jwt

from linkbio.config import settings
from linkbio.services.identity.errors import InvalidCredential

logger = logging.getLogger(__name__)

TOKEN_TYPE = "access"


@dataclass(frozen=True)
class TokenClaims:
    """Decoded bearer token claims.

    A snapshot taken at mint time. ``username`` and ``email`` may be stale;
    only ``identity_id`` is used to look the identity up again.
    """

    identity_id: UUID
    email: Optional[str]
    username: str
    issued_at: datetime
    expires_at: datetime


class CredentialMinter:
    """Stateless signer/verifier for bearer tokens.

    Pure: no I/O, no shared mutable state, safe to call concurrently.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        lifetime: Optional[timedelta] = None,
    ) -> None:
        self._secret_key = secret_key or settings.SECRET_KEY
        self._algorithm = algorithm or settings.ALGORITHM
        self._lifetime = lifetime or timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)

    def mint(self, identity: Any, now: Optional[datetime] = None) -> str:
        """
        Sign a token for an identity.

        Args:
            identity: Object with ``id``, ``email`` and ``username`` attributes
            now: Issue time override (tests)

        Returns:
            Encoded JWT
        """
        issued_at = now or datetime.now(timezone.utc)
        expires_at = issued_at + self._lifetime
        payload = {
            "sub": str(identity.id),
            "email": identity.email,
            "username": identity.username,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "type": TOKEN_TYPE,
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def verify(self, token: str) -> TokenClaims:
        """
        Verify signature and expiry and return the claims.

        Raises:
            InvalidCredential: reason ``expired`` past ``exp``, ``invalid`` otherwise
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError:
            raise InvalidCredential(InvalidCredential.EXPIRED)
        except JWTError:
            raise InvalidCredential(InvalidCredential.INVALID)

        if payload.get("type") != TOKEN_TYPE:
            raise InvalidCredential(InvalidCredential.INVALID)

        try:
            identity_id = UUID(payload["sub"])
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError):
            logger.debug("Bearer token missing required claims")
            raise InvalidCredential(InvalidCredential.INVALID)

        # jose compares exp with a strict "<"; expiry is exclusive here
        if datetime.now(timezone.utc) >= expires_at:
            raise InvalidCredential(InvalidCredential.EXPIRED)

        return TokenClaims(
            identity_id=identity_id,
            email=payload.get("email"),
            username=payload.get("username", ""),
            issued_at=issued_at,
            expires_at=expires_at,
        )


# Module-level singleton
credential_minter = CredentialMinter()

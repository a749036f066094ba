"""Client token bridge.

Takes the token handed over by the OAuth callback, persists it, proves it
works with one ``GET /auth/identity`` call and decides where to go next. The
check is bounded by a timeout and never retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from linkbio.client.storage import TokenStorage
from linkbio.config import settings
from linkbio.services.identity.errors import BridgeTimeout, InvalidCredential

logger = logging.getLogger(__name__)

IDENTITY_PATH = "/auth/identity"
LANDING_PATH = "/"

REASON_MISSING_TOKEN = "missing_token"
REASON_REJECTED = InvalidCredential.code
REASON_TIMEOUT = BridgeTimeout.code
REASON_UNREACHABLE = "identity_unreachable"


@dataclass(frozen=True)
class BridgeOutcome:
    """Where the bridge sends the user.

    ``reason`` is set only on failure and is meant to be shown, together with
    a way back to ``next_path`` (the unauthenticated landing page).
    """

    authenticated: bool
    next_path: str
    identity: Optional[dict[str, Any]] = None
    reason: Optional[str] = None


class TokenBridge:
    """Persist and self-verify a freshly minted token."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        storage: TokenStorage,
        timeout: Optional[float] = None,
        app_path: Optional[str] = None,
        landing_path: str = LANDING_PATH,
    ) -> None:
        self._http = http_client
        self._storage = storage
        self.timeout = settings.BRIDGE_TIMEOUT_SECONDS if timeout is None else timeout
        self.app_path = app_path or settings.POST_LOGIN_PATH
        self.landing_path = landing_path

    async def run(self, token: Optional[str], username: Optional[str] = None) -> BridgeOutcome:
        """
        Hand the token over to durable storage and verify it once.

        Args:
            token: Bearer token from the bridge redirect
            username: Username carried alongside it, display only

        Returns:
            Outcome pointing at the app on success, at the landing page otherwise

        Raises:
            asyncio.CancelledError: propagated after discarding the stored token
        """
        if not token:
            return self._fail(REASON_MISSING_TOKEN)

        self._storage.set_token(token, username)
        try:
            identity = await asyncio.wait_for(self._verify(token), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Token bridge self-check timed out after %.1fs", self.timeout)
            return self._fail(REASON_TIMEOUT)
        except asyncio.CancelledError:
            self._storage.clear()
            raise
        except InvalidCredential:
            return self._fail(REASON_REJECTED)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Token bridge self-check failed: %s", type(e).__name__)
            return self._fail(REASON_UNREACHABLE)

        self._storage.set_username(identity["username"])
        return BridgeOutcome(authenticated=True, next_path=self.app_path, identity=identity)

    async def _verify(self, token: str) -> dict[str, Any]:
        response = await self._http.get(
            IDENTITY_PATH,
            headers={"Authorization": f"Bearer {token}", "Cache-Control": "no-store"},
        )
        if response.status_code in (401, 403):
            raise InvalidCredential()
        response.raise_for_status()
        return response.json()

    def _fail(self, reason: str) -> BridgeOutcome:
        self._storage.clear()
        return BridgeOutcome(authenticated=False, next_path=self.landing_path, reason=reason)

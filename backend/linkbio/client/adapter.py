"""Identity client: one adapter over the ``/auth`` HTTP surface.

Exposes ``identity``, ``is_loading``, ``login`` and ``logout``. The stored
bearer token is preferred; the session cookie kept by the HTTP client is the
fallback, matching the server's resolver. Storage changes made elsewhere
(another adapter sharing the storage, the bridge) are picked up through the
storage's change notifications.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

import httpx

from linkbio.client.bridge import BridgeOutcome, TokenBridge
from linkbio.client.storage import TOKEN_KEY, StorageChange, TokenStorage
from linkbio.services.identity.errors import InvalidCredential

logger = logging.getLogger(__name__)

IdentityListener = Callable[[Optional[dict[str, Any]]], None]


class IdentityClient:
    """Client-side identity state machine."""

    def __init__(
        self,
        base_url: str,
        storage: Optional[TokenStorage] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.storage = storage or TokenStorage()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._identity: Optional[dict[str, Any]] = None
        self._loading = False
        self._listeners: list[IdentityListener] = []
        self._pending: set[asyncio.Task] = set()
        self._unsubscribe = self.storage.subscribe(self._on_storage_change)

    # State

    @property
    def identity(self) -> Optional[dict[str, Any]]:
        return self._identity

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def is_authenticated(self) -> bool:
        return self._identity is not None

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Call ``listener`` with the new identity (or None) whenever it changes."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    # Operations

    async def refresh(self) -> Optional[dict[str, Any]]:
        """Ask the server who we are; clears a token the server rejects."""
        self._loading = True
        try:
            response = await self._http.get("/auth/identity", headers=self._auth_headers())
            if response.status_code == 401:
                if self.storage.token:
                    self.storage.clear()
                self._set_identity(None)
            else:
                response.raise_for_status()
                self._set_identity(response.json())
        finally:
            self._loading = False
        return self._identity

    async def login(self, email: str, password: str) -> dict[str, Any]:
        """
        Password login.

        Raises:
            InvalidCredential: on 401
            httpx.HTTPStatusError: on any other error status
        """
        self._loading = True
        try:
            response = await self._http.post(
                "/auth/login", json={"email": email, "password": password}
            )
            if response.status_code == 401:
                raise InvalidCredential()
            response.raise_for_status()
            data = response.json()
            identity = data["identity"]
            self.storage.set_token(data["access_token"], identity["username"])
            self._set_identity(identity)
            return identity
        finally:
            self._loading = False

    async def complete_oauth(self, token: Optional[str], username: Optional[str] = None) -> BridgeOutcome:
        """Run the token bridge for a token received from the OAuth redirect."""
        self._loading = True
        try:
            outcome = await TokenBridge(self._http, self.storage).run(token, username)
        finally:
            self._loading = False
        self._set_identity(outcome.identity if outcome.authenticated else None)
        return outcome

    async def logout(self) -> None:
        """Destroy this client's server session and forget the token."""
        self._loading = True
        try:
            response = await self._http.post("/auth/logout", headers=self._auth_headers())
            if response.status_code not in (200, 401):
                response.raise_for_status()
        finally:
            self._http.cookies.clear()
            self.storage.clear()
            self._set_identity(None)
            self._loading = False

    async def aclose(self) -> None:
        self._unsubscribe()
        for task in list(self._pending):
            task.cancel()
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "IdentityClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # Internals

    def _auth_headers(self) -> dict[str, str]:
        token = self.storage.token
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _set_identity(self, identity: Optional[dict[str, Any]]) -> None:
        if identity == self._identity:
            return
        self._identity = identity
        for listener in list(self._listeners):
            listener(identity)

    def _on_storage_change(self, change: StorageChange) -> None:
        if change.key != TOKEN_KEY:
            return
        if change.new_value is None:
            self._set_identity(None)
            return
        if self._loading:
            # The operation that wrote the token sets the identity itself
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.refresh())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

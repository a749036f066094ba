"""External OAuth2 identity provider client."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Optional
from urllib.parse import urlencode

import httpx

from linkbio.config import settings
from linkbio.services.identity.errors import ProviderAuthFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderProfile:
    """Profile data returned by the provider after a successful code exchange."""

    provider_id: str
    email: Optional[str]
    name: str
    avatar: Optional[str]
    email_verified: bool = False


class OAuthProvider(ABC):
    """Authorization-code flow against one external identity provider."""

    provider_name: ClassVar[str]

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        authorize_url: str,
        token_url: str,
        userinfo_url: str,
        redirect_uri: str,
        scopes: Optional[list[str]] = None,
        timeout: float = 10.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.redirect_uri = redirect_uri
        self.scopes = scopes or []
        self._timeout = timeout
        self._http_client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client (app shutdown)."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    def build_authorize_url(self, state: str, extra_params: Optional[dict[str, str]] = None) -> str:
        """
        Build the provider authorization URL.

        Args:
            state: Signed state value echoed back on the callback
            extra_params: Additional query parameters

        Returns:
            Full authorization URL
        """
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "scope": " ".join(self.scopes),
        }
        if extra_params:
            params.update(extra_params)
        return f"{self.authorize_url}?{urlencode(params)}"

    async def fetch_profile(self, code: str) -> ProviderProfile:
        """
        Exchange an authorization code and load the caller's profile.

        Raises:
            ProviderAuthFailed: on any transport, HTTP or payload error
        """
        try:
            access_token = await self.exchange_code(code)
            userinfo = await self.get_userinfo(access_token)
        except (httpx.HTTPError, ValueError) as e:
            # ValueError covers a non-JSON body
            logger.warning("%s code exchange failed: %s", self.provider_name, type(e).__name__)
            raise ProviderAuthFailed() from e
        return self.parse_profile(userinfo)

    async def exchange_code(self, code: str) -> str:
        """Trade the authorization code for an access token."""
        response = await self._get_client().post(
            self.token_url,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
            },
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        access_token = response.json().get("access_token")
        if not access_token:
            raise ProviderAuthFailed("Token response carried no access_token")
        return access_token

    async def get_userinfo(self, access_token: str) -> dict[str, Any]:
        """Fetch the raw userinfo document."""
        response = await self._get_client().get(
            self.userinfo_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        response.raise_for_status()
        return response.json()

    @abstractmethod
    def parse_profile(self, userinfo: dict[str, Any]) -> ProviderProfile:
        """Normalize the provider's userinfo document."""


class GoogleOAuthProvider(OAuthProvider):
    """Google OpenID Connect (authorization-code, server side)."""

    provider_name = "google"

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("scopes", ["openid", "email", "profile"])
        super().__init__(**kwargs)

    def build_authorize_url(self, state: str, extra_params: Optional[dict[str, str]] = None) -> str:
        params = {"access_type": "online", "prompt": "select_account"}
        params.update(extra_params or {})
        return super().build_authorize_url(state, params)

    def parse_profile(self, userinfo: dict[str, Any]) -> ProviderProfile:
        subject = userinfo.get("sub")
        if not subject:
            raise ProviderAuthFailed("Userinfo carried no subject")

        email = userinfo.get("email")
        verified = bool(userinfo.get("email_verified"))
        if email and not verified:
            # An unverified address must not be used to link existing accounts
            logger.info("Google returned an unverified email; ignoring it")
            email = None

        return ProviderProfile(
            provider_id=str(subject),
            email=email.lower() if email else None,
            name=userinfo.get("name") or "",
            avatar=userinfo.get("picture"),
            email_verified=verified,
        )


_provider: Optional[OAuthProvider] = None


def build_provider() -> OAuthProvider:
    """Construct the configured provider from settings."""
    return GoogleOAuthProvider(
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        authorize_url=settings.GOOGLE_AUTHORIZE_URL,
        token_url=settings.GOOGLE_TOKEN_URL,
        userinfo_url=settings.GOOGLE_USERINFO_URL,
        redirect_uri=settings.OAUTH_REDIRECT_URI,
    )


def get_oauth_provider() -> OAuthProvider:
    """FastAPI dependency returning the singleton provider."""
    global _provider
    if _provider is None:
        _provider = build_provider()
    return _provider


async def close_oauth_provider() -> None:
    """Release the provider's HTTP client."""
    global _provider
    if _provider is not None:
        await _provider.close()
        _provider = None

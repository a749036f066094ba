"""Database models."""

from linkbio.models.oauth_state import OAuthState
from linkbio.models.session import UserSession
from linkbio.models.user import User

__all__ = [
    "OAuthState",
    "UserSession",
    "User",
]

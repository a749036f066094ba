"""Identity package: credentials, sessions and the OAuth bridge.

Only the error taxonomy is re-exported here. Import services from their
own modules.
"""

from linkbio.services.identity.errors import (
    AuthError,
    BridgeTimeout,
    CsrfMismatch,
    EmailTaken,
    IdentityConflict,
    IdentityCreationFailed,
    IdentityError,
    IdentityStoreError,
    InvalidCredential,
    ProviderAuthFailed,
    ProviderIdTaken,
    Unauthenticated,
    UsernameTaken,
)

__all__ = [
    "AuthError",
    "BridgeTimeout",
    "CsrfMismatch",
    "EmailTaken",
    "IdentityConflict",
    "IdentityCreationFailed",
    "IdentityError",
    "IdentityStoreError",
    "InvalidCredential",
    "ProviderAuthFailed",
    "ProviderIdTaken",
    "Unauthenticated",
    "UsernameTaken",
]

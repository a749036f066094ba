"""Error taxonomy for identity resolution and OAuth bridging.

Credential errors are deliberately coarse at the HTTP boundary (one generic
401); the subclasses exist so callers and logs can tell them apart.
"""

from typing import Optional


class IdentityError(Exception):
    """Base class for every error raised by the identity subsystem."""

    code = "identity_error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.code)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthError(IdentityError):
    """Any failure to establish who the caller is."""

    code = "auth_error"


class Unauthenticated(AuthError):
    """No usable credential was presented."""

    code = "unauthenticated"


class InvalidCredential(AuthError):
    """A credential was presented but is not valid.

    ``reason`` is ``"invalid"`` (bad signature, malformed, unknown session) or
    ``"expired"``.
    """

    code = "invalid_credential"

    INVALID = "invalid"
    EXPIRED = "expired"

    def __init__(self, reason: str = INVALID, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(message or f"{self.code}:{reason}")


class CsrfMismatch(AuthError):
    """OAuth ``state`` did not match the value issued at flow start."""

    code = "csrf_mismatch"


class ProviderAuthFailed(AuthError):
    """The external identity provider refused or failed the code exchange."""

    code = "provider_auth_failed"


class BridgeTimeout(AuthError):
    """The client bridge could not self-verify its token in time."""

    code = "bridge_timeout"


# ---------------------------------------------------------------------------
# Identity Store
# ---------------------------------------------------------------------------


class IdentityStoreError(IdentityError):
    """Unexpected failure talking to the identity store."""

    code = "identity_store_error"


class IdentityConflict(IdentityStoreError):
    """A uniqueness constraint rejected a create or update."""

    code = "identity_conflict"
    field = ""


class UsernameTaken(IdentityConflict):
    code = "username_taken"
    field = "username"


class EmailTaken(IdentityConflict):
    code = "email_taken"
    field = "email"


class ProviderIdTaken(IdentityConflict):
    code = "provider_id_taken"
    field = "provider_id"


class IdentityCreationFailed(IdentityError):
    """OAuth signup could not create the account for an unexpected reason."""

    code = "identity_creation_failed"


class AccountLinkConflict(IdentityCreationFailed):
    """A provider sign-in matched an account by email that it may not claim.

    Raised when that account is bound to a different provider subject, or was
    registered with a password and so never proved it owns the address.
    """

    code = "account_link_conflict"

"""Unit tests for the credential minter."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest
from jose import jwt

from linkbio.config import settings
from linkbio.services.identity.errors import InvalidCredential
from linkbio.services.identity.minter import CredentialMinter


def _identity(**overrides):
    values = {"id": uuid4(), "email": "alice@example.com", "username": "alice"}
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.mark.unit
@pytest.mark.auth
class TestCredentialMinter:
    """Mint/verify behaviour."""

    @pytest.fixture
    def minter(self):
        return CredentialMinter(secret_key="unit-test-secret", algorithm="HS256")

    @pytest.mark.parametrize(
        "identity",
        [
            _identity(),
            _identity(email=None, username="no_email_user"),
            _identity(username="abc"),
        ],
    )
    def test_verify_returns_minted_claims(self, minter, identity):
        claims = minter.verify(minter.mint(identity))

        assert claims.identity_id == identity.id
        assert claims.email == identity.email
        assert claims.username == identity.username
        assert claims.expires_at - claims.issued_at == timedelta(days=7)

    def test_default_lifetime_is_seven_days(self):
        assert settings.ACCESS_TOKEN_EXPIRE_DAYS == 7

    def test_expired_token_fails_with_expired(self, minter):
        issued = datetime.now(timezone.utc) - timedelta(days=8)
        token = minter.mint(_identity(), now=issued)

        with pytest.raises(InvalidCredential) as exc_info:
            minter.verify(token)

        assert exc_info.value.reason == InvalidCredential.EXPIRED

    def test_expired_is_reported_even_with_valid_signature(self, minter):
        """Expiry is checked independently of an otherwise valid signature."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(uuid4()),
            "email": None,
            "username": "alice",
            "iat": int((now - timedelta(days=7, seconds=1)).timestamp()),
            "exp": int((now - timedelta(seconds=1)).timestamp()),
            "type": "access",
        }
        token = jwt.encode(payload, "unit-test-secret", algorithm="HS256")

        with pytest.raises(InvalidCredential) as exc_info:
            minter.verify(token)

        assert exc_info.value.reason == InvalidCredential.EXPIRED

    def test_wrong_secret_is_invalid(self, minter):
        other = CredentialMinter(secret_key="some-other-secret", algorithm="HS256")

        with pytest.raises(InvalidCredential) as exc_info:
            minter.verify(other.mint(_identity()))

        assert exc_info.value.reason == InvalidCredential.INVALID

    def test_tampered_token_is_invalid(self, minter):
        token = minter.mint(_identity())
        header, payload, signature = token.split(".")
        tampered = ".".join([header, payload, signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")])

        with pytest.raises(InvalidCredential) as exc_info:
            minter.verify(tampered)

        assert exc_info.value.reason == InvalidCredential.INVALID

    @pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b.c"])
    def test_malformed_token_is_invalid(self, minter, garbage):
        with pytest.raises(InvalidCredential):
            minter.verify(garbage)

    def test_wrong_token_type_is_invalid(self, minter):
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(hours=1)).timestamp()),
            "type": "refresh",
        }
        token = jwt.encode(payload, "unit-test-secret", algorithm="HS256")

        with pytest.raises(InvalidCredential):
            minter.verify(token)

    def test_non_uuid_subject_is_invalid(self, minter):
        now = datetime.now(timezone.utc)
        payload = {
            "sub": "not-a-uuid",
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(hours=1)).timestamp()),
            "type": "access",
        }
        token = jwt.encode(payload, "unit-test-secret", algorithm="HS256")

        with pytest.raises(InvalidCredential) as exc_info:
            minter.verify(token)

        assert exc_info.value.reason == InvalidCredential.INVALID

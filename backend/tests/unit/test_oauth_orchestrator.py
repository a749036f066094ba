"""Unit tests for the OAuth orchestrator state machine."""

import re
from datetime import timedelta
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio
from itsdangerous import URLSafeTimedSerializer
from sqlalchemy import select, update

from linkbio.core.security import hash_token
from linkbio.crud.user import user_crud
from linkbio.models.oauth_state import OAuthState
from linkbio.models.user import User
from linkbio.services.identity.errors import (
    AccountLinkConflict,
    CsrfMismatch,
    IdentityCreationFailed,
    IdentityStoreError,
    ProviderAuthFailed,
    UsernameTaken,
)
from linkbio.services.identity.minter import credential_minter
from linkbio.services.identity.oauth import STATE_SALT, OAuthOrchestrator, synthesize_username
from linkbio.services.identity.providers import ProviderProfile
from linkbio.services.identity.sessions import session_manager
from linkbio.utils.datetime_utils import utc_now

USERNAME_RE = re.compile(r"^[a-z0-9_]{3,20}$")


def _state(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


@pytest.fixture
def orchestrator(stub_provider):
    return OAuthOrchestrator(stub_provider, state_secret="unit-state-secret", state_ttl_seconds=600)


@pytest_asyncio.fixture
async def anon_session(db_session):
    return await session_manager.establish(db_session)


async def _count_users(db) -> int:
    return len((await db.execute(select(User.id))).scalars().all())


@pytest.mark.unit
@pytest.mark.auth
class TestOAuthStart:

    @pytest.mark.asyncio
    async def test_start_builds_provider_url(self, db_session, orchestrator, anon_session):
        url = await orchestrator.start(db_session, anon_session)

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://idp.test/authorize"
        assert params["client_id"] == ["test-client"]
        assert params["response_type"] == ["code"]
        assert params["redirect_uri"] == ["https://test/auth/oauth/callback"]
        assert params["state"]

    @pytest.mark.asyncio
    async def test_start_persists_flow_bound_to_session(self, db_session, orchestrator, anon_session):
        await orchestrator.start(
            db_session, anon_session, pending_username=" Alice123 ", client_correlation="corr-1"
        )

        flow = (await db_session.execute(select(OAuthState))).scalar_one()
        assert flow.session_id == hash_token(anon_session)
        assert flow.pending_username == "alice123"
        assert flow.client_correlation == "corr-1"
        assert flow.used_at is None
        assert flow.expires_at > utc_now()

    @pytest.mark.asyncio
    async def test_raw_csrf_token_is_not_stored(self, db_session, orchestrator, anon_session):
        url = await orchestrator.start(db_session, anon_session)
        payload = URLSafeTimedSerializer("unit-state-secret", salt=STATE_SALT).loads(_state(url))

        flow = (await db_session.execute(select(OAuthState))).scalar_one()
        assert flow.csrf_hash == hash_token(payload["csrf"])
        assert flow.csrf_hash != payload["csrf"]


@pytest.mark.unit
@pytest.mark.auth
class TestOAuthCallbackCsrf:

    @pytest.mark.asyncio
    async def test_replayed_state_is_rejected(self, db_session, orchestrator, anon_session, stub_provider):
        state = _state(await orchestrator.start(db_session, anon_session))
        await orchestrator.complete(db_session, anon_session, state, "good-code")

        with pytest.raises(CsrfMismatch):
            await orchestrator.complete(db_session, anon_session, state, "good-code")
        assert stub_provider.exchanged_codes == ["good-code"]

    @pytest.mark.asyncio
    async def test_state_from_another_session_is_rejected(self, db_session, orchestrator, anon_session, stub_provider):
        state = _state(await orchestrator.start(db_session, anon_session))
        attacker_session = await session_manager.establish(db_session)

        with pytest.raises(CsrfMismatch):
            await orchestrator.complete(db_session, attacker_session, state, "good-code")
        assert stub_provider.exchanged_codes == []

    @pytest.mark.asyncio
    async def test_forged_state_is_rejected(self, db_session, orchestrator, anon_session, stub_provider):
        await orchestrator.start(db_session, anon_session)
        forged = URLSafeTimedSerializer("attacker-secret", salt=STATE_SALT).dumps(
            {"csrf": "guess", "corr": "x"}
        )

        with pytest.raises(CsrfMismatch):
            await orchestrator.complete(db_session, anon_session, forged, "good-code")
        assert stub_provider.exchanged_codes == []

    @pytest.mark.asyncio
    async def test_signed_state_never_issued_is_rejected(self, db_session, orchestrator, anon_session):
        unissued = URLSafeTimedSerializer("unit-state-secret", salt=STATE_SALT).dumps(
            {"csrf": "never-issued", "corr": "x"}
        )

        with pytest.raises(CsrfMismatch):
            await orchestrator.complete(db_session, anon_session, unissued, "good-code")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [None, "", "garbage"])
    async def test_missing_or_garbage_state_is_rejected(self, db_session, orchestrator, anon_session, state):
        await orchestrator.start(db_session, anon_session)

        with pytest.raises(CsrfMismatch):
            await orchestrator.complete(db_session, anon_session, state, "good-code")

    @pytest.mark.asyncio
    async def test_missing_session_is_rejected(self, db_session, orchestrator, anon_session):
        state = _state(await orchestrator.start(db_session, anon_session))

        with pytest.raises(CsrfMismatch):
            await orchestrator.complete(db_session, None, state, "good-code")

    @pytest.mark.asyncio
    async def test_expired_flow_is_rejected(self, db_session, orchestrator, anon_session, stub_provider):
        state = _state(await orchestrator.start(db_session, anon_session))
        await db_session.execute(
            update(OAuthState).values(expires_at=utc_now() - timedelta(seconds=1))
        )
        await db_session.commit()

        with pytest.raises(CsrfMismatch):
            await orchestrator.complete(db_session, anon_session, state, "good-code")
        assert stub_provider.exchanged_codes == []


@pytest.mark.unit
@pytest.mark.auth
class TestOAuthCallbackIdentity:

    @pytest.mark.asyncio
    async def test_new_identity_gets_pending_username(self, db_session, orchestrator, anon_session):
        url = await orchestrator.start(db_session, anon_session, pending_username="alice123", client_correlation="c-42")

        result = await orchestrator.complete(db_session, anon_session, _state(url), "good-code")

        assert result.created is True
        assert result.flow_id == "c-42"
        assert result.identity.username == "alice123"
        assert result.identity.provider_id == "google-sub-1"
        assert result.identity.email == "newcomer@example.com"
        assert result.identity.password_hash is None
        claims = credential_minter.verify(result.token)
        assert claims.identity_id == result.identity.id
        assert claims.username == "alice123"

    @pytest.mark.asyncio
    async def test_taken_pending_username_falls_back(self, db_session, orchestrator, anon_session, test_user):
        url = await orchestrator.start(db_session, anon_session, pending_username=test_user.username)

        result = await orchestrator.complete(db_session, anon_session, _state(url), "good-code")

        assert result.created is True
        assert result.identity.username != "alice"
        assert USERNAME_RE.match(result.identity.username)

    @pytest.mark.asyncio
    async def test_malformed_pending_username_falls_back(self, db_session, orchestrator, anon_session):
        url = await orchestrator.start(db_session, anon_session, pending_username="no spaces allowed!")

        result = await orchestrator.complete(db_session, anon_session, _state(url), "good-code")

        assert result.identity.username.startswith("new_comer_")
        assert USERNAME_RE.match(result.identity.username)

    @pytest.mark.asyncio
    async def test_existing_provider_identity_is_reused(self, db_session, orchestrator, anon_session, user_factory):
        existing = await user_factory("returning", email="other@example.com", provider_id="google-sub-1")
        url = await orchestrator.start(db_session, anon_session, pending_username="shiny_new")

        result = await orchestrator.complete(db_session, anon_session, _state(url), "good-code")

        assert result.created is False
        assert result.identity.id == existing.id
        # A pending claim never renames an existing account
        assert result.identity.username == "returning"
        assert await _count_users(db_session) == 1

    @pytest.mark.asyncio
    async def test_existing_email_identity_is_linked(self, db_session, orchestrator, anon_session, user_factory):
        existing = await user_factory("emailonly", email="newcomer@example.com", password=None)
        url = await orchestrator.start(db_session, anon_session, pending_username="shiny_new")

        result = await orchestrator.complete(db_session, anon_session, _state(url), "good-code")

        assert result.created is False
        assert result.identity.id == existing.id
        assert result.identity.provider_id == "google-sub-1"
        assert result.identity.avatar == "https://img.test/avatar.png"
        assert result.identity.username == "emailonly"

    @pytest.mark.asyncio
    async def test_email_bound_to_other_subject_is_not_relinked(
        self, db_session, orchestrator, anon_session, user_factory
    ):
        carol = await user_factory(
            "carol", email="newcomer@example.com", password=None, provider_id="google-sub-OLD"
        )
        state = _state(await orchestrator.start(db_session, anon_session))

        with pytest.raises(AccountLinkConflict):
            await orchestrator.complete(db_session, anon_session, state, "good-code")

        db_session.expire_all()
        assert (await user_crud.get_by_id(db_session, carol.id)).provider_id == "google-sub-OLD"
        assert await user_crud.get_by_provider_id(db_session, "google-sub-OLD") is not None
        assert await _count_users(db_session) == 1

    @pytest.mark.asyncio
    async def test_password_account_email_is_not_linked(
        self, db_session, orchestrator, anon_session, user_factory
    ):
        squatter = await user_factory("squatter", email="newcomer@example.com")
        state = _state(await orchestrator.start(db_session, anon_session))

        with pytest.raises(AccountLinkConflict) as exc_info:
            await orchestrator.complete(db_session, anon_session, state, "good-code")

        assert exc_info.value.code == "account_link_conflict"
        db_session.expire_all()
        assert (await user_crud.get_by_id(db_session, squatter.id)).provider_id is None
        assert await user_crud.get_by_provider_id(db_session, "google-sub-1") is None

    @pytest.mark.asyncio
    async def test_provider_failure(self, db_session, orchestrator, anon_session):
        state = _state(await orchestrator.start(db_session, anon_session))

        with pytest.raises(ProviderAuthFailed):
            await orchestrator.complete(db_session, anon_session, state, "bad-code")
        assert await _count_users(db_session) == 0

        # The state was spent by the failed attempt
        with pytest.raises(CsrfMismatch):
            await orchestrator.complete(db_session, anon_session, state, "good-code")

    @pytest.mark.asyncio
    async def test_missing_code_is_provider_failure(self, db_session, orchestrator, anon_session, stub_provider):
        state = _state(await orchestrator.start(db_session, anon_session))

        with pytest.raises(ProviderAuthFailed):
            await orchestrator.complete(db_session, anon_session, state, None)
        assert stub_provider.exchanged_codes == []

    @pytest.mark.asyncio
    async def test_store_error_becomes_identity_creation_failed(self, db_session, orchestrator, anon_session):
        state = _state(await orchestrator.start(db_session, anon_session))

        with patch(
            "linkbio.services.identity.oauth.user_crud.create",
            new=AsyncMock(side_effect=IdentityStoreError()),
        ):
            with pytest.raises(IdentityCreationFailed):
                await orchestrator.complete(db_session, anon_session, state, "good-code")

        assert await _count_users(db_session) == 0

    @pytest.mark.asyncio
    async def test_username_collision_during_create_retries(self, db_session, orchestrator, anon_session):
        real_create = user_crud.create
        attempts = []

        async def flaky_create(db, **kwargs):
            attempts.append(kwargs["username"])
            if len(attempts) == 1:
                raise UsernameTaken()
            return await real_create(db, **kwargs)

        url = await orchestrator.start(db_session, anon_session, pending_username="alice123")
        with patch("linkbio.services.identity.oauth.user_crud.create", new=flaky_create):
            result = await orchestrator.complete(db_session, anon_session, _state(url), "good-code")

        assert attempts[0] == "alice123"
        assert result.identity.username == attempts[1]
        assert result.identity.username != "alice123"
        assert result.created is True


@pytest.mark.unit
class TestSynthesizeUsername:

    @pytest.mark.parametrize(
        "name, email, prefix",
        [
            ("Jane Doe", "jane@example.com", "jane_doe_"),
            ("", "first.last+tag@example.com", "firstlasttag_"),
            ("", None, "user_"),
            ("Émile Zola", None, "mile_zola_"),
            ("!!!", None, "user_"),
        ],
    )
    def test_shape(self, name, email, prefix):
        profile = ProviderProfile(provider_id="x", email=email, name=name, avatar=None)

        username = synthesize_username(profile)

        assert username.startswith(prefix)
        assert USERNAME_RE.match(username)

    def test_long_names_are_truncated(self):
        profile = ProviderProfile(provider_id="x", email=None, name="A" * 80, avatar=None)

        username = synthesize_username(profile)

        assert len(username) <= 20
        assert USERNAME_RE.match(username)

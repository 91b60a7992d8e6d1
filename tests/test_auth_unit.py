"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Registration and login
- Request authentication across session and token channels
- Workspace authorization
- Credential revocation and cookie attributes
- OAuth login-or-create
"""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from starlette.responses import Response

from teamsync.config import Settings
from teamsync.service.auth import (
    INVALID_CREDENTIALS,
    AuthService,
    CredentialChannel,
    RequestContext,
    RequestCredentials,
)
from teamsync.service.cookies import CookiePolicy, decode_profile
from teamsync.service.permissions import Permission, Role
from teamsync.service.results import ErrorKind
from teamsync.service.tokens import TokenClaims, TokenCodec
from teamsync.storage.errors import StoreUnavailable
from teamsync.storage.memory import MemoryStore
from teamsync.storage.models import ProviderKind

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
PASSWORD = "TestPassword123!"


@pytest.fixture
def settings():
    return Settings(
        session_secret=SECRET,
        test_mode=True,
        use_memory_store=True,
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
    )


@pytest.fixture
def memory_store():
    return MemoryStore(token_key=SECRET)


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, cache=None, settings=settings)


@pytest.fixture
def registered(auth_service):
    result = asyncio.run(auth_service.register("test@example.com", "Test User", PASSWORD))
    assert result.ok
    return result.value


async def _login(auth_service, email="test@example.com", password=PASSWORD):
    return await auth_service.login(email, password)


def _set_cookies(response: Response) -> dict:
    cookies = {}
    for header in response.headers.getlist("set-cookie"):
        name = header.split("=", 1)[0]
        cookies[name] = header
    return cookies


class FlakyStore(MemoryStore):
    """Memory store whose reads fail as if the database went away."""

    def get_session(self, session_id):
        raise StoreUnavailable("connection refused", backend="postgres")

    def find_identity_by_id(self, identity_id):
        raise StoreUnavailable("connection refused", backend="postgres")


class WorkspaceOutageStore(MemoryStore):
    """Memory store whose workspace insert fails until the outage is lifted."""

    down = True

    def create_workspace(self, name, owner_id, *, description=None):
        if self.down:
            raise StoreUnavailable("connection reset", backend="postgres")
        return super().create_workspace(name, owner_id, description=description)


class TestPasswordHashing:
    def test_hash_is_argon2(self, auth_service):
        assert auth_service.hash_password(PASSWORD).startswith("$argon2id$")

    def test_verify_roundtrip(self, auth_service, registered):
        assert auth_service.verify_password(registered.identity.id, PASSWORD)
        assert not auth_service.verify_password(registered.identity.id, "WrongPassword!")

    def test_provider_only_account_has_no_password(self, auth_service, memory_store):
        identity = memory_store.create_identity("oauth-only@example.com")
        assert not auth_service.verify_password(identity.id, PASSWORD)


class TestRegistration:
    def test_creates_personal_workspace(self, memory_store, registered):
        identity = registered.identity
        workspace = registered.workspace
        assert workspace.name == "My Workspace"
        assert workspace.owner_id == identity.id
        assert identity.current_workspace_id == workspace.id
        assert memory_store.get_membership(identity.id, workspace.id).role == Role.OWNER.value
        link = memory_store.get_provider_link(ProviderKind.EMAIL, "test@example.com")
        assert link.identity_id == identity.id

    def test_does_not_sign_in(self, memory_store, registered):
        assert memory_store.sessions == {}

    async def test_duplicate_email(self, auth_service, registered):
        result = await auth_service.register("TEST@example.com", None, PASSWORD)
        assert result.error is ErrorKind.CONFLICT
        assert result.message == "Email already exists"

    async def test_signup_disabled(self, memory_store, settings):
        service = AuthService(memory_store, None, settings.model_copy(update={"allow_signup": False}))
        result = await service.register("new@example.com", None, PASSWORD)
        assert result.error is ErrorKind.INVALID

    async def test_outage_midway_can_be_retried(self, settings):
        store = WorkspaceOutageStore(token_key=SECRET)
        service = AuthService(store, None, settings)

        first = await service.register("retry@example.com", "Retry", PASSWORD)
        assert first.error is ErrorKind.UNAVAILABLE
        assert store.find_identity_by_email("retry@example.com") is None

        store.down = False
        second = await service.register("retry@example.com", "Retry", PASSWORD)
        assert second.ok
        identity = second.value.identity
        assert store.get_membership(identity.id, identity.current_workspace_id).role == "OWNER"


class TestLogin:
    async def test_issues_session_and_token(self, auth_service, memory_store, registered):
        result = await _login(auth_service)

        assert result.ok
        login = result.value
        assert memory_store.get_session(login.session.session_id).identity_id == registered.identity.id
        claims = auth_service.codec.verify(login.token.token).value
        assert claims.identity_id == registered.identity.id
        assert claims.role == Role.OWNER.value
        assert login.identity.last_login is not None

    async def test_fresh_credentials_every_login(self, auth_service, registered):
        first = (await _login(auth_service)).value
        second = (await _login(auth_service)).value
        assert first.session.session_id != second.session.session_id
        assert first.token.token != second.token.token

    async def test_unknown_account_and_bad_password_look_alike(self, auth_service, registered):
        unknown = await _login(auth_service, email="nobody@example.com")
        wrong = await _login(auth_service, password="not-the-password")
        assert unknown.error is ErrorKind.NOT_FOUND
        assert wrong.error is ErrorKind.UNAUTHORIZED
        assert unknown.message == wrong.message == INVALID_CREDENTIALS

    async def test_inactive_account_cannot_log_in(self, auth_service, memory_store, registered):
        memory_store.set_identity_active(registered.identity.id, False)
        assert (await _login(auth_service)).error is ErrorKind.UNAUTHORIZED

    async def test_role_hint_absent_without_current_workspace(self, auth_service, memory_store, registered):
        memory_store.set_current_workspace(registered.identity.id, None)
        login = (await _login(auth_service)).value
        assert login.token.claims.role is None
        assert login.token.profile() == {
            "id": registered.identity.id,
            "email": "test@example.com",
            "role": None,
        }


class TestAuthenticate:
    async def test_session_only(self, auth_service, registered):
        login = (await _login(auth_service)).value
        outcome = await auth_service.authenticate(
            RequestCredentials(session_id=login.session.session_id)
        )
        assert outcome.ok
        assert outcome.principal.channel is CredentialChannel.SESSION
        assert outcome.principal.identity_id == registered.identity.id

    async def test_token_only(self, auth_service, registered):
        login = (await _login(auth_service)).value
        outcome = await auth_service.authenticate(RequestCredentials(token=login.token.token))
        assert outcome.ok
        assert outcome.principal.channel is CredentialChannel.TOKEN
        assert outcome.principal.session_id is None

    async def test_session_wins_when_both_present(self, auth_service, registered):
        login = (await _login(auth_service)).value
        outcome = await auth_service.authenticate(
            RequestCredentials(session_id=login.session.session_id, token=login.token.token)
        )
        assert outcome.principal.channel is CredentialChannel.SESSION

    async def test_neither(self, auth_service):
        outcome = await auth_service.authenticate(RequestCredentials())
        assert outcome.error is ErrorKind.UNAUTHORIZED
        assert not outcome.clear_credentials

    async def test_stale_session_falls_back_to_token(self, auth_service, memory_store, registered):
        login = (await _login(auth_service)).value
        memory_store.revoke_session(login.session.session_id)
        outcome = await auth_service.authenticate(
            RequestCredentials(session_id=login.session.session_id, token=login.token.token)
        )
        assert outcome.principal.channel is CredentialChannel.TOKEN

    async def test_stale_session_without_token(self, auth_service, registered):
        outcome = await auth_service.authenticate(RequestCredentials(session_id="expired-session"))
        assert outcome.error is ErrorKind.UNAUTHORIZED
        assert not outcome.clear_credentials

    async def test_tampered_token_clears_credentials(self, auth_service, registered):
        token = (await _login(auth_service)).value.token.token
        outcome = await auth_service.authenticate(RequestCredentials(token=token[:-2] + "xx"))
        assert outcome.error is ErrorKind.UNAUTHORIZED
        assert outcome.clear_credentials

    async def test_expired_token(self, memory_store, settings, registered):
        now = [1_700_000_000.0]
        codec = TokenCodec(
            SECRET,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=lambda: now[0],
        )
        service = AuthService(memory_store, None, settings, codec=codec)
        token = codec.sign(
            TokenClaims(registered.identity.id, registered.identity.email), timedelta(minutes=1)
        )
        now[0] += 61
        outcome = await service.authenticate(RequestCredentials(token=token))
        assert outcome.error is ErrorKind.UNAUTHORIZED
        assert outcome.clear_credentials

    async def test_token_for_missing_identity(self, auth_service, memory_store, registered):
        token = (await _login(auth_service)).value.token.token
        memory_store.identities.pop(registered.identity.id)
        outcome = await auth_service.authenticate(RequestCredentials(token=token))
        assert outcome.error is ErrorKind.UNAUTHORIZED
        assert outcome.clear_credentials

    async def test_deactivated_identity_rejected_on_token(self, auth_service, memory_store, registered):
        token = (await _login(auth_service)).value.token.token
        memory_store.set_identity_active(registered.identity.id, False)
        outcome = await auth_service.authenticate(RequestCredentials(token=token))
        assert outcome.error is ErrorKind.UNAUTHORIZED
        assert outcome.clear_credentials

    async def test_deactivated_identity_rejected_on_session(
        self, auth_service, memory_store, registered
    ):
        login = (await _login(auth_service)).value
        memory_store.set_identity_active(registered.identity.id, False)
        outcome = await auth_service.authenticate(
            RequestCredentials(session_id=login.session.session_id, token=login.token.token)
        )
        assert outcome.error is ErrorKind.UNAUTHORIZED
        assert outcome.clear_credentials

    async def test_deactivation_destroys_sessions(self, auth_service, memory_store, registered):
        login = (await _login(auth_service)).value
        result = await auth_service.set_identity_active(registered.identity.id, False)
        assert result.ok
        assert memory_store.get_session(login.session.session_id) is None

    async def test_store_unavailable(self, settings):
        service = AuthService(FlakyStore(token_key=SECRET), None, settings)
        outcome = await service.authenticate(RequestCredentials(session_id="anything"))
        assert outcome.error is ErrorKind.UNAVAILABLE
        assert not outcome.clear_credentials

    def test_bearer_header_is_accepted(self, settings):
        policy = CookiePolicy(settings)
        creds = RequestCredentials.from_request({}, "Bearer abc.def.ghi", policy)
        assert creds.token == "abc.def.ghi"
        assert creds.session_id is None

    def test_cookie_token_preferred_over_header(self, settings):
        policy = CookiePolicy(settings)
        creds = RequestCredentials.from_request(
            {"auth_token": "from-cookie", "session_id": "sid"}, "Bearer from-header", policy
        )
        assert creds.token == "from-cookie"
        assert creds.session_id == "sid"


class TestAuthorize:
    async def test_owner_allowed(self, auth_service, registered):
        result = await auth_service.authorize(
            registered.identity.id, registered.workspace.id, [Permission.CHANGE_MEMBER_ROLE]
        )
        assert result.value is Role.OWNER

    async def test_member_missing_permission(self, auth_service, memory_store, registered):
        member = memory_store.create_identity("member@example.com")
        memory_store.add_membership(member.id, registered.workspace.id, Role.MEMBER.value)
        allowed = await auth_service.authorize(
            member.id, registered.workspace.id, [Permission.VIEW_ONLY]
        )
        denied = await auth_service.authorize(
            member.id, registered.workspace.id, [Permission.DELETE_PROJECT]
        )
        assert allowed.value is Role.MEMBER
        assert denied.error is ErrorKind.UNAUTHORIZED

    async def test_non_member(self, auth_service, memory_store, registered):
        outsider = memory_store.create_identity("outsider@example.com")
        result = await auth_service.authorize(
            outsider.id, registered.workspace.id, [Permission.VIEW_ONLY]
        )
        assert result.error is ErrorKind.UNAUTHORIZED

    async def test_unknown_workspace(self, auth_service, registered):
        result = await auth_service.authorize(
            registered.identity.id, "no-such-workspace", [Permission.VIEW_ONLY]
        )
        assert result.error is ErrorKind.NOT_FOUND


class TestRevoke:
    async def test_clears_everything(self, auth_service, memory_store, registered):
        login = (await _login(auth_service)).value
        credentials = RequestCredentials(
            session_id=login.session.session_id, token=login.token.token
        )
        context = RequestContext(credentials=credentials)
        context.principal = (await auth_service.authenticate(credentials)).principal
        response = Response()

        await auth_service.revoke(context, response)

        cookies = _set_cookies(response)
        assert set(cookies) == {"session_id", "auth_token", "auth_user"}
        assert all("Max-Age=0" in header for header in cookies.values())
        assert memory_store.get_session(login.session.session_id) is None
        assert context.principal is None
        assert context.credentials == RequestCredentials()

    async def test_idempotent(self, auth_service, registered):
        login = (await _login(auth_service)).value
        context = RequestContext(
            credentials=RequestCredentials(session_id=login.session.session_id)
        )
        await auth_service.revoke(context, Response())
        second = Response()
        await auth_service.revoke(context, second)
        assert len(_set_cookies(second)) == 3

    async def test_session_destroy_failure_still_clears_cookies(
        self, auth_service, monkeypatch, registered
    ):
        async def boom(session_id):
            raise StoreUnavailable("redis down", backend="redis")

        monkeypatch.setattr(auth_service.sessions, "destroy", boom)
        context = RequestContext(credentials=RequestCredentials(session_id="sid"))
        response = Response()

        await auth_service.revoke(context, response)

        assert len(_set_cookies(response)) == 3
        assert context.credentials.session_id is None


class TestCookiePolicy:
    async def test_same_origin_attributes(self, auth_service, registered):
        login = (await _login(auth_service)).value
        response = Response()
        auth_service.cookies.apply(response, login.session, login.token)
        cookies = _set_cookies(response)

        assert "HttpOnly" in cookies["session_id"]
        assert "HttpOnly" in cookies["auth_token"]
        assert "HttpOnly" not in cookies["auth_user"]
        for header in cookies.values():
            assert "SameSite=strict" in header
            assert "Secure" in header
            assert "Path=/" in header

    async def test_profile_cookie_is_decodable(self, auth_service, registered):
        login = (await _login(auth_service)).value
        response = Response()
        auth_service.cookies.apply(response, login.session, login.token)
        raw = _set_cookies(response)["auth_user"].split(";", 1)[0].split("=", 1)[1]
        assert decode_profile(raw) == {
            "id": registered.identity.id,
            "email": "test@example.com",
            "role": "OWNER",
        }

    def test_cross_origin_forces_secure_none(self, settings):
        policy = CookiePolicy(
            settings.model_copy(update={"cross_origin_cookies": True, "cookie_secure": False})
        )
        assert policy.samesite == "none"
        assert policy.secure is True

    def test_clear_matches_set_attributes(self, settings):
        policy = CookiePolicy(settings.model_copy(update={"cookie_domain": "example.com"}))
        response = Response()
        policy.clear(response)
        for header in _set_cookies(response).values():
            assert "Domain=example.com" in header
            assert "SameSite=strict" in header


class TestOAuth:
    async def test_start_returns_authorization_url(self, auth_service):
        result = await auth_service.start_oauth("google")
        assert result.ok
        query = parse_qs(urlparse(result.value["authorization_url"]).query)
        assert query["client_id"] == ["google-client"]
        assert query["state"] == [result.value["state"]]

    async def test_unsupported_or_unconfigured_provider(self, auth_service):
        assert (await auth_service.start_oauth("myspace")).error is ErrorKind.INVALID
        assert (await auth_service.start_oauth("github")).error is ErrorKind.INVALID

    async def test_first_login_creates_account(self, auth_service, memory_store):
        state = (await auth_service.start_oauth("google")).value["state"]
        auth_service.register_oauth_code(
            "google",
            "code-1",
            {"provider_uid": "g-1", "email": "new@example.com", "name": "New Person"},
        )

        result = await auth_service.complete_oauth("google", "code-1", state)

        assert result.ok
        identity = result.value.identity
        assert identity.email == "new@example.com"
        assert memory_store.find_identity_by_provider(ProviderKind.GOOGLE, "g-1").id == identity.id
        assert memory_store.get_membership(identity.id, identity.current_workspace_id).role == "OWNER"
        assert memory_store.get_password_hash(identity.id) is None

    async def test_links_existing_email_account(self, auth_service, memory_store, registered):
        state = (await auth_service.start_oauth("google")).value["state"]
        auth_service.register_oauth_code(
            "google", "code-2", {"provider_uid": "g-2", "email": "test@example.com"}
        )

        result = await auth_service.complete_oauth("google", "code-2", state)

        assert result.value.identity.id == registered.identity.id
        assert len(memory_store.workspaces) == 1

    async def test_unverified_email_is_not_linked(self, auth_service, memory_store, registered):
        state = (await auth_service.start_oauth("google")).value["state"]
        auth_service.register_oauth_code(
            "google",
            "code-4",
            {"provider_uid": "g-4", "email": "test@example.com", "email_verified": False},
        )

        result = await auth_service.complete_oauth("google", "code-4", state)

        assert result.error is ErrorKind.CONFLICT
        assert memory_store.get_provider_link(ProviderKind.GOOGLE, "g-4") is None

    def test_google_verified_flag_is_parsed(self, auth_service):
        profile = auth_service._parse_oauth_userinfo(
            "google", {"id": "g-5", "email": "x@example.com", "verified_email": False}
        )
        assert profile["email_verified"] is False

    async def test_state_is_single_use(self, auth_service):
        state = (await auth_service.start_oauth("google")).value["state"]
        payload = {"provider_uid": "g-3", "email": "once@example.com"}
        auth_service.register_oauth_code("google", "code-3", payload)
        assert (await auth_service.complete_oauth("google", "code-3", state)).ok
        auth_service.register_oauth_code("google", "code-3", payload)
        replay = await auth_service.complete_oauth("google", "code-3", state)
        assert replay.error is ErrorKind.UNAUTHORIZED

    async def test_unknown_state(self, auth_service):
        result = await auth_service.complete_oauth("google", "code", "forged-state")
        assert result.error is ErrorKind.UNAUTHORIZED

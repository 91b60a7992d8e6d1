from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import urlencode

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from starlette.responses import Response

from teamsync.config import Settings
from teamsync.logging import get_logger
from teamsync.service.cookies import CookiePolicy
from teamsync.service.permissions import Permission, Role, require_permissions
from teamsync.service.results import (
    STORE_UNAVAILABLE,
    ErrorKind,
    Result,
    unavailable_as_failure,
)
from teamsync.service.roles import RoleResolver
from teamsync.service.sessions import SessionStore
from teamsync.service.tokens import INVALID_TOKEN, TokenClaims, TokenCodec
from teamsync.storage.common import AuthStore
from teamsync.storage.errors import ConstraintViolation, StoreUnavailable
from teamsync.storage.models import Identity, ProviderKind, Workspace, normalize_email
from teamsync.storage.redis_cache import RedisCache

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
}

OAUTH_STATE_TTL = timedelta(minutes=10)

AUTHENTICATION_REQUIRED = "Unauthorized. Please log in."
INVALID_CREDENTIALS = "Invalid email or password"
ACCOUNT_DISABLED = "Account is deactivated"
EMAIL_EXISTS = "Email already exists"

logger = get_logger(__name__)


class CredentialChannel(str, Enum):
    SESSION = "session"
    TOKEN = "token"


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Identity resolved for the current request and the channel that proved it."""

    identity: Identity
    channel: CredentialChannel
    session_id: Optional[str] = None

    @property
    def identity_id(self) -> str:
        return self.identity.id


@dataclass(frozen=True)
class RequestCredentials:
    session_id: Optional[str] = None
    token: Optional[str] = None

    @classmethod
    def from_request(
        cls,
        cookies: Mapping[str, str],
        authorization: Optional[str],
        policy: CookiePolicy,
    ) -> "RequestCredentials":
        token = cookies.get(policy.token_cookie) or _extract_bearer(authorization)
        return cls(session_id=cookies.get(policy.session_cookie) or None, token=token or None)


@dataclass
class RequestContext:
    """Per-request auth state; the HTTP layer keeps it on ``request.state.auth``."""

    credentials: RequestCredentials = field(default_factory=RequestCredentials)
    principal: Optional[AuthenticatedIdentity] = None


@dataclass(frozen=True)
class AuthOutcome:
    principal: Optional[AuthenticatedIdentity] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    clear_credentials: bool = False

    @property
    def ok(self) -> bool:
        return self.principal is not None

    @classmethod
    def authenticated(cls, principal: AuthenticatedIdentity) -> "AuthOutcome":
        return cls(principal=principal)

    @classmethod
    def rejected(
        cls, kind: ErrorKind, message: str, *, clear_credentials: bool = False
    ) -> "AuthOutcome":
        return cls(error=kind, message=message, clear_credentials=clear_credentials)


@dataclass(frozen=True)
class SessionArtifact:
    session_id: str
    identity_id: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenArtifact:
    token: str
    claims: TokenClaims
    expires_at: datetime

    def profile(self) -> dict:
        """Display-only fields safe to expose to client-side scripts."""
        return {
            "id": self.claims.identity_id,
            "email": self.claims.email,
            "role": self.claims.role,
        }


@dataclass(frozen=True)
class LoginResult:
    identity: Identity
    session: SessionArtifact
    token: TokenArtifact


@dataclass(frozen=True)
class RegistrationResult:
    identity: Identity
    workspace: Workspace


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


class AuthService:
    """Hybrid session/token authentication and workspace authorization."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self.sessions = SessionStore(store, cache, ttl_minutes=settings.session_ttl_minutes)
        self.codec = codec or TokenCodec(
            settings.session_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_leeway_seconds,
        )
        self.cookies = CookiePolicy(settings)
        self.roles = RoleResolver(store)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._token_ttl = timedelta(minutes=settings.token_ttl_minutes)
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self._oauth_code_registry: dict[tuple[str, str], dict] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # passwords ------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, identity_id: str, password: str) -> bool:
        stored_hash = self.store.get_password_hash(identity_id)
        if not stored_hash:
            # provider-only account
            self.logger.info("password_record_missing", identity_id=identity_id)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_verification_failed", identity_id=identity_id)
            return False

    # registration ---------------------------------------------------------

    def _provision_identity(
        self,
        email: str,
        *,
        name: Optional[str],
        provider: ProviderKind,
        provider_subject: str,
        password_hash: Optional[str] = None,
        profile_picture: Optional[str] = None,
    ) -> tuple[Identity, Workspace]:
        """Create an identity with its provider link, default workspace and OWNER membership."""
        return self.store.provision_identity(
            email,
            name,
            provider=provider,
            provider_subject=provider_subject,
            workspace_name=self.settings.default_workspace_name,
            owner_role=Role.OWNER.value,
            password_hash=password_hash,
            profile_picture=profile_picture,
        )

    @unavailable_as_failure
    async def register(
        self, email: str, name: Optional[str], password: str
    ) -> Result[RegistrationResult]:
        if not self.settings.allow_signup:
            return Result.failure(ErrorKind.INVALID, "Signups are disabled")
        normalized = normalize_email(email)
        if self.store.find_identity_by_email(normalized):
            return Result.failure(ErrorKind.CONFLICT, EMAIL_EXISTS)
        try:
            identity, workspace = self._provision_identity(
                normalized,
                name=name,
                provider=ProviderKind.EMAIL,
                provider_subject=normalized,
                password_hash=self.hash_password(password),
            )
        except ConstraintViolation as exc:
            self.logger.warning("registration_conflict", detail=exc.detail)
            return Result.failure(ErrorKind.CONFLICT, EMAIL_EXISTS)
        self.logger.info(
            "identity_registered", identity_id=identity.id, workspace_id=workspace.id
        )
        return Result.success(RegistrationResult(identity=identity, workspace=workspace))

    # login and credential issuance ------------------------------------------

    @unavailable_as_failure
    async def login(self, email: str, password: str) -> Result[LoginResult]:
        normalized = normalize_email(email)
        identity = self.store.find_identity_by_provider(ProviderKind.EMAIL, normalized)
        if identity is None:
            self.logger.info("login_failed", reason="unknown_account")
            return Result.failure(ErrorKind.NOT_FOUND, INVALID_CREDENTIALS)
        if not self.verify_password(identity.id, password):
            self.logger.info("login_failed", reason="bad_password", identity_id=identity.id)
            return Result.failure(ErrorKind.UNAUTHORIZED, INVALID_CREDENTIALS)
        if not identity.is_active:
            self.logger.info("login_failed", reason="inactive", identity_id=identity.id)
            return Result.failure(ErrorKind.UNAUTHORIZED, ACCOUNT_DISABLED)
        return await self._complete_login(identity)

    async def _complete_login(self, identity: Identity) -> Result[LoginResult]:
        now = self._now()
        self.store.touch_last_login(identity.id, now)
        identity = replace(identity, last_login=now)
        issued = await self.issue_credentials(identity)
        if not issued.ok:
            return Result.failure(issued.error, issued.message)
        session, token = issued.value
        self.logger.info("login_succeeded", identity_id=identity.id)
        return Result.success(LoginResult(identity=identity, session=session, token=token))

    def _role_hint(self, identity: Identity) -> Optional[str]:
        if not identity.current_workspace_id:
            return None
        membership = self.store.get_membership(identity.id, identity.current_workspace_id)
        return membership.role if membership else None

    @unavailable_as_failure
    async def issue_credentials(
        self, identity: Identity
    ) -> Result[tuple[SessionArtifact, TokenArtifact]]:
        """Mint a fresh session and a fresh signed token for ``identity``."""
        session = await self.sessions.create(identity.id)
        claims = TokenClaims(
            identity_id=identity.id,
            email=identity.email,
            role=self._role_hint(identity),
        )
        token = self.codec.sign(claims, self._token_ttl)
        session_artifact = SessionArtifact(
            session_id=session.id,
            identity_id=identity.id,
            expires_at=session.expires_at,
        )
        token_artifact = TokenArtifact(
            token=token, claims=claims, expires_at=self._now() + self._token_ttl
        )
        self.logger.info(
            "credentials_issued",
            identity_id=identity.id,
            session_expires_at=session.expires_at.isoformat(),
            token_expires_at=token_artifact.expires_at.isoformat(),
        )
        return Result.success((session_artifact, token_artifact))

    # request authentication -----------------------------------------------

    async def authenticate(self, credentials: RequestCredentials) -> AuthOutcome:
        """Resolve the caller: live session first, then the signed token.

        One session-store read and one identity read at most. A token that
        fails verification, or names an identity that is gone or deactivated,
        rejects with ``clear_credentials`` set.
        """
        try:
            if credentials.session_id:
                outcome = await self._authenticate_session(credentials.session_id)
                if outcome is not None:
                    return outcome
            if credentials.token:
                return self._authenticate_token(credentials.token)
        except StoreUnavailable as exc:
            self.logger.error("store_unavailable", operation="authenticate", backend=exc.backend)
            return AuthOutcome.rejected(ErrorKind.UNAVAILABLE, STORE_UNAVAILABLE)
        return AuthOutcome.rejected(ErrorKind.UNAUTHORIZED, AUTHENTICATION_REQUIRED)

    async def _authenticate_session(self, session_id: str) -> Optional[AuthOutcome]:
        identity_id = await self.sessions.lookup(session_id)
        if identity_id is None:
            # stale or unknown session; the token may still be good
            return None
        identity = self.store.find_identity_by_id(identity_id)
        if identity is None or not identity.is_active:
            self.logger.warning(
                "identity_inactive" if identity else "session_identity_missing",
                channel=CredentialChannel.SESSION.value,
                identity_id=identity_id,
            )
            return AuthOutcome.rejected(
                ErrorKind.UNAUTHORIZED, AUTHENTICATION_REQUIRED, clear_credentials=True
            )
        return AuthOutcome.authenticated(
            AuthenticatedIdentity(
                identity=identity, channel=CredentialChannel.SESSION, session_id=session_id
            )
        )

    def _authenticate_token(self, token: str) -> AuthOutcome:
        verified = self.codec.verify(token)
        if not verified.ok:
            return AuthOutcome.rejected(
                ErrorKind.UNAUTHORIZED, INVALID_TOKEN, clear_credentials=True
            )
        claims = verified.value
        # tokens cannot be revoked early, so the account is re-checked every time
        identity = self.store.find_identity_by_id(claims.identity_id)
        if identity is None:
            self.logger.warning("token_identity_missing", identity_id=claims.identity_id)
            return AuthOutcome.rejected(
                ErrorKind.UNAUTHORIZED, INVALID_TOKEN, clear_credentials=True
            )
        if not identity.is_active:
            self.logger.warning(
                "identity_inactive",
                channel=CredentialChannel.TOKEN.value,
                identity_id=identity.id,
            )
            return AuthOutcome.rejected(
                ErrorKind.UNAUTHORIZED, INVALID_TOKEN, clear_credentials=True
            )
        return AuthOutcome.authenticated(
            AuthenticatedIdentity(identity=identity, channel=CredentialChannel.TOKEN)
        )

    # authorization --------------------------------------------------------

    async def authorize(
        self,
        identity_id: str,
        workspace_id: str,
        required: Iterable[Permission],
    ) -> Result[Role]:
        """Resolve the caller's role in the workspace and check ``required`` against it."""
        resolved = self.roles.resolve_role(identity_id, workspace_id)
        if not resolved.ok:
            self.logger.info(
                "workspace_access_denied",
                identity_id=identity_id,
                workspace_id=workspace_id,
                reason=resolved.error.value,
            )
            return resolved
        guard = require_permissions(resolved.value, required)
        if not guard.ok:
            self.logger.info(
                "workspace_access_denied",
                identity_id=identity_id,
                workspace_id=workspace_id,
                role=resolved.value.value,
                reason="insufficient_permissions",
            )
            return Result.failure(guard.error, guard.message)
        return resolved

    # revocation -----------------------------------------------------------

    async def revoke(self, context: RequestContext, response: Response) -> None:
        """Clear every auth cookie, drop the session, forget the request's identity."""
        self.cookies.clear(response)
        session_id = context.credentials.session_id
        if session_id is None and context.principal is not None:
            session_id = context.principal.session_id
        if session_id:
            try:
                await self.sessions.destroy(session_id)
            except Exception as exc:
                # cookies are already gone; a stuck session row only expires later
                self.logger.warning(
                    "session_destroy_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        context.principal = None
        context.credentials = RequestCredentials()

    async def logout(self, context: RequestContext, response: Response) -> None:
        await self.revoke(context, response)

    # account state --------------------------------------------------------

    @unavailable_as_failure
    async def set_identity_active(self, identity_id: str, active: bool) -> Result[Identity]:
        identity = self.store.set_identity_active(identity_id, active)
        if identity is None:
            return Result.failure(ErrorKind.NOT_FOUND, "User not found")
        if not active:
            await self.sessions.destroy_all(identity_id)
        self.logger.info("identity_active_changed", identity_id=identity_id, active=active)
        return Result.success(identity)

    # oauth ----------------------------------------------------------------

    def _get_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    def _oauth_redirect_uri(self, provider: str) -> str:
        return f"{self.settings.oauth_redirect_base_url.rstrip('/')}/{provider}/callback"

    @unavailable_as_failure
    async def start_oauth(self, provider: str) -> Result[dict]:
        if provider not in OAUTH_PROVIDERS:
            return Result.failure(ErrorKind.INVALID, "Unsupported OAuth provider")
        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            return Result.failure(ErrorKind.INVALID, "OAuth provider is not configured")

        state = uuid.uuid4().hex
        expires_at = self._now() + OAUTH_STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at)
        else:
            with self._state_lock:
                self._oauth_states[state] = (provider, expires_at)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self._oauth_redirect_uri(provider),
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return Result.success(
            {
                "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
                "state": state,
                "provider": provider,
            }
        )

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        """Record an exchanged OAuth payload for testing or offline flows."""

        with self._state_lock:
            self._oauth_code_registry[(provider, code)] = payload

    async def _pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._oauth_states.pop(state, None)

    async def _exchange_oauth_code(self, provider: str, code: str) -> Optional[dict]:
        """Exchange an authorization code for the provider's view of the user."""
        with self._state_lock:
            registered = self._oauth_code_registry.pop((provider, code), None)
        if registered:
            return registered

        client_id, client_secret = self._get_oauth_credentials(provider)
        if not client_id or not client_secret:
            self.logger.error("oauth_credentials_missing", provider=provider)
            return None
        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._oauth_redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=provider)
                    return None

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    self.logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None

                profile = self._parse_oauth_userinfo(provider, userinfo)
                if provider == "github" and not profile.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        profile["email"] = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
                        profile["email_verified"] = bool(profile["email"])
                profile["refresh_token"] = token_result.get("refresh_token")
                expires_in = token_result.get("expires_in")
                if isinstance(expires_in, (int, float)):
                    profile["token_expiry"] = self._now() + timedelta(seconds=expires_in)
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None

        if not profile.get("provider_uid") or not profile.get("email"):
            self.logger.error("oauth_identity_incomplete", provider=provider)
            return None
        self.logger.info(
            "oauth_exchange_success", provider=provider, provider_uid=profile["provider_uid"]
        )
        return profile

    def _parse_oauth_userinfo(self, provider: str, userinfo: dict) -> dict[str, Any]:
        if provider == "google":
            return {
                "provider_uid": userinfo.get("id") or userinfo.get("sub"),
                "email": userinfo.get("email"),
                "email_verified": userinfo.get("verified_email", userinfo.get("email_verified")),
                "name": userinfo.get("name"),
                "picture": userinfo.get("picture"),
            }
        return {
            "provider_uid": str(userinfo["id"]) if userinfo.get("id") is not None else None,
            "email": userinfo.get("email"),
            "email_verified": None,
            "name": userinfo.get("name") or userinfo.get("login"),
            "picture": userinfo.get("avatar_url"),
        }

    @unavailable_as_failure
    async def login_or_create_provider_account(
        self,
        provider: ProviderKind,
        provider_subject: str,
        email: str,
        *,
        name: Optional[str] = None,
        picture: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_expiry: Optional[datetime] = None,
        email_verified: Optional[bool] = None,
    ) -> Result[Identity]:
        """Find the identity behind a provider login, linking or creating it as needed."""
        identity = self.store.find_identity_by_provider(provider, provider_subject)
        if identity is not None:
            if refresh_token:
                self.store.update_provider_tokens(
                    provider, provider_subject, refresh_token, token_expiry
                )
            return Result.success(identity)

        try:
            identity = self.store.find_identity_by_email(email)
            if identity is not None:
                if email_verified is False:
                    # the provider has not proven ownership of this address
                    self.logger.warning(
                        "oauth_link_refused_unverified_email",
                        identity_id=identity.id,
                        provider=provider.value,
                    )
                    return Result.failure(ErrorKind.CONFLICT, EMAIL_EXISTS)
                self.store.link_provider(
                    identity.id,
                    provider,
                    provider_subject,
                    refresh_token=refresh_token,
                    token_expiry=token_expiry,
                )
                self.logger.info(
                    "oauth_provider_linked", identity_id=identity.id, provider=provider.value
                )
                return Result.success(identity)

            identity, workspace = self._provision_identity(
                email,
                name=name,
                provider=provider,
                provider_subject=provider_subject,
                profile_picture=picture,
            )
        except ConstraintViolation as exc:
            self.logger.warning("oauth_account_conflict", provider=provider.value, detail=exc.detail)
            return Result.failure(ErrorKind.CONFLICT, "Account already linked to another user")
        if refresh_token:
            self.store.update_provider_tokens(provider, provider_subject, refresh_token, token_expiry)
        self.logger.info(
            "oauth_identity_created",
            identity_id=identity.id,
            workspace_id=workspace.id,
            provider=provider.value,
        )
        return Result.success(identity)

    @unavailable_as_failure
    async def complete_oauth(self, provider: str, code: str, state: str) -> Result[LoginResult]:
        stored = await self._pop_oauth_state(state)
        if not stored or stored[0] != provider or stored[1] < self._now():
            self.logger.warning("oauth_state_invalid", provider=provider)
            return Result.failure(ErrorKind.UNAUTHORIZED, "Invalid OAuth state")
        profile = await self._exchange_oauth_code(provider, code)
        if not profile:
            return Result.failure(ErrorKind.UNAUTHORIZED, "OAuth sign-in failed")
        resolved = await self.login_or_create_provider_account(
            ProviderKind(provider.upper()),
            str(profile["provider_uid"]),
            profile["email"],
            name=profile.get("name"),
            picture=profile.get("picture"),
            refresh_token=profile.get("refresh_token"),
            token_expiry=profile.get("token_expiry"),
            email_verified=profile.get("email_verified"),
        )
        if not resolved.ok:
            return Result.failure(resolved.error, resolved.message)
        identity = resolved.value
        if not identity.is_active:
            return Result.failure(ErrorKind.UNAUTHORIZED, ACCOUNT_DISABLED)
        return await self._complete_login(identity)

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from teamsync.api.schemas import (
    ChangeRoleRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    MemberResponse,
    OAuthStartResponse,
    RegisterRequest,
    RegisterResponse,
    RoleResponse,
    UserResponse,
    WorkspaceResponse,
)
from teamsync.logging import get_correlation_id, get_logger
from teamsync.service.auth import (
    INVALID_CREDENTIALS,
    AuthenticatedIdentity,
    RequestContext,
    RequestCredentials,
)
from teamsync.service.errors import (
    AuthenticationError,
    ForbiddenError,
    UnavailableError,
)
from teamsync.service.permissions import Permission, Role, permissions_of
from teamsync.service.results import ErrorKind, error_for
from teamsync.service.runtime import Runtime, check_rate_limit, get_runtime
from teamsync.storage.models import Identity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

WORKSPACE_ACCESS_DENIED = "You do not have access to this workspace resource"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data) -> Envelope:
    correlation_id = get_correlation_id()
    if correlation_id:
        return Envelope(status="ok", data=data, request_id=correlation_id)
    return Envelope(status="ok", data=data)


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one unit from ``key``'s bucket; raise 429 once it is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "Too many attempts, please try again later",
            status_code=429,
            details={"retry_after_seconds": info.reset_seconds},
        )
    return info


def _user_response(identity: Identity) -> UserResponse:
    return UserResponse(**identity.public_dict())


def _credentials_from(request: Request, runtime: Runtime) -> RequestCredentials:
    return RequestCredentials.from_request(
        request.cookies, request.headers.get("Authorization"), runtime.auth.cookies
    )


async def get_principal(request: Request) -> AuthenticatedIdentity:
    """Resolve the caller from the session cookie or the signed token."""
    runtime = get_runtime()
    context = RequestContext(credentials=_credentials_from(request, runtime))
    request.state.auth = context
    outcome = await runtime.auth.authenticate(context.credentials)
    if not outcome.ok:
        if outcome.error == ErrorKind.UNAVAILABLE:
            raise UnavailableError(outcome.message)
        raise AuthenticationError(outcome.message, clear_credentials=outcome.clear_credentials)
    context.principal = outcome.principal
    return outcome.principal


@dataclass(frozen=True)
class WorkspaceAccess:
    principal: AuthenticatedIdentity
    workspace_id: str
    role: Role


def require_workspace_permissions(*permissions: Permission):
    """Dependency factory guarding a ``{workspace_id}`` route with ``permissions``.

    Missing workspace, missing membership and missing permission all produce
    the same 403 so callers cannot tell which workspaces exist.
    """
    required = frozenset(permissions)

    async def dependency(
        workspace_id: str = Path(..., max_length=64),
        principal: AuthenticatedIdentity = Depends(get_principal),
    ) -> WorkspaceAccess:
        runtime = get_runtime()
        granted = await runtime.auth.authorize(principal.identity_id, workspace_id, required)
        if not granted.ok:
            if granted.error == ErrorKind.UNAVAILABLE:
                raise UnavailableError(granted.message)
            raise ForbiddenError(WORKSPACE_ACCESS_DENIED)
        return WorkspaceAccess(principal=principal, workspace_id=workspace_id, role=granted.value)

    return dependency


# auth -----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account together with its personal workspace.

    Does not sign the caller in; the client follows up with ``/auth/login``.
    """
    runtime = get_runtime()
    registration = (await runtime.auth.register(body.email, body.name, body.password)).unwrap()
    workspace = registration.workspace
    return _ok(
        RegisterResponse(
            user=_user_response(registration.identity),
            workspace=WorkspaceResponse(
                id=workspace.id,
                name=workspace.name,
                owner_id=workspace.owner_id,
                invite_code=workspace.invite_code,
                description=workspace.description,
            ),
        )
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password; sets the session, token and profile cookies.

    Raises:
        401: unknown account or wrong password, indistinguishably
        429: too many attempts from this client for this account
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_get_client_ip(request)}:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password)
    if not result.ok:
        if result.error == ErrorKind.UNAVAILABLE:
            raise error_for(result.error, result.message)
        message = result.message if result.error == ErrorKind.UNAUTHORIZED else INVALID_CREDENTIALS
        raise AuthenticationError(message)
    logged_in = result.value
    runtime.auth.cookies.apply(response, logged_in.session, logged_in.token)
    return _ok(
        LoginResponse(
            user=_user_response(logged_in.identity),
            session_expires_at=logged_in.session.expires_at,
            token_expires_at=logged_in.token.expires_at,
            access_token=logged_in.token.token,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    context = RequestContext(credentials=_credentials_from(request, runtime))
    request.state.auth = context
    await runtime.auth.logout(context, response)
    return _ok({"message": "Logged out successfully"})


@router.get("/auth/oauth/{provider}/start", tags=["auth"])
async def oauth_start(
    request: Request,
    provider: str = Path(..., max_length=32, description="OAuth provider (google, github)"),
    redirect: bool = Query(True, description="Redirect to the provider instead of returning the URL"),
):
    runtime = get_runtime()
    # state tokens are cheap to mint; cap them per client
    await _enforce_rate_limit(
        runtime, f"oauth:start:{_get_client_ip(request)}", limit=20, window_seconds=60
    )
    start = (await runtime.auth.start_oauth(provider)).unwrap()
    if redirect:
        return RedirectResponse(start["authorization_url"], status_code=302)
    return _ok(OAuthStartResponse(**start))


def _oauth_failure_redirect(runtime: Runtime) -> RedirectResponse:
    settings = runtime.settings
    query = urlencode({"status": "failure"})
    return RedirectResponse(
        f"{settings.frontend_origin.rstrip('/')}{settings.frontend_oauth_callback_path}?{query}",
        status_code=302,
    )


@router.get("/auth/oauth/{provider}/callback", tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish the provider round trip and land the browser back on the frontend."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"oauth:callback:{_get_client_ip(request)}", limit=10, window_seconds=60
    )
    if error or not code or not state:
        logger.info("oauth_callback_rejected", provider=provider, provider_error=error)
        return _oauth_failure_redirect(runtime)
    result = await runtime.auth.complete_oauth(provider, code, state)
    if not result.ok:
        logger.info("oauth_callback_failed", provider=provider, reason=result.error.value)
        return _oauth_failure_redirect(runtime)
    logged_in = result.value
    workspace_id = logged_in.identity.current_workspace_id
    target = runtime.settings.frontend_origin.rstrip("/")
    target = f"{target}/workspace/{workspace_id}" if workspace_id else f"{target}/"
    redirect_response = RedirectResponse(target, status_code=302)
    runtime.auth.cookies.apply(redirect_response, logged_in.session, logged_in.token)
    return redirect_response


# users ----------------------------------------------------------------------


@router.get("/users/current", response_model=Envelope, tags=["users"])
async def current_user(principal: AuthenticatedIdentity = Depends(get_principal)):
    return _ok({"user": _user_response(principal.identity), "channel": principal.channel.value})


# workspaces -----------------------------------------------------------------


@router.post("/workspaces/join/{invite_code}", response_model=Envelope, tags=["workspaces"])
async def join_workspace(
    invite_code: str = Path(..., max_length=64),
    principal: AuthenticatedIdentity = Depends(get_principal),
):
    runtime = get_runtime()
    workspace = (
        await runtime.workspaces.join_workspace(principal.identity_id, invite_code)
    ).unwrap()
    return _ok(
        {
            "message": "Successfully joined the workspace",
            "workspace_id": workspace.id,
            "role": Role.MEMBER.value,
        }
    )


@router.get("/workspaces/{workspace_id}/role", response_model=Envelope, tags=["workspaces"])
async def get_workspace_role(
    access: WorkspaceAccess = Depends(require_workspace_permissions(Permission.VIEW_ONLY)),
):
    return _ok(
        RoleResponse(
            workspace_id=access.workspace_id,
            role=access.role,
            permissions=sorted(p.value for p in permissions_of(access.role)),
        )
    )


@router.get("/workspaces/{workspace_id}/members", response_model=Envelope, tags=["workspaces"])
async def list_workspace_members(
    access: WorkspaceAccess = Depends(require_workspace_permissions(Permission.VIEW_ONLY)),
):
    runtime = get_runtime()
    members = (await runtime.workspaces.list_members(access.workspace_id)).unwrap()
    return _ok(
        {
            "workspace_id": access.workspace_id,
            "members": [MemberResponse(**member.to_dict()) for member in members],
        }
    )


@router.put(
    "/workspaces/{workspace_id}/members/{member_id}/role",
    response_model=Envelope,
    tags=["workspaces"],
)
async def change_member_role(
    body: ChangeRoleRequest,
    member_id: str = Path(..., max_length=64),
    access: WorkspaceAccess = Depends(
        require_workspace_permissions(Permission.CHANGE_MEMBER_ROLE)
    ),
):
    runtime = get_runtime()
    membership = (
        await runtime.workspaces.change_member_role(access.workspace_id, member_id, body.role)
    ).unwrap()
    return _ok(
        {
            "workspace_id": membership.workspace_id,
            "member_id": membership.identity_id,
            "role": membership.role,
        }
    )


@router.post("/workspaces/{workspace_id}/select", response_model=Envelope, tags=["workspaces"])
async def select_workspace(
    access: WorkspaceAccess = Depends(require_workspace_permissions(Permission.VIEW_ONLY)),
):
    runtime = get_runtime()
    identity = (
        await runtime.workspaces.select_workspace(
            access.principal.identity_id, access.workspace_id
        )
    ).unwrap()
    return _ok({"user": _user_response(identity)})

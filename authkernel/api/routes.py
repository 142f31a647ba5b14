from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response
from pydantic import BaseModel

from authkernel.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    UpdateProfileRequest,
    UserListResponse,
    UserResponse,
)
from authkernel.logging import get_correlation_id, get_logger
from authkernel.service.errors import InvalidTokenError, NotFoundError
from authkernel.service.guard import (
    AuthDecision,
    authorize,
    authorize_optional,
    decision_error,
)
from authkernel.service.rate_limit import RateLimitInfo
from authkernel.service.runtime import Runtime
from authkernel.service.sanitizer import sanitize_string
from authkernel.service.tokens import extract_bearer
from authkernel.storage.models import ADMIN_ROLES, AccessTokenClaims, Role

logger = get_logger(__name__)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def sanitize_path_params(request: Request) -> None:
    """Escape path parameters before they are bound to handler arguments."""
    params = request.scope.get("path_params")
    if params:
        request.scope["path_params"] = {
            key: sanitize_string(value) if isinstance(value, str) else value
            for key, value in params.items()
        }


router = APIRouter(prefix="/api/auth", dependencies=[Depends(sanitize_path_params)])


def _client_address(request: Request, runtime: Runtime) -> Optional[str]:
    if runtime.settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else None


def _apply_rate_limit_headers(response: Response, info: RateLimitInfo) -> None:
    response.headers["RateLimit-Limit"] = str(info.limit)
    response.headers["RateLimit-Remaining"] = str(max(0, info.remaining))
    response.headers["RateLimit-Reset"] = str(info.reset_seconds)


def rate_limited(rule_name: str):
    """Dependency enforcing the named rate-limit class on a route."""

    async def _enforce(request: Request, response: Response) -> RateLimitInfo:
        runtime = get_runtime(request)
        rule = runtime.rate_limiter.rule(rule_name)
        info = await runtime.rate_limiter.hit(rule, _client_address(request, runtime))
        _apply_rate_limit_headers(response, info)
        return info

    return _enforce


def _verified_claims(runtime: Runtime, authorization: Optional[str]) -> Optional[AccessTokenClaims]:
    token = extract_bearer(authorization)
    if token is None:
        return None
    try:
        return runtime.tokens.verify_access_token(token)
    except InvalidTokenError:
        logger.info("access_token_rejected")
        return None


async def get_optional_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[AccessTokenClaims]:
    decision = authorize_optional(_verified_claims(get_runtime(request), authorization))
    return decision.claims


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AccessTokenClaims:
    decision = authorize(_verified_claims(get_runtime(request), authorization))
    return _admit(decision)


def require_roles(*roles: Role):
    """Dependency admitting only principals whose role is in ``roles``."""

    async def _require(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> AccessTokenClaims:
        decision = authorize(_verified_claims(get_runtime(request), authorization), roles)
        return _admit(decision)

    return _require


def _admit(decision: AuthDecision) -> AccessTokenClaims:
    if not decision.allowed or decision.claims is None:
        raise decision_error(decision)
    return decision.claims


def _ok(data: BaseModel) -> Envelope:
    envelope = Envelope(status="ok", data=data.model_dump(by_alias=True, mode="json"))
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return envelope


@router.post(
    "/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(rate_limited("auth"))],
)
async def register(body: RegisterRequest, request: Request):
    """Create an account and start its first session."""
    runtime = get_runtime(request)
    result = await runtime.sessions.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
    )
    return _ok(AuthResponse.from_result(result))


@router.post(
    "/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("auth"))],
)
async def login(body: LoginRequest, request: Request):
    """Exchange email and password for a fresh token pair.

    Raises:
        401: Unknown email, wrong password, or deactivated account
        429: Too many attempts from this client
    """
    runtime = get_runtime(request)
    result = await runtime.sessions.login(body.email, body.password)
    return _ok(AuthResponse.from_result(result))


@router.post(
    "/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("auth"))],
)
async def refresh_tokens(body: RefreshRequest, request: Request):
    """Rotate a refresh token. The presented token is consumed either way."""
    runtime = get_runtime(request)
    result = await runtime.sessions.refresh(body.refresh_token)
    return _ok(AuthResponse.from_result(result))


@router.post(
    "/logout",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limited("auth"))],
)
async def logout(
    body: LogoutRequest,
    request: Request,
    principal: Optional[AccessTokenClaims] = Depends(get_optional_principal),
):
    """Revoke one refresh token. Unknown tokens are accepted silently."""
    runtime = get_runtime(request)
    if principal is not None:
        logger.info("logout_with_access_token", user_id=principal.user_id)
    await runtime.sessions.logout(body.refresh_token)
    return _ok(MessageResponse(message="Logged out successfully"))


@router.get(
    "/profile",
    response_model=Envelope,
    tags=["profile"],
    dependencies=[Depends(rate_limited("api"))],
)
async def get_profile(
    request: Request, principal: AccessTokenClaims = Depends(get_principal)
):
    runtime = get_runtime(request)
    user = await runtime.sessions.get_profile(principal.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return _ok(UserResponse.from_safe_user(user))


@router.put(
    "/profile",
    response_model=Envelope,
    tags=["profile"],
    dependencies=[Depends(rate_limited("api"))],
)
async def update_profile(
    body: UpdateProfileRequest,
    request: Request,
    principal: AccessTokenClaims = Depends(get_principal),
):
    runtime = get_runtime(request)
    user = await runtime.sessions.update_profile(principal.user_id, body.changes())
    return _ok(UserResponse.from_safe_user(user))


@router.get(
    "/users",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(rate_limited("api"))],
)
async def list_users(
    request: Request,
    principal: AccessTokenClaims = Depends(require_roles(*ADMIN_ROLES)),
):
    """List every account, newest first. Admin only."""
    runtime = get_runtime(request)
    users = await runtime.sessions.list_users(actor_id=principal.user_id)
    return _ok(
        UserListResponse(
            users=[UserResponse.from_safe_user(user) for user in users],
            count=len(users),
        )
    )


@router.post(
    "/users/{user_id}/deactivate",
    response_model=Envelope,
    tags=["admin"],
    dependencies=[Depends(rate_limited("strict"))],
)
async def deactivate_user(
    request: Request,
    user_id: str = Path(..., max_length=128),
    principal: AccessTokenClaims = Depends(require_roles(*ADMIN_ROLES)),
):
    """Deactivate an account and revoke all of its refresh tokens.

    Access tokens already issued to the account remain valid until expiry.
    """
    runtime = get_runtime(request)
    user = await runtime.sessions.deactivate_user(user_id, actor_id=principal.user_id)
    return _ok(UserResponse.from_safe_user(user))

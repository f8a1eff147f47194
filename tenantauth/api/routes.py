from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from tenantauth.api.error_handling import _error_response
from tenantauth.api.schemas import (
    AdminCreateUserRequest,
    AdminUpdateUserRequest,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RefreshResponse,
    SessionResponse,
    UserListResponse,
    UserResponse,
)
from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthContext
from tenantauth.service.errors import AuthenticationError, ForbiddenError
from tenantauth.service.refresh import IssuedRefreshCredential
from tenantauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def get_identity(request: Request) -> AuthContext:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        reason = getattr(request.state, "auth_failure", None)
        raise AuthenticationError(
            "authentication required", detail={"reason": reason} if reason else None
        )
    return identity


def get_admin_identity(identity: AuthContext = Depends(get_identity)) -> AuthContext:
    if not identity.is_admin:
        raise ForbiddenError("administrator role required")
    return identity


def _seconds_until(moment: datetime) -> int:
    return max(0, int((moment - datetime.now(timezone.utc)).total_seconds()))


def _set_access_cookie(
    response: Response, settings: Settings, token: str, expires_at: datetime
) -> None:
    response.set_cookie(
        settings.access_cookie_name,
        token,
        max_age=_seconds_until(expires_at),
        path="/",
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )


def _set_refresh_cookie(
    response: Response, settings: Settings, issued: IssuedRefreshCredential
) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        issued.secret,
        max_age=_seconds_until(issued.expires_at),
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.access_cookie_name,
        path="/",
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        tenant_id=body.tenant_id,
    )
    _set_access_cookie(response, runtime.settings, result.access_token, result.access_expires_at)
    _set_refresh_cookie(response, runtime.settings, result.refresh)
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=UserResponse.from_user(result.user),
            access_expires_at=result.access_expires_at,
        ),
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(request: Request, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    secret = request.cookies.get(settings.refresh_cookie_name)
    try:
        result = await runtime.auth.refresh(secret)
    except AuthenticationError as exc:
        logger.info("refresh_failed", reason=type(exc).__name__)
        failure: JSONResponse = _error_response(401, exc.message, code="unauthorized")
        _clear_session_cookies(failure, settings)
        return failure
    _set_access_cookie(response, settings, result.access_token, result.access_expires_at)
    if result.refresh is not None:
        _set_refresh_cookie(response, settings, result.refresh)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_expires_at=result.access_expires_at,
            refresh_rotated=result.refresh is not None,
        ),
    )


# The refresh cookie is scoped to the refresh path, so only the second URL
# ever receives it. The first is kept for clients that only need cookies cleared.
@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
@router.post("/auth/refresh-token/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    try:
        revoked = await runtime.auth.logout(request.cookies.get(settings.refresh_cookie_name))
    except Exception as exc:
        logger.error("logout_failed", error=str(exc), error_type=type(exc).__name__)
        failure: JSONResponse = _error_response(500, "logout failed", code="server_error")
        _clear_session_cookies(failure, settings)
        return failure
    _clear_session_cookies(response, settings)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(identity: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    user = runtime.auth.current_user(identity)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    issued = await runtime.auth.change_password(
        identity, body.current_password, body.new_password, body.confirm_password
    )
    _set_refresh_cookie(response, runtime.settings, issued)
    return Envelope(status="ok", data={"changed": True})


@router.patch("/profile", response_model=Envelope, tags=["users"])
async def update_profile(
    body: ProfileUpdateRequest, identity: AuthContext = Depends(get_identity)
):
    runtime = get_runtime()
    user = runtime.auth.update_profile(
        identity,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        avatar_url=body.avatar_url,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = 100, identity: AuthContext = Depends(get_identity)
):
    runtime = get_runtime()
    users = runtime.auth.list_users(identity, limit=max(1, min(limit, 500)))
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_user(u) for u in users]),
    )


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest, admin: AuthContext = Depends(get_admin_identity)
):
    runtime = get_runtime()
    user = await runtime.auth.create_user(
        admin,
        body.email,
        body.password,
        role=body.role,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    user_id: str,
    body: AdminUpdateUserRequest,
    admin: AuthContext = Depends(get_admin_identity),
):
    runtime = get_runtime()
    user = runtime.auth.update_user(
        admin,
        user_id,
        role=body.role,
        is_active=body.is_active,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        avatar_url=body.avatar_url,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from portalauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    SignupRequest,
    UpdateUserRoleRequest,
    UpdateUserStrikesRequest,
    UserListResponse,
    UserResponse,
)
from portalauth.config import Settings
from portalauth.service.errors import AuthenticationError, ForbiddenError
from portalauth.service.runtime import get_runtime
from portalauth.storage.models import Principal, Session, User

router = APIRouter(prefix="/v1")


def session_token_from_request(request: Request, cookie_name: str) -> Optional[str]:
    """Bearer header first, then the session cookie."""
    authorization = request.headers.get("authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return request.cookies.get(cookie_name) or None


def get_principal(request: Request) -> Principal:
    # Populated by the route policy middleware
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise AuthenticationError("authentication required")
    return principal


def get_admin_principal(principal: Principal = Depends(get_principal)) -> Principal:
    # Only the gate's authoritative re-read may mark a principal as admin
    if principal.source != "authoritative":
        raise ForbiddenError("access denied")
    return principal


def _client_meta(request: Request) -> dict:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
    }


def _apply_session_cookie(response: Response, session: Session, settings: Settings) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        session.token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        expires=session.expires_at,
        path="/",
    )


def _auth_response(user: User, session: Session) -> AuthResponse:
    return AuthResponse(
        user_id=user.id,
        session_id=session.id,
        session_expires_at=session.expires_at,
        access_token=session.token,
        role=user.role.value,
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create a member account and start a session.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    runtime = get_runtime()
    user, session = await runtime.auth.signup(
        body.email, body.password, name=body.name, **_client_meta(request)
    )
    _apply_session_cookie(response, session, runtime.settings)
    return Envelope(status="ok", data=_auth_response(user, session))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    user, session = await runtime.auth.login(
        body.email, body.password, **_client_meta(request)
    )
    _apply_session_cookie(response, session, runtime.settings)
    return Envelope(status="ok", data=_auth_response(user, session))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    if principal.token:
        await runtime.auth.logout(principal.token)
    response.delete_cookie(runtime.settings.session_cookie_name, path="/")
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_principal),
):
    """Change password; every existing session is revoked and a new one issued."""
    runtime = get_runtime()
    session = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        **_client_meta(request),
    )
    user = await runtime.auth.current_user(principal.user_id)
    _apply_session_cookie(response, session, runtime.settings)
    return Envelope(status="ok", data=_auth_response(user, session))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    user = await runtime.auth.current_user(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def list_users(
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    users = await runtime.roles.list_users(principal.user_id, limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_user(u) for u in users]),
    )


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def update_user_role(
    user_id: str,
    body: UpdateUserRoleRequest,
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    user = await runtime.roles.set_role(principal.user_id, user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/strikes", response_model=Envelope, tags=["admin"])
async def update_user_strikes(
    user_id: str,
    body: UpdateUserStrikesRequest,
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    user = await runtime.roles.set_strikes(principal.user_id, user_id, body.strikes)
    return Envelope(status="ok", data=UserResponse.from_user(user))

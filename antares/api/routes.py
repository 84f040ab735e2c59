from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from antares.api.schemas import (
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PreferencesUpdateRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenRefreshResponse,
    UserResponse,
)
from antares.service.auth import IssuedSession
from antares.service.errors import TokenInvalidError, UpstreamUnavailableError
from antares.service.runtime import get_runtime
from antares.storage.models import User

router = APIRouter()


async def get_current_user(request: Request) -> User:
    """Resolve the principal from the access-token cookie or bearer header.

    Raises:
        TokenInvalidError: no token, invalid token, or missing/disabled principal
    """
    runtime = get_runtime()
    token = runtime.cookies.read_access_token(request)
    return runtime.auth.resolve_principal(token)


def _apply_session(response: Response, issued: IssuedSession) -> None:
    runtime = get_runtime()
    runtime.cookies.set_session(response, issued.access_token, issued.refresh_token)
    runtime.cookies.issue_csrf(response)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create an account and sign it in.

    Sets the access, refresh and CSRF cookies.

    Raises:
        409 conflict: email already registered
    """
    runtime = get_runtime()
    issued = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    _apply_session(response, issued)
    return Envelope(status="ok", data=UserResponse.from_user(issued.user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401 invalid_credentials: unknown email or wrong password
        429 account_locked: too many recent failures; Retry-After carries the wait
        503 upstream_unavailable: lockout or credential store unreachable
    """
    runtime = get_runtime()
    issued = await runtime.auth.login(body.email, body.password)
    _apply_session(response, issued)
    return Envelope(status="ok", data=UserResponse.from_user(issued.user))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(request: Request, response: Response):
    """Exchange the refresh cookie for a new token pair.

    The presented refresh token is single use; both cookies are rotated.

    Raises:
        410 session_expired: cookie missing, unknown, already rotated or expired
    """
    runtime = get_runtime()
    issued = await runtime.auth.refresh(runtime.cookies.read_refresh_token(request))
    _apply_session(response, issued)
    return Envelope(
        status="ok", data=TokenRefreshResponse(access_token=issued.access_token)
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    """Revoke the refresh token and clear the session cookies.

    Succeeds even when the session is already gone or the key-value store is
    unreachable.
    """
    runtime = get_runtime()
    try:
        user_id = runtime.auth.resolve_principal(
            runtime.cookies.read_access_token(request)
        ).id
    except (TokenInvalidError, UpstreamUnavailableError):
        user_id = None
    await runtime.auth.logout(
        user_id=user_id, refresh_token=runtime.cookies.read_refresh_token(request)
    )
    runtime.cookies.clear_session(response)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/auth/verify", tags=["auth"])
async def verify(request: Request):
    """Forward-auth decision for the reverse proxy.

    302 to the login page for anonymous callers, 403 for non-admins, 200 for
    admins. Never cached.
    """
    runtime = get_runtime()
    decision = runtime.gate.decide(
        runtime.cookies.read_access_token(request),
        forwarded_proto=request.headers.get("X-Forwarded-Proto"),
        forwarded_host=request.headers.get("X-Forwarded-Host"),
        forwarded_uri=request.headers.get("X-Forwarded-Uri"),
    )
    headers = {"Cache-Control": "no-store"}
    if decision.location:
        headers["Location"] = decision.location
    return Response(status_code=decision.status_code, headers=headers)


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/users/me/profile", response_model=Envelope, tags=["users"])
async def update_profile(
    body: ProfileUpdateRequest,
    response: Response,
    user: User = Depends(get_current_user),
):
    """Update name and email.

    Changing the email re-issues the session cookies since the token subject changes.

    Raises:
        409 conflict: email belongs to another account
    """
    runtime = get_runtime()
    updated, issued = await runtime.accounts.update_profile(
        user, first_name=body.first_name, last_name=body.last_name, email=body.email
    )
    if issued is not None:
        _apply_session(response, issued)
    return Envelope(status="ok", data=UserResponse.from_user(updated))


@router.patch("/users/me/preferences", response_model=Envelope, tags=["users"])
async def update_preferences(
    body: PreferencesUpdateRequest, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    updated = runtime.accounts.update_preferences(
        user, locale=body.locale, theme=body.theme
    )
    return Envelope(status="ok", data=UserResponse.from_user(updated))


@router.put("/users/me/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    user: User = Depends(get_current_user),
):
    """Change the password and rotate the caller's session.

    Other sessions lose their refresh token and must sign in again.

    Raises:
        400 invalid_password: current password wrong or confirmation mismatch
    """
    runtime = get_runtime()
    issued = await runtime.accounts.change_password(
        user,
        current_password=body.current_password,
        new_password=body.new_password,
        confirmation_password=body.confirmation_password,
    )
    _apply_session(response, issued)
    return Envelope(status="ok", data={"password_changed": True})

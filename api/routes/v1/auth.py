"""
api/routes/v1/auth.py -- Authentication and account REST endpoints.

Routes:
  POST  /api/v1/auth/register             -- create account; 201 with user + tokens
  POST  /api/v1/auth/login                -- password login; user + tokens
  POST  /api/v1/auth/refresh              -- exchange a refresh token for a new pair
  POST  /api/v1/auth/logout               -- record logout (requires auth)
  POST  /api/v1/auth/verify-email         -- redeem an email-verification token
  POST  /api/v1/auth/forgot-password      -- request a reset link (always 200)
  POST  /api/v1/auth/reset-password       -- redeem a reset token
  GET   /api/v1/auth/me                   -- profile + settings (requires auth)
  PATCH /api/v1/auth/me                   -- update email / names (requires auth)
  POST  /api/v1/auth/change-password      -- requires auth + current password
  POST  /api/v1/auth/resend-verification  -- requires auth

The handlers are a thin adapter: they validate the body, call AuthService
and shape the response. Business failures surface as AuthError subclasses,
which api/main.py turns into the error envelope with the right status code.

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [C1] Login failures all return the same 401 body; see AuthService.login().
  [M5] Cache-Control: no-store on every response that carries tokens.
  forgot-password answers the same message whether or not the email exists.

Handlers that hash or verify passwords are plain `def` so FastAPI runs them
in its thread pool -- bcrypt would otherwise block the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    IdentityResponse,
    LoginRequest,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SettingsResponse,
    TokensResponse,
    UpdateProfileRequest,
    VerifyEmailRequest,
)
from auth.dependencies import get_current_identity, identity_from_token
from auth.models import AuthResult, Identity, TokenPurpose
from auth.service import AuthService
from core.config import get_settings

# Auth policy:
# - register, login, refresh, verify-email, forgot-password, reset-password: public
# - logout, me (GET/PATCH), change-password, resend-verification: get_current_identity
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _client(request: Request) -> tuple[str | None, str | None]:
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=IdentityResponse.from_identity(result.identity),
        tokens=TokensResponse.from_tokens(result.tokens),
        warnings=result.warnings,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, response: Response, body: RegisterRequest) -> AuthResponse:
    """Create an account and sign it in. 409 if the email is taken (case-insensitive)."""
    ip_address, user_agent = _client(request)
    result = _service(request).register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return _auth_response(result)


@limiter.limit(lambda: get_settings().login_rate_limit)  # [H2] must be ABOVE @router
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the identical 401 body [C1].
    """
    ip_address, user_agent = _client(request)
    result = _service(request).login(body.email, body.password, ip_address=ip_address, user_agent=user_agent)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return _auth_response(result)


@router.post("/auth/refresh", response_model=TokensResponse)
async def refresh(request: Request, response: Response, body: RefreshRequest) -> TokensResponse:
    """Issue a new token pair for the holder of a valid refresh token.

    identity_from_token() is the possession check; AuthService.refresh()
    trusts it and only signs. The old refresh token is not revoked.
    """
    identity = identity_from_token(request, body.refresh_token, TokenPurpose.REFRESH)
    tokens = _service(request).refresh(identity)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokensResponse.from_tokens(tokens)


@router.post("/auth/verify-email", response_model=MessageResponse)
async def verify_email(request: Request, body: VerifyEmailRequest) -> MessageResponse:
    _service(request).verify_email(body.token)
    return MessageResponse(message="Email verified successfully")


@router.post("/auth/forgot-password", response_model=MessageResponse)
async def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Always 200 with the same message, so the endpoint cannot be used to probe accounts."""
    _service(request).forgot_password(body.email)
    return MessageResponse(message="If the email exists, a password reset link has been sent")


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _service(request).reset_password(body.token, body.new_password)
    return MessageResponse(message="Password reset successfully")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request, identity: Identity = Depends(get_current_identity)) -> MessageResponse:
    """Record the logout. Tokens stay valid until they expire; clients should discard them."""
    ip_address, user_agent = _client(request)
    warnings = _service(request).logout(identity.id, ip_address=ip_address, user_agent=user_agent)
    return MessageResponse(message="Logged out successfully", warnings=warnings)


@router.get("/auth/me", response_model=ProfileResponse)
async def me(request: Request, identity: Identity = Depends(get_current_identity)) -> ProfileResponse:
    profile = _service(request).get_profile(identity.id)
    settings = SettingsResponse.from_settings(profile.settings) if profile.settings else None
    return ProfileResponse(
        **IdentityResponse.from_identity(profile.identity).model_dump(),
        settings=settings,
    )


@router.patch("/auth/me", response_model=IdentityResponse)
async def update_me(
    request: Request,
    body: UpdateProfileRequest,
    identity: Identity = Depends(get_current_identity),
) -> IdentityResponse:
    """Update email and/or names. Only keys present in the body are applied."""
    fields = body.model_dump(include=body.model_fields_set)
    updated = _service(request).update_profile(identity.id, fields)
    return IdentityResponse.from_identity(updated)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_current_identity),
) -> MessageResponse:
    ip_address, user_agent = _client(request)
    warnings = _service(request).change_password(
        identity.id,
        body.current_password,
        body.new_password,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return MessageResponse(message="Password changed successfully", warnings=warnings)


@router.post("/auth/resend-verification", response_model=MessageResponse)
async def resend_verification(
    request: Request,
    identity: Identity = Depends(get_current_identity),
) -> MessageResponse:
    _service(request).send_verification_email(identity.id)
    return MessageResponse(message="Verification email sent")

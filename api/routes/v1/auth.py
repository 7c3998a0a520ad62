"""
api/routes/v1/auth.py -- Authentication, profile and user management REST endpoints.

Routes:
  POST   /api/v1/auth/register             -- create a customer account; returns a token pair
  POST   /api/v1/auth/login                -- password login; returns a token pair
  POST   /api/v1/auth/refresh              -- rotate a refresh token
  POST   /api/v1/auth/forgot-password      -- issue a reset token (always 200)
  POST   /api/v1/auth/reset-password       -- redeem a reset token
  GET    /api/v1/auth/verify-email/{token} -- redeem a verification token
  POST   /api/v1/auth/logout               -- revoke one or all refresh tokens (requires auth)
  GET    /api/v1/auth/profile              -- current user (requires auth)
  PUT    /api/v1/auth/profile              -- update profile fields (requires auth)
  POST   /api/v1/auth/change-password      -- change password, revokes sessions (requires auth)
  POST   /api/v1/auth/verify-email/resend  -- issue a new verification token (requires auth)
  GET    /api/v1/auth/users                -- search users (admin only)
  GET    /api/v1/auth/users/{id}           -- one user (admin only)
  PATCH  /api/v1/auth/users/{id}           -- update role/is_active (admin only)
  DELETE /api/v1/auth/users/{id}           -- soft delete (admin only)

Security:
  Access is decided by enforce_access (router-level dependency) against the
  table in api/policies.py. Handlers never check roles themselves.
  [H2] login, register and forgot-password are rate-limited per IP.
  [M5] Cache-Control: no-store on every response that carries tokens.
  forgot-password answers identically whether or not the email exists.
  Errors are raised as auth.errors.AuthError and rendered by api/main.py.
"""

from fastapi import APIRouter, Depends, Query, Request, Response

from api.limiter import credential_limit, limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserListResponse,
    UserPatch,
    UserResponse,
)
from api.policies import API_PREFIX
from auth.dependencies import enforce_access, get_auth_service, get_current_user, get_request_context
from auth.errors import InvalidInput
from auth.models import AuthResult, PublicUser, RegistrationInput, RequestContext, TokenPair
from auth.service import AuthService

# The prefix lives on the router so the matched route path is the full
# template the policy table is keyed by.
router = APIRouter(prefix=API_PREFIX, dependencies=[Depends(enforce_access)])

_FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a reset link has been sent."


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
@limiter.limit(credential_limit)  # [H2] must be BELOW @router so the wrapper is what gets registered
async def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> AuthResponse:
    """Create a customer account and sign it in."""
    result = await service.register(
        RegistrationInput(
            email=body.email,
            password=body.password,
            confirm_password=body.confirm_password,
            first_name=body.first_name,
            last_name=body.last_name,
            phone_number=body.phone_number,
            date_of_birth=body.date_of_birth,
        ),
        ctx,
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return _auth_response(result)


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(credential_limit)  # [H2] brute-force mitigation
async def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> AuthResponse:
    """Authenticate with email and password.

    Wrong email and wrong password produce the same invalid_credentials
    error. Five consecutive failures lock the account for 15 minutes.
    """
    result = await service.login(body.email, body.password, ctx)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return _auth_response(result)


@router.post("/auth/refresh", response_model=TokenResponse)
async def refresh(
    response: Response,
    body: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> TokenResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed."""
    pair = await service.refresh(body.refresh_token, ctx)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return _token_response(pair)


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(credential_limit)
async def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> MessageResponse:
    """Start a password reset. The token is delivered out of band, never in the response."""
    await service.forgot_password(body.email, ctx)
    return MessageResponse(message=_FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse)
async def reset_password(
    body: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> MessageResponse:
    await service.reset_password(body.token, body.new_password, body.confirm_password, ctx)
    return MessageResponse(message="Password has been reset. Please sign in again.")


@router.get("/auth/verify-email/{token}", response_model=MessageResponse)
async def verify_email(
    token: str,
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> MessageResponse:
    verified = await service.verify_email(token, ctx)
    if verified:
        return MessageResponse(message="Email verified.")
    return MessageResponse(success=False, message="Invalid or expired verification token.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(
    body: LogoutRequest | None = None,
    current_user: PublicUser = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> MessageResponse:
    """Revoke the given refresh token, or every session when none is given."""
    await service.logout(current_user.id, body.refresh_token if body else None, ctx)
    return MessageResponse(message="Logged out.")


@router.get("/auth/profile", response_model=UserResponse)
async def get_profile(current_user: PublicUser = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(current_user)


@router.put("/auth/profile", response_model=UserResponse)
async def update_profile(
    body: ProfileUpdate,
    current_user: PublicUser = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> UserResponse:
    """Update profile fields. Only the fields present in the body change."""
    updated = await service.update_profile(current_user.id, body.model_dump(exclude_unset=True), ctx)
    return UserResponse.model_validate(updated)


@router.post("/auth/change-password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    current_user: PublicUser = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> MessageResponse:
    """Change the caller's password. Every refresh token is revoked."""
    await service.change_password(
        current_user.id, body.current_password, body.new_password, body.confirm_password, ctx
    )
    return MessageResponse(message="Password changed. Please sign in again on your other devices.")


@router.post("/auth/verify-email/resend", response_model=MessageResponse)
async def resend_verification(
    current_user: PublicUser = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> MessageResponse:
    await service.request_email_verification(current_user.id, ctx)
    return MessageResponse(message="Verification email sent.")


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=UserListResponse)
async def list_users(
    q: str | None = Query(default=None, max_length=100),
    role: str | None = Query(default=None, max_length=30),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    service: AuthService = Depends(get_auth_service),
) -> UserListResponse:
    """Search live user accounts by name or email, newest first."""
    result = await service.search_users(q, role, page, limit)
    return UserListResponse(
        users=[UserResponse.model_validate(u) for u in result.users],
        total=result.total,
        page=result.page,
        limit=result.limit,
    )


@router.get("/auth/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: int, service: AuthService = Depends(get_auth_service)) -> UserResponse:
    return UserResponse.model_validate(await service.get_user(user_id))


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    body: UserPatch,
    current_user: PublicUser = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> UserResponse:
    """Update a user's role or active status.

    [M4] Prevents:
      - Self-deactivation or self-demotion (admin locking themselves out).
      - Removing the last active admin (no recovery path without DB access).
    """
    if body.role is None and body.is_active is None:
        raise InvalidInput("No fields to update.")
    updated = await service.set_user_status(
        user_id, actor_id=current_user.id, ctx=ctx, role=body.role, is_active=body.is_active
    )
    return UserResponse.model_validate(updated)


@router.delete("/auth/users/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: int,
    current_user: PublicUser = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(get_request_context),
) -> MessageResponse:
    """Soft-delete a user. The record is kept for audit; its sessions are revoked."""
    await service.soft_delete(user_id, str(current_user.id), ctx)
    return MessageResponse(message="User deleted.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=pair.expires_in,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.model_validate(result.user),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106
        expires_in=result.tokens.expires_in,
    )

"""
api/routes/v1/auth.py -- Credential lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register         -- create an account; 201
  POST /api/v1/auth/login            -- email/password; returns token pair, sets refresh cookie
  POST /api/v1/auth/refresh-token    -- rotate the refresh token (cookie first, then body)
  POST /api/v1/auth/logout           -- revoke all sessions of the bearer; clears cookie
  POST /api/v1/auth/change-password  -- requires auth; revokes all sessions
  GET  /api/v1/auth/me               -- identity carried by the access token

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] Login failures always answer "invalid_credentials" -- never which half was wrong.
  [R3] Every refresh failure answers the same 401 "invalid_or_expired_token",
       whether the token was forged, rotated, logged out, or its user deleted.
       The distinct reason is only logged.
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
    UserSummary,
)
from auth.dependencies import Principal, extract_bearer_token, get_current_principal
from auth.errors import AuthError, ErrorKind
from auth.models import TokenPair
from auth.service import AuthService
from auth.store import Database
from auth.tokens import REFRESH_COOKIE_NAME, clear_refresh_cookie, set_refresh_cookie
from core.config import Settings

logger = logging.getLogger("turnstile.api.auth")

# Auth policy:
# - POST /api/v1/auth/register:         public
# - POST /api/v1/auth/login:            public, rate-limited
# - POST /api/v1/auth/refresh-token:    public -- the refresh token is the credential
# - POST /api/v1/auth/logout:           bearer access token (verified by the service)
# - POST /api/v1/auth/change-password:  requires auth (get_current_principal)
# - GET  /api/v1/auth/me:               requires auth (get_current_principal)
router = APIRouter()

_REFRESH_FAILURES = frozenset(
    {
        ErrorKind.INVALID_OR_EXPIRED_TOKEN,
        ErrorKind.TOKEN_INVALIDATED,
        ErrorKind.USER_NOT_FOUND,
    }
)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an account. The response never includes the password hash."""
    db, service, settings = _deps(request)
    user = service.prepare_user(body.name, body.email, body.password, body.role)
    with db.transaction(timeout=settings.transaction_timeout_seconds) as conn:
        profile = service.create_user(conn, user)
    return UserResponse.from_profile(profile)


@limiter.limit(login_rate_limit)  # [H2] -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return a token pair.

    The refresh token is written to an httpOnly cookie and echoed in the body.
    """
    db, service, settings = _deps(request)
    with db.transaction(timeout=settings.transaction_timeout_seconds, write=False) as conn:
        user = service.check_credentials(conn, body.email, body.password)
    with db.transaction(timeout=settings.transaction_timeout_seconds) as conn:
        pair = service.open_session(conn, user)
    return _token_response(pair, settings, LoginResponse)


@router.post("/auth/refresh-token", response_model=TokenResponse)
def refresh_token(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token dies [R3].

    The cookie takes precedence over the body field when both are present.
    """
    token = request.cookies.get(REFRESH_COOKIE_NAME) or (body.refresh_token if body else None)
    if not token:
        raise AuthError(ErrorKind.MISSING_TOKEN, "Refresh token not found in cookie or request body.")

    db, service, settings = _deps(request)
    try:
        with db.transaction(timeout=settings.transaction_timeout_seconds) as conn:
            pair = service.refresh(conn, token)
    except AuthError as exc:
        if exc.kind in _REFRESH_FAILURES:
            logger.info("Refresh failed: %s", exc.kind.value)
            raise AuthError(ErrorKind.INVALID_OR_EXPIRED_TOKEN, "Invalid or expired refresh token.") from exc
        raise
    return _token_response(pair, settings, TokenResponse)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke every session of the caller and clear the refresh cookie."""
    access_token = extract_bearer_token(request)
    db, service, settings = _deps(request)
    with db.transaction(timeout=settings.transaction_timeout_seconds) as conn:
        service.logout(conn, access_token)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_refresh_cookie(resp, secure=settings.secure_cookies)
    return resp


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Change the caller's password. All of their sessions are revoked."""
    db, service, settings = _deps(request)
    with db.transaction(timeout=settings.transaction_timeout_seconds, write=False) as conn:
        change = service.prepare_password_change(conn, principal.user_id, body.old_password, body.new_password)
    with db.transaction(timeout=settings.transaction_timeout_seconds) as conn:
        service.apply_password_change(conn, change)
    resp = JSONResponse(content=MessageResponse(message="Password changed.").model_dump())
    clear_refresh_cookie(resp, secure=settings.secure_cookies)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return the identity carried by the caller's access token."""
    return MeResponse(
        user_id=principal.user_id,
        name=principal.name,
        email=principal.email,
        role=principal.role,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _deps(request: Request) -> tuple[Database, AuthService, Settings]:
    state = request.app.state
    return state.db, state.auth_service, state.settings


def _token_response(pair: TokenPair, settings: Settings, model: type[LoginResponse]) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=model(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.access_token_expire_seconds,
            user=UserSummary(
                id=pair.user.id,
                name=pair.user.name,
                email=pair.user.email,
                role=pair.user.role,
            ),
        ).model_dump(mode="json"),
    )
    set_refresh_cookie(
        resp,
        pair.refresh_token,
        max_age=settings.refresh_token_expire_seconds,
        secure=settings.secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp

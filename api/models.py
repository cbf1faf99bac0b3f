"""
API request and response models for Turnstile REST endpoints.

These Pydantic v2 models define the HTTP transport contract. Request bodies
that the auth service also validates are re-exported from auth/schemas.py so
both layers apply the same rules; everything else lives here. Route handlers
map between the auth dataclasses and these models.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Role, UserPage, UserProfile
from auth.schemas import ChangePasswordInput, LoginInput, RegisterInput, UserUpdateInput

__all__ = [
    "ChangePasswordRequest",
    "ErrorDetail",
    "ErrorResponse",
    "HealthResponse",
    "LoginRequest",
    "LoginResponse",
    "MeResponse",
    "MessageResponse",
    "RefreshRequest",
    "RegisterRequest",
    "TokenResponse",
    "UserPageResponse",
    "UserResponse",
    "UserSummary",
    "UserUpdateRequest",
]

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

RegisterRequest = RegisterInput
LoginRequest = LoginInput
ChangePasswordRequest = ChangePasswordInput
UserUpdateRequest = UserUpdateInput


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh-token.

    Browsers send the refresh token as a cookie and may omit the body. The
    cookie wins when both are present.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. The password hash is never part of it."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    role: Role
    created_at: str
    updated_at: str

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserResponse":
        return cls(
            id=profile.id,
            name=profile.name,
            email=profile.email,
            role=profile.role,
            created_at=profile.created_at,
            updated_at=profile.updated_at,
        )


class UserPageResponse(BaseModel):
    """Response for GET /api/v1/users -- one page of the directory."""

    model_config = ConfigDict(frozen=True)

    current_page: int
    limit: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool
    data: list[UserResponse]

    @classmethod
    def from_page(cls, page: UserPage) -> "UserPageResponse":
        return cls(
            current_page=page.page,
            limit=page.limit,
            total_items=page.total_items,
            total_pages=page.total_pages,
            has_next=page.has_next,
            has_previous=page.has_previous,
            data=[UserResponse.from_profile(p) for p in page.items],
        )


class UserSummary(BaseModel):
    """Minimal identity returned alongside a token pair."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    role: Role


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login.

    The refresh token is also set as an httpOnly cookie; it is echoed in the
    body for non-browser clients.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserSummary


class TokenResponse(LoginResponse):
    """Response for POST /api/v1/auth/refresh-token."""


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me -- what the access token says."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    name: str
    email: str
    role: Role


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Union[dict, str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]

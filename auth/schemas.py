"""
auth/schemas.py -- Validated input shapes for AuthService operations.

The service validates every input itself (rather than trusting the HTTP
layer) so it behaves the same when called from the CLI or from tests. The
API layer reuses these models as request bodies, so a bad request is
rejected with the same rules either way.

Emails are stripped and lower-cased before the format check: the directory
treats "Ada@X.com" and "ada@x.com" as the same account.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from auth.models import Role

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt ignores input past 72 bytes.
PASSWORD_MIN = 8
PASSWORD_MAX = 72


class _Normalized(BaseModel):
    """Strip display names; strip and lower-case emails. Passwords are left untouched."""

    @field_validator("name", mode="before", check_fields=False)
    @classmethod
    def strip_name(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("email", mode="before", check_fields=False)
    @classmethod
    def normalize_email(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class RegisterInput(_Normalized):
    """Body of POST /api/v1/auth/register."""

    name: str = Field(min_length=2, max_length=50)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    role: Role


class LoginInput(_Normalized):
    """Body of POST /api/v1/auth/login.

    No length rules on password here: a login attempt with a too-short
    password is simply a wrong password, not a validation error.
    """

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class ChangePasswordInput(BaseModel):
    """Body of POST /api/v1/auth/change-password."""

    old_password: str = Field(min_length=1, max_length=PASSWORD_MAX)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)


class UserUpdateInput(_Normalized):
    """Body of PUT /api/v1/users/{id}. Omitted fields keep their stored value."""

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    role: Optional[Role] = None

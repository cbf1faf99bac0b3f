"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the auth
service do the work; these only own the domain shape.

Role is a closed enumeration shared by User, AccessClaim and the access
gate's allow-lists, so a typo in a role name fails at import time instead
of silently creating an unreachable authorization branch.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """User roles. ADMIN is the elevated role that passes every gate."""

    ADMIN = "Admin"
    PURCHASING = "Purchasing"
    PPC = "PPC"
    LOGISTICS = "Logistics"
    WAREHOUSE = "Warehouse"

    @property
    def is_elevated(self) -> bool:
        return self is Role.ADMIN


@dataclass
class User:
    """A registered identity.

    password_hash is the bcrypt digest -- the plaintext never reaches this
    object. id is a UUID4 string assigned by the service before insert.
    """

    id: str
    name: str
    email: str  # stored lower-cased
    password_hash: str
    role: Role
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""


@dataclass(frozen=True)
class UserProfile:
    """Public projection of a User -- everything except the password hash."""

    id: str
    name: str
    email: str
    role: Role
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class UserPage:
    """One page of the user directory plus the counts a client needs to page."""

    items: list[UserProfile]
    page: int
    limit: int
    total_items: int

    @property
    def total_pages(self) -> int:
        return -(-self.total_items // self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


@dataclass
class Session:
    """A persisted refresh token.

    The row, not the token's signature, is the source of truth for whether a
    refresh token may still be exchanged. expires_at is aligned with the
    token's own exp claim.
    """

    id: str
    user_id: str
    token: str
    expires_at: str  # ISO 8601
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class PasswordChange:
    """A checked password change waiting to be written.

    current_hash is the digest the old password was verified against; the
    change only applies while it is still the stored one.
    """

    user_id: str
    current_hash: str
    new_hash: str


@dataclass(frozen=True)
class AccessClaim:
    """Claims carried inside a signed access token. Never persisted."""

    user_id: str
    name: str
    email: str
    role: Role
    issued_at: int  # epoch seconds
    expires_at: int


@dataclass(frozen=True)
class RefreshClaim:
    """Claims carried inside a signed refresh token.

    jti is random per token so that two refresh tokens issued for the same
    user within the same second are still distinct values.
    """

    user_id: str
    jti: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class TokenPair:
    """Result of a login or refresh."""

    access_token: str
    refresh_token: str
    user: UserProfile

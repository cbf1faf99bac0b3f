"""
auth/dependencies.py -- FastAPI Depends() helpers: the access gate.

get_current_principal() is the authentication half:
  1. Read "Authorization: Bearer <token>"; MISSING_TOKEN if absent.
  2. Verify it as an access token (never a refresh token);
     INVALID_OR_EXPIRED_TOKEN on any failure.
  3. Put user_id and role on request.state for downstream handlers and
     return a Principal.

require_roles(*allowed) is the authorization half. The elevated role
(Role.ADMIN) passes every gate; any other role must be in `allowed`, else
FORBIDDEN. require_roles() with no arguments is therefore admin-only.

The gate only uses the token codec -- it does not hit the database. A
deleted user's access token keeps working until it expires (15 minutes).

Layer rule: no imports from api/. This module may import fastapi because
it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from fastapi import Depends, Request

from auth.errors import AuthError, ErrorKind
from auth.models import Role
from auth.tokens import TokenCodec


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as carried by their access token."""

    user_id: str
    name: str
    email: str
    role: Role


def extract_bearer_token(request: Request) -> str:
    """Return the bearer credential from the Authorization header.

    Raises AuthError(MISSING_TOKEN) if the header is absent, uses another
    scheme, or carries an empty token.
    """
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthError(ErrorKind.MISSING_TOKEN, "Missing bearer token.")
    return token


def authenticate(codec: TokenCodec, token: str) -> Principal:
    """Verify token as an access token and build the Principal."""
    try:
        claim = codec.verify(token, is_refresh=False)
    except AuthError as exc:
        raise AuthError(ErrorKind.INVALID_OR_EXPIRED_TOKEN, "Invalid or expired token.") from exc
    return Principal(user_id=claim.user_id, name=claim.name, email=claim.email, role=claim.role)


def is_authorized(role: Role, allowed: Iterable[Role]) -> bool:
    """Elevated roles always pass; other roles must be listed in allowed."""
    return role.is_elevated or role in set(allowed)


def get_current_principal(request: Request) -> Principal:
    """Require a valid access token. Use as a FastAPI dependency:

        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    codec: TokenCodec = request.app.state.codec
    principal = authenticate(codec, extract_bearer_token(request))
    request.state.user_id = principal.user_id
    request.state.role = principal.role
    return principal


def require_roles(*allowed: Role) -> Callable[..., Principal]:
    """Build a dependency that admits Admin plus the listed roles.

        @router.get("/stock", dependencies=[Depends(require_roles(Role.WAREHOUSE))])
    """

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not is_authorized(principal.role, allowed):
            raise AuthError(ErrorKind.FORBIDDEN, "You do not have permission to access this resource.")
        return principal

    return dependency

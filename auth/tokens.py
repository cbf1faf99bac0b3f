"""
auth/tokens.py -- Access/refresh JWT codec and the refresh-token cookie.

Security design decisions:
  JWT: python-jose with HS256. Two token types, each with its own secret
       and lifetime:
         access  -- 15 minutes, carries sub/name/email/role.
         refresh -- 7 days, carries only sub and a random jti.
       Secrets come from the Settings instance passed to TokenCodec -- the
       codec never reads process state at call time [S1].

  Verification raises AuthError with one of three kinds so callers can
       tell the cases apart without string matching:
         MALFORMED_TOKEN -- not a decodable JWT at all
         INVALID_TOKEN   -- bad signature, wrong secret, or wrong token type
         EXPIRED_TOKEN   -- signature fine, exp has passed

  A "type" claim is embedded and checked as well as using distinct
       secrets, so a token that somehow verified under the other secret
       would still be rejected.

  Cookie: the refresh token travels in an httpOnly, SameSite=Strict cookie
       scoped to "/". JavaScript cannot read it and it is never sent on
       cross-site requests.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional, Union

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import AuthError, ErrorKind
from auth.models import AccessClaim, RefreshClaim, Role

if TYPE_CHECKING:
    from auth.models import User
    from core.config import Settings

_ALGORITHM = "HS256"

REFRESH_COOKIE_NAME = "refresh_token"

_ACCESS_TYPE = "access"
_REFRESH_TYPE = "refresh"


class TokenCodec:
    """Sign and verify access and refresh tokens.

    Usage:
        codec = TokenCodec(get_settings())
        access = codec.issue_access_token(user)
        refresh = codec.issue_refresh_token(user.id)
        claim = codec.verify(refresh, is_refresh=True)   # RefreshClaim
    """

    def __init__(self, settings: Settings) -> None:
        self._access_secret = settings.access_secret_key
        self._refresh_secret = settings.refresh_secret_key
        self.access_ttl = timedelta(seconds=settings.access_token_expire_seconds)
        self.refresh_ttl = timedelta(seconds=settings.refresh_token_expire_seconds)

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(self, user: User, now: Optional[datetime] = None) -> str:
        """Encode an access token for user, expiring access_ttl after issue."""
        issued_at = _epoch(now)
        payload = {
            "sub": user.id,
            "name": user.name,
            "email": user.email,
            "role": Role(user.role).value,
            "type": _ACCESS_TYPE,
            "iat": issued_at,
            "exp": issued_at + int(self.access_ttl.total_seconds()),
        }
        return jwt.encode(payload, self._access_secret, algorithm=_ALGORITHM)

    def issue_refresh_token(self, user_id: str, now: Optional[datetime] = None) -> str:
        """Encode a refresh token for user_id, expiring refresh_ttl after issue."""
        issued_at = _epoch(now)
        payload = {
            "sub": user_id,
            "jti": secrets.token_hex(16),
            "type": _REFRESH_TYPE,
            "iat": issued_at,
            "exp": issued_at + int(self.refresh_ttl.total_seconds()),
        }
        return jwt.encode(payload, self._refresh_secret, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, is_refresh: bool) -> Union[AccessClaim, RefreshClaim]:
        """Check signature, expiry and type; return the decoded claim.

        Raises AuthError(MALFORMED_TOKEN | INVALID_TOKEN | EXPIRED_TOKEN).
        """
        try:
            jwt.get_unverified_claims(token)
        except (JWTError, AttributeError) as exc:
            raise AuthError(ErrorKind.MALFORMED_TOKEN, "Token could not be decoded.") from exc

        secret = self._refresh_secret if is_refresh else self._access_secret
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise AuthError(ErrorKind.EXPIRED_TOKEN, "Token has expired.") from exc
        except JWTError as exc:
            raise AuthError(ErrorKind.INVALID_TOKEN, "Token signature is invalid.") from exc

        expected_type = _REFRESH_TYPE if is_refresh else _ACCESS_TYPE
        if payload.get("type") != expected_type:
            raise AuthError(ErrorKind.INVALID_TOKEN, "Token is not a valid " + expected_type + " token.")

        try:
            if is_refresh:
                return RefreshClaim(
                    user_id=payload["sub"],
                    jti=payload["jti"],
                    issued_at=payload["iat"],
                    expires_at=payload["exp"],
                )
            return AccessClaim(
                user_id=payload["sub"],
                name=payload["name"],
                email=payload["email"],
                role=Role(payload["role"]),
                issued_at=payload["iat"],
                expires_at=payload["exp"],
            )
        except (KeyError, ValueError) as exc:
            raise AuthError(ErrorKind.MALFORMED_TOKEN, "Token is missing required claims.") from exc


def _epoch(now: Optional[datetime]) -> int:
    return int((now or datetime.now(timezone.utc)).timestamp())


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the refresh token as an httpOnly, SameSite=Strict cookie on "/".

    max_age should equal the refresh token lifetime so cookie and token
    expire together.
    """
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        value=token,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="strict",
        secure=secure,
    )


def clear_refresh_cookie(response, secure: bool = False) -> None:
    """Expire the refresh cookie immediately (logout)."""
    response.delete_cookie(
        REFRESH_COOKIE_NAME,
        path="/",
        httponly=True,
        samesite="strict",
        secure=secure,
    )

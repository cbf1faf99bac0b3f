"""
auth/errors.py -- Tagged error kinds for the auth core.

Every failure the core can surface is an AuthError carrying an ErrorKind.
Callers branch on err.kind, never on the message text. The HTTP layer maps
kinds to status codes in one place (api/main.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION_FAILED = "validation_failed"
    DUPLICATE_EMAIL = "duplicate_email"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    TOKEN_INVALIDATED = "token_invalidated"
    USER_NOT_FOUND = "user_not_found"
    INCORRECT_OLD_PASSWORD = "incorrect_old_password"
    PASSWORD_UNCHANGED = "password_unchanged"
    FORBIDDEN = "forbidden"
    MISSING_TOKEN = "missing_token"
    PERSISTENCE_ERROR = "persistence_error"

    # Token codec
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"
    MALFORMED_TOKEN = "malformed_token"

    # Orchestrator-specific
    INVALID_ACCESS_TOKEN = "invalid_access_token"
    INVALIDATE_FAILURE = "invalidate_failure"


# Codec kinds that count as "token did not verify" for callers that do not
# care which check failed.
TOKEN_FAILURE_KINDS = frozenset({ErrorKind.INVALID_TOKEN, ErrorKind.EXPIRED_TOKEN, ErrorKind.MALFORMED_TOKEN})


class AuthError(Exception):
    """A classified failure of an auth operation.

    message is safe to show to the caller. detail carries optional
    structured context (e.g. field-level validation messages) and must never
    contain secrets or password material.
    """

    def __init__(self, kind: ErrorKind, message: str, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail or {}

    def __repr__(self) -> str:
        return f"AuthError({self.kind.value!r}, {self.message!r})"

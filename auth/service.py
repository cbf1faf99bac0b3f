"""
auth/service.py -- The credential/session state machine.

AuthService coordinates UserStore, SessionStore, PasswordHasher and
TokenCodec for register / login / refresh / logout / change-password, plus
the admin user-directory operations.

Transactions:
  Every method takes `conn`, a Connection inside a transaction the caller
  opened (Database.transaction()). The service never commits or opens a
  transaction itself, so it composes into a larger unit of work. Any
  AuthError raised here propagates out of the caller's `with` block and
  rolls back every write made so far.

  register / login / change_password each run in one transaction, but they
  are also exposed as two halves: a bcrypt half that only reads
  (prepare_user, check_credentials, prepare_password_change) and a short
  write half (create_user, open_session, apply_password_change). The API
  runs the halves in separate transactions so no write lock is held while
  hashing. Each write half re-checks what the bcrypt half saw.

Security:
  [C1] Login returns the same INVALID_CREDENTIALS error for an unknown
       email and a wrong password, and runs bcrypt in both cases so response
       time does not reveal which one happened.
  [R1] Refresh-token rotation: a refresh token is only honoured while its
       session row exists. The row is deleted before the replacement pair
       is issued, so a token is single-use even though its own exp has not
       passed. If the delete removes nothing, a concurrent refresh already
       consumed it and this one fails.
  [R2] Password change revokes every session. That step runs inside a
       SAVEPOINT and is best-effort: if it fails the error is logged and the
       password change still commits.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import AuthError, ErrorKind
from auth.models import PasswordChange, Role, TokenPair, User, UserPage, UserProfile
from auth.passwords import PasswordHasher
from auth.schemas import ChangePasswordInput, LoginInput, RegisterInput, UserUpdateInput
from auth.store import SessionStore, UserStore
from auth.tokens import TokenCodec

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("turnstile.auth")

_INVALID_CREDENTIALS_MESSAGE = "Invalid email or password."

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class AuthService:
    """Auth orchestrator. Stateless apart from its collaborators.

    Usage:
        service = AuthService(codec, hasher, UserStore(), SessionStore(ttl))
        with db.transaction() as conn:
            pair = service.login(conn, "ada@x.com", "longenough1")
    """

    def __init__(
        self,
        codec: TokenCodec,
        hasher: PasswordHasher,
        users: UserStore,
        sessions: SessionStore,
    ) -> None:
        self.codec = codec
        self.hasher = hasher
        self.users = users
        self.sessions = sessions

    # ------------------------------------------------------------------
    # Credential lifecycle
    # ------------------------------------------------------------------

    def register(self, conn: Connection, name: str, email: str, password: str, role: Role | str) -> UserProfile:
        """Create a new user. Raises VALIDATION_FAILED or DUPLICATE_EMAIL."""
        return self.create_user(conn, self.prepare_user(name, email, password, role))

    def prepare_user(self, name: str, email: str, password: str, role: Role | str) -> User:
        """Validate registration input and hash the password. Touches no storage."""
        data = _validate(RegisterInput, name=name, email=email, password=password, role=role)
        return User(
            id=str(uuid.uuid4()),
            name=data.name,
            email=data.email,
            password_hash=self.hasher.hash(data.password),
            role=data.role,
        )

    def create_user(self, conn: Connection, user: User) -> UserProfile:
        """Persist a user built by prepare_user()."""
        if self.users.find_by_email(conn, user.email) is not None:
            raise AuthError(ErrorKind.DUPLICATE_EMAIL, "Email is already registered.")
        self.users.create(conn, user)
        logger.info("Registered user %s (role=%s)", user.id, user.role.value)
        return _to_profile(user)

    def login(self, conn: Connection, email: str, password: str) -> TokenPair:
        """Check credentials and open a new session [C1]."""
        return self.open_session(conn, self.check_credentials(conn, email, password))

    def check_credentials(self, conn: Connection, email: str, password: str) -> User:
        """Return the user whose email and password match. Only reads [C1]."""
        data = _validate(LoginInput, email=email, password=password)

        user = self.users.find_by_email(conn, data.email)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            self.hasher.dummy_verify(data.password)
            logger.warning("Login failed: unknown email")
            raise AuthError(ErrorKind.INVALID_CREDENTIALS, _INVALID_CREDENTIALS_MESSAGE)
        if not self.hasher.verify(data.password, user.password_hash):
            logger.warning("Login failed: wrong password for user %s", user.id)
            raise AuthError(ErrorKind.INVALID_CREDENTIALS, _INVALID_CREDENTIALS_MESSAGE)
        return user

    def open_session(self, conn: Connection, user: User) -> TokenPair:
        """Issue a token pair for a user returned by check_credentials().

        Fails with INVALID_CREDENTIALS if the user was deleted or changed
        their password since the check.
        """
        current = self.users.find_by_id(conn, user.id)
        if current is None or current.password_hash != user.password_hash:
            logger.warning("Login failed: account %s changed during login", user.id)
            raise AuthError(ErrorKind.INVALID_CREDENTIALS, _INVALID_CREDENTIALS_MESSAGE)

        pair = self._issue_pair(conn, current)
        logger.info("Login succeeded for user %s", current.id)
        return pair

    def refresh(self, conn: Connection, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming the old one [R1]."""
        try:
            claim = self.codec.verify(refresh_token, is_refresh=True)
        except AuthError as exc:
            raise AuthError(ErrorKind.INVALID_OR_EXPIRED_TOKEN, "Invalid or expired refresh token.") from exc

        # The signature alone is not enough: the session row must still exist.
        session = self.sessions.find_by_token(conn, refresh_token)
        if session is None or session.user_id != claim.user_id:
            logger.warning("Refresh rejected: token for user %s has been invalidated", claim.user_id)
            raise AuthError(ErrorKind.TOKEN_INVALIDATED, "Refresh token has been invalidated.")

        user = self.users.find_by_id(conn, claim.user_id)
        if user is None:
            raise AuthError(ErrorKind.USER_NOT_FOUND, "User not found.")

        try:
            removed = self.sessions.delete(conn, session.id)
        except AuthError as exc:
            raise AuthError(ErrorKind.INVALIDATE_FAILURE, "Failed to invalidate the old refresh token.") from exc
        if not removed:
            # A concurrent refresh deleted the row between our read and delete.
            logger.warning("Refresh rejected: concurrent reuse of a token for user %s", user.id)
            raise AuthError(ErrorKind.TOKEN_INVALIDATED, "Refresh token has been invalidated.")

        return self._issue_pair(conn, user)

    def logout(self, conn: Connection, access_token: str) -> int:
        """Revoke every session of the token's owner. Returns the number revoked."""
        try:
            claim = self.codec.verify(access_token, is_refresh=False)
        except AuthError as exc:
            raise AuthError(ErrorKind.INVALID_ACCESS_TOKEN, "Invalid access token.") from exc

        revoked = self.sessions.delete_by_user_id(conn, claim.user_id)
        logger.info("Logged out user %s (%d sessions revoked)", claim.user_id, revoked)
        return revoked

    def change_password(self, conn: Connection, user_id: str, old_password: str, new_password: str) -> None:
        """Replace the user's password and log them out everywhere [R2]."""
        self.apply_password_change(conn, self.prepare_password_change(conn, user_id, old_password, new_password))

    def prepare_password_change(
        self, conn: Connection, user_id: str, old_password: str, new_password: str
    ) -> PasswordChange:
        """Check the old password and hash the new one. Only reads."""
        data = _validate(ChangePasswordInput, old_password=old_password, new_password=new_password)

        user = self._require_user(conn, user_id)
        if not self.hasher.verify(data.old_password, user.password_hash):
            raise AuthError(ErrorKind.INCORRECT_OLD_PASSWORD, "Old password is incorrect.")
        if self.hasher.verify(data.new_password, user.password_hash):
            raise AuthError(ErrorKind.PASSWORD_UNCHANGED, "New password must differ from the old password.")
        return PasswordChange(
            user_id=user.id,
            current_hash=user.password_hash,
            new_hash=self.hasher.hash(data.new_password),
        )

    def apply_password_change(self, conn: Connection, change: PasswordChange) -> None:
        """Write a change from prepare_password_change() and revoke every session [R2].

        If the stored password moved on since the old one was checked, the
        old password no longer matches and the change is refused.
        """
        user = self._require_user(conn, change.user_id)
        if user.password_hash != change.current_hash:
            raise AuthError(ErrorKind.INCORRECT_OLD_PASSWORD, "Old password is incorrect.")

        self.users.update(conn, user.id, password_hash=change.new_hash)
        logger.info("Password changed for user %s", user.id)

        try:
            with conn.begin_nested():
                self.sessions.delete_by_user_id(conn, user.id)
        except (AuthError, SQLAlchemyError):
            logger.warning("Password changed but session revocation failed for user %s", user.id, exc_info=True)

    # ------------------------------------------------------------------
    # User directory (admin)
    # ------------------------------------------------------------------

    def list_users(self, conn: Connection, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> UserPage:
        """Return one page of the directory, ordered by name.

        Out-of-range values are clamped rather than rejected: page < 1 reads
        page 1, and a limit outside 1..MAX_PAGE_SIZE falls back to the default.
        """
        page = max(page, 1)
        if limit < 1 or limit > MAX_PAGE_SIZE:
            limit = DEFAULT_PAGE_SIZE
        users = self.users.list_users(conn, limit=limit, offset=(page - 1) * limit)
        return UserPage(
            items=[_to_profile(u) for u in users],
            page=page,
            limit=limit,
            total_items=self.users.count(conn),
        )

    def get_user(self, conn: Connection, user_id: str) -> UserProfile:
        return _to_profile(self._require_user(conn, user_id))

    def update_user(
        self,
        conn: Connection,
        user_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[Role | str] = None,
    ) -> UserProfile:
        """Merge name/email/role onto a user. Omitted (None) fields are kept."""
        data = _validate(UserUpdateInput, name=name, email=email, role=role)
        fields = data.model_dump(exclude_none=True)
        if not fields:
            raise AuthError(ErrorKind.VALIDATION_FAILED, "No fields to update.")

        user = self._require_user(conn, user_id)
        if "email" in fields and fields["email"] != user.email:
            existing = self.users.find_by_email(conn, fields["email"])
            if existing is not None and existing.id != user.id:
                raise AuthError(ErrorKind.DUPLICATE_EMAIL, "Email is already registered.")

        self.users.update(conn, user.id, **fields)
        logger.info("Updated user %s (%s)", user.id, ", ".join(sorted(fields)))
        return _to_profile(self._require_user(conn, user.id))

    def delete_user(self, conn: Connection, user_id: str) -> None:
        """Delete a user and revoke all of their sessions in the same transaction."""
        user = self._require_user(conn, user_id)
        revoked = self.sessions.delete_by_user_id(conn, user.id)
        self.users.delete(conn, user.id)
        logger.info("Deleted user %s (%d sessions revoked)", user.id, revoked)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_expired_sessions(self, conn: Connection) -> int:
        removed = self.sessions.delete_expired(conn)
        if removed:
            logger.info("Swept %d expired sessions", removed)
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_pair(self, conn: Connection, user: User) -> TokenPair:
        access_token = self.codec.issue_access_token(user)
        refresh_token = self.codec.issue_refresh_token(user.id)
        self.sessions.create(conn, user.id, refresh_token)
        return TokenPair(access_token=access_token, refresh_token=refresh_token, user=_to_profile(user))

    def _require_user(self, conn: Connection, user_id: str) -> User:
        user = self.users.find_by_id(conn, user_id)
        if user is None:
            raise AuthError(ErrorKind.USER_NOT_FOUND, "User not found.")
        return user


def _validate(model: type[BaseModel], **data) -> BaseModel:
    """Run a pydantic input model; turn its errors into VALIDATION_FAILED.

    Only the field location and message are kept -- pydantic's error dicts
    echo the rejected input, which may be a password.
    """
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in exc.errors()]
        raise AuthError(ErrorKind.VALIDATION_FAILED, "Invalid input.", detail={"errors": errors}) from exc


def _to_profile(user: User) -> UserProfile:
    return UserProfile(
        id=user.id,
        name=user.name,
        email=user.email,
        role=user.role,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def build_auth_service(settings: Settings) -> AuthService:
    """Wire the auth core from settings. Shared by the API lifespan and the CLI."""
    return AuthService(
        codec=TokenCodec(settings),
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        users=UserStore(),
        sessions=SessionStore(ttl_seconds=settings.refresh_token_expire_seconds),
    )

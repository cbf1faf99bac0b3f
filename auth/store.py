"""
auth/store.py -- SQLAlchemy Core persistence layer for users and sessions.

Pattern: Repository + Data Mapper. UserStore and SessionStore are the
repositories; _row_to_user / _row_to_session are the mappers. The service
and route code never touch SQL directly.

Transactions:
  The stores never open connections or transactions of their own. Every
  method takes a `conn` -- a SQLAlchemy Connection inside a transaction the
  caller opened with Database.transaction(). That lets several store calls
  (and a larger unit of work around them) commit or roll back together.

  Database.transaction(timeout=...) records a deadline on the connection.
  Each store call checks it first; once it has passed, the call raises
  AuthError(PERSISTENCE_ERROR), which unwinds the `with` block and rolls
  back everything written so far. Driver failures at BEGIN or COMMIT (a
  lock wait running out, for instance) are classified the same way.

SQLite specifics:
  pysqlite's own transaction handling defers BEGIN until the first write and
  does not support SAVEPOINT. We switch it off (isolation_level=None) and
  emit BEGIN ourselves. Write transactions (the default) use BEGIN
  IMMEDIATE and take the write lock up front, so concurrent refreshes of one
  token serialize: the second sees the session row already gone. Read
  transactions (write=False) use a plain deferred BEGIN; under WAL they
  never wait for a writer. Keep slow work such as bcrypt out of write
  transactions -- every other writer queues behind it.

Security:
  All queries use bound parameters. No f-strings in SQL.
  sessions.token is UNIQUE -- the same refresh token can never back two rows.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AuthError, ErrorKind
from auth.models import Role, Session, User

logger = logging.getLogger("turnstile.store")

_DEFAULT_DB_URL = "sqlite:///turnstile.db"
_DEADLINE_KEY = "turnstile_deadline"
_WRITE_KEY = "turnstile_write"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(50), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("token", Text, nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _sqlite_on_connect(dbapi_conn, connection_record) -> None:
    """Disable pysqlite's implicit transactions and enable WAL.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _sqlite_on_begin(conn: Connection) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE" if conn.info.get(_WRITE_KEY, True) else "BEGIN")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    # Fixed precision so stored timestamps compare correctly as strings.
    return value.isoformat(timespec="microseconds")


def _check_deadline(conn: Connection) -> None:
    deadline = conn.info.get(_DEADLINE_KEY)
    if deadline is not None and time.monotonic() > deadline:
        raise AuthError(ErrorKind.PERSISTENCE_ERROR, "Storage operation timed out.")


@contextmanager
def _storage_op(conn: Connection, operation: str) -> Iterator[None]:
    """Check the deadline, then translate driver errors into PERSISTENCE_ERROR."""
    _check_deadline(conn)
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Storage failure during %s: %s", operation, exc.__class__.__name__)
        raise AuthError(ErrorKind.PERSISTENCE_ERROR, "Storage operation failed.") from exc


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------


class Database:
    """Owns the engine and hands out transactional connections.

    Usage:
        db = Database("sqlite:///turnstile.db")
        with db.transaction(timeout=5, write=False) as conn:
            user = users.find_by_email(conn, "ada@x.com")
        db.close()

    busy_timeout is how long (seconds) SQLite waits for another writer's
    lock before giving up.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, busy_timeout: float = 5.0) -> None:
        connect_args: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = busy_timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if is_sqlite:
            event.listen(self.engine, "connect", _sqlite_on_connect)
            event.listen(self.engine, "begin", _sqlite_on_begin)
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self, timeout: Optional[float] = None, write: bool = True) -> Iterator[Connection]:
        """Yield a connection inside one atomic transaction.

        Commits when the block exits normally; rolls back on any exception.
        timeout (seconds) bounds the whole unit of work, checked before each
        store call. write=False opens a read transaction that does not take
        SQLite's write lock.

        Raises AuthError(PERSISTENCE_ERROR) if the transaction cannot be
        opened or committed.
        """
        try:
            with self.engine.connect() as conn:
                # conn.info lives on the pooled DBAPI connection, so always reset it.
                conn.info[_WRITE_KEY] = write
                conn.info[_DEADLINE_KEY] = time.monotonic() + timeout if timeout is not None else None
                try:
                    with conn.begin():
                        yield conn
                finally:
                    conn.info.pop(_DEADLINE_KEY, None)
                    conn.info.pop(_WRITE_KEY, None)
        except SQLAlchemyError as exc:
            logger.error("Transaction failed: %s", exc.__class__.__name__)
            raise AuthError(ErrorKind.PERSISTENCE_ERROR, "Storage operation failed.") from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.transaction(write=False) as conn:
                conn.execute(select(1))
            return True
        except AuthError:
            logger.exception("Database ping failed")
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Identity repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Emails are compared exactly as given; the service lower-cases them before
    they reach the store.
    """

    _UPDATABLE_FIELDS = frozenset({"name", "email", "role", "password_hash"})

    def create(self, conn: Connection, user: User) -> User:
        """Insert user and return it with timestamps filled in.

        Raises AuthError(DUPLICATE_EMAIL) when the email is already taken --
        the UNIQUE constraint catches the race two concurrent registrations
        would otherwise win together.
        """
        stamp = _iso(_now())
        with _storage_op(conn, "create_user"):
            try:
                conn.execute(
                    _users.insert().values(
                        id=user.id,
                        name=user.name,
                        email=user.email,
                        password_hash=user.password_hash,
                        role=Role(user.role).value,
                        created_at=stamp,
                        updated_at=stamp,
                    )
                )
            except IntegrityError as exc:
                raise AuthError(ErrorKind.DUPLICATE_EMAIL, "Email is already registered.") from exc
        user.created_at = stamp
        user.updated_at = stamp
        return user

    def find_by_email(self, conn: Connection, email: str) -> User | None:
        with _storage_op(conn, "find_user_by_email"):
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_id(self, conn: Connection, user_id: str) -> User | None:
        with _storage_op(conn, "find_user_by_id"):
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, conn: Connection, limit: Optional[int] = None, offset: int = 0) -> list[User]:
        """Return users ordered by name. limit=None returns every row from offset on."""
        query = _users.select().order_by(_users.c.name, _users.c.email).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        with _storage_op(conn, "list_users"):
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def update(self, conn: Connection, user_id: str, **fields) -> bool:
        """Merge the given mutable fields onto the stored row.

        Accepted fields: name, email, role, password_hash. Unknown keys raise
        ValueError rather than silently being ignored. Stamps updated_at.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        fields["updated_at"] = _iso(_now())
        with _storage_op(conn, "update_user"):
            try:
                result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            except IntegrityError as exc:
                raise AuthError(ErrorKind.DUPLICATE_EMAIL, "Email is already registered.") from exc
        return result.rowcount > 0

    def delete(self, conn: Connection, user_id: str) -> bool:
        """Permanently delete a user. Session revocation is the caller's job."""
        with _storage_op(conn, "delete_user"):
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def count(self, conn: Connection) -> int:
        with _storage_op(conn, "count_users"):
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for persisted refresh tokens.

    ttl_seconds should equal the refresh token lifetime so a row expires
    together with the token it backs.
    """

    def __init__(self, ttl_seconds: int) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)

    def create(self, conn: Connection, user_id: str, token: str) -> Session:
        now = _now()
        session = Session(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=_iso(now + self.ttl),
            created_at=_iso(now),
            updated_at=_iso(now),
        )
        with _storage_op(conn, "create_session"):
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    token=session.token,
                    expires_at=session.expires_at,
                    created_at=session.created_at,
                    updated_at=session.updated_at,
                )
            )
        return session

    def find_by_token(self, conn: Connection, token: str) -> Session | None:
        """Return the live session for token. Expired-but-unswept rows count as absent."""
        with _storage_op(conn, "find_session_by_token"):
            row = conn.execute(
                _sessions.select().where((_sessions.c.token == token) & (_sessions.c.expires_at > _iso(_now())))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_by_user_id(self, conn: Connection, user_id: str) -> list[Session]:
        """Return all live sessions for user_id, newest first."""
        with _storage_op(conn, "find_sessions_by_user"):
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.expires_at > _iso(_now())))
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete(self, conn: Connection, session_id: str) -> bool:
        """Delete one session. Returns False (not an error) if it was already gone."""
        with _storage_op(conn, "delete_session"):
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def delete_by_user_id(self, conn: Connection, user_id: str) -> int:
        """Delete every session of user_id. Zero matches is fine."""
        with _storage_op(conn, "delete_sessions_by_user"):
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount

    def delete_expired(self, conn: Connection) -> int:
        """Sweep expired rows. Returns the number removed."""
        with _storage_op(conn, "delete_expired_sessions"):
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= _iso(_now())))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        password_hash=row.password_hash,
        role=Role(row.role),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=row.expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )

"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services never touch SQL directly.

Transactions:
  transaction() yields a Connection inside engine.begin(): commit when the
  block exits normally, rollback on any exception (including AuthError raised
  by the caller mid-block). Every repository method accepts an optional conn so
  a service can compose several writes into one transaction; without conn the
  method runs in its own short transaction.

Single-use rows:
  consume_refresh_token() and consume_challenge() are compare-and-delete. They
  select the live row, then DELETE with the same predicates and only return the
  row when exactly one row was deleted. Two concurrent consumers of one value
  cannot both see rowcount == 1, so the delete is the gate.

Timestamps:
  Stored as fixed-format ISO 8601 UTC strings (microsecond precision, +00:00
  suffix). Every value goes through _iso(), so string order equals time order
  and expiry predicates can be plain comparisons on every backend.

Errors:
  SQLAlchemyError is logged and re-raised as PersistenceFailedError. The one
  exception is create_user(), which lets IntegrityError through so callers can
  report a duplicate username.

Security:
  All queries use bound parameters. Refresh tokens are stored as HMAC digests,
  never raw.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import PersistenceFailedError
from auth.models import (
    Challenge,
    ChallengePurpose,
    Channel,
    ClientMeta,
    PasswordResetRequest,
    RefreshToken,
    TwoFactorMethod,
    User,
    UserMetadata,
)

logger = logging.getLogger("gatekeeper.auth.store")

# Seconds a SQLite writer waits for the lock. Challenge delivery holds the lock
# for the whole SMTP exchange, so this stays above the notifier timeout.
_SQLITE_BUSY_TIMEOUT = 30

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False),
    Column("hashed_password", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("two_factor_method", String(10), nullable=False, server_default="NONE"),
    Column("totp_secret", Text),  # set iff method = TOTP and enabled
    Column("meta_data", Text),  # UserMetadata JSON document
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role", String(50), nullable=False),
    UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_refresh_tokens_expires_at", "expires_at"),
)

_challenges = Table(
    "second_factor_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("request_id", String(128), nullable=False, unique=True),
    Column("code", String(16), nullable=False),
    Column("purpose", String(20), nullable=False),  # "two_factor" | "passwordless"
    Column("channel", String(10), nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_second_factor_challenges_expires_at", "expires_at"),
)

_password_resets = Table(
    "password_reset_requests",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("code", String(128), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_password_reset_requests_expires_at", "expires_at"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so sweeps and logins do not block each other's reads.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Storage failure during %s", operation)
        raise PersistenceFailedError() from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for identities, refresh tokens, challenges and reset requests.

    Usage:
        store = AuthStore("sqlite:///auth.db")
        uid = store.create_user(User(username="alice", email="a@example.com", roles=["user"]))
        with store.transaction() as conn:
            store.add_refresh_token(token, conn=conn)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = _SQLITE_BUSY_TIMEOUT
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection in an open transaction; commit on success, rollback on error."""
        with _storage_errors("transaction"), self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _connection(self, conn: Connection | None, operation: str) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with _storage_errors(operation), self.engine.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new identity with its roles and return its database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        method = user.two_factor_method if user.two_factor_enabled else TwoFactorMethod.NONE
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    is_active=1 if user.is_active else 0,
                    two_factor_enabled=1 if method is not TwoFactorMethod.NONE else 0,
                    two_factor_method=method.value,
                    totp_secret=user.totp_secret if method is TwoFactorMethod.TOTP else None,
                    meta_data=UserMetadata(user.metadata).to_json(),
                    created_at=_now_iso(),
                )
            )
            user_id = result.inserted_primary_key[0]
            for role in dict.fromkeys(user.roles):
                conn.execute(_user_roles.insert().values(user_id=user_id, role=role))
        return user_id

    def get_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        """Look up an identity by primary key, roles included. Returns None if not found."""
        with self._connection(conn, "get_by_id") as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return self._load_user(c, row)

    def get_by_username(self, username: str) -> User | None:
        """Look up an identity by exact username (case-sensitive)."""
        with self._connection(None, "get_by_username") as c:
            row = c.execute(_users.select().where(_users.c.username == username)).fetchone()
            return self._load_user(c, row)

    def get_by_login(self, login: str) -> User | None:
        """Look up an identity by username or email address.

        Username matches win over email matches when both exist.
        """
        with self._connection(None, "get_by_login") as c:
            rows = c.execute(
                _users.select().where(or_(_users.c.username == login, _users.c.email == login)).order_by(_users.c.id)
            ).fetchall()
            rows.sort(key=lambda r: r.username != login)
            return self._load_user(c, rows[0] if rows else None)

    def get_roles(self, user_id: int, conn: Connection | None = None) -> list[str]:
        with self._connection(conn, "get_roles") as c:
            rows = c.execute(
                select(_user_roles.c.role).where(_user_roles.c.user_id == user_id).order_by(_user_roles.c.id)
            ).fetchall()
        return [r.role for r in rows]

    def set_active(self, user_id: int, active: bool) -> bool:
        """Activate or deactivate an identity. Returns False if user_id was not found."""
        with self._connection(None, "set_active") as c:
            result = c.execute(_users.update().where(_users.c.id == user_id).values(is_active=1 if active else 0))
        return result.rowcount > 0

    def set_second_factor(self, user_id: int, method: TwoFactorMethod, totp_secret: str | None = None) -> bool:
        """Switch an identity's second factor in a single UPDATE.

        The TOTP secret is written only with method TOTP and cleared for every
        other method, so the secret-iff-TOTP invariant holds after any call.
        Returns False if user_id was not found.
        """
        if method is TwoFactorMethod.TOTP and not totp_secret:
            raise ValueError("TOTP enrollment requires a secret")
        with self._connection(None, "set_second_factor") as c:
            result = c.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    two_factor_enabled=0 if method is TwoFactorMethod.NONE else 1,
                    two_factor_method=method.value,
                    totp_secret=totp_secret if method is TwoFactorMethod.TOTP else None,
                )
            )
        return result.rowcount > 0

    def _load_user(self, conn: Connection, row) -> User | None:
        if row is None:
            return None
        return _row_to_user(row, self.get_roles(row.id, conn=conn))

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, token: RefreshToken, conn: Connection | None = None) -> int:
        with self._connection(conn, "add_refresh_token") as c:
            result = c.execute(
                _refresh_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    ip_address=token.client.ip_address,
                    user_agent=token.client.user_agent,
                    expires_at=_iso(token.expires_at),
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def get_refresh_token(self, token_hash: str, now: datetime, conn: Connection | None = None) -> RefreshToken | None:
        """Return the live (expires_at > now) record for token_hash, or None."""
        with self._connection(conn, "get_refresh_token") as c:
            row = c.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.expires_at > _iso(now))
                )
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def consume_refresh_token(self, token_hash: str, now: datetime, conn: Connection) -> RefreshToken | None:
        """Delete the live record for token_hash and return it; None if absent, expired or already taken.

        Must run inside the caller's transaction so the replacement insert
        commits or rolls back together with this delete.
        """
        live = (_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.expires_at > _iso(now))
        row = conn.execute(_refresh_tokens.select().where(live)).fetchone()
        if row is None:
            return None
        result = conn.execute(_refresh_tokens.delete().where(live & (_refresh_tokens.c.id == row.id)))
        if result.rowcount != 1:
            return None
        return _row_to_refresh_token(row)

    def revoke_refresh_token(self, user_id: int, token_hash: str) -> bool:
        """Delete one refresh token. user_id must own it for the delete to match."""
        with self._connection(None, "revoke_refresh_token") as c:
            result = c.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.user_id == user_id)
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    def add_challenge(self, challenge: Challenge, conn: Connection | None = None) -> int:
        with self._connection(conn, "add_challenge") as c:
            result = c.execute(
                _challenges.insert().values(
                    user_id=challenge.user_id,
                    request_id=challenge.request_id,
                    code=challenge.code,
                    purpose=challenge.purpose.value,
                    channel=challenge.channel.value,
                    ip_address=challenge.client.ip_address,
                    user_agent=challenge.client.user_agent,
                    expires_at=_iso(challenge.expires_at),
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def consume_challenge(
        self, request_id: str, code: str, purpose: ChallengePurpose, now: datetime, conn: Connection
    ) -> Challenge | None:
        """Delete the live challenge matching (request_id, code, purpose) and return it.

        Returns None on a wrong code, an expired challenge (expires_at <= now),
        or when another caller deleted it first.
        """
        live = (
            (_challenges.c.request_id == request_id)
            & (_challenges.c.code == code)
            & (_challenges.c.purpose == purpose.value)
            & (_challenges.c.expires_at > _iso(now))
        )
        row = conn.execute(_challenges.select().where(live)).fetchone()
        if row is None:
            return None
        result = conn.execute(_challenges.delete().where(live & (_challenges.c.id == row.id)))
        if result.rowcount != 1:
            return None
        return _row_to_challenge(row)

    # ------------------------------------------------------------------
    # Password reset requests (shape and sweep only)
    # ------------------------------------------------------------------

    def add_password_reset(self, request: PasswordResetRequest, conn: Connection | None = None) -> int:
        with self._connection(conn, "add_password_reset") as c:
            result = c.execute(
                _password_resets.insert().values(
                    user_id=request.user_id,
                    code=request.code,
                    expires_at=_iso(request.expires_at),
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # Expiry purges -- one per collection, independent of each other
    # ------------------------------------------------------------------

    def purge_expired_refresh_tokens(self, cutoff: datetime) -> int:
        """Delete refresh tokens with expires_at <= cutoff. Returns rows removed."""
        return self._purge(_refresh_tokens, cutoff)

    def purge_expired_challenges(self, cutoff: datetime) -> int:
        """Delete challenges of both purposes with expires_at <= cutoff."""
        return self._purge(_challenges, cutoff)

    def purge_expired_password_resets(self, cutoff: datetime) -> int:
        """Delete password reset requests with expires_at <= cutoff."""
        return self._purge(_password_resets, cutoff)

    def _purge(self, table: Table, cutoff: datetime) -> int:
        with self._connection(None, f"purge {table.name}") as c:
            result = c.execute(table.delete().where(table.c.expires_at <= _iso(cutoff)))
        return result.rowcount

    def count_rows(self, table_name: str) -> int:
        """Return the row count of one of the auth tables (ops and tests)."""
        table = _metadata.tables[table_name]
        with self._connection(None, "count_rows") as c:
            return c.execute(select(func.count()).select_from(table)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: list[str]) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_method=TwoFactorMethod(row.two_factor_method),
        totp_secret=row.totp_secret,
        roles=roles,
        metadata=UserMetadata.from_json(row.meta_data),
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=_parse_iso(row.expires_at),
        client=ClientMeta(ip_address=row.ip_address or "", user_agent=row.user_agent or ""),
        created_at=row.created_at,
    )


def _row_to_challenge(row) -> Challenge:
    return Challenge(
        id=row.id,
        user_id=row.user_id,
        request_id=row.request_id,
        code=row.code,
        purpose=ChallengePurpose(row.purpose),
        channel=Channel(row.channel),
        expires_at=_parse_iso(row.expires_at),
        client=ClientMeta(ip_address=row.ip_address or "", user_agent=row.user_agent or ""),
        created_at=row.created_at,
    )

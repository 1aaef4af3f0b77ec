"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_refresh_token are the
mappers. Services and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(oidc_subject) is a real SQL constraint. SQLite and PostgreSQL both
  treat NULLs as distinct in UNIQUE constraints, which is exactly the rule we
  want: any number of password-only accounts, at most one account per subject.

  Emails are lower-cased on every write and lookup so the UNIQUE(email)
  constraint is effectively case-insensitive.

Transactions:
  Every public method accepts an optional `conn`. Without one, the method runs
  in its own short transaction. Inside `with store.transaction() as conn:` the
  caller threads `conn` through so a read-modify-write sequence is atomic.

  On SQLite, pysqlite's legacy transaction handling only emits BEGIN before
  DML, leaving SELECTs outside the transaction. _on_sqlite_connect hands
  transaction control to SQLAlchemy and _on_sqlite_begin emits BEGIN itself;
  transaction() asks for BEGIN IMMEDIATE so the write lock is taken before the
  first read and concurrent reconciliations serialize instead of racing.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine

from auth.models import REGISTRATION_ENABLED, REGISTRATION_MODES, STATUS_PENDING, RefreshToken, User

_DEFAULT_DB_URL = "sqlite:///./anchor_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text),  # NULL for OIDC-only users
    Column("oidc_subject", String(255), unique=True),  # provider's stable user ID
    Column("profile_image", Text),
    Column("is_admin", Integer, nullable=False, server_default="0"),
    Column("status", String(16), nullable=False, server_default="active"),
    Column("api_token", String(128), unique=True),  # NULL = none issued
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

# Key/value settings: registration mode and the database-managed OIDC config.
_settings = Table(
    "settings",
    _metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Text, nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _on_sqlite_connect(dbapi_conn, connection_record) -> None:
    """Disable pysqlite's implicit BEGIN and enable WAL journal mode.

    WAL allows readers to proceed without blocking during writes. Set
    per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _on_sqlite_begin(conn: Connection) -> None:
    if conn.get_execution_options().get("sqlite_immediate"):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, RefreshToken and key/value settings.

    Usage:
        store = UserStore("sqlite:///anchor_auth.db")
        user = store.create_user(User(email="a@x.com", name="A", hashed_password=hash_password("secret")))
        with store.transaction() as conn:
            store.update_user(user.id, conn=conn, name="Alice")
        store.close()
    """

    # Known settings keys -- validated before any write. Only these keys are
    # accepted so a typo in a caller cannot silently create dead settings.
    SETTINGS_KEYS: frozenset = frozenset(
        {
            "registration_mode",
            "oidc_enabled",
            "oidc_provider_name",
            "oidc_issuer_url",
            "oidc_client_id",
            "oidc_client_secret",
            "oidc_disable_internal_auth",
        }
    )

    def __init__(self, db_url: str = _DEFAULT_DB_URL, busy_timeout: float = 10.0) -> None:
        connect_args: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            # busy_timeout bounds how long a transaction waits for the write lock.
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = busy_timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if is_sqlite:
            event.listen(self.engine, "connect", _on_sqlite_connect)
            event.listen(self.engine, "begin", _on_sqlite_begin)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open a read-modify-write transaction; commits on success, rolls back on error."""
        with self.engine.connect() as conn:
            conn.execution_options(sqlite_immediate=True)
            with conn.begin():
                yield conn

    @contextmanager
    def _connection(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self, conn: Connection | None = None) -> bool:
        with self._connection(conn) as c:
            result = c.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def count_admins(self, conn: Connection | None = None) -> int:
        """Return the number of admin users. Drives the first-user-is-admin rule."""
        with self._connection(conn) as c:
            result = c.execute(select(func.count()).select_from(_users).where(_users.c.is_admin == 1)).scalar()
        return result or 0

    def create_user(self, user: User, conn: Connection | None = None) -> User:
        """Insert a new user and return the stored record.

        Raises sqlalchemy.exc.IntegrityError if the email or oidc_subject is
        already taken. Callers treat that as a signal that a concurrent request
        created the record first.
        """
        now = _now_iso()
        user_id = user.id or str(uuid.uuid4())
        with self._connection(conn) as c:
            c.execute(
                _users.insert().values(
                    id=user_id,
                    email=normalize_email(user.email),
                    name=user.name,
                    hashed_password=user.hashed_password,
                    oidc_subject=user.oidc_subject,
                    profile_image=user.profile_image,
                    is_admin=1 if user.is_admin else 0,
                    status=user.status,
                    api_token=user.api_token,
                    created_at=now,
                    updated_at=now,
                )
            )
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row)

    def get_by_id(self, user_id: str, conn: Connection | None = None) -> User | None:
        with self._connection(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str, conn: Connection | None = None) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self._connection(conn) as c:
            row = c.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oidc_subject(self, subject: str, conn: Connection | None = None) -> User | None:
        """Look up a user by OIDC subject. The fast path for returning OIDC users."""
        with self._connection(conn) as c:
            row = c.execute(_users.select().where(_users.c.oidc_subject == subject)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_api_token(self, token: str, conn: Connection | None = None) -> User | None:
        with self._connection(conn) as c:
            row = c.execute(_users.select().where(_users.c.api_token == token)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, status: str | None = None) -> list[User]:
        """Return users newest first, optionally filtered by status."""
        query = _users.select().order_by(_users.c.created_at.desc())
        if status is not None:
            query = query.where(_users.c.status == status)
        with self._connection(None) as c:
            rows = c.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def list_pending_users(self) -> list[User]:
        return self.list_users(status=STATUS_PENDING)

    def update_user(self, user_id: str, conn: Connection | None = None, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: name, email, hashed_password, oidc_subject,
        profile_image, is_admin, status, api_token. is_admin must be passed
        as bool.

        Returns True if a row was updated, False if user_id was not found.
        """
        if "is_admin" in fields:
            fields["is_admin"] = 1 if fields["is_admin"] else 0
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        fields["updated_at"] = _now_iso()
        with self._connection(conn) as c:
            result = c.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def delete_user(self, user_id: str, conn: Connection | None = None) -> bool:
        """Delete a user and every refresh token they own.

        Callers must check the last-admin invariant first -- the store does
        not enforce admin counts.
        """
        with self._connection(conn) as c:
            c.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            result = c.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(
        self, token: str, user_id: str, expires_at: datetime, conn: Connection | None = None
    ) -> None:
        with self._connection(conn) as c:
            c.execute(
                _refresh_tokens.insert().values(
                    token=token,
                    user_id=user_id,
                    expires_at=expires_at.isoformat(),
                    created_at=_now_iso(),
                )
            )

    def get_refresh_token(self, token: str, conn: Connection | None = None) -> RefreshToken | None:
        with self._connection(conn) as c:
            row = c.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def delete_refresh_token(self, token: str, conn: Connection | None = None) -> bool:
        """Delete one refresh token. Returns False if it was already gone.

        Rotation relies on the return value: of two concurrent refreshes with
        the same token, only the one whose DELETE hit a row may mint a new pair.
        """
        with self._connection(conn) as c:
            result = c.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token == token))
        return result.rowcount > 0

    def purge_expired_refresh_tokens(self) -> int:
        """Delete refresh tokens past their expiry. Returns the number removed."""
        with self._connection(None) as c:
            result = c.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < _now_iso()))
        return result.rowcount

    # ------------------------------------------------------------------
    # Settings (key/value)
    # ------------------------------------------------------------------

    def get_settings_map(self, keys: list[str] | None = None, conn: Connection | None = None) -> dict[str, str]:
        """Return stored settings as {key: value}. Missing keys are simply absent."""
        query = _settings.select()
        if keys is not None:
            query = query.where(_settings.c.key.in_(keys))
        with self._connection(conn) as c:
            rows = c.execute(query).fetchall()
        return {row.key: row.value for row in rows}

    def set_settings(self, values: dict[str, str], conn: Connection | None = None) -> None:
        """Upsert one or more settings.

        Only keys in SETTINGS_KEYS are accepted. Unknown keys raise ValueError
        rather than being silently ignored -- fail-fast principle.
        """
        unknown = set(values) - self.SETTINGS_KEYS
        if unknown:
            raise ValueError(f"Unknown settings keys: {sorted(unknown)!r}")
        with self._connection(conn) as c:
            for key, value in values.items():
                result = c.execute(_settings.update().where(_settings.c.key == key).values(value=value))
                if result.rowcount == 0:
                    c.execute(_settings.insert().values(key=key, value=value))

    def get_registration_mode(self, conn: Connection | None = None) -> str:
        """Return the registration policy. Unset or unrecognised values mean "enabled"."""
        mode = self.get_settings_map(["registration_mode"], conn=conn).get("registration_mode")
        return mode if mode in REGISTRATION_MODES else REGISTRATION_ENABLED

    def set_registration_mode(self, mode: str) -> None:
        if mode not in REGISTRATION_MODES:
            raise ValueError(f"Unknown registration mode: {mode!r}")
        self.set_settings({"registration_mode": mode})

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        oidc_subject=row.oidc_subject,
        profile_image=row.profile_image,
        is_admin=bool(row.is_admin),
        status=row.status,
        api_token=row.api_token,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )

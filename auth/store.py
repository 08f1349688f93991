"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository; the _row_to_*
functions are the mappers. Services and routes never touch SQL directly.

Tables:
  users               identity + credential (password hash, TOTP secret)
  backup_codes        HMAC digests of single-use recovery codes
  pending_challenges  2FA challenges with an explicit expires_at
  trusted_devices     HMAC digests of device-trust tokens
  sessions            server-side session records (JWT points here by sid)

Security:
  All queries use bound parameters. No f-strings in SQL.

  Credential columns (password_hash, totp_secret) are only written by the
  dedicated credential methods. update_user() refuses them.

  Single-use records are consumed with conditional statements
  (UPDATE ... WHERE consumed_at IS NULL, DELETE ... WHERE id = :id) and the
  rowcount decides the winner, so two concurrent consumers of the same
  challenge cannot both succeed. A backup code is deleted in the same
  transaction that claims the challenge, or not at all.

Timestamps are stored as UTC ISO 8601 strings with fixed microsecond
precision so lexical order matches chronological order.

Layer rule: no imports from api/, audit/, or tenants/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import AuthPath, PendingChallenge, Principal, Role, Session, TrustedDevice, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'tenantguard_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),
    Column("totp_secret", String(64)),  # NULL until 2FA enrollment completes
    Column("role", String(30), nullable=False),
    Column("company_id", Integer),
    Column("store_id", Integer),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_backup_codes = Table(
    "backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_challenges = Table(
    "pending_challenges",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
)

_trusted_devices = Table(
    "trusted_devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("device_name", String(100)),
    Column("user_agent", String(500)),
    Column("ip_address", String(45)),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("email", String(255), nullable=False),
    Column("role", String(30), nullable=False),
    Column("company_id", Integer),
    Column("store_id", Integer),
    Column("auth_path", String(20), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
)

# Fields update_user() accepts. Credentials have their own methods.
_MUTABLE_USER_FIELDS = frozenset({"first_name", "last_name", "role", "is_active", "company_id", "store_id"})


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode per connection (SQLite PRAGMAs are not pooled)."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite settings every store in this service uses."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, credentials, challenges, trusted devices and sessions.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="admin@example.com", role=Role.SUPER_ADMIN,
                                     password_hash=hash_password("secret")))
        user = store.get_by_email("admin@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    password_hash=user.password_hash,
                    totp_secret=user.totp_secret,
                    role=Role(user.role).value,
                    company_id=user.company_id,
                    store_id=user.store_id,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    is_active=1 if user.is_active else 0,
                    created_at=iso(_now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, company_id: int | None = None) -> list[User]:
        """Return users ordered by email, optionally restricted to one company."""
        query = _users.select().order_by(_users.c.email)
        if company_id is not None:
            query = query.where(_users.c.company_id == company_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update non-credential fields on an existing user.

        Raises ValueError for credential or unknown fields. Returns True if a
        row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"update_user cannot change: {sorted(unknown)!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Delete a user with its backup codes, challenges, trusted devices and sessions.

        Everything goes in one transaction. Audit entries are kept; they are
        not owned by this store.
        """
        with self.engine.begin() as conn:
            for table in (_backup_codes, _challenges, _trusted_devices, _sessions):
                conn.execute(table.delete().where(table.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=iso(_now())))
            conn.commit()

    # ------------------------------------------------------------------
    # Credential operations
    # ------------------------------------------------------------------

    def set_password(self, user_id: int, password_hash: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(password_hash=password_hash))
            conn.commit()
        return result.rowcount > 0

    def enable_two_factor(self, user_id: int, secret: str, code_hashes: list[str]) -> None:
        """Store the enrolled TOTP secret and a fresh backup-code set atomically."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(totp_secret=secret))
            self._write_backup_codes(conn, user_id, code_hashes)

    def disable_two_factor(self, user_id: int) -> None:
        """Clear the TOTP secret and every remaining backup code."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(totp_secret=None))
            conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))

    def replace_backup_codes(self, user_id: int, code_hashes: list[str]) -> None:
        with self.engine.begin() as conn:
            self._write_backup_codes(conn, user_id, code_hashes)

    def _write_backup_codes(self, conn, user_id: int, code_hashes: list[str]) -> None:
        conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
        if code_hashes:
            created = iso(_now())
            conn.execute(
                _backup_codes.insert(),
                [{"user_id": user_id, "code_hash": h, "created_at": created} for h in code_hashes],
            )

    def redeem_backup_code(self, user_id: int, code_hash: str, challenge_id: str, now: datetime) -> bool:
        """Claim a live challenge and delete one matching backup code together.

        Both writes share one transaction. If the challenge is already claimed
        or no unused code matches, nothing changes and the result is False, so
        a code is never spent on a challenge another request has won.
        """
        with self.engine.connect() as conn:
            claimed = conn.execute(
                _challenges.update()
                .where(
                    (_challenges.c.id == challenge_id)
                    & (_challenges.c.consumed_at.is_(None))
                    & (_challenges.c.expires_at > iso(now))
                )
                .values(consumed_at=iso(now))
            )
            if claimed.rowcount != 1:
                conn.rollback()
                return False
            row = conn.execute(
                select(_backup_codes.c.id)
                .where((_backup_codes.c.user_id == user_id) & (_backup_codes.c.code_hash == code_hash))
                .limit(1)
            ).fetchone()
            if row is None:
                conn.rollback()
                return False
            deleted = conn.execute(_backup_codes.delete().where(_backup_codes.c.id == row.id))
            if deleted.rowcount != 1:
                conn.rollback()
                return False
            conn.commit()
        return True

    def count_backup_codes(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_backup_codes).where(_backup_codes.c.user_id == user_id)
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Pending challenges
    # ------------------------------------------------------------------

    def create_challenge(self, challenge: PendingChallenge) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _challenges.insert().values(
                    id=challenge.id,
                    user_id=challenge.user_id,
                    created_at=iso(challenge.created_at),
                    expires_at=iso(challenge.expires_at),
                )
            )
            conn.commit()

    def get_challenge(self, challenge_id: str) -> PendingChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(_challenges.select().where(_challenges.c.id == challenge_id)).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def consume_challenge(self, challenge_id: str, now: datetime) -> bool:
        """Mark a live challenge consumed. Exactly one concurrent caller gets True."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.update()
                .where(
                    (_challenges.c.id == challenge_id)
                    & (_challenges.c.consumed_at.is_(None))
                    & (_challenges.c.expires_at > iso(now))
                )
                .values(consumed_at=iso(now))
            )
            conn.commit()
        return result.rowcount == 1

    def purge_challenges(self, now: datetime) -> int:
        """Delete expired or consumed challenges. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.delete().where(
                    (_challenges.c.expires_at <= iso(now)) | (_challenges.c.consumed_at.is_not(None))
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Trusted devices
    # ------------------------------------------------------------------

    def create_trusted_device(self, device: TrustedDevice) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _trusted_devices.insert().values(
                    user_id=device.user_id,
                    token_hash=device.token_hash,
                    device_name=device.device_name,
                    user_agent=device.user_agent,
                    ip_address=device.ip_address,
                    created_at=iso(device.created_at or _now()),
                    expires_at=iso(device.expires_at),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_trusted_device(self, token_hash: str) -> TrustedDevice | None:
        with self.engine.connect() as conn:
            row = conn.execute(_trusted_devices.select().where(_trusted_devices.c.token_hash == token_hash)).fetchone()
        return _row_to_device(row) if row is not None else None

    def list_trusted_devices(self, user_id: int) -> list[TrustedDevice]:
        """Return a user's devices, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _trusted_devices.select()
                .where(_trusted_devices.c.user_id == user_id)
                .order_by(_trusted_devices.c.created_at.desc())
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def delete_trusted_device(self, device_id: int, user_id: int) -> bool:
        """Delete one device. user_id must match so a user cannot revoke another's device."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _trusted_devices.delete().where(
                    (_trusted_devices.c.id == device_id) & (_trusted_devices.c.user_id == user_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def delete_trusted_devices_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_trusted_devices.delete().where(_trusted_devices.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def purge_trusted_devices(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_trusted_devices.delete().where(_trusted_devices.c.expires_at <= iso(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        principal = session.principal
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=principal.subject_id,
                    email=principal.email,
                    role=principal.role.value,
                    company_id=principal.company_id,
                    store_id=principal.store_id,
                    auth_path=session.auth_path.value,
                    created_at=iso(session.created_at),
                    expires_at=iso(session.expires_at),
                )
            )
            conn.commit()

    def get_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_sessions_for_user(self, user_id: int, now: datetime, keep_session_id: str | None = None) -> int:
        """Revoke every live session of a user, optionally sparing the caller's own."""
        condition = (_sessions.c.user_id == user_id) & (_sessions.c.revoked_at.is_(None))
        if keep_session_id is not None:
            condition = condition & (_sessions.c.id != keep_session_id)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(condition).values(revoked_at=iso(now)))
            conn.commit()
        return result.rowcount

    def purge_sessions(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.expires_at <= iso(now)) | (_sessions.c.revoked_at.is_not(None)))
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        role=Role(row.role),
        password_hash=row.password_hash,
        totp_secret=row.totp_secret,
        company_id=row.company_id,
        store_id=row.store_id,
        first_name=row.first_name,
        last_name=row.last_name,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_challenge(row) -> PendingChallenge:
    return PendingChallenge(
        id=row.id,
        user_id=row.user_id,
        created_at=parse_iso(row.created_at),
        expires_at=parse_iso(row.expires_at),
        consumed_at=parse_iso(row.consumed_at),
    )


def _row_to_device(row) -> TrustedDevice:
    return TrustedDevice(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        device_name=row.device_name,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        created_at=parse_iso(row.created_at),
        expires_at=parse_iso(row.expires_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        principal=Principal(
            subject_id=row.user_id,
            email=row.email,
            role=Role(row.role),
            company_id=row.company_id,
            store_id=row.store_id,
        ),
        auth_path=AuthPath(row.auth_path),
        created_at=parse_iso(row.created_at),
        expires_at=parse_iso(row.expires_at),
        revoked_at=parse_iso(row.revoked_at),
    )

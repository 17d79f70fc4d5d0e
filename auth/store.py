"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and OTP challenges.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_account / _row_to_challenge are the
mappers. Lifecycle and route code never touches SQL directly.

Uniqueness:
  accounts.email is UNIQUE and otp_challenges(account_id, purpose) is UNIQUE.
  These indexes are the actual race-closers for check-then-create sequences.
  Lookups by email are an optimization; an IntegrityError on insert is
  translated to DuplicateKeyError so callers map both paths to one error.

Transactions:
  Every public method runs in its own transaction unless the store was
  obtained from transaction(), in which case all calls share one connection
  and commit (or roll back) together:

      with store.transaction() as tx:
          account = tx.create_account(...)
          tx.upsert_challenge(...)

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Account, OtpChallenge, OtpPurpose
from core.config import get_settings

logger = logging.getLogger("authgate.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex, opaque to clients
    Column("email", String(320), nullable=False, unique=True),  # stored lowercased
    Column("name", String(100), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("verified_at", String(32)),
)

_otp_challenges = Table(
    "otp_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(32), nullable=False),
    Column("purpose", String(40), nullable=False),
    Column("code_hash", String(64), nullable=False),  # SHA-256 hex
    Column("expires_at", Float, nullable=False, index=True),  # epoch seconds, UTC
    Column("attempts", Integer, nullable=False, server_default="0"),
    UniqueConstraint("account_id", "purpose", name="uq_otp_account_purpose"),
)


class DuplicateKeyError(Exception):
    """Raised when an insert violates a UNIQUE index (e.g. email already registered)."""


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    """Trim and lowercase an email so it can be used as the natural key."""
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for Account and OtpChallenge entities.

    Usage:
        store = CredentialStore()
        account = store.create_account(Account(email="a@x.com", name="Ann", password_hash=h))
        store.find_by_email("A@X.com ")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        # Set only on copies handed out by transaction().
        self._conn: Connection | None = None

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[CredentialStore]:
        """Yield a store whose calls all run inside one database transaction.

        Commits when the block exits normally; rolls back if it raises.
        Nested use joins the outer transaction.
        """
        if self._conn is not None:
            yield self
            return
        with self.engine.begin() as conn:
            bound = copy.copy(self)
            bound._conn = conn
            yield bound

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        if self._conn is not None:
            yield self._conn
            return
        with self.engine.begin() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        """Insert a new account and return it with id and created_at filled in.

        Raises DuplicateKeyError if the email is already registered. Inside a
        transaction() block the error surfaces here or at commit; either way
        the whole unit is rolled back.
        """
        account_id = uuid.uuid4().hex
        created_at = _now_iso()
        email = normalize_email(account.email)
        try:
            with self._begin() as conn:
                conn.execute(
                    _accounts.insert().values(
                        id=account_id,
                        email=email,
                        name=account.name,
                        password_hash=account.password_hash,
                        role=account.role or "user",
                        verified=1 if account.verified else 0,
                        created_at=created_at,
                        verified_at=account.verified_at,
                    )
                )
        except IntegrityError as exc:
            raise DuplicateKeyError(f"account with email {email!r} already exists") from exc
        return Account(
            id=account_id,
            email=email,
            name=account.name,
            password_hash=account.password_hash,
            role=account.role or "user",
            verified=account.verified,
            created_at=created_at,
            verified_at=account.verified_at,
        )

    def find_by_email(self, email: str) -> Account | None:
        """Look up an account by email (case-insensitive, trimmed). Returns None if not found."""
        with self._begin() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_id(self, account_id: str) -> Account | None:
        """Look up an account by primary key. Returns None if not found."""
        with self._begin() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def save_account(self, account: Account) -> bool:
        """Persist the mutable fields of an existing account.

        Idempotent. email and password_hash are deliberately not written:
        the former is the natural key, the latter is immutable after creation.
        Returns True if a row matched.
        """
        with self._begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account.id)
                .values(
                    name=account.name,
                    role=account.role or "user",
                    verified=1 if account.verified else 0,
                    verified_at=account.verified_at,
                )
            )
        return result.rowcount > 0

    def mark_verified(self, account_id: str) -> bool:
        """Flip verified to 1 and stamp verified_at. No-op for already-verified accounts.

        The verified = 0 guard keeps the transition monotonic: verified_at is
        written exactly once. Returns True if this call performed the flip.
        """
        with self._begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.verified == 0))
                .values(verified=1, verified_at=_now_iso())
            )
        return result.rowcount > 0

    def delete_account(self, account_id: str) -> bool:
        """Permanently delete an account. Returns True if deleted, False if not found.

        Challenges owned by the account are NOT removed here; callers that
        need both gone (registration rollback) do it in one transaction().
        """
        with self._begin() as conn:
            result = conn.execute(_accounts.delete().where(_accounts.c.id == account_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OTP challenge queries
    # ------------------------------------------------------------------

    def find_challenge(self, account_id: str, purpose: OtpPurpose) -> OtpChallenge | None:
        """Return the challenge for (account_id, purpose), expired or not. None if absent."""
        with self._begin() as conn:
            row = conn.execute(
                _otp_challenges.select().where(
                    (_otp_challenges.c.account_id == account_id)
                    & (_otp_challenges.c.purpose == OtpPurpose(purpose).value)
                )
            ).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def upsert_challenge(self, challenge: OtpChallenge) -> OtpChallenge:
        """Create or replace the challenge for (account_id, purpose); attempts reset to 0.

        Update-then-insert inside one transaction. A concurrent insert for the
        same pair trips the UNIQUE index and raises DuplicateKeyError rather
        than leaving two live challenges.
        """
        purpose = OtpPurpose(challenge.purpose).value
        values = {
            "code_hash": challenge.code_hash,
            "expires_at": challenge.expires_at.timestamp(),
            "attempts": 0,
        }
        where = (_otp_challenges.c.account_id == challenge.account_id) & (_otp_challenges.c.purpose == purpose)
        try:
            with self._begin() as conn:
                result = conn.execute(_otp_challenges.update().where(where).values(**values))
                if result.rowcount == 0:
                    conn.execute(
                        _otp_challenges.insert().values(account_id=challenge.account_id, purpose=purpose, **values)
                    )
                row = conn.execute(_otp_challenges.select().where(where)).fetchone()
        except IntegrityError as exc:
            raise DuplicateKeyError(f"concurrent challenge for account {challenge.account_id}") from exc
        return _row_to_challenge(row)

    def increment_attempts(self, challenge_id: int) -> None:
        """Atomically add one failed attempt (SQL-side increment, no read-modify-write)."""
        with self._begin() as conn:
            conn.execute(
                _otp_challenges.update()
                .where(_otp_challenges.c.id == challenge_id)
                .values(attempts=_otp_challenges.c.attempts + 1)
            )

    def delete_challenge(self, challenge_id: int) -> bool:
        with self._begin() as conn:
            result = conn.execute(_otp_challenges.delete().where(_otp_challenges.c.id == challenge_id))
        return result.rowcount > 0

    def delete_all_challenges(self, account_id: str, purpose: OtpPurpose | None = None) -> int:
        """Delete every challenge for an account, optionally only one purpose. Returns rows removed."""
        where = _otp_challenges.c.account_id == account_id
        if purpose is not None:
            where = where & (_otp_challenges.c.purpose == OtpPurpose(purpose).value)
        with self._begin() as conn:
            result = conn.execute(_otp_challenges.delete().where(where))
        return result.rowcount

    def purge_expired_challenges(self, now: datetime | None = None) -> int:
        """Delete all challenges whose expires_at has passed. Returns rows removed.

        Advisory cleanup for the background sweep. OtpEngine.verify() re-checks
        expiry on every call, so correctness never depends on this running.
        """
        cutoff = (now or datetime.now(timezone.utc)).timestamp()
        with self._begin() as conn:
            result = conn.execute(_otp_challenges.delete().where(_otp_challenges.c.expires_at <= cutoff))
        return result.rowcount

    def count_challenges(self, account_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(_otp_challenges)
        if account_id is not None:
            stmt = stmt.where(_otp_challenges.c.account_id == account_id)
        with self._begin() as conn:
            result = conn.execute(stmt).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=row.role or "user",
        verified=bool(row.verified),
        created_at=row.created_at,
        verified_at=row.verified_at,
    )


def _row_to_challenge(row) -> OtpChallenge:
    return OtpChallenge(
        id=row.id,
        account_id=row.account_id,
        purpose=OtpPurpose(row.purpose),
        code_hash=row.code_hash,
        expires_at=datetime.fromtimestamp(row.expires_at, tz=timezone.utc),
        attempts=row.attempts,
    )

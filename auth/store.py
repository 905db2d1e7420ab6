"""
auth/store.py -- SQLAlchemy Core persistence layer for identities.

Pattern: Repository + Data Mapper (same as audit/store.py).
IdentityStore is the repository; _row_to_identity is the mapper. Services and
routes never touch SQL directly.

Concurrency:
  The state changes that can race are expressed as single guarded
  UPDATEs instead of read-modify-write in Python:

  record_failed_attempt() -- clears an expired lock and increments
      failed_attempts in one transaction. The increment is guarded by
      `locked_until IS NULL`, and the lock timestamp is computed from the
      pre-increment column value inside the same statement, so two
      concurrent wrong-password requests can neither lose an increment nor
      count past the threshold while the account is locked.

  rotate_password() -- compare-and-swap on password_hash. A rotation that
      lost a race to another rotation updates zero rows and reports False
      rather than overwriting the winner's history. A reset rotation also
      matches on reset_token_hash, so a reset token is consumed exactly once.

  update_role() / set_active() -- demoting or deactivating an active admin
      carries the "another active admin remains" check in the UPDATE's own
      WHERE clause. Two admins demoting each other concurrently cannot both
      succeed.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is enforced case-insensitively with a unique index on
  lower(email); usernames are unique and case-sensitive.

DB path: auth/campusguard_identity.db (default from core.config.Settings).
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import PASSWORD_HISTORY_CAPACITY, Identity, PasswordHistory, Role, SecurityAnswer
from core.clock import from_iso, to_iso, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(30), nullable=False, unique=True),
    Column("email", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default=Role.student.value),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),  # ISO 8601, NULL when unlocked
    Column("password_changed_at", String(32)),  # NULL until the first rotation
    Column("password_history", Text, nullable=False, server_default="[]"),  # JSON array, oldest first
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("security_questions", Text, nullable=False, server_default="[]"),  # JSON [{question_id, answer_hash}]
    Column("reset_token_hash", String(64)),  # sha256 hex of the outstanding reset token
    Column("reset_token_expires", String(32)),
)

Index("uq_identities_email_lower", func.lower(_identities.c.email), unique=True)
Index("ix_identities_reset_token_hash", _identities.c.reset_token_hash)


def _keeps_an_active_admin(identity_id: int):
    """WHERE clause: the row is not an active admin, or some other active admin exists."""
    c = _identities.c
    other = _identities.alias("other_admins")
    others = (
        select(func.count())
        .select_from(other)
        .where((other.c.id != identity_id) & (other.c.role == Role.admin.value) & (other.c.is_active == 1))
        .scalar_subquery()
    )
    return or_(c.role != Role.admin.value, c.is_active == 0, others >= 1)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity records.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        identity_id = store.create_identity(Identity(username="ada", email="ada@example.edu", password_hash=h))
        identity = store.get_by_identifier("ada@example.edu")
        store.close()
    """

    def __init__(self, db_url: str, history_capacity: int = PASSWORD_HISTORY_CAPACITY) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        # pool_pre_ping swaps out dead connections before a statement runs, so a
        # dropped connection is retried at the pool level -- LockoutPolicy is
        # never re-invoked and one logical attempt is never counted twice.
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._history_capacity = history_capacity

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_identities(self) -> bool:
        """Return True if at least one identity exists. Used by the CLI bootstrap."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_identities)).scalar()
        return (result or 0) > 0

    def get_by_id(self, identity_id: int) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return self._row_to_identity(row) if row is not None else None

    def get_by_username(self, username: str) -> Identity | None:
        """Exact, case-sensitive username match."""
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.username == username)).fetchone()
        return self._row_to_identity(row) if row is not None else None

    def get_by_email(self, email: str) -> Identity | None:
        """Case-insensitive email match (backed by the lower(email) unique index)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where(func.lower(_identities.c.email) == email.lower())
            ).fetchone()
        return self._row_to_identity(row) if row is not None else None

    def get_by_identifier(self, identifier: str) -> Identity | None:
        """Look up by username OR email. Usernames cannot contain '@', so at most one row matches."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where(
                    or_(
                        _identities.c.username == identifier,
                        func.lower(_identities.c.email) == identifier.lower(),
                    )
                )
            ).fetchone()
        return self._row_to_identity(row) if row is not None else None

    def list_identities(self) -> list[Identity]:
        """Return all identities ordered by username. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_identities.select().order_by(_identities.c.username)).fetchall()
        return [self._row_to_identity(r) for r in rows]

    def get_by_reset_token(self, token_hash: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.reset_token_hash == token_hash)).fetchone()
        return self._row_to_identity(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity) -> int:
        """Insert a new identity and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers translate that into a 409.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.insert().values(
                    username=identity.username,
                    email=identity.email,
                    password_hash=identity.password_hash,
                    role=identity.role.value,
                    is_active=1 if identity.is_active else 0,
                    failed_attempts=0,
                    password_history=identity.password_history.to_json(),
                    created_at=to_iso(identity.created_at or utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def update_role(self, identity_id: int, role: Role) -> bool:
        """Returns False when the row is missing or is the last active admin being demoted."""
        if role is Role.admin:
            return self._update(identity_id, role=role.value)
        return self._update(identity_id, _keeps_an_active_admin(identity_id), role=role.value)

    def set_active(self, identity_id: int, is_active: bool) -> bool:
        """Returns False when the row is missing or is the last active admin being deactivated."""
        if is_active:
            return self._update(identity_id, is_active=1)
        return self._update(identity_id, _keeps_an_active_admin(identity_id), is_active=0)

    def update_email(self, identity_id: int, email: str) -> bool:
        """Raises IntegrityError if another identity already uses the address."""
        return self._update(identity_id, email=email)

    def set_security_questions(self, identity_id: int, answers: tuple[SecurityAnswer, ...]) -> bool:
        """Replace the stored answers. Any outstanding reset token is discarded with the old answers."""
        return self._update(
            identity_id,
            security_questions=json.dumps([{"question_id": a.question_id, "answer_hash": a.answer_hash} for a in answers]),
            reset_token_hash=None,
            reset_token_expires=None,
        )

    def store_reset_token(self, identity_id: int, token_hash: str, expires: datetime) -> bool:
        """Record a freshly issued reset token, replacing any earlier one."""
        return self._update(identity_id, reset_token_hash=token_hash, reset_token_expires=to_iso(expires))

    def _update(self, identity_id: int, *guards, **values) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.update().where(_identities.c.id == identity_id, *guards).values(**values)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lockout state (atomic)
    # ------------------------------------------------------------------

    def record_failed_attempt(
        self,
        identity_id: int,
        *,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
    ) -> Identity | None:
        """Atomically register one failed attempt and return the updated identity.

        Step 1: an expired lock is cleared (fresh window).
        Step 2: while unlocked, failed_attempts += 1; if the new value reaches
                the threshold, locked_until = now + lock_duration.
        While a lock is in force step 2 matches no row -- the count freezes.
        """
        now_iso = to_iso(now)
        c = _identities.c
        with self.engine.begin() as conn:
            conn.execute(
                _identities.update()
                .where((c.id == identity_id) & c.locked_until.is_not(None) & (c.locked_until <= now_iso))
                .values(failed_attempts=0, locked_until=None)
            )
            conn.execute(
                _identities.update()
                .where((c.id == identity_id) & c.locked_until.is_(None))
                .values(
                    failed_attempts=c.failed_attempts + 1,
                    locked_until=case(
                        (c.failed_attempts + 1 >= threshold, to_iso(now + lock_duration)),
                        else_=None,
                    ),
                )
            )
        return self.get_by_id(identity_id)

    def reset_lockout(self, identity_id: int, *, last_login: datetime | None = None) -> bool:
        """Clear failed_attempts and locked_until; optionally stamp last_login."""
        values: dict = {"failed_attempts": 0, "locked_until": None}
        if last_login is not None:
            values["last_login"] = to_iso(last_login)
        return self._update(identity_id, **values)

    # ------------------------------------------------------------------
    # Password rotation (compare-and-swap)
    # ------------------------------------------------------------------

    def rotate_password(
        self,
        identity_id: int,
        *,
        expected_hash: str,
        new_hash: str,
        history: PasswordHistory,
        changed_at: datetime,
        reset_token_hash: str | None = None,
    ) -> bool:
        """Swap in new_hash only if the stored hash is still expected_hash.

        With reset_token_hash, the stored reset token must also still match.
        Every successful rotation clears the reset token.

        Returns False when another rotation (or reset) committed first.
        """
        c = _identities.c
        condition = (c.id == identity_id) & (c.password_hash == expected_hash)
        if reset_token_hash is not None:
            condition = condition & (c.reset_token_hash == reset_token_hash)
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.update()
                .where(condition)
                .values(
                    password_hash=new_hash,
                    password_history=history.to_json(),
                    password_changed_at=to_iso(changed_at),
                    reset_token_hash=None,
                    reset_token_expires=None,
                )
            )
        return result.rowcount > 0

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Row mapper (Data Mapper pattern)
    # ------------------------------------------------------------------

    def _row_to_identity(self, row) -> Identity:
        return Identity(
            id=row.id,
            username=row.username,
            email=row.email,
            password_hash=row.password_hash,
            role=Role(row.role),
            is_active=bool(row.is_active),
            failed_attempts=row.failed_attempts,
            locked_until=from_iso(row.locked_until),
            password_changed_at=from_iso(row.password_changed_at),
            password_history=PasswordHistory.from_json(row.password_history, self._history_capacity),
            last_login=from_iso(row.last_login),
            created_at=from_iso(row.created_at),
            security_questions=tuple(
                SecurityAnswer(item["question_id"], item["answer_hash"])
                for item in json.loads(row.security_questions or "[]")
            ),
            reset_token_hash=row.reset_token_hash,
            reset_token_expires=from_iso(row.reset_token_expires),
        )

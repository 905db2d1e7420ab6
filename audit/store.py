"""
audit/store.py -- SQLAlchemy Core persistence layer for security events.

Pattern: Repository + Data Mapper (same as auth/store.py).
AuditStore is the repository; _row_to_event is the mapper. Nothing outside
this module touches the security_events table directly.

Append-only:
  The repository exposes append and read methods only -- there is no update
  or delete. On SQLite the table additionally carries BEFORE UPDATE / BEFORE
  DELETE triggers that abort the statement, so even ad-hoc SQL against the
  file cannot rewrite history. On other backends the equivalent belongs in
  the migration that grants the app role INSERT/SELECT only.

Timestamps are fixed-width ISO strings (see core/clock.py), so date-range
filters are plain string comparisons and stay index-friendly.

Security:
  All queries use bound parameters. No f-strings in SQL.

DB path: audit/campusguard_audit.db (sibling to auth/campusguard_identity.db).
"""

from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from audit.models import SECURITY_ACTIONS, AuditAction, EventFilter, Outcome, SecurityEvent
from core.clock import from_iso, to_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_events = Table(
    "security_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer),  # NULL for pre-authentication failures
    Column("action", String(64), nullable=False),
    Column("resource_type", String(255), nullable=False),
    Column("resource_id", String(64)),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON object
    Column("source_address", String(64), nullable=False),
    Column("user_agent", String(512), nullable=False),
    Column("timestamp", String(32), nullable=False),
    Column("outcome", String(16), nullable=False),
    Column("error_detail", String(255)),
    Index("ix_security_events_actor_ts", "actor_id", "timestamp"),
    Index("ix_security_events_action_ts", "action", "timestamp"),
    Index("ix_security_events_ts", "timestamp"),
)

_APPEND_ONLY_TRIGGERS = (
    """
    CREATE TRIGGER IF NOT EXISTS security_events_no_update
    BEFORE UPDATE ON security_events
    BEGIN
        SELECT RAISE(ABORT, 'security_events is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS security_events_no_delete
    BEFORE DELETE ON security_events
    BEGIN
        SELECT RAISE(ABORT, 'security_events is append-only');
    END
    """,
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so dashboard reads never block audit appends."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditStore:
    """Repository for SecurityEvent records.

    Usage:
        store = AuditStore("sqlite:///:memory:")
        event_id = store.append(event)
        events, total = store.query(EventFilter(action=AuditAction.LOGIN_FAILED), offset=0, limit=50)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        if db_url.startswith("sqlite"):
            self._ensure_append_only_triggers()

    def _ensure_append_only_triggers(self) -> None:
        """Install the UPDATE/DELETE guards. IF NOT EXISTS keeps this idempotent."""
        with self.engine.begin() as conn:
            for ddl in _APPEND_ONLY_TRIGGERS:
                conn.execute(text(ddl))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, record: SecurityEvent) -> int:
        """Insert one event and return its assigned ID.

        Raises sqlalchemy.exc.SQLAlchemyError on any persistence failure. The
        caller (AuditTrail.record) owns the decision of what to do with it.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _events.insert().values(
                    actor_id=record.actor_id,
                    action=record.action.value,
                    resource_type=record.resource_type,
                    resource_id=record.resource_id,
                    details=json.dumps(record.details, sort_keys=True, default=str),
                    source_address=record.source_address,
                    user_agent=record.user_agent,
                    timestamp=to_iso(record.timestamp),
                    outcome=record.outcome.value,
                    error_detail=record.error_detail,
                )
            )
            return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(self, filters: EventFilter, *, offset: int, limit: int) -> tuple[list[SecurityEvent], int]:
        """Return one page of matching events (newest first) and the total match count."""
        where = _build_where(filters)
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_events)
                .where(*where)
                .order_by(_events.c.timestamp.desc(), _events.c.id.desc())
                .offset(offset)
                .limit(limit)
            ).fetchall()
            total = conn.execute(select(func.count()).select_from(_events).where(*where)).scalar()
        return [_row_to_event(r) for r in rows], total or 0

    def count(self, filters: EventFilter | None = None) -> int:
        where = _build_where(filters or EventFilter())
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_events).where(*where)).scalar()
        return result or 0

    def count_by_action(self, since: datetime, *, limit: int | None = None) -> dict[str, int]:
        """Return {action: count} for events at or after `since`, most frequent first."""
        n = func.count().label("n")
        stmt = (
            select(_events.c.action, n)
            .where(_events.c.timestamp >= to_iso(since))
            .group_by(_events.c.action)
            .order_by(n.desc(), _events.c.action)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return {row.action: row.n for row in rows}

    def ping(self) -> bool:
        """Cheap liveness check for /health."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_where(filters: EventFilter) -> list:
    clauses: list = []
    if filters.actor_id is not None:
        clauses.append(_events.c.actor_id == filters.actor_id)
    if filters.action is not None:
        clauses.append(_events.c.action == filters.action.value)
    if filters.start is not None:
        clauses.append(_events.c.timestamp >= to_iso(filters.start))
    if filters.end is not None:
        clauses.append(_events.c.timestamp <= to_iso(filters.end))
    if filters.outcome is not None:
        clauses.append(_events.c.outcome == filters.outcome.value)
    if filters.security_only:
        clauses.append(
            or_(
                _events.c.action.in_(sorted(a.value for a in SECURITY_ACTIONS)),
                _events.c.outcome == Outcome.failure.value,
            )
        )
    return clauses


def _row_to_event(row) -> SecurityEvent:
    return SecurityEvent(
        id=row.id,
        actor_id=row.actor_id,
        action=AuditAction(row.action),
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        details=json.loads(row.details) if row.details else {},
        source_address=row.source_address,
        user_agent=row.user_agent,
        timestamp=from_iso(row.timestamp),
        outcome=Outcome(row.outcome),
        error_detail=row.error_detail,
    )

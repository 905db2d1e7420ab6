"""
audit/trail.py -- AuditTrail: the single write path into the security log.

Every security decision in CampusGuard (login, token rejection, role denial,
password rotation, admin action) ends in exactly one AuditTrail.record() call.
Callers pass structured values; field names, redaction and timestamping are
decided here once, so no call site can log a password or spell "user_role"
differently from the next.

Failure policy:
  record() is synchronous -- the row is committed before it returns. If the
  store raises, the exception is NOT re-raised into the request: the Allow or
  Deny has already been decided and the user must get the same response they
  would have got with a healthy audit DB. The failure is instead surfaced to
  operators through logger.exception() on "campusguard.audit" and through
  write_failures, which /health reports as "degraded". It is never surfaced
  to the end user.

Reads (query/aggregate/stats) have no access control of their own. They are
reachable only from api/routes/v1/audit.py, whose router depends on
require_roles(Role.admin).
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from audit.models import AuditAction, EventFilter, Outcome, Page, SecurityEvent
from audit.store import AuditStore
from core.clock import Clock, utcnow
from core.context import RequestContext

logger = logging.getLogger("campusguard.audit")

_REDACTED = "[REDACTED]"
# Any details key containing one of these fragments is redacted, at any depth.
_SECRET_KEY_FRAGMENTS = ("password", "passwd", "secret", "token", "hash", "authorization", "api_key")
_MAX_ERROR_DETAIL = 255
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")


class AuditTrail:
    def __init__(self, store: AuditStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock
        self._ts_lock = threading.Lock()
        self._last_ts: datetime | None = None
        self.write_failures = 0

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def record(
        self,
        action: AuditAction,
        *,
        context: RequestContext,
        resource_type: str,
        actor_id: int | None = None,
        resource_id: int | str | None = None,
        details: dict[str, Any] | None = None,
        outcome: Outcome = Outcome.success,
        error_detail: str | None = None,
    ) -> None:
        """Append one SecurityEvent. Never raises on storage failure (see module docstring)."""
        security_event = SecurityEvent(
            action=action,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=redact(details or {}),
            source_address=context.source_address,
            user_agent=context.user_agent,
            timestamp=self._next_timestamp(),
            outcome=outcome,
            error_detail=sanitize_error(error_detail),
        )
        try:
            self._store.append(security_event)
        except SQLAlchemyError:
            # record() runs on threadpool workers; the counter shares the timestamp lock.
            with self._ts_lock:
                self.write_failures += 1
                failures = self.write_failures
            logger.exception(
                "Audit write failed (action=%s actor=%s outcome=%s failures=%d)",
                action.value,
                actor_id,
                outcome.value,
                failures,
            )

    def _next_timestamp(self) -> datetime:
        """Return now, clamped so that timestamps never go backwards within this process.

        Wall clocks can step back (NTP corrections). A single actor's request
        sequence must still read in order, so a stepped-back clock reuses the
        last issued timestamp instead.
        """
        with self._ts_lock:
            now = self._clock()
            if self._last_ts is not None and now < self._last_ts:
                now = self._last_ts
            self._last_ts = now
            return now

    @property
    def healthy(self) -> bool:
        return self.write_failures == 0

    # ------------------------------------------------------------------
    # Read path (admin-gated at the route layer)
    # ------------------------------------------------------------------

    def query(self, filters: EventFilter, page: int = 1, limit: int = 50) -> Page[SecurityEvent]:
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        items, total = self._store.query(filters, offset=(page - 1) * limit, limit=limit)
        return Page(items=items, page=page, limit=limit, total=total)

    def aggregate(self, window: timedelta) -> dict[str, int]:
        """Count events per action over the trailing window. Display only -- never drives a decision."""
        return self._store.count_by_action(self._clock() - window)

    def stats(self) -> dict[str, Any]:
        """Dashboard summary: totals, last-24h login outcomes, top actions over 7 days."""
        now = self._clock()
        day_ago = now - timedelta(hours=24)
        return {
            "total_events": self._store.count(),
            "last_24_hours": self._store.count(EventFilter(start=day_ago)),
            "failed_logins": self._store.count(EventFilter(action=AuditAction.LOGIN_FAILED, start=day_ago)),
            "successful_logins": self._store.count(EventFilter(action=AuditAction.LOGIN_SUCCEEDED, start=day_ago)),
            "top_actions": self._store.count_by_action(now - timedelta(days=7), limit=10),
        }


# ---------------------------------------------------------------------------
# Sanitizers
# ---------------------------------------------------------------------------


def redact(details: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of details with secret-looking keys replaced by [REDACTED]."""
    clean: dict[str, Any] = {}
    for key, value in details.items():
        lowered = str(key).lower()
        if any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS):
            clean[key] = _REDACTED
        elif isinstance(value, dict):
            clean[key] = redact(value)
        else:
            clean[key] = value
    return clean


def sanitize_error(message: str | None) -> str | None:
    """Strip control characters (log injection) and cap length."""
    if message is None:
        return None
    cleaned = _CONTROL_CHARS.sub(" ", message).strip()
    return cleaned[:_MAX_ERROR_DETAIL] or None

"""
tests/test_audit_trail.py -- Unit tests for AuditTrail and AuditStore.

Covers:
  - redaction of secret-looking detail keys (any depth)
  - error_detail sanitization (control characters, length cap)
  - non-decreasing timestamps when the wall clock steps back
  - storage failures are logged and counted, never raised into the caller
  - append-only enforcement at the SQLite level
  - query filters, newest-first ordering and pagination
  - aggregate() and stats()
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError

from audit.models import AuditAction, EventFilter, Outcome
from audit.trail import AuditTrail, redact, sanitize_error
from core.context import RequestContext

CTX = RequestContext(source_address="192.0.2.10", user_agent="pytest", path="/api/v1/auth/login")


def _record(trail: AuditTrail, action: AuditAction, **kwargs) -> None:
    kwargs.setdefault("resource_type", "identity")
    trail.record(action, context=CTX, **kwargs)


class TestSanitizers:
    def test_redacts_secret_keys_at_any_depth(self):
        clean = redact(
            {
                "reason": "invalid_credentials",
                "password": "Maple&River7Stone",
                "newPassword": "x",
                "nested": {"access_token": "eyJ...", "role": "student"},
                "password_hash": "$2b$...",
            }
        )
        assert clean == {
            "reason": "invalid_credentials",
            "password": "[REDACTED]",
            "newPassword": "[REDACTED]",
            "nested": {"access_token": "[REDACTED]", "role": "student"},
            "password_hash": "[REDACTED]",
        }

    def test_sanitize_error_strips_control_characters(self):
        assert sanitize_error("bad\r\nFAKE LOG LINE\x00") == "bad FAKE LOG LINE"

    def test_sanitize_error_caps_length(self):
        assert len(sanitize_error("e" * 1000)) == 255

    def test_sanitize_error_passes_none(self):
        assert sanitize_error(None) is None


class TestRecord:
    def test_record_persists_context_and_outcome(self, core):
        _record(
            core.audit,
            AuditAction.LOGIN_FAILED,
            actor_id=3,
            resource_id=3,
            outcome=Outcome.failure,
            details={"reason": "invalid_credentials", "password": "leak"},
        )
        (event,) = core.audit.query(EventFilter()).items
        assert event.action is AuditAction.LOGIN_FAILED
        assert event.success is False
        assert event.actor_id == 3
        assert event.resource_id == "3"
        assert event.source_address == "192.0.2.10"
        assert event.details == {"reason": "invalid_credentials", "password": "[REDACTED]"}

    def test_timestamps_never_decrease(self, core, clock):
        _record(core.audit, AuditAction.LOGIN_SUCCEEDED, actor_id=1)
        clock.advance(seconds=-30)  # wall clock stepped back
        _record(core.audit, AuditAction.LOGOUT, actor_id=1)

        events = core.audit.query(EventFilter(actor_id=1)).items
        newest, oldest = events
        assert oldest.action is AuditAction.LOGIN_SUCCEEDED
        assert newest.action is AuditAction.LOGOUT
        assert newest.timestamp >= oldest.timestamp

    def test_storage_failure_is_logged_and_counted_not_raised(self, clock, caplog):
        store = MagicMock()
        store.append.side_effect = OperationalError("INSERT", {}, Exception("disk I/O error"))
        trail = AuditTrail(store, clock=clock)

        with caplog.at_level(logging.ERROR, logger="campusguard.audit"):
            _record(trail, AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT, outcome=Outcome.failure)

        assert trail.write_failures == 1
        assert not trail.healthy
        assert any("Audit write failed" in r.getMessage() for r in caplog.records)

    def test_concurrent_storage_failures_are_all_counted(self, clock):
        store = MagicMock()
        store.append.side_effect = OperationalError("INSERT", {}, Exception("database is locked"))
        trail = AuditTrail(store, clock=clock)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: _record(trail, AuditAction.LOGOUT), range(200)))

        assert trail.write_failures == 200

    def test_non_storage_errors_propagate(self, clock):
        store = MagicMock()
        store.append.side_effect = RuntimeError("bug")
        trail = AuditTrail(store, clock=clock)
        with pytest.raises(RuntimeError):
            _record(trail, AuditAction.LOGOUT)


class TestAppendOnly:
    def test_update_is_rejected(self, core):
        _record(core.audit, AuditAction.LOGIN_SUCCEEDED, actor_id=1)
        with pytest.raises(DBAPIError):
            with core.audit_store.engine.begin() as conn:
                conn.execute(text("UPDATE security_events SET outcome = 'failure'"))

    def test_delete_is_rejected(self, core):
        _record(core.audit, AuditAction.LOGIN_SUCCEEDED, actor_id=1)
        with pytest.raises(DBAPIError):
            with core.audit_store.engine.begin() as conn:
                conn.execute(text("DELETE FROM security_events"))
        assert core.audit_store.count() == 1


class TestQuery:
    @pytest.fixture
    def populated(self, core, clock):
        _record(core.audit, AuditAction.USER_REGISTERED, actor_id=1)
        clock.advance(minutes=1)
        _record(core.audit, AuditAction.LOGIN_FAILED, actor_id=1, outcome=Outcome.failure)
        clock.advance(minutes=1)
        _record(core.audit, AuditAction.LOGIN_SUCCEEDED, actor_id=1)
        clock.advance(minutes=1)
        _record(core.audit, AuditAction.LOGIN_SUCCEEDED, actor_id=2)
        clock.advance(minutes=1)
        _record(core.audit, AuditAction.PROFILE_UPDATED, actor_id=2)
        return core.audit

    def test_newest_first(self, populated):
        actions = [e.action for e in populated.query(EventFilter()).items]
        assert actions[0] is AuditAction.PROFILE_UPDATED
        assert actions[-1] is AuditAction.USER_REGISTERED

    def test_filter_by_actor_and_action(self, populated):
        assert populated.query(EventFilter(actor_id=2)).total == 2
        page = populated.query(EventFilter(action=AuditAction.LOGIN_SUCCEEDED))
        assert page.total == 2
        assert {e.actor_id for e in page.items} == {1, 2}

    def test_filter_by_date_range(self, populated, clock):
        start = clock() - timedelta(minutes=2)
        end = clock() - timedelta(minutes=1)
        page = populated.query(EventFilter(start=start, end=end))
        assert [e.action for e in page.items] == [AuditAction.LOGIN_SUCCEEDED, AuditAction.LOGIN_SUCCEEDED]

    def test_security_only(self, populated):
        page = populated.query(EventFilter(security_only=True))
        assert [e.action for e in page.items] == [AuditAction.LOGIN_FAILED]

    def test_pagination(self, populated):
        first = populated.query(EventFilter(), page=1, limit=2)
        third = populated.query(EventFilter(), page=3, limit=2)
        assert first.total == 5
        assert first.pages == 3
        assert len(first.items) == 2
        assert len(third.items) == 1

    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0)])
    def test_rejects_non_positive_paging(self, populated, page, limit):
        with pytest.raises(ValueError):
            populated.query(EventFilter(), page=page, limit=limit)

    def test_aggregate_window(self, populated):
        counts = populated.aggregate(timedelta(minutes=2, seconds=30))
        assert counts == {"LOGIN_SUCCEEDED": 2, "PROFILE_UPDATED": 1}

    def test_stats(self, populated):
        stats = populated.stats()
        assert stats["total_events"] == 5
        assert stats["last_24_hours"] == 5
        assert stats["failed_logins"] == 1
        assert stats["successful_logins"] == 2
        assert stats["top_actions"]["LOGIN_SUCCEEDED"] == 2

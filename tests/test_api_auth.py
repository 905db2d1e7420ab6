"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth/* through the real ASGI stack.

Covers:
  - register: success, role escalation attempt, policy and shape failures,
    duplicates (409), no echo of submitted values
  - login: username/email, identical 401 bodies, 423 lockout, the 4 -> 5
    failure scenario, rate limiting (429)
  - bearer handling: missing/garbage/expired/stale tokens -> 401 "Invalid token."
  - change-password: fresh-token requirement, old tokens revoked, minimum age
  - profile update rejects `role`
  - admin identity management and owner-or-admin reads, last-admin guard
    under stale snapshots, out-of-range ids -> 400
  - exactly one audit record per decision
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest
from conftest import ADMIN_PASSWORD, INSTRUCTOR_PASSWORD, ROTATION_PASSWORDS, STUDENT_PASSWORD, bearer
from sqlalchemy.exc import OperationalError
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.main import app
from audit.models import AuditAction, EventFilter
from auth.models import Role
from core.context import SYSTEM_CONTEXT
from fastapi.testclient import TestClient


def _student(api, username: str = "ada_lovelace", password: str = STUDENT_PASSWORD):
    identity = api.core.credentials.register(username, f"{username}@campus.edu", password, Role.student)
    return identity, api.core.tokens.issue(identity)


def _events(api, action: AuditAction):
    return api.core.audit.query(EventFilter(action=action), limit=100).items


def _register_body(**overrides) -> dict:
    body = {
        "username": "grace_hopper",
        "email": "grace@campus.edu",
        "password": INSTRUCTOR_PASSWORD,
        "confirmPassword": INSTRUCTOR_PASSWORD,
        "role": "instructor",
    }
    body.update(overrides)
    return body


# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_returns_token_and_summary(self, api):
        resp = api.client.post("/api/v1/auth/register", json=_register_body())
        assert resp.status_code == 201
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["user"] == {
            "id": data["user"]["id"],
            "username": "grace_hopper",
            "email": "grace@campus.edu",
            "role": "instructor",
        }
        assert resp.headers["Cache-Control"] == "no-store"
        assert len(_events(api, AuditAction.USER_REGISTERED)) == 1

        me = api.client.get("/api/v1/auth/me", headers=bearer(data["token"]))
        assert me.status_code == 200
        assert me.json()["password_changed_at"] is None

    def test_self_registration_cannot_choose_admin(self, api):
        resp = api.client.post("/api/v1/auth/register", json=_register_body(role="admin"))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
        (event,) = _events(api, AuditAction.VALIDATION_FAILURE)
        assert "role" in event.details["fields"]
        assert api.core.identity_store.get_by_username("grace_hopper") is None

    def test_weak_password_is_rejected_with_field_detail(self, api):
        weak = "weakpassword"
        resp = api.client.post("/api/v1/auth/register", json=_register_body(password=weak, confirmPassword=weak))
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert isinstance(error["detail"], list)
        assert weak not in resp.text

    def test_mismatched_confirmation_is_rejected_without_echo(self, api):
        resp = api.client.post(
            "/api/v1/auth/register",
            json=_register_body(confirmPassword="Different!Secret55"),
        )
        assert resp.status_code == 400
        assert INSTRUCTOR_PASSWORD not in resp.text
        assert "Different!Secret55" not in resp.text
        assert len(_events(api, AuditAction.VALIDATION_FAILURE)) == 1

    def test_input_is_not_trimmed(self, api):
        resp = api.client.post("/api/v1/auth/register", json=_register_body(username=" grace_hopper"))
        assert resp.status_code == 400

    @pytest.mark.parametrize(
        "overrides",
        [{"username": "grace_hopper"}, {"username": "other_name", "email": "GRACE@campus.edu"}],
    )
    def test_duplicate_is_conflict(self, api, overrides):
        assert api.client.post("/api/v1/auth/register", json=_register_body()).status_code == 201
        resp = api.client.post("/api/v1/auth/register", json=_register_body(**overrides))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"


# ---------------------------------------------------------------------------
# Login and lockout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_by_username_and_by_email(self, api):
        _student(api)
        by_name = api.client.post(
            "/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": STUDENT_PASSWORD}
        )
        by_email = api.client.post(
            "/api/v1/auth/login", json={"identifier": "ADA_LOVELACE@campus.edu", "password": STUDENT_PASSWORD}
        )
        assert by_name.status_code == by_email.status_code == 200
        assert by_name.json()["expires_in"] == 24 * 3600
        assert by_name.headers["Cache-Control"] == "no-store"
        assert len(_events(api, AuditAction.LOGIN_SUCCEEDED)) == 2

    def test_unknown_identifier_and_wrong_password_are_indistinguishable(self, api):
        _student(api)
        wrong = api.client.post("/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": "Nope!Nope1234"})
        unknown = api.client.post("/api/v1/auth/login", json={"identifier": "nobody_here", "password": "Nope!Nope1234"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["message"] == "Invalid username or password."

        reasons = {e.details["reason"] for e in _events(api, AuditAction.LOGIN_FAILED)}
        assert reasons == {"invalid_credentials"}

    def test_fifth_failure_returns_401_and_locks(self, api):
        identity, _ = _student(api)
        for _ in range(4):
            api.client.post("/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": "Nope!Nope1234"})
        assert api.core.credentials.find(identity.id).failed_attempts == 4

        resp = api.client.post("/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": "Nope!Nope1234"})

        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid username or password."
        stored = api.core.credentials.find(identity.id)
        assert stored.failed_attempts == 5
        assert api.core.lockout.is_locked(stored)
        assert stored.locked_until == api.clock() + timedelta(minutes=15)
        last = _events(api, AuditAction.LOGIN_FAILED)[0]
        assert last.details["lockout_triggered"] is True

    def test_locked_account_answers_423_even_with_correct_password(self, api):
        identity, _ = _student(api)
        for _ in range(5):
            api.client.post("/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": "Nope!Nope1234"})

        resp = api.client.post("/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": STUDENT_PASSWORD})

        assert resp.status_code == 423
        assert resp.json()["error"]["code"] == "account_locked"
        assert api.core.credentials.find(identity.id).failed_attempts == 5
        assert _events(api, AuditAction.LOGIN_FAILED)[0].details["reason"] == "account_locked"

    def test_lock_expires(self, api):
        _student(api)
        for _ in range(5):
            api.client.post("/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": "Nope!Nope1234"})
        api.clock.advance(minutes=15, seconds=1)
        resp = api.client.post("/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": STUDENT_PASSWORD})
        assert resp.status_code == 200

    def test_inactive_account_gets_generic_401(self, api):
        identity, _ = _student(api)
        api.core.credentials.set_active(identity.id, False)
        resp = api.client.post("/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": STUDENT_PASSWORD})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid username or password."
        assert _events(api, AuditAction.LOGIN_FAILED)[0].details["reason"] == "account_inactive"

    def test_missing_field_is_400(self, api):
        resp = api.client.post("/api/v1/auth/login", json={"password": "Secret!Value99"})
        assert resp.status_code == 400
        assert "Secret!Value99" not in resp.text
        assert resp.json()["error"]["detail"][0]["field"] == "body.identifier"

    def test_unknown_field_is_400(self, api):
        resp = api.client.post(
            "/api/v1/auth/login",
            json={"identifier": "registrar", "password": ADMIN_PASSWORD, "role": "admin"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["detail"][0]["field"] == "body.role"
        assert _events(api, AuditAction.LOGIN_SUCCEEDED) == []

    def test_validation_audit_write_runs_in_threadpool(self, api):
        with patch("api.main.run_in_threadpool", wraps=run_in_threadpool) as offload:
            resp = api.client.post("/api/v1/auth/login", json={"password": "Secret!Value99"})
        assert resp.status_code == 400
        offload.assert_awaited_once()
        assert offload.await_args.args[:2] == (api.core.audit.record, AuditAction.VALIDATION_FAILURE)
        assert len(_events(api, AuditAction.VALIDATION_FAILURE)) == 1

    def test_login_is_rate_limited(self, api):
        limiter.reset()
        limiter.enabled = True
        try:
            statuses = [
                api.client.post(
                    "/api/v1/auth/login", json={"identifier": "nobody_here", "password": "Nope!Nope1234"}
                ).status_code
                for _ in range(11)
            ]
        finally:
            limiter.enabled = False
            limiter.reset()
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


class TestBearer:
    def test_missing_token(self, api):
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        assert len(_events(api, AuditAction.AUTHENTICATION_FAILED)) == 1

    @pytest.mark.parametrize("header", ["Bearer garbage", "Bearer a.b.c", "Token abc"])
    def test_invalid_token_gets_generic_message(self, api, header):
        resp = api.client.get("/api/v1/auth/me", headers={"Authorization": header})
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid token."

    @pytest.mark.parametrize("scheme", ["bearer", "BEARER", "BeArEr"])
    def test_scheme_is_case_insensitive(self, api, scheme):
        _, token = _student(api)
        resp = api.client.get("/api/v1/auth/me", headers={"Authorization": f"{scheme} {token}"})
        assert resp.status_code == 200
        assert resp.json()["username"] == "ada_lovelace"

    def test_expired_token(self, api):
        _, token = _student(api)
        api.clock.advance(hours=24, seconds=1)
        resp = api.client.get("/api/v1/auth/me", headers=bearer(token))
        assert resp.status_code == 401
        (event,) = _events(api, AuditAction.AUTHENTICATION_FAILED)
        assert event.details["reason"] == "expired"

    def test_deactivated_identity_token_stops_working(self, api):
        identity, token = _student(api)
        assert api.client.get("/api/v1/auth/me", headers=bearer(token)).status_code == 200
        api.core.credentials.set_active(identity.id, False)
        assert api.client.get("/api/v1/auth/me", headers=bearer(token)).status_code == 401

    def test_logout_is_recorded(self, api):
        identity, token = _student(api)
        resp = api.client.post("/api/v1/auth/logout", headers=bearer(token))
        assert resp.status_code == 200
        (event,) = _events(api, AuditAction.LOGOUT)
        assert event.actor_id == identity.id


# ---------------------------------------------------------------------------
# Self-service
# ---------------------------------------------------------------------------


class TestChangePassword:
    def _change(self, api, token, current, new):
        return api.client.post(
            "/api/v1/auth/change-password",
            headers=bearer(token),
            json={"currentPassword": current, "newPassword": new},
        )

    def test_change_revokes_old_token_and_issues_new_one(self, api):
        _, token = _student(api)
        api.clock.advance(minutes=1)

        resp = self._change(api, token, STUDENT_PASSWORD, ROTATION_PASSWORDS[0])

        assert resp.status_code == 200
        new_token = resp.json()["token"]
        api.clock.advance(seconds=1)
        assert api.client.get("/api/v1/auth/me", headers=bearer(token)).status_code == 401
        assert api.client.get("/api/v1/auth/me", headers=bearer(new_token)).status_code == 200
        assert len(_events(api, AuditAction.PASSWORD_CHANGED)) == 1

        login = api.client.post(
            "/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": ROTATION_PASSWORDS[0]}
        )
        assert login.status_code == 200

    def test_requires_recent_token(self, api):
        _, token = _student(api)
        api.clock.advance(minutes=16)
        resp = self._change(api, token, STUDENT_PASSWORD, ROTATION_PASSWORDS[0])
        assert resp.status_code == 401
        assert len(_events(api, AuditAction.REAUTHENTICATION_FAILED)) == 1

    def test_second_change_within_a_day_is_rejected(self, api):
        identity, token = _student(api)
        first = self._change(api, token, STUDENT_PASSWORD, ROTATION_PASSWORDS[0])
        api.clock.advance(hours=1)
        second_token = api.core.tokens.issue(api.core.credentials.find(identity.id))
        stored_hash = api.core.credentials.find(identity.id).password_hash

        resp = self._change(api, second_token, ROTATION_PASSWORDS[0], ROTATION_PASSWORDS[1])

        assert first.status_code == 200
        assert resp.status_code == 400
        assert "24 hours" in resp.json()["error"]["message"]
        assert api.core.credentials.find(identity.id).password_hash == stored_hash
        (event,) = _events(api, AuditAction.PASSWORD_CHANGE_FAILED)
        assert event.details["reason"] == "password_min_age"

    def test_wrong_current_password(self, api):
        _, token = _student(api)
        resp = self._change(api, token, "Wrong!Password99", ROTATION_PASSWORDS[0])
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Current password is incorrect."

    def test_policy_violation(self, api):
        _, token = _student(api)
        resp = self._change(api, token, STUDENT_PASSWORD, "short")
        assert resp.status_code == 400
        assert "short" not in resp.text


class TestProfile:
    def test_update_email(self, api):
        _, token = _student(api)
        resp = api.client.patch("/api/v1/auth/me", headers=bearer(token), json={"email": "ada.l@campus.edu"})
        assert resp.status_code == 200
        assert resp.json()["email"] == "ada.l@campus.edu"
        assert len(_events(api, AuditAction.PROFILE_UPDATED)) == 1

    def test_role_field_is_rejected(self, api):
        identity, token = _student(api)
        resp = api.client.patch(
            "/api/v1/auth/me", headers=bearer(token), json={"email": "ada.l@campus.edu", "role": "admin"}
        )
        assert resp.status_code == 400
        assert api.core.credentials.find(identity.id).role is Role.student

    def test_email_taken_is_conflict(self, api):
        _, token = _student(api)
        resp = api.client.patch("/api/v1/auth/me", headers=bearer(token), json={"email": "registrar@campus.edu"})
        assert resp.status_code == 409


# ---------------------------------------------------------------------------
# Identity management
# ---------------------------------------------------------------------------


class TestAdminUsers:
    def test_student_is_denied_with_one_audit_record(self, api):
        _, token = _student(api)
        resp = api.client.get("/api/v1/auth/users", headers=bearer(token))
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "Access denied. Insufficient privileges."
        (event,) = _events(api, AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT)
        assert event.details["user_role"] == "student"

    def test_admin_lists_users_without_secrets(self, api):
        _student(api)
        resp = api.client.get("/api/v1/auth/users", headers=bearer(api.admin_token))
        assert resp.status_code == 200
        assert {u["username"] for u in resp.json()} == {"registrar", "ada_lovelace"}
        assert "password_hash" not in resp.text
        assert "$2b$" not in resp.text

    def test_admin_creates_admin(self, api):
        resp = api.client.post(
            "/api/v1/auth/users",
            headers=bearer(api.admin_token),
            json={"username": "dean_of_cs", "email": "dean@campus.edu", "password": ADMIN_PASSWORD, "role": "admin"},
        )
        assert resp.status_code == 201
        assert resp.json()["role"] == "admin"
        (event,) = _events(api, AuditAction.USER_CREATED)
        assert event.actor_id == api.admin.id

    def test_role_change_is_audited_and_takes_effect_immediately(self, api):
        identity, token = _student(api)
        resp = api.client.patch(
            f"/api/v1/auth/users/{identity.id}", headers=bearer(api.admin_token), json={"role": "instructor"}
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "instructor"
        (event,) = _events(api, AuditAction.ROLE_CHANGED)
        assert event.details == {"from": "student", "to": "instructor"}

        # The old token still carries role=student; the live role is what counts.
        promoted = api.client.patch(
            f"/api/v1/auth/users/{identity.id}", headers=bearer(api.admin_token), json={"role": "admin"}
        )
        assert promoted.status_code == 200
        assert api.client.get("/api/v1/auth/users", headers=bearer(token)).status_code == 200

    def test_last_admin_cannot_be_demoted(self, api):
        resp = api.client.patch(
            f"/api/v1/auth/users/{api.admin.id}", headers=bearer(api.admin_token), json={"role": "student"}
        )
        assert resp.status_code == 400
        assert api.core.credentials.find(api.admin.id).role is Role.admin

    def test_admin_cannot_deactivate_self(self, api):
        resp = api.client.patch(
            f"/api/v1/auth/users/{api.admin.id}", headers=bearer(api.admin_token), json={"is_active": False}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "You cannot deactivate your own account."

    def test_deactivate_and_reactivate(self, api):
        identity, _ = _student(api)
        off = api.client.patch(
            f"/api/v1/auth/users/{identity.id}", headers=bearer(api.admin_token), json={"is_active": False}
        )
        on = api.client.patch(
            f"/api/v1/auth/users/{identity.id}", headers=bearer(api.admin_token), json={"is_active": True}
        )
        assert off.json()["is_active"] is False
        assert on.json()["is_active"] is True
        assert len(_events(api, AuditAction.ACCOUNT_DEACTIVATED)) == 1
        assert len(_events(api, AuditAction.ACCOUNT_ACTIVATED)) == 1

    def test_empty_patch_is_rejected(self, api):
        identity, _ = _student(api)
        resp = api.client.patch(f"/api/v1/auth/users/{identity.id}", headers=bearer(api.admin_token), json={})
        assert resp.status_code == 400

    def test_unlock(self, api):
        identity, _ = _student(api)
        for _ in range(5):
            api.client.post("/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": "Nope!Nope1234"})

        resp = api.client.post(f"/api/v1/auth/users/{identity.id}/unlock", headers=bearer(api.admin_token))

        assert resp.status_code == 200
        assert resp.json()["failed_attempts"] == 0
        assert resp.json()["locked_until"] is None
        (event,) = _events(api, AuditAction.ACCOUNT_UNLOCKED)
        assert event.details["previous_failed_attempts"] == 5
        login = api.client.post(
            "/api/v1/auth/login", json={"identifier": "ada_lovelace", "password": STUDENT_PASSWORD}
        )
        assert login.status_code == 200

    def test_mutual_demotion_leaves_one_admin(self, api):
        """Both requests read the other as an admin before either write lands."""
        second = api.core.credentials.register("dean_office", "dean@campus.edu", INSTRUCTOR_PASSWORD, Role.admin)
        first_snapshot = api.core.credentials.find(api.admin.id)
        second_snapshot = api.core.credentials.find(second.id)
        service = api.core.service
        ctx = SYSTEM_CONTEXT

        demoted = service.change_role(api.admin, second_snapshot, Role.student, ctx)
        refused = service.change_role(second, first_snapshot, Role.student, ctx)

        assert demoted.role is Role.student
        assert refused.reason == "last_active_admin"
        admins = [i for i in api.core.identity_store.list_identities() if i.role is Role.admin and i.is_active]
        assert [i.id for i in admins] == [api.admin.id]
        (event,) = _events(api, AuditAction.ROLE_CHANGED)
        assert event.resource_id == str(second.id)

    def test_last_active_admin_cannot_be_deactivated_by_stale_peer(self, api):
        second = api.core.credentials.register("dean_office", "dean@campus.edu", INSTRUCTOR_PASSWORD, Role.admin)
        stale = api.core.credentials.find(api.admin.id)
        api.core.service.set_active(api.admin, second, False, SYSTEM_CONTEXT)

        refused = api.core.service.set_active(second, stale, False, SYSTEM_CONTEXT)

        assert refused.reason == "last_active_admin"
        assert api.core.credentials.find(api.admin.id).is_active is True

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/v1/auth/users/99999999999999999999"),
            ("PATCH", "/api/v1/auth/users/99999999999999999999"),
            ("POST", "/api/v1/auth/users/99999999999999999999/unlock"),
            ("GET", "/api/v1/auth/users/0"),
        ],
    )
    def test_out_of_range_id_is_400(self, api, method, path):
        body = {"role": "student"} if method == "PATCH" else None
        resp = api.client.request(method, path, headers=bearer(api.admin_token), json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
        assert resp.json()["error"]["detail"][0]["field"] == "path.user_id"

    def test_unknown_user_is_404_for_admin(self, api):
        resp = api.client.patch("/api/v1/auth/users/9999", headers=bearer(api.admin_token), json={"role": "student"})
        assert resp.status_code == 404


class TestOwnership:
    def test_owner_reads_own_record(self, api):
        identity, token = _student(api)
        resp = api.client.get(f"/api/v1/auth/users/{identity.id}", headers=bearer(token))
        assert resp.status_code == 200
        assert resp.json()["username"] == "ada_lovelace"

    def test_other_user_is_denied_same_as_missing(self, api):
        _, token = _student(api)
        other, _ = _student(api, "alan_turing", INSTRUCTOR_PASSWORD)
        someone_else = api.client.get(f"/api/v1/auth/users/{other.id}", headers=bearer(token))
        missing = api.client.get("/api/v1/auth/users/9999", headers=bearer(token))
        assert someone_else.status_code == missing.status_code == 403
        assert someone_else.json() == missing.json()
        assert len(_events(api, AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT)) == 2

    def test_admin_reads_any_record(self, api):
        identity, _ = _student(api)
        resp = api.client.get(f"/api/v1/auth/users/{identity.id}", headers=bearer(api.admin_token))
        assert resp.status_code == 200


def test_storage_fault_is_generic_500(api):
    client = TestClient(app, raise_server_exceptions=False)
    fault = OperationalError("SELECT", {}, Exception("database is locked: /var/lib/campusguard"))
    with patch.object(api.core.identity_store, "list_identities", side_effect=fault):
        resp = client.get("/api/v1/auth/users", headers=bearer(api.admin_token))
    assert resp.status_code == 500
    assert resp.json() == {"error": {"code": "internal_error", "message": "An unexpected error occurred.", "detail": None}}
    assert "campusguard" not in resp.text

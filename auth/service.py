"""
auth/service.py -- AuthService: per-request composition of the security core.

Pattern: Facade / application service. Routes call one AuthService method per
request; the method composes CredentialStore, LockoutPolicy, TokenService and
AccountRecovery and then writes exactly one audit record describing what was
decided.
Components below this layer never write audit records themselves (the
AuthorizationEngine deny path is the one deliberate exception), so an attempt
that passes through several components is still logged once.

Return values follow auth/outcomes.py: expected rejections come back as
AuthFailure / TokenError, never as exceptions. Storage faults propagate.

build_security_core() wires every component from Settings. The FastAPI
lifespan, the CLI and the test suite all go through it, so the three can
never assemble the core differently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from audit.models import AuditAction, Outcome
from audit.store import AuditStore
from audit.trail import AuditTrail
from auth.authorization import AuthorizationEngine
from auth.credentials import CredentialStore, email_errors, password_policy_errors, username_errors
from auth.lockout import LockoutPolicy
from auth.models import SELF_SERVICE_ROLES, Identity, Role
from auth.outcomes import AuthFailure, FailureKind, IssuedToken, ResetGrant, TokenError, TokenErrorKind
from auth.recovery import AccountRecovery, SecurityQuestion
from auth.store import IdentityStore
from auth.tokens import TokenService
from core.clock import Clock, utcnow
from core.config import Settings
from core.context import RequestContext

logger = logging.getLogger("campusguard.auth.service")

DUPLICATE_IDENTITY = "duplicate_identity"
LAST_ADMIN = "last_active_admin"

# Credential failure reasons collapse to these three in LOGIN_FAILED records.
_LOGIN_REASONS = {
    "unknown_identifier": "invalid_credentials",
    "invalid_password": "invalid_credentials",
    "account_locked": "account_locked",
    "account_inactive": "account_inactive",
}


class AuthService:
    def __init__(
        self,
        credentials: CredentialStore,
        lockout: LockoutPolicy,
        tokens: TokenService,
        audit: AuditTrail,
        recovery: AccountRecovery,
    ) -> None:
        self.credentials = credentials
        self.lockout = lockout
        self.tokens = tokens
        self.audit = audit
        self.recovery = recovery

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        role: Role | str,
        context: RequestContext,
    ) -> IssuedToken | AuthFailure:
        """Self-service sign-up. Only SELF_SERVICE_ROLES may be requested."""
        failure = self._check_new_identity(username, email, password, role, allowed_roles=SELF_SERVICE_ROLES)
        if failure is None:
            try:
                identity = self.credentials.register(username, email, password, Role(role))
            except IntegrityError:
                failure = _duplicate()
        if failure is not None:
            self._record_validation_failure(failure, context, operation="register")
            return failure

        logger.info("Identity registered (identity_id=%s role=%s)", identity.id, identity.role.value)
        self.audit.record(
            AuditAction.USER_REGISTERED,
            context=context,
            actor_id=identity.id,
            resource_type="identity",
            resource_id=identity.id,
            details={"role": identity.role.value},
        )
        return self._issue(identity)

    def login(self, identifier: str, password: str, context: RequestContext) -> IssuedToken | AuthFailure:
        result = self.credentials.verify_credentials(identifier, password, lockout=self.lockout)
        if isinstance(result, AuthFailure):
            reason = _LOGIN_REASONS.get(result.reason, result.reason)
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                context=context,
                actor_id=result.identity_id,
                resource_type="identity",
                resource_id=result.identity_id,
                outcome=Outcome.failure,
                details={
                    "reason": reason,
                    "lockout_triggered": bool(result.detail.get("lockout_triggered", False)),
                    "failed_attempts": result.detail.get("failed_attempts"),
                },
            )
            return result

        self.audit.record(
            AuditAction.LOGIN_SUCCEEDED,
            context=context,
            actor_id=result.id,
            resource_type="identity",
            resource_id=result.id,
        )
        return self._issue(result)

    def logout(self, identity: Identity, context: RequestContext) -> None:
        """Tokens are stateless; logout is recorded and the client discards its token."""
        self.audit.record(
            AuditAction.LOGOUT,
            context=context,
            actor_id=identity.id,
            resource_type="identity",
            resource_id=identity.id,
        )

    # ------------------------------------------------------------------
    # Bearer authentication
    # ------------------------------------------------------------------

    def authenticate(
        self,
        raw_token: str | None,
        context: RequestContext,
        *,
        require_fresh: bool = False,
    ) -> Identity | TokenError:
        """Verify + revalidate a bearer token. Records only rejections."""
        if not raw_token:
            error = TokenError(TokenErrorKind.MALFORMED, reason="missing_token")
            self._record_token_failure(AuditAction.AUTHENTICATION_FAILED, error, context)
            return error

        claims = self.tokens.verify(raw_token)
        if isinstance(claims, TokenError):
            self._record_token_failure(AuditAction.AUTHENTICATION_FAILED, claims, context)
            return claims

        identity = self.tokens.revalidate(claims)
        if isinstance(identity, TokenError):
            self._record_token_failure(AuditAction.AUTHENTICATION_FAILED, identity, context)
            return identity

        if require_fresh and not self.tokens.is_fresh(claims):
            error = TokenError(TokenErrorKind.STALE, reason="reauthentication_required", subject_id=identity.id)
            self._record_token_failure(AuditAction.REAUTHENTICATION_FAILED, error, context)
            return error
        return identity

    def _record_token_failure(self, action: AuditAction, error: TokenError, context: RequestContext) -> None:
        self.audit.record(
            action,
            context=context,
            actor_id=error.subject_id,
            resource_type="session",
            outcome=Outcome.failure,
            details={"reason": error.kind.value, "cause": error.reason, "path": context.path},
        )

    # ------------------------------------------------------------------
    # Self-service
    # ------------------------------------------------------------------

    def change_password(
        self,
        identity: Identity,
        current_password: str,
        new_password: str,
        context: RequestContext,
    ) -> IssuedToken | AuthFailure:
        """Rotate the caller's password and hand back a token that survives the rotation."""
        problems = password_policy_errors(new_password)
        if problems:
            result = AuthFailure(
                kind=FailureKind.VALIDATION,
                reason="password_policy",
                identity_id=identity.id,
                message=problems[0],
                detail={"errors": problems},
            )
        else:
            result = self.credentials.change_password(identity, current_password, new_password)

        if isinstance(result, AuthFailure):
            self.audit.record(
                AuditAction.PASSWORD_CHANGE_FAILED,
                context=context,
                actor_id=identity.id,
                resource_type="identity",
                resource_id=identity.id,
                outcome=Outcome.failure,
                details={"reason": result.reason},
            )
            return result

        updated = result.identity
        logger.info("Password rotated (identity_id=%s)", updated.id)
        self.audit.record(
            AuditAction.PASSWORD_CHANGED,
            context=context,
            actor_id=updated.id,
            resource_type="identity",
            resource_id=updated.id,
            details={"history_size": len(updated.password_history)},
        )
        return self._issue(updated)

    def update_profile(self, identity: Identity, email: str, context: RequestContext) -> Identity | AuthFailure:
        """Self-service profile edit. Email is the only mutable field."""
        problems = email_errors(email)
        failure: AuthFailure | None = None
        if problems:
            failure = _invalid(problems, ["email"])
        else:
            try:
                updated = self.credentials.update_email(identity.id, email)
            except IntegrityError:
                failure = _duplicate()
        if failure is not None:
            self._record_validation_failure(failure, context, operation="update_profile", actor_id=identity.id)
            return failure

        self.audit.record(
            AuditAction.PROFILE_UPDATED,
            context=context,
            actor_id=identity.id,
            resource_type="identity",
            resource_id=identity.id,
            details={"changed": ["email"]},
        )
        return updated

    # ------------------------------------------------------------------
    # Administration (route layer enforces require_roles(Role.admin))
    # ------------------------------------------------------------------

    def create_identity(
        self,
        admin: Identity | None,
        username: str,
        email: str,
        password: str,
        role: Role | str,
        context: RequestContext,
    ) -> Identity | AuthFailure:
        """Admin-provisioned identity; any role allowed. admin is None for CLI bootstrap."""
        actor_id = admin.id if admin is not None else None
        failure = self._check_new_identity(username, email, password, role, allowed_roles=frozenset(Role))
        if failure is None:
            try:
                identity = self.credentials.register(username, email, password, Role(role))
            except IntegrityError:
                failure = _duplicate()
        if failure is not None:
            self._record_validation_failure(failure, context, operation="create_identity", actor_id=actor_id)
            return failure

        logger.info("Identity created by admin (identity_id=%s role=%s)", identity.id, identity.role.value)
        self.audit.record(
            AuditAction.USER_CREATED,
            context=context,
            actor_id=actor_id,
            resource_type="identity",
            resource_id=identity.id,
            details={"role": identity.role.value},
        )
        return identity

    def change_role(
        self, admin: Identity, target: Identity, role: Role, context: RequestContext
    ) -> Identity | AuthFailure:
        """The last-admin rule is checked by the UPDATE itself, not against the target snapshot."""
        updated = self.credentials.set_role(target.id, role)
        if updated is None:
            failure = _last_admin()
            self._record_validation_failure(failure, context, operation="change_role", actor_id=admin.id)
            return failure

        self.audit.record(
            AuditAction.ROLE_CHANGED,
            context=context,
            actor_id=admin.id,
            resource_type="identity",
            resource_id=target.id,
            details={"from": target.role.value, "to": role.value},
        )
        return updated

    def set_active(
        self, admin: Identity, target: Identity, is_active: bool, context: RequestContext
    ) -> Identity | AuthFailure:
        failure: AuthFailure | None = None
        updated: Identity | None = None
        if not is_active and target.id == admin.id:
            failure = AuthFailure(
                kind=FailureKind.VALIDATION,
                reason="self_deactivation",
                message="You cannot deactivate your own account.",
            )
        else:
            updated = self.credentials.set_active(target.id, is_active)
            if updated is None:
                failure = _last_admin()
        if failure is not None:
            self._record_validation_failure(failure, context, operation="set_active", actor_id=admin.id)
            return failure

        self.audit.record(
            AuditAction.ACCOUNT_ACTIVATED if is_active else AuditAction.ACCOUNT_DEACTIVATED,
            context=context,
            actor_id=admin.id,
            resource_type="identity",
            resource_id=target.id,
        )
        return updated

    # ------------------------------------------------------------------
    # Security-question recovery
    # ------------------------------------------------------------------

    def set_security_questions(
        self, identity: Identity, answers: list[tuple[str, str]], context: RequestContext
    ) -> Identity | AuthFailure:
        result = self.recovery.enroll(identity, answers)
        if isinstance(result, AuthFailure):
            self._record_validation_failure(result, context, operation="set_security_questions", actor_id=identity.id)
            return result

        self.audit.record(
            AuditAction.SECURITY_QUESTIONS_SET,
            context=context,
            actor_id=identity.id,
            resource_type="identity",
            resource_id=identity.id,
            details={"question_ids": [a.question_id for a in result.security_questions]},
        )
        return result

    def initiate_password_reset(self, identifier: str, context: RequestContext) -> list[SecurityQuestion]:
        """Always answers with three questions; decoys when there is nothing real to ask."""
        identity, questions = self.recovery.questions_for(identifier)
        self.audit.record(
            AuditAction.PASSWORD_RESET_INITIATED,
            context=context,
            actor_id=identity.id if identity else None,
            resource_type="identity",
            resource_id=identity.id if identity else None,
            details={"has_security_questions": bool(identity and identity.security_questions)},
        )
        return questions

    def verify_password_reset(
        self, identifier: str, answers: dict[str, str], context: RequestContext
    ) -> ResetGrant | AuthFailure:
        result = self.recovery.verify_answers(identifier, answers)
        if isinstance(result, AuthFailure):
            self._record_reset_failure(result, context, step="verify")
            return result

        self.audit.record(
            AuditAction.PASSWORD_RESET_VERIFIED,
            context=context,
            actor_id=result.identity.id,
            resource_type="identity",
            resource_id=result.identity.id,
            details={"expires_in": result.expires_in},
        )
        return result

    def complete_password_reset(
        self, reset_token: str, new_password: str, context: RequestContext
    ) -> Identity | AuthFailure:
        """Spend a reset token. Bearer tokens issued before the reset stop working."""
        problems = password_policy_errors(new_password)
        if problems:
            result = AuthFailure(
                kind=FailureKind.VALIDATION,
                reason="password_policy",
                message=problems[0],
                detail={"errors": problems},
            )
        else:
            result = self.recovery.complete(reset_token, new_password)

        if isinstance(result, AuthFailure):
            self._record_reset_failure(result, context, step="complete")
            return result

        updated = result.identity
        logger.info("Password reset completed (identity_id=%s)", updated.id)
        self.audit.record(
            AuditAction.PASSWORD_RESET_COMPLETED,
            context=context,
            actor_id=updated.id,
            resource_type="identity",
            resource_id=updated.id,
        )
        return updated

    def _record_reset_failure(self, failure: AuthFailure, context: RequestContext, *, step: str) -> None:
        details = {"step": step, "reason": failure.reason}
        for key in ("failed_attempts", "lockout_triggered"):
            if key in failure.detail:
                details[key] = failure.detail[key]
        self.audit.record(
            AuditAction.PASSWORD_RESET_FAILED,
            context=context,
            actor_id=failure.identity_id,
            resource_type="identity",
            resource_id=failure.identity_id,
            outcome=Outcome.failure,
            details=details,
        )

    def unlock(self, admin: Identity, target: Identity, context: RequestContext) -> Identity:
        updated = self.lockout.unlock(target)
        self.audit.record(
            AuditAction.ACCOUNT_UNLOCKED,
            context=context,
            actor_id=admin.id,
            resource_type="identity",
            resource_id=target.id,
            details={"previous_failed_attempts": target.failed_attempts},
        )
        return updated

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue(self, identity: Identity) -> IssuedToken:
        return IssuedToken(identity=identity, token=self.tokens.issue(identity), expires_in=self.tokens.expire_seconds)

    @staticmethod
    def _check_new_identity(
        username: str,
        email: str,
        password: str,
        role: Role | str,
        *,
        allowed_roles: frozenset[Role],
    ) -> AuthFailure | None:
        problems: list[str] = []
        fields: list[str] = []
        for name, errors in (
            ("username", username_errors(username)),
            ("email", email_errors(email)),
            ("password", password_policy_errors(password)),
        ):
            if errors:
                fields.append(name)
                problems.extend(errors)
        try:
            role_ok = Role(role) in allowed_roles
        except ValueError:
            role_ok = False
        if not role_ok:
            fields.append("role")
            problems.append("Invalid role.")
        return _invalid(problems, fields) if problems else None

    def _record_validation_failure(
        self,
        failure: AuthFailure,
        context: RequestContext,
        *,
        operation: str,
        actor_id: int | None = None,
    ) -> None:
        self.audit.record(
            AuditAction.VALIDATION_FAILURE,
            context=context,
            actor_id=actor_id,
            resource_type="identity",
            outcome=Outcome.failure,
            details={"operation": operation, "reason": failure.reason, "fields": failure.detail.get("fields", [])},
        )


def _invalid(problems: list[str], fields: list[str]) -> AuthFailure:
    return AuthFailure(
        kind=FailureKind.VALIDATION,
        reason="invalid_input",
        message=problems[0],
        detail={"errors": problems, "fields": fields},
    )


def _duplicate() -> AuthFailure:
    return AuthFailure(kind=FailureKind.VALIDATION, reason=DUPLICATE_IDENTITY, message="Username or email already exists.")


def _last_admin() -> AuthFailure:
    return AuthFailure(
        kind=FailureKind.VALIDATION,
        reason=LAST_ADMIN,
        message="Cannot demote or deactivate the last active administrator.",
    )


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class SecurityCore:
    identity_store: IdentityStore
    audit_store: AuditStore
    audit: AuditTrail
    credentials: CredentialStore
    lockout: LockoutPolicy
    tokens: TokenService
    authorization: AuthorizationEngine
    recovery: AccountRecovery
    service: AuthService

    def close(self) -> None:
        self.identity_store.close()
        self.audit_store.close()


def build_security_core(
    settings: Settings,
    identity_store: IdentityStore | None = None,
    audit_store: AuditStore | None = None,
    clock: Clock = utcnow,
) -> SecurityCore:
    """Assemble every security component from settings.

    Stores default to the URLs in settings; tests pass in-memory stores.
    """
    identity_store = identity_store or IdentityStore(
        settings.identity_db_url, history_capacity=settings.password_history_size
    )
    audit_store = audit_store or AuditStore(settings.audit_db_url)
    audit = AuditTrail(audit_store, clock=clock)
    credentials = CredentialStore(
        identity_store,
        bcrypt_rounds=settings.bcrypt_rounds,
        min_password_age=timedelta(seconds=settings.password_min_age_seconds),
        history_capacity=settings.password_history_size,
        clock=clock,
    )
    lockout = LockoutPolicy(
        identity_store,
        threshold=settings.lockout_threshold,
        duration=timedelta(seconds=settings.lockout_duration_seconds),
        clock=clock,
    )
    tokens = TokenService(
        settings.secret_key,
        identity_store,
        lockout,
        expire_seconds=settings.token_expire_seconds,
        reauth_window_seconds=settings.reauth_window_seconds,
        clock=clock,
    )
    recovery = AccountRecovery(
        credentials,
        lockout,
        secret_key=settings.secret_key,
        token_ttl=timedelta(seconds=settings.password_reset_token_seconds),
        clock=clock,
    )
    return SecurityCore(
        identity_store=identity_store,
        audit_store=audit_store,
        audit=audit,
        credentials=credentials,
        lockout=lockout,
        tokens=tokens,
        authorization=AuthorizationEngine(audit),
        recovery=recovery,
        service=AuthService(credentials, lockout, tokens, audit, recovery),
    )

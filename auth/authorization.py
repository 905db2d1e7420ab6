"""
auth/authorization.py -- AuthorizationEngine: the single role/ownership decision point.

Every protected route reaches a decision through this class, either via the
require_roles() dependency (role gates) or check_ownership() (self-or-admin
resources). Nothing else in CampusGuard compares roles, so the deny message
and the audit record cannot drift between endpoints.

Roles arrive here in whatever shape the caller has (Role member or raw
string) and are coerced to the closed Role enum in _coerce_role(). A value
that is not a Role is denied rather than raised on.

Every Deny writes exactly one UNAUTHORIZED_ACCESS_ATTEMPT event before the
Decision is returned, so the record exists before any response is built.
The reason string is for the audit trail only -- callers always answer with
ACCESS_DENIED_MESSAGE whatever the cause.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from audit.models import AuditAction, Outcome
from audit.trail import AuditTrail
from auth.models import Role
from auth.outcomes import Decision
from core.context import RequestContext

logger = logging.getLogger("campusguard.auth.authorization")


def _coerce_role(role: Role | str | None) -> Role | None:
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


class AuthorizationEngine:
    def __init__(self, audit: AuditTrail) -> None:
        self._audit = audit

    def decide(
        self,
        role: Role | str | None,
        required_roles: Iterable[Role],
        *,
        context: RequestContext,
        subject_id: int | None = None,
        resource_type: str = "endpoint",
        resource_id: int | str | None = None,
    ) -> Decision:
        """Allow iff the subject's role is one of required_roles."""
        required = frozenset(required_roles)
        subject_role = _coerce_role(role)
        if subject_role is None:
            decision = Decision.deny("unknown_role")
        elif subject_role in required:
            return Decision.allow()
        else:
            decision = Decision.deny("insufficient_role")
        self._record_denial(
            decision,
            context=context,
            subject_id=subject_id,
            subject_role=role,
            required=required,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        return decision

    def check_ownership(
        self,
        subject_id: int,
        owner_id: int | None,
        role: Role | str | None,
        *,
        context: RequestContext,
        resource_type: str,
        resource_id: int | str | None = None,
    ) -> Decision:
        """Allow iff the subject is an admin or owns the resource."""
        subject_role = _coerce_role(role)
        if subject_role is Role.admin:
            return Decision.allow()
        if subject_role is not None and owner_id is not None and subject_id == owner_id:
            return Decision.allow()
        decision = Decision.deny("unknown_role" if subject_role is None else "not_owner")
        self._record_denial(
            decision,
            context=context,
            subject_id=subject_id,
            subject_role=role,
            required=frozenset({Role.admin}),
            resource_type=resource_type,
            resource_id=resource_id,
        )
        return decision

    def _record_denial(
        self,
        decision: Decision,
        *,
        context: RequestContext,
        subject_id: int | None,
        subject_role: Role | str | None,
        required: frozenset[Role],
        resource_type: str,
        resource_id: int | str | None,
    ) -> None:
        role_value = subject_role.value if isinstance(subject_role, Role) else subject_role
        logger.warning(
            "Access denied (subject=%s role=%s path=%s reason=%s)",
            subject_id,
            role_value,
            context.path,
            decision.reason,
        )
        self._audit.record(
            AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT,
            context=context,
            actor_id=subject_id,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=Outcome.failure,
            details={
                "reason": decision.reason,
                "required_roles": sorted(r.value for r in required),
                "user_role": role_value,
                "path": context.path,
            },
        )

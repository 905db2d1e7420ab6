"""
audit/models.py -- Domain dataclasses and enums for the security audit trail.

Pattern: Data class (pure data container, zero logic beyond derived
properties). audit/store.py persists these; audit/trail.py creates them.

AuditAction is the canonical, closed taxonomy. Each security-relevant decision
maps to exactly one member, so dashboards and filters never have to union
near-duplicate names ("LOGIN" vs "LOGIN_SUCCESS") to count the same event.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class AuditAction(str, Enum):
    # Identity lifecycle
    USER_REGISTERED = "USER_REGISTERED"
    USER_CREATED = "USER_CREATED"
    PROFILE_UPDATED = "PROFILE_UPDATED"
    ROLE_CHANGED = "ROLE_CHANGED"
    ACCOUNT_ACTIVATED = "ACCOUNT_ACTIVATED"
    ACCOUNT_DEACTIVATED = "ACCOUNT_DEACTIVATED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"

    # Authentication
    LOGIN_SUCCEEDED = "LOGIN_SUCCEEDED"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    REAUTHENTICATION_FAILED = "REAUTHENTICATION_FAILED"

    # Credential rotation
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_CHANGE_FAILED = "PASSWORD_CHANGE_FAILED"

    # Security-question recovery
    SECURITY_QUESTIONS_SET = "SECURITY_QUESTIONS_SET"
    PASSWORD_RESET_INITIATED = "PASSWORD_RESET_INITIATED"
    PASSWORD_RESET_VERIFIED = "PASSWORD_RESET_VERIFIED"
    PASSWORD_RESET_FAILED = "PASSWORD_RESET_FAILED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"

    # Authorization and input
    UNAUTHORIZED_ACCESS_ATTEMPT = "UNAUTHORIZED_ACCESS_ATTEMPT"
    VALIDATION_FAILURE = "VALIDATION_FAILURE"

    # Audit reads (the trail audits its own readers)
    VIEW_AUDIT_LOGS = "VIEW_AUDIT_LOGS"
    VIEW_AUDIT_STATS = "VIEW_AUDIT_STATS"
    VIEW_SECURITY_EVENTS = "VIEW_SECURITY_EVENTS"
    VIEW_USER_ACTIVITY = "VIEW_USER_ACTIVITY"


# Actions that always indicate a rejected or suspicious request. Used by the
# /audit/security view together with outcome == failure.
SECURITY_ACTIONS: frozenset[AuditAction] = frozenset(
    {
        AuditAction.LOGIN_FAILED,
        AuditAction.AUTHENTICATION_FAILED,
        AuditAction.REAUTHENTICATION_FAILED,
        AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT,
        AuditAction.PASSWORD_CHANGE_FAILED,
        AuditAction.PASSWORD_RESET_FAILED,
        AuditAction.VALIDATION_FAILURE,
    }
)


class Outcome(str, Enum):
    success = "success"
    failure = "failure"


@dataclass(frozen=True)
class SecurityEvent:
    """One immutable audit record.

    actor_id is None for pre-authentication failures (unknown identifier,
    missing or undecodable token). details never carries plaintext secrets --
    AuditTrail redacts secret-looking keys before the event is built.

    id is None until the store assigns one on insert.
    """

    action: AuditAction
    resource_type: str
    source_address: str
    user_agent: str
    timestamp: datetime
    outcome: Outcome = Outcome.success
    actor_id: int | None = None
    resource_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    error_detail: str | None = None
    id: int | None = None

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.success


@dataclass(frozen=True)
class EventFilter:
    """Query filters for AuditTrail.query(). Every field is optional.

    security_only narrows to SECURITY_ACTIONS or any failed outcome.
    """

    actor_id: int | None = None
    action: AuditAction | None = None
    start: datetime | None = None
    end: datetime | None = None
    outcome: Outcome | None = None
    security_only: bool = False


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

"""
API request and response models for CampusGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Request models check shape only (types, presence, coarse length caps). The
password/username/email policy lives in auth/credentials.py so the CLI and
the API enforce the same rules. Nothing here strips or rewrites input: a value
that does not fit is rejected, never corrected.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from audit.models import Page, SecurityEvent
from auth.models import Identity, Role

# Largest id a path or query parameter may carry (SQLite INTEGER is signed 64-bit).
ID_MAX = 2**63 - 1

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    username: str = Field(max_length=255)
    email: str = Field(max_length=255)
    password: str = Field(max_length=255)
    confirm_password: str = Field(alias="confirmPassword", max_length=255)
    role: Role = Role.student

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match.")
        return self


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. identifier is a username or an email."""

    model_config = ConfigDict(extra="forbid")

    identifier: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    current_password: str = Field(alias="currentPassword", min_length=1, max_length=255)
    new_password: str = Field(alias="newPassword", max_length=255)


class ProfileUpdate(BaseModel):
    """Request body for PATCH /api/v1/auth/me.

    extra="forbid" is what rejects a smuggled `role` (or any other field):
    role changes go through the admin endpoint only.
    """

    model_config = ConfigDict(extra="forbid")

    email: str = Field(max_length=255)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (admin only). Any role may be assigned."""

    model_config = ConfigDict(extra="forbid")

    username: str = Field(max_length=255)
    email: str = Field(max_length=255)
    password: str = Field(max_length=255)
    role: Role = Role.student


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id} (admin only)."""

    model_config = ConfigDict(extra="forbid")

    role: Optional[Role] = None
    is_active: Optional[bool] = None


class SecurityAnswerIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    question_id: str = Field(alias="questionId", min_length=1, max_length=64)
    answer: str = Field(min_length=1, max_length=100)


class SecurityQuestionsRequest(BaseModel):
    """Request body for POST /api/v1/auth/security-questions. The count rule lives in auth/recovery.py."""

    model_config = ConfigDict(extra="forbid")

    questions: list[SecurityAnswerIn] = Field(max_length=10)


class ResetInitiateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    identifier: str = Field(min_length=1, max_length=255)


class ResetVerifyRequest(BaseModel):
    """Request body for POST /api/v1/auth/password-reset/verify. Every enrolled question must be answered."""

    model_config = ConfigDict(extra="forbid")

    identifier: str = Field(min_length=1, max_length=255)
    answers: list[SecurityAnswerIn] = Field(min_length=1, max_length=10)


class ResetCompleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    reset_token: str = Field(alias="resetToken", min_length=1, max_length=255)
    new_password: str = Field(alias="newPassword", max_length=255)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: Role

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserSummary":
        return cls(**identity.summary())


class TokenResponse(BaseModel):
    """Response for register, login and change-password: a bearer token plus who it is for."""

    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserSummary


class UserResponse(BaseModel):
    """Full identity view (self or admin). Never includes the hash or history."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: Role
    is_active: bool
    failed_attempts: int
    locked_until: Optional[str] = None
    last_login: Optional[str] = None
    password_changed_at: Optional[str] = None
    created_at: Optional[str] = None
    has_security_questions: bool = False

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserResponse":
        """Factory Method -- the mapping lives beside the output model, not in route handlers."""
        return cls(
            id=identity.id,
            username=identity.username,
            email=identity.email,
            role=identity.role,
            is_active=identity.is_active,
            failed_attempts=identity.failed_attempts,
            locked_until=_iso(identity.locked_until),
            last_login=_iso(identity.last_login),
            password_changed_at=_iso(identity.password_changed_at),
            created_at=_iso(identity.created_at),
            has_security_questions=bool(identity.security_questions),
        )


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SecurityQuestionOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    question: str
    category: str
    guidance: str


class SecurityQuestionCatalogue(BaseModel):
    """Response for GET /api/v1/auth/security-questions."""

    model_config = ConfigDict(frozen=True)

    questions: list[SecurityQuestionOut]
    required: int
    guidelines: dict[str, Any]


class ResetQuestionsResponse(BaseModel):
    """Response for POST /api/v1/auth/password-reset/initiate. Same shape whether or not the account exists."""

    model_config = ConfigDict(frozen=True)

    message: str
    questions: list[SecurityQuestionOut]


class ResetTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message: str
    reset_token: str = Field(alias="resetToken")
    expires_in: int = Field(alias="expiresIn")


# ---------------------------------------------------------------------------
# Audit -- response models
# ---------------------------------------------------------------------------


class SecurityEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    actor_id: Optional[int]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: dict[str, Any]
    source_address: str
    user_agent: str
    timestamp: str
    outcome: str
    success: bool
    error_detail: Optional[str] = None

    @classmethod
    def from_event(cls, event: SecurityEvent) -> "SecurityEventResponse":
        return cls(
            id=event.id,
            actor_id=event.actor_id,
            action=event.action.value,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            details=event.details,
            source_address=event.source_address,
            user_agent=event.user_agent,
            timestamp=event.timestamp.isoformat(),
            outcome=event.outcome.value,
            success=event.success,
            error_detail=event.error_detail,
        )


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    limit: int
    total: int
    pages: int


class AuditLogPage(BaseModel):
    """Response for the paginated audit listings."""

    model_config = ConfigDict(frozen=True)

    logs: list[SecurityEventResponse]
    pagination: Pagination

    @classmethod
    def from_page(cls, page: Page[SecurityEvent]) -> "AuditLogPage":
        return cls(
            logs=[SecurityEventResponse.from_event(e) for e in page.items],
            pagination=Pagination(page=page.page, limit=page.limit, total=page.total, pages=page.pages),
        )


class AuditStatsResponse(BaseModel):
    """Response for GET /api/v1/audit/stats."""

    model_config = ConfigDict(frozen=True)

    total_events: int
    last_24_hours: int
    failed_logins: int
    successful_logins: int
    top_actions: dict[str, int]

"""
auth/outcomes.py -- Tagged result values for expected security outcomes.

A wrong password, a locked account, an expired token and a role mismatch are
not errors -- they are ordinary answers the caller must branch on. They are
returned as frozen values, never raised. Only infrastructure faults (the DB is
gone, bcrypt blew up) travel as exceptions, and those end at the catch-all
500 handler in api/main.py, which never echoes their detail.

Each value carries two kinds of text:
  reason  -- internal, machine-readable; goes to the audit trail.
  message -- public, deliberately generic; goes to the HTTP response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from auth.models import Identity


class FailureKind(str, Enum):
    AUTHENTICATION = "authentication_failure"
    ACCOUNT_LOCKED = "account_locked"
    TOKEN_INVALID = "token_invalid"
    AUTHORIZATION_DENIED = "authorization_denied"
    VALIDATION = "validation_failure"


GENERIC_MESSAGES: dict[FailureKind, str] = {
    FailureKind.AUTHENTICATION: "Invalid username or password.",
    FailureKind.ACCOUNT_LOCKED: (
        "Account is temporarily locked due to multiple failed login attempts. Please try again later."
    ),
    FailureKind.TOKEN_INVALID: "Invalid token.",
    FailureKind.AUTHORIZATION_DENIED: "Access denied. Insufficient privileges.",
    FailureKind.VALIDATION: "Request validation failed.",
}

ACCESS_DENIED_MESSAGE = GENERIC_MESSAGES[FailureKind.AUTHORIZATION_DENIED]


@dataclass(frozen=True)
class AuthFailure:
    """An expected, non-exceptional rejection.

    identity_id is set when the rejection concerns a known identity (wrong
    password, locked account) so the audit record can name the actor; it is
    None for unknown identifiers. message overrides the generic text only for
    VALIDATION failures, where the user needs to know which rule they broke.
    """

    kind: FailureKind
    reason: str
    identity_id: int | None = None
    message: str = ""
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def public_message(self) -> str:
        if self.kind is FailureKind.VALIDATION and self.message:
            return self.message
        return GENERIC_MESSAGES[self.kind]


@dataclass(frozen=True)
class PasswordChanged:
    identity: Identity


@dataclass(frozen=True)
class IssuedToken:
    """Successful register/login/rotation: the identity plus a fresh bearer token."""

    identity: Identity
    token: str
    expires_in: int


@dataclass(frozen=True)
class ResetGrant:
    """Correct recovery answers: a single-use password reset token (plaintext, shown once)."""

    identity: Identity
    reset_token: str
    expires_in: int


class TokenErrorKind(str, Enum):
    MALFORMED = "malformed"
    EXPIRED = "expired"
    SIGNATURE_INVALID = "signature_invalid"
    STALE = "stale"


@dataclass(frozen=True)
class TokenError:
    """Why a bearer token was refused. Every kind maps to the same public 401."""

    kind: TokenErrorKind
    reason: str = ""
    subject_id: int | None = None

    @property
    def public_message(self) -> str:
        return GENERIC_MESSAGES[FailureKind.TOKEN_INVALID]


@dataclass(frozen=True)
class TokenClaims:
    subject_id: int
    role: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class Decision:
    """AuthorizationEngine verdict. Use Decision.allow() / Decision.deny(reason)."""

    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(allowed=False, reason=reason)

    def __bool__(self) -> bool:
        return self.allowed

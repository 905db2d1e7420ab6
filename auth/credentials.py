"""
auth/credentials.py -- CredentialStore: verification, rotation, password policy.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). bcrypt's cost factor makes
       offline brute force expensive. It also only looks at the first 72 bytes
       of input -- and recent bcrypt releases raise instead of truncating -- so
       the password policy caps new passwords at 72 UTF-8 bytes up front.

  Timing equalization: verify_credentials() always runs one bcrypt comparison
       for an unknown identifier, against a dummy hash of the same cost, so
       response time does not reveal whether a username exists.

  Lockout ordering: when a LockoutPolicy is passed in, verify_credentials()
       checks is_locked() BEFORE touching bcrypt. A locked account costs no hash
       work and gives no timing signal about whether the submitted password was
       right.

  No audit writes here. AuthService (auth/service.py) records exactly one
       event per call, so composing CredentialStore with LockoutPolicy can never
       double-log an attempt.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import bcrypt

from auth.models import Identity, PasswordHistory, Role
from auth.outcomes import AuthFailure, FailureKind, PasswordChanged
from auth.store import IdentityStore
from core.clock import Clock, utcnow

if TYPE_CHECKING:
    from auth.lockout import LockoutPolicy

logger = logging.getLogger("campusguard.auth.credentials")

# ---------------------------------------------------------------------------
# Input policy
#
# Policy checks return a list of human-readable problems; an empty list means
# the value is acceptable. Values are never trimmed or rewritten -- a value
# that breaks a rule is rejected outright.
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_BYTES = 72
PASSWORD_SPECIALS = "@$!%*?&"

_COMMON_PASSWORDS = frozenset(
    p.lower()
    for p in (
        "Password123!",
        "Admin123456!",
        "Welcome123!",
        "Qwerty123456!",
        "Password1!",
        "Admin1234!",
        "Letmein123!",
        "Changeme123!",
    )
)
_SEQUENTIAL = re.compile(r"123456|abcdef|qwerty", re.IGNORECASE)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,30}$")
RESERVED_USERNAMES = frozenset({"admin", "administrator", "root", "system", "api", "test", "demo", "guest"})

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}$")
DISPOSABLE_EMAIL_DOMAINS = frozenset({"10minutemail.com", "tempmail.org", "guerrillamail.com", "mailinator.com"})


def password_policy_errors(plain: str) -> list[str]:
    errors: list[str] = []
    if len(plain) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")
    if len(plain.encode("utf-8")) > PASSWORD_MAX_BYTES:
        errors.append(f"Password must not exceed {PASSWORD_MAX_BYTES} bytes.")
    if not (
        re.search(r"[a-z]", plain)
        and re.search(r"[A-Z]", plain)
        and re.search(r"\d", plain)
        and any(ch in PASSWORD_SPECIALS for ch in plain)
    ):
        errors.append(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            f"one number, and one special character ({PASSWORD_SPECIALS})."
        )
    if plain.lower() in _COMMON_PASSWORDS:
        errors.append("Password is too common. Please choose a more secure password.")
    if _SEQUENTIAL.search(plain):
        errors.append("Password cannot contain sequential characters.")
    return errors


def username_errors(username: str) -> list[str]:
    if not USERNAME_PATTERN.match(username):
        return ["Username must be 3-30 characters and contain only letters, numbers, and underscores."]
    if username.lower() in RESERVED_USERNAMES:
        return ["Username is reserved and cannot be used."]
    return []


def email_errors(email: str) -> list[str]:
    if len(email) > 255 or not EMAIL_PATTERN.match(email):
        return ["Please provide a valid email."]
    if email.rsplit("@", 1)[1].lower() in DISPOSABLE_EMAIL_DOMAINS:
        return ["Disposable email addresses are not allowed."]
    return []


# ---------------------------------------------------------------------------
# Hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash.

    An over-long candidate (bcrypt raises ValueError past 72 bytes) simply
    does not match -- it cannot be a password this service ever accepted.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# CredentialStore
# ---------------------------------------------------------------------------


class CredentialStore:
    def __init__(
        self,
        store: IdentityStore,
        *,
        bcrypt_rounds: int = 12,
        min_password_age: timedelta = timedelta(hours=24),
        history_capacity: int = 5,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self._rounds = bcrypt_rounds
        self._min_age = min_password_age
        self._history_capacity = history_capacity
        self._clock = clock
        # Same cost as real hashes so the unknown-identifier path takes as long
        # as the wrong-password path.
        self._dummy_hash = hash_password("campusguard-timing-equalizer", bcrypt_rounds)

    def hash(self, plain: str) -> str:
        return hash_password(plain, self._rounds)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_credentials(
        self,
        identifier: str,
        plaintext: str,
        *,
        lockout: LockoutPolicy | None = None,
    ) -> Identity | AuthFailure:
        """Check identifier (username or email) + password.

        Unknown identifier and wrong password return the same
        AUTHENTICATION failure kind; only `reason` (audit-only) differs.
        Inactive accounts are checked after the password so that the
        inactive/wrong-password distinction is only visible to someone who
        already knows the password.
        """
        identity = self.store.get_by_identifier(identifier)
        if identity is None:
            verify_password(plaintext, self._dummy_hash)
            return AuthFailure(kind=FailureKind.AUTHENTICATION, reason="unknown_identifier")

        if lockout is not None and lockout.is_locked(identity):
            return AuthFailure(
                kind=FailureKind.ACCOUNT_LOCKED,
                reason="account_locked",
                identity_id=identity.id,
                detail={"locked_until": identity.locked_until.isoformat()},
            )

        if not verify_password(plaintext, identity.password_hash):
            detail: dict = {}
            if lockout is not None:
                updated = lockout.record_failure(identity)
                detail = {
                    "failed_attempts": updated.failed_attempts,
                    "lockout_triggered": lockout.is_locked(updated),
                }
            return AuthFailure(
                kind=FailureKind.AUTHENTICATION,
                reason="invalid_password",
                identity_id=identity.id,
                detail=detail,
            )

        if not identity.is_active:
            return AuthFailure(kind=FailureKind.AUTHENTICATION, reason="account_inactive", identity_id=identity.id)

        if lockout is not None:
            identity = lockout.record_success(identity)
        return identity

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def change_password(self, identity: Identity, current_plain: str, new_plain: str) -> PasswordChanged | AuthFailure:
        """Rotate the password after re-verifying the current one.

        Checks, in order: current password, minimum age (skipped on the first
        change), reuse of the current password, reuse of any history entry.
        The write is a compare-and-swap on the old hash.
        """
        if not verify_password(current_plain, identity.password_hash):
            return self._rejected(identity, "current_password_incorrect", "Current password is incorrect.")

        now = self._clock()
        if identity.password_changed_at is not None and now - identity.password_changed_at < self._min_age:
            hours = int(self._min_age.total_seconds() // 3600)
            return self._rejected(
                identity,
                "password_min_age",
                f"Password cannot be changed within {hours} hours of the last change.",
            )

        result = self._rotate(identity, new_plain, now)
        if result is None:
            logger.warning("Password rotation lost a concurrent update (identity_id=%s)", identity.id)
            return self._rejected(
                identity, "concurrent_password_change", "Password was changed by another request. Please try again."
            )
        return result

    def reset_password(self, identity: Identity, new_plain: str, token_hash: str) -> PasswordChanged | AuthFailure:
        """Rotate the password of a user who proved ownership with a reset token.

        The current password is unknown, so there is nothing to re-verify and
        the minimum-age rule does not apply. The reuse rules do. The swap is
        guarded on token_hash as well as the old hash; a token that was already
        spent (or replaced) updates nothing. A successful reset also clears
        any lockout.
        """
        result = self._rotate(identity, new_plain, self._clock(), reset_token_hash=token_hash)
        if result is None:
            return self._rejected(identity, "invalid_reset_token", "Invalid or expired reset token.")
        if isinstance(result, PasswordChanged):
            self.store.reset_lockout(identity.id)
            return PasswordChanged(identity=self.store.get_by_id(identity.id))
        return result

    def _rotate(
        self,
        identity: Identity,
        new_plain: str,
        now: datetime,
        *,
        reset_token_hash: str | None = None,
    ) -> PasswordChanged | AuthFailure | None:
        """Reuse checks, then the compare-and-swap. None means the swap matched no row."""
        if verify_password(new_plain, identity.password_hash):
            return self._rejected(
                identity, "password_unchanged", "New password must be different from current password."
            )

        if any(verify_password(new_plain, old) for old in identity.password_history):
            return self._rejected(
                identity,
                "password_reused",
                f"New password cannot be the same as any of your last {self._history_capacity} passwords.",
            )

        new_hash = self.hash(new_plain)
        history = PasswordHistory(identity.password_history, self._history_capacity).push(identity.password_hash)
        swapped = self.store.rotate_password(
            identity.id,
            expected_hash=identity.password_hash,
            new_hash=new_hash,
            history=history,
            changed_at=now,
            reset_token_hash=reset_token_hash,
        )
        if not swapped:
            return None
        return PasswordChanged(identity=self.store.get_by_id(identity.id))

    @staticmethod
    def _rejected(identity: Identity, reason: str, message: str) -> AuthFailure:
        return AuthFailure(kind=FailureKind.VALIDATION, reason=reason, identity_id=identity.id, message=message)

    # ------------------------------------------------------------------
    # Lifecycle hooks (persistence only; AuthService audits them)
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, plaintext: str, role: Role) -> Identity:
        """Create an identity. password_changed_at stays unset so the first rotation is never age-blocked.

        Raises sqlalchemy.exc.IntegrityError on a duplicate username or email.
        """
        identity_id = self.store.create_identity(
            Identity(
                username=username,
                email=email,
                password_hash=self.hash(plaintext),
                role=role,
                created_at=self._clock(),
            )
        )
        return self.store.get_by_id(identity_id)

    def find(self, identity_id: int) -> Identity | None:
        return self.store.get_by_id(identity_id)

    def set_role(self, identity_id: int, role: Role) -> Identity | None:
        """None when the store refused the change (last active admin)."""
        if not self.store.update_role(identity_id, role):
            return None
        return self.store.get_by_id(identity_id)

    def set_active(self, identity_id: int, is_active: bool) -> Identity | None:
        """None when the store refused the change (last active admin)."""
        if not self.store.set_active(identity_id, is_active):
            return None
        return self.store.get_by_id(identity_id)

    def update_email(self, identity_id: int, email: str) -> Identity | None:
        self.store.update_email(identity_id, email)
        return self.store.get_by_id(identity_id)

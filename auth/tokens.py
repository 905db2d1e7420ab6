"""
auth/tokens.py -- TokenService: bearer token issue, verify, live re-validation.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (identity id as a string), role (snapshot for clients only), iat
       and exp. Nothing is persisted -- a token's validity is recomputed on
       every request.

  iat precision: iat is written as a float with microsecond precision rather
       than whole seconds. Revocation-on-password-change compares iat with
       password_changed_at; with whole seconds, a token issued in the same
       second as (but after) a password change would be wrongly refused, and
       one issued just before it could slip through.

  Expiry: jose's own exp check reads the wall clock. It is disabled and exp is
       compared against the injected clock instead, so expiry is testable and
       consistent with every other time decision in the service.

  Stateless revocation: verify() is a pure signature/expiry check. Every
       protected request must also call revalidate(), which re-reads the live
       identity and refuses the token (STALE) if the identity is gone,
       inactive, locked, or has changed its password since the token was
       issued. authenticate() runs both steps and is what callers should use.

  Error taxonomy: MALFORMED (cannot even be parsed), SIGNATURE_INVALID (parses
       but was not signed by us with HS256), EXPIRED, STALE. The HTTP layer
       maps all four to the same 401 "Invalid token."; the kind is audit-only.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.lockout import LockoutPolicy
from auth.models import Identity
from auth.outcomes import TokenClaims, TokenError, TokenErrorKind
from auth.store import IdentityStore
from core.clock import Clock, utcnow

logger = logging.getLogger("campusguard.auth.tokens")

_ALGORITHM = "HS256"


class TokenService:
    """Issue and validate HS256 session tokens.

    Usage:
        tokens = TokenService(settings.secret_key, identity_store, lockout)
        raw = tokens.issue(identity)
        result = tokens.authenticate(raw)   # Identity | TokenError
    """

    def __init__(
        self,
        secret_key: str,
        store: IdentityStore,
        lockout: LockoutPolicy,
        *,
        expire_seconds: int = 24 * 3600,
        reauth_window_seconds: int = 15 * 60,
        clock: Clock = utcnow,
    ) -> None:
        self._secret_key = secret_key
        self._store = store
        self._lockout = lockout
        self.expire_seconds = expire_seconds
        self._reauth_window = timedelta(seconds=reauth_window_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, identity: Identity) -> str:
        now = self._clock()
        payload = {
            "sub": str(identity.id),
            "role": identity.role.value,
            "iat": round(now.timestamp(), 6),
            "exp": round((now + timedelta(seconds=self.expire_seconds)).timestamp(), 6),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Verify (signature + expiry only, no storage access)
    # ------------------------------------------------------------------

    def verify(self, raw: str) -> TokenClaims | TokenError:
        try:
            jwt.get_unverified_claims(raw)
        except JWTError:
            return TokenError(TokenErrorKind.MALFORMED, reason="undecodable")

        try:
            payload = jwt.decode(
                raw,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return TokenError(TokenErrorKind.SIGNATURE_INVALID, reason="signature_check_failed")

        try:
            claims = TokenClaims(
                subject_id=int(payload["sub"]),
                role=str(payload["role"]),
                issued_at=datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            return TokenError(TokenErrorKind.MALFORMED, reason="missing_or_invalid_claims")

        if claims.expires_at <= self._clock():
            return TokenError(TokenErrorKind.EXPIRED, reason="expired", subject_id=claims.subject_id)
        return claims

    # ------------------------------------------------------------------
    # Live re-validation
    # ------------------------------------------------------------------

    def revalidate(self, claims: TokenClaims) -> Identity | TokenError:
        identity = self._store.get_by_id(claims.subject_id)
        if identity is None:
            return self._stale(claims, "identity_missing")
        if not identity.is_active:
            return self._stale(claims, "identity_inactive")
        if self._lockout.is_locked(identity):
            return self._stale(claims, "identity_locked")
        if identity.password_changed_at is not None and claims.issued_at < identity.password_changed_at:
            return self._stale(claims, "issued_before_password_change")
        return identity

    @staticmethod
    def _stale(claims: TokenClaims, reason: str) -> TokenError:
        return TokenError(TokenErrorKind.STALE, reason=reason, subject_id=claims.subject_id)

    def authenticate(self, raw: str) -> Identity | TokenError:
        claims = self.verify(raw)
        if isinstance(claims, TokenError):
            return claims
        return self.revalidate(claims)

    def is_fresh(self, claims: TokenClaims) -> bool:
        """True if the token was issued within the re-authentication window."""
        return self._clock() - claims.issued_at <= self._reauth_window

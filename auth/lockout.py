"""
auth/lockout.py -- LockoutPolicy: brute-force tracking over Identity.

State machine with two states, Unlocked and Locked:

    Unlocked --(failure that reaches threshold)--> Locked
    Locked   --(locked_until passes)------------->  Unlocked (lazily, see below)
    Locked   --(admin unlock)-------------------->  Unlocked

An expired lock is not cleared by a timer. The next failure clears it inside
the same transaction that counts the failure, so that failure starts a fresh
window at failed_attempts == 1. is_locked() simply compares against the clock
and needs no write.

All counter mutations happen in IdentityStore as guarded UPDATEs. This class
owns the policy (threshold, duration, clock) and never reads-then-writes.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.models import Identity
from auth.store import IdentityStore
from core.clock import Clock, utcnow

logger = logging.getLogger("campusguard.auth.lockout")


class LockoutPolicy:
    def __init__(
        self,
        store: IdentityStore,
        *,
        threshold: int = 5,
        duration: timedelta = timedelta(minutes=15),
        clock: Clock = utcnow,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self._store = store
        self.threshold = threshold
        self.duration = duration
        self._clock = clock

    def is_locked(self, identity: Identity) -> bool:
        return identity.locked_until is not None and identity.locked_until > self._clock()

    def record_failure(self, identity: Identity) -> Identity:
        """Count one failed attempt and return the refreshed identity.

        While a lock is in force the stored count is left untouched.
        """
        updated = self._store.record_failed_attempt(
            identity.id,
            now=self._clock(),
            threshold=self.threshold,
            lock_duration=self.duration,
        )
        if updated is None:
            # Row vanished between lookup and update; identities are never
            # deleted, so this only happens with a broken store.
            raise LookupError(f"identity {identity.id} disappeared during lockout update")
        if self.is_locked(updated) and not self.is_locked(identity):
            logger.warning(
                "Account locked after %d failed attempts (identity_id=%s, until=%s)",
                updated.failed_attempts,
                updated.id,
                updated.locked_until.isoformat(),
            )
        return updated

    def record_success(self, identity: Identity) -> Identity:
        """Reset counters and stamp last_login. Call only after a verified password."""
        self._store.reset_lockout(identity.id, last_login=self._clock())
        return self._store.get_by_id(identity.id) or identity

    def unlock(self, identity: Identity) -> Identity:
        """Admin override: clear counters without touching last_login."""
        self._store.reset_lockout(identity.id)
        logger.info("Account unlocked by administrator (identity_id=%s)", identity.id)
        return self._store.get_by_id(identity.id) or identity

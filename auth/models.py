"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container). Stores and services do the work;
the one exception is PasswordHistory, which owns its eviction rule because a
fixed capacity is part of what the type *is*.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NamedTuple

PASSWORD_HISTORY_CAPACITY = 5


class Role(str, Enum):
    admin = "admin"
    instructor = "instructor"
    student = "student"


# Roles a visitor may pick for themselves at registration. admin is granted
# only through the admin-only create/role-change endpoints.
SELF_SERVICE_ROLES: frozenset[Role] = frozenset({Role.instructor, Role.student})


class PasswordHistory:
    """Fixed-capacity ring buffer of previous password hashes, oldest first.

    push() on a full buffer evicts the oldest entry -- the buffer can never
    hold more than `capacity` items, so there is no trim-after-the-fact step
    to forget. Instances are immutable from the outside: push() returns a new
    history, which keeps Identity snapshots safe to share between threads.
    """

    __slots__ = ("_entries", "capacity")

    def __init__(self, entries: Iterable[str] = (), capacity: int = PASSWORD_HISTORY_CAPACITY) -> None:
        if not 1 <= capacity <= PASSWORD_HISTORY_CAPACITY:
            raise ValueError(f"capacity must be between 1 and {PASSWORD_HISTORY_CAPACITY}")
        self.capacity = capacity
        self._entries: deque[str] = deque(entries, maxlen=capacity)

    def push(self, password_hash: str) -> "PasswordHistory":
        updated = PasswordHistory(self._entries, self.capacity)
        updated._entries.append(password_hash)  # deque(maxlen) drops the oldest
        return updated

    def __iter__(self) -> Iterator[str]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PasswordHistory):
            return NotImplemented
        return list(self._entries) == list(other._entries)

    def __repr__(self) -> str:
        return f"PasswordHistory(len={len(self)}, capacity={self.capacity})"

    def to_json(self) -> str:
        return json.dumps(list(self._entries))

    @classmethod
    def from_json(cls, raw: str | None, capacity: int = PASSWORD_HISTORY_CAPACITY) -> "PasswordHistory":
        return cls(json.loads(raw) if raw else (), capacity)


class SecurityAnswer(NamedTuple):
    """One enrolled recovery question. answer_hash is bcrypt over the normalized answer."""

    question_id: str
    answer_hash: str


@dataclass
class Identity:
    """A user's security record: credentials, role, lockout state.

    Timestamps are timezone-aware UTC datetimes. locked_until is set only
    while a lock is in force or has expired but not yet been cleared by the
    next failed attempt (LockoutPolicy.is_locked() is the authority).

    password_changed_at is None until the first rotation; that absence is what
    lets the very first change bypass the minimum-age rule.

    security_questions is empty until the user enrolls recovery answers.
    reset_token_hash holds only the sha256 of an outstanding reset token.

    id is None before the record is written to the database.
    """

    username: str
    email: str
    password_hash: str
    role: Role = Role.student
    id: int | None = None
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: datetime | None = None
    password_changed_at: datetime | None = None
    password_history: PasswordHistory = field(default_factory=PasswordHistory)
    last_login: datetime | None = None
    created_at: datetime | None = None
    security_questions: tuple[SecurityAnswer, ...] = ()
    reset_token_hash: str | None = None
    reset_token_expires: datetime | None = None

    def summary(self) -> dict:
        """Public, secret-free projection for API responses and audit details."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role.value,
        }

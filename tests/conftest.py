"""
tests/conftest.py -- Shared test fixtures for CampusGuard unit and integration tests.

This module provides:
  - FakeClock: a controllable clock injected into every service
  - core: a fully wired SecurityCore over isolated in-memory stores
  - make_identity: helper that writes an identity straight to the store
  - api: TestClient (real app, patched lifespan) plus an admin token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
fixture instance gets a fresh uuid-suffixed name, so tests never share rows.

Environment must be set before any api/auth/core import: DEBUG lets
get_settings() auto-generate SECRET_KEY, BCRYPT_ROUNDS=4 keeps hashing fast,
RATE_LIMIT_ENABLED=false stops slowapi throttling the single test client,
and ALLOWED_HOSTS admits TestClient's "testserver" Host header.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import (get_settings() is cached).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["localhost", "127.0.0.1", "testserver"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from audit.store import AuditStore
from auth.models import Identity, Role
from auth.service import SecurityCore, build_security_core
from auth.store import IdentityStore
from core.config import get_settings

ADMIN_PASSWORD = "Harbor!Crest20Elm"
STUDENT_PASSWORD = "Maple&River7Stone"
INSTRUCTOR_PASSWORD = "Quartz?Lunar88Pine"

# Policy-compliant passwords for rotation tests, all distinct.
ROTATION_PASSWORDS = [
    "Cobalt%Fern31Wing",
    "Violet*Ridge64Moss",
    "Amber@Delta59Fox",
    "Falcon$Meadow73Ash",
    "Juniper!Tide48Oak",
    "Saffron&Peak26Reed",
    "Indigo?Brook95Fir",
    "Copper*Vale17Lark",
]

EPOCH = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def core(clock: FakeClock) -> Generator[SecurityCore, None, None]:
    """SecurityCore over fresh in-memory stores, wired exactly as the app wires it."""
    security = build_security_core(
        get_settings(),
        identity_store=IdentityStore(memory_url("identity")),
        audit_store=AuditStore(memory_url("audit")),
        clock=clock,
    )
    yield security
    security.close()


@pytest.fixture
def make_identity(core: SecurityCore) -> Callable[..., Identity]:
    """Create an identity directly through CredentialStore (no audit record, no policy check)."""

    def _make(
        username: str = "ada_lovelace",
        email: str | None = None,
        password: str = STUDENT_PASSWORD,
        role: Role = Role.student,
    ) -> Identity:
        return core.credentials.register(username, email or f"{username}@campus.edu", password, role)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(security: SecurityCore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test core into app.state so TestClient routes see
    isolated test DBs rather than the configured databases.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.security = security
        yield

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    core: SecurityCore
    clock: FakeClock
    admin: Identity
    admin_token: str


@pytest.fixture
def api(core: SecurityCore, clock: FakeClock) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness: real app, patched lifespan, one admin with a valid token."""
    admin = core.credentials.register("registrar", "registrar@campus.edu", ADMIN_PASSWORD, Role.admin)
    token = core.tokens.issue(admin)

    app.router.lifespan_context = _patch_lifespan(core)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, core=core, clock=clock, admin=admin, admin_token=token)

"""
core/context.py -- Request-scoped metadata handed to every security call.

RequestContext is built once per HTTP request (auth/dependencies.py) and passed
explicitly down through AuthService, AuthorizationEngine and AuditTrail. There
is no module-level "current request" state: two requests handled concurrently
on the threadpool can never see each other's source address or user agent.
"""

from __future__ import annotations

from dataclasses import dataclass

_MAX_USER_AGENT = 512


@dataclass(frozen=True)
class RequestContext:
    source_address: str = "unknown"
    user_agent: str = "unknown"
    path: str = ""

    @classmethod
    def from_values(cls, source_address: str | None, user_agent: str | None, path: str = "") -> "RequestContext":
        """Normalize raw transport values. Missing headers become "unknown"."""
        return cls(
            source_address=source_address or "unknown",
            user_agent=(user_agent or "unknown")[:_MAX_USER_AGENT],
            path=path,
        )


# Context for work that does not originate from an HTTP request (CLI, startup).
SYSTEM_CONTEXT = RequestContext(source_address="local", user_agent="campusguard-cli", path="cli")

"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Bearer tokens are the only credential transport: `Authorization: Bearer <token>`.

get_request_context()  builds the per-request RequestContext.
get_current_identity() authenticates the bearer token (verify + live
                       revalidation) and raises HTTP 401 on any TokenError.
get_fresh_identity()   same, but also requires a token issued within the
                       re-authentication window (sensitive operations).
require_roles(*roles)  the only way a route expresses a role requirement; it
                       asks AuthorizationEngine and raises HTTP 403 on Deny.

Every rejection has already been audited by AuthService/AuthorizationEngine
by the time the HTTPException is raised here.

Layer rule: this is the only auth/ module that imports fastapi.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.models import Identity, Role
from auth.outcomes import ACCESS_DENIED_MESSAGE, TokenError
from auth.service import SecurityCore
from core.context import RequestContext


def get_security_core(request: Request) -> SecurityCore:
    return request.app.state.security


def get_request_context(request: Request) -> RequestContext:
    return RequestContext.from_values(
        request.client.host if request.client else None,
        request.headers.get("User-Agent"),
        request.url.path,
    )


def _bearer_token(request: Request) -> str | None:
    """Token from the Authorization header. The scheme name is case-insensitive (RFC 7235)."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        return auth_header[7:].strip() or None
    return None


def _unauthorized(error: TokenError) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "invalid_token", "message": error.public_message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_identity(
    request: Request,
    context: RequestContext = Depends(get_request_context),
) -> Identity:
    """Require a valid, non-stale bearer token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    result = get_security_core(request).service.authenticate(_bearer_token(request), context)
    if isinstance(result, TokenError):
        raise _unauthorized(result)
    return result


def get_fresh_identity(
    request: Request,
    context: RequestContext = Depends(get_request_context),
) -> Identity:
    """Like get_current_identity, but the token must be recent enough for a sensitive change."""
    result = get_security_core(request).service.authenticate(_bearer_token(request), context, require_fresh=True)
    if isinstance(result, TokenError):
        raise _unauthorized(result)
    return result


def forbidden() -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "forbidden", "message": ACCESS_DENIED_MESSAGE})


def require_roles(*roles: Role) -> Callable[..., Identity]:
    """Build a dependency that allows only the given roles.

    Use as a FastAPI dependency:
        @router.get("/admin-only")
        def route(admin: Identity = Depends(require_roles(Role.admin))): ...

    The role compared is the live identity's, not the token's snapshot.
    """
    required = frozenset(roles)

    def dependency(
        request: Request,
        identity: Identity = Depends(get_current_identity),
        context: RequestContext = Depends(get_request_context),
    ) -> Identity:
        decision = get_security_core(request).authorization.decide(
            identity.role,
            required,
            context=context,
            subject_id=identity.id,
            resource_type="endpoint",
            resource_id=context.path,
        )
        if not decision:
            raise forbidden()
        return identity

    return dependency

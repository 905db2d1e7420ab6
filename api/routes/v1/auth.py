"""
api/routes/v1/auth.py -- Authentication and identity management REST endpoints.

Routes:
  POST  /api/v1/auth/register              -- self-service sign-up (student/instructor)
  POST  /api/v1/auth/login                 -- username-or-email + password; returns bearer token
  POST  /api/v1/auth/logout                -- records the logout (requires auth)
  GET   /api/v1/auth/me                    -- current identity (requires auth)
  PATCH /api/v1/auth/me                    -- update own email (requires auth)
  POST  /api/v1/auth/change-password       -- rotate password (requires a fresh token)
  GET   /api/v1/auth/users                 -- list identities (admin only)
  POST  /api/v1/auth/users                 -- create identity with any role (admin only)
  GET   /api/v1/auth/users/{id}            -- identity detail (owner or admin)
  PATCH /api/v1/auth/users/{id}            -- update role/is_active (admin only)
  POST  /api/v1/auth/users/{id}/unlock     -- clear a lockout (admin only)
  GET   /api/v1/auth/security-questions   -- question catalogue and answer guidelines
  POST  /api/v1/auth/security-questions   -- enroll three recovery answers (requires a fresh token)
  POST  /api/v1/auth/password-reset/initiate -- questions to answer for an identifier
  POST  /api/v1/auth/password-reset/verify   -- answers -> single-use reset token
  POST  /api/v1/auth/password-reset/complete -- reset token + new password

Security:
  POST /login, POST /register and the password-reset steps are rate-limited
  per client address.
  Wrong username and wrong password return the same 401 body.
  A locked account answers 423 whatever password was sent.
  Cache-Control: no-store on every response that carries a token.
  PATCH /users/{id} blocks self-deactivation and last-admin demotion/deactivation.
  /password-reset/initiate answers the same way whether or not the account exists.
  Path ids are bounded to a signed 64-bit integer; larger values are a 400.

Handlers are plain `def`: FastAPI runs them on its threadpool, and every one
of them does blocking bcrypt or SQLite work.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, PASSWORD_RESET_LIMIT, REGISTER_LIMIT, limiter
from api.models import (
    ID_MAX,
    ChangePasswordRequest,
    LoginRequest,
    MessageResponse,
    ProfileUpdate,
    RegisterRequest,
    ResetCompleteRequest,
    ResetInitiateRequest,
    ResetQuestionsResponse,
    ResetTokenResponse,
    ResetVerifyRequest,
    SecurityQuestionCatalogue,
    SecurityQuestionOut,
    SecurityQuestionsRequest,
    TokenResponse,
    UserCreate,
    UserPatch,
    UserResponse,
    UserSummary,
)
from auth.dependencies import (
    forbidden,
    get_current_identity,
    get_fresh_identity,
    get_request_context,
    get_security_core,
    require_roles,
)
from auth.models import Identity, Role
from auth.outcomes import AuthFailure, FailureKind, IssuedToken
from auth.recovery import GUIDELINES, QUESTIONS, SECURITY_QUESTION_COUNT
from auth.service import DUPLICATE_IDENTITY
from core.context import RequestContext

# Auth policy:
# - POST  /auth/register, /auth/login:   public (rate-limited)
# - POST  /auth/logout, GET|PATCH /auth/me: requires auth (get_current_identity)
# - POST  /auth/change-password:         requires a fresh token (get_fresh_identity)
# - GET   /auth/security-questions, /auth/password-reset/*: public (reset steps rate-limited)
# - POST  /auth/security-questions:      requires a fresh token (get_fresh_identity)
# - GET   /auth/users/{id}:              owner or admin (AuthorizationEngine.check_ownership)
# - everything else under /auth/users:   requires admin (require_roles(Role.admin))
router = APIRouter()

require_admin = require_roles(Role.admin)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(REGISTER_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(
    request: Request,
    body: RegisterRequest,
    context: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """Create a student or instructor identity and return a bearer token.

    Requesting role=admin is a validation failure; admins are created by
    another admin (POST /auth/users) or from the CLI.
    """
    result = get_security_core(request).service.register(
        body.username, body.email, body.password, body.role, context
    )
    if isinstance(result, AuthFailure):
        raise _failure_to_http(result)
    return _token_response(result, status_code=201)


@limiter.limit(LOGIN_LIMIT)  # brute-force mitigation on top of account lockout
@router.post("/auth/login", response_model=TokenResponse)
def login(
    request: Request,
    body: LoginRequest,
    context: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """Authenticate with a username or email and a password.

    Returns the same generic error for an unknown identifier and a wrong
    password to avoid leaking which identities exist.
    """
    result = get_security_core(request).service.login(body.identifier, body.password, context)
    if isinstance(result, AuthFailure):
        resp = JSONResponse(
            status_code=_status_for(result),
            content={"error": {"code": _code_for(result), "message": result.public_message}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _token_response(result)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    context: RequestContext = Depends(get_request_context),
) -> MessageResponse:
    """Record the logout. Tokens are stateless; the client discards its copy."""
    get_security_core(request).service.logout(identity, context)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=UserResponse)
def me(identity: Identity = Depends(get_current_identity)) -> UserResponse:
    """Return the live identity behind the presented token."""
    return UserResponse.from_identity(identity)


@router.patch("/auth/me", response_model=UserResponse)
def update_me(
    request: Request,
    body: ProfileUpdate,
    identity: Identity = Depends(get_current_identity),
    context: RequestContext = Depends(get_request_context),
) -> UserResponse:
    """Update the caller's email. A `role` field is rejected by the request model."""
    result = get_security_core(request).service.update_profile(identity, body.email, context)
    if isinstance(result, AuthFailure):
        raise _failure_to_http(result)
    return UserResponse.from_identity(result)


@router.post("/auth/change-password", response_model=TokenResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_fresh_identity),
    context: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """Rotate the caller's password.

    Every token issued before the rotation stops working, including the one
    used for this call, so the response carries a replacement token.
    """
    result = get_security_core(request).service.change_password(
        identity, body.current_password, body.new_password, context
    )
    if isinstance(result, AuthFailure):
        raise _failure_to_http(result)
    return _token_response(result)


# ---------------------------------------------------------------------------
# Security-question recovery
# ---------------------------------------------------------------------------


@router.get("/auth/security-questions", response_model=SecurityQuestionCatalogue)
def security_question_catalogue() -> SecurityQuestionCatalogue:
    """List the questions a user may enroll. Format rules are enforced server-side only."""
    return SecurityQuestionCatalogue(
        questions=[SecurityQuestionOut(**q.public()) for q in QUESTIONS],
        required=SECURITY_QUESTION_COUNT,
        guidelines=GUIDELINES,
    )


@router.post("/auth/security-questions", response_model=UserResponse)
def set_security_questions(
    request: Request,
    body: SecurityQuestionsRequest,
    identity: Identity = Depends(get_fresh_identity),
    context: RequestContext = Depends(get_request_context),
) -> UserResponse:
    """Enroll exactly three recovery answers, replacing any earlier set."""
    answers = [(item.question_id, item.answer) for item in body.questions]
    result = get_security_core(request).service.set_security_questions(identity, answers, context)
    if isinstance(result, AuthFailure):
        raise _failure_to_http(result)
    return UserResponse.from_identity(result)


@limiter.limit(PASSWORD_RESET_LIMIT)
@router.post("/auth/password-reset/initiate", response_model=ResetQuestionsResponse)
def initiate_password_reset(
    request: Request,
    body: ResetInitiateRequest,
    context: RequestContext = Depends(get_request_context),
) -> ResetQuestionsResponse:
    """Return the questions to answer. The response never says whether the account exists."""
    questions = get_security_core(request).service.initiate_password_reset(body.identifier, context)
    return ResetQuestionsResponse(
        message="If the account exists, answer its security questions to continue.",
        questions=[SecurityQuestionOut(**q.public()) for q in questions],
    )


@limiter.limit(PASSWORD_RESET_LIMIT)
@router.post("/auth/password-reset/verify", response_model=ResetTokenResponse)
def verify_password_reset(
    request: Request,
    body: ResetVerifyRequest,
    context: RequestContext = Depends(get_request_context),
) -> JSONResponse:
    """Check the answers. Wrong answers count toward the account lockout."""
    answers = {item.question_id: item.answer for item in body.answers}
    result = get_security_core(request).service.verify_password_reset(body.identifier, answers, context)
    if isinstance(result, AuthFailure):
        raise _failure_to_http(result)
    resp = JSONResponse(
        content=ResetTokenResponse(
            message="Security questions verified.",
            reset_token=result.reset_token,
            expires_in=result.expires_in,
        ).model_dump(by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(PASSWORD_RESET_LIMIT)
@router.post("/auth/password-reset/complete", response_model=MessageResponse)
def complete_password_reset(
    request: Request,
    body: ResetCompleteRequest,
    context: RequestContext = Depends(get_request_context),
) -> MessageResponse:
    """Set a new password with a reset token. Existing bearer tokens stop working."""
    result = get_security_core(request).service.complete_password_reset(
        body.reset_token, body.new_password, context
    )
    if isinstance(result, AuthFailure):
        raise _failure_to_http(result)
    return MessageResponse(message="Password has been reset. Please log in with your new password.")


# ---------------------------------------------------------------------------
# Identity management
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(request: Request, admin: Identity = Depends(require_admin)) -> list[UserResponse]:
    """List all identities. Admin only."""
    identities = get_security_core(request).identity_store.list_identities()
    return [UserResponse.from_identity(i) for i in identities]


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    admin: Identity = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
) -> UserResponse:
    """Create an identity with any role. Admin only."""
    result = get_security_core(request).service.create_identity(
        admin, body.username, body.email, body.password, body.role, context
    )
    if isinstance(result, AuthFailure):
        raise _failure_to_http(result)
    return UserResponse.from_identity(result)


@router.get("/auth/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int = Path(ge=1, le=ID_MAX),
    identity: Identity = Depends(get_current_identity),
    context: RequestContext = Depends(get_request_context),
) -> UserResponse:
    """Return one identity. The owner may read their own record; admins may read any.

    The ownership check runs before the lookup, so a non-admin gets the same
    403 for a missing id as for someone else's id.
    """
    core = get_security_core(request)
    decision = core.authorization.check_ownership(
        identity.id,
        user_id,
        identity.role,
        context=context,
        resource_type="identity",
        resource_id=user_id,
    )
    if not decision:
        raise forbidden()
    return UserResponse.from_identity(_get_target(request, user_id))


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    body: UserPatch,
    user_id: int = Path(ge=1, le=ID_MAX),
    admin: Identity = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
) -> UserResponse:
    """Update an identity's role and/or active flag. Admin only."""
    if body.role is None and body.is_active is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    service = get_security_core(request).service
    target = _get_target(request, user_id)
    if body.role is not None and body.role is not target.role:
        result = service.change_role(admin, target, body.role, context)
        if isinstance(result, AuthFailure):
            raise _failure_to_http(result)
        target = result
    if body.is_active is not None and body.is_active != target.is_active:
        result = service.set_active(admin, target, body.is_active, context)
        if isinstance(result, AuthFailure):
            raise _failure_to_http(result)
        target = result
    return UserResponse.from_identity(target)


@router.post("/auth/users/{user_id}/unlock", response_model=UserResponse)
def unlock_user(
    request: Request,
    user_id: int = Path(ge=1, le=ID_MAX),
    admin: Identity = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
) -> UserResponse:
    """Clear failed attempts and any active lock. Admin only."""
    target = _get_target(request, user_id)
    updated = get_security_core(request).service.unlock(admin, target, context)
    return UserResponse.from_identity(updated)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_STATUS = {
    FailureKind.AUTHENTICATION: 401,
    FailureKind.ACCOUNT_LOCKED: 423,
    FailureKind.TOKEN_INVALID: 401,
    FailureKind.AUTHORIZATION_DENIED: 403,
    FailureKind.VALIDATION: 400,
}

_CODES = {
    FailureKind.AUTHENTICATION: "bad_credentials",
    FailureKind.ACCOUNT_LOCKED: "account_locked",
    FailureKind.TOKEN_INVALID: "invalid_token",
    FailureKind.AUTHORIZATION_DENIED: "forbidden",
    FailureKind.VALIDATION: "validation_error",
}


def _status_for(failure: AuthFailure) -> int:
    if failure.reason == DUPLICATE_IDENTITY:
        return 409
    return _STATUS[failure.kind]


def _code_for(failure: AuthFailure) -> str:
    if failure.reason == DUPLICATE_IDENTITY:
        return "conflict"
    return _CODES[failure.kind]


def _failure_to_http(failure: AuthFailure) -> HTTPException:
    detail: dict = {"code": _code_for(failure), "message": failure.public_message}
    if failure.kind is FailureKind.VALIDATION and failure.detail.get("errors"):
        detail["detail"] = failure.detail["errors"]
    return HTTPException(status_code=_status_for(failure), detail=detail)


def _token_response(issued: IssuedToken, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=TokenResponse(
            token=issued.token,
            expires_in=issued.expires_in,
            user=UserSummary.from_identity(issued.identity),
        ).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _get_target(request: Request, user_id: int) -> Identity:
    target = get_security_core(request).credentials.find(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return target

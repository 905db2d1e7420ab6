"""
api/routes/v1/audit.py -- Read-only security audit endpoints (admin only).

Routes:
  GET /api/v1/audit                 -- paginated event log (filters: action, user, startDate, endDate)
  GET /api/v1/audit/stats           -- dashboard counters
  GET /api/v1/audit/security        -- failures and security-relevant actions only
  GET /api/v1/audit/user/{user_id}  -- everything one actor did

Every route depends on require_roles(Role.admin); a non-admin caller is denied
(and that denial audited) before any query runs. Each successful read is
itself recorded as a VIEW_* event, written after the query so that a page
never contains the record of its own viewing.

There is no write endpoint: the trail is append-only and only AuditTrail.record
adds to it.

Ids and page numbers are bounded to what a signed 64-bit SQLite integer can
hold; anything larger is a 400 like any other malformed parameter.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request

from api.models import ID_MAX, AuditLogPage, AuditStatsResponse
from audit.models import AuditAction, EventFilter
from auth.dependencies import get_request_context, get_security_core, require_roles
from auth.models import Identity, Role
from core.context import RequestContext

router = APIRouter()

require_admin = require_roles(Role.admin)

# Keeps (page - 1) * limit inside a signed 64-bit OFFSET.
_PAGE_MAX = ID_MAX // 100


@router.get("/audit", response_model=AuditLogPage)
def list_events(
    request: Request,
    action: Optional[AuditAction] = Query(default=None),
    user: Optional[int] = Query(default=None, ge=1, le=ID_MAX),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    page: int = Query(default=1, ge=1, le=_PAGE_MAX),
    limit: int = Query(default=50, ge=1, le=100),
    admin: Identity = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
) -> AuditLogPage:
    """Return audit events, newest first."""
    audit = get_security_core(request).audit
    filters = EventFilter(actor_id=user, action=action, start=start_date, end=end_date)
    result = audit.query(filters, page=page, limit=limit)
    audit.record(
        AuditAction.VIEW_AUDIT_LOGS,
        context=context,
        actor_id=admin.id,
        resource_type="audit_log",
        details={
            "filters": {
                "action": action.value if action else None,
                "user": user,
                "start_date": start_date.isoformat() if start_date else None,
                "end_date": end_date.isoformat() if end_date else None,
            },
            "page": page,
            "limit": limit,
        },
    )
    return AuditLogPage.from_page(result)


@router.get("/audit/stats", response_model=AuditStatsResponse)
def stats(
    request: Request,
    admin: Identity = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
) -> AuditStatsResponse:
    """Return totals, last-24h login counts and the most frequent actions this week."""
    audit = get_security_core(request).audit
    summary = audit.stats()
    audit.record(AuditAction.VIEW_AUDIT_STATS, context=context, actor_id=admin.id, resource_type="audit_log")
    return AuditStatsResponse(**summary)


@router.get("/audit/security", response_model=AuditLogPage)
def security_events(
    request: Request,
    page: int = Query(default=1, ge=1, le=_PAGE_MAX),
    limit: int = Query(default=50, ge=1, le=100),
    admin: Identity = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
) -> AuditLogPage:
    """Return failed outcomes and inherently suspicious actions only."""
    audit = get_security_core(request).audit
    result = audit.query(EventFilter(security_only=True), page=page, limit=limit)
    audit.record(
        AuditAction.VIEW_SECURITY_EVENTS,
        context=context,
        actor_id=admin.id,
        resource_type="audit_log",
        details={"page": page, "limit": limit},
    )
    return AuditLogPage.from_page(result)


@router.get("/audit/user/{user_id}", response_model=AuditLogPage)
def user_activity(
    request: Request,
    user_id: int = Path(ge=1, le=ID_MAX),
    page: int = Query(default=1, ge=1, le=_PAGE_MAX),
    limit: int = Query(default=50, ge=1, le=100),
    admin: Identity = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
) -> AuditLogPage:
    """Return every event performed by one identity."""
    audit = get_security_core(request).audit
    result = audit.query(EventFilter(actor_id=user_id), page=page, limit=limit)
    audit.record(
        AuditAction.VIEW_USER_ACTIVITY,
        context=context,
        actor_id=admin.id,
        resource_type="identity",
        resource_id=user_id,
        details={"page": page, "limit": limit},
    )
    return AuditLogPage.from_page(result)

"""
api/routes/v1/audit.py -- Read-only access to the audit trail.

Routes:
  GET /api/v1/audit/events   -- newest first, filterable (requires operator role)
  GET /api/v1/audit/stats    -- event count per action in a time range (same)

Query parameters are camelCase like the JSON bodies. `limit` is bounded
to 1..500 by validation; AuditRecorder clamps again for non-HTTP callers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query, Request

from admission.controller import EndpointClass
from api.interceptors import get_services, interceptor_chain
from api.models import AuditEventResponse, AuditStatsResponse
from audit.models import AuditAction
from audit.recorder import MAX_QUERY_LIMIT

router = APIRouter()

_OPERATOR = interceptor_chain(EndpointClass.OPERATOR, authenticated=True)


@router.get("/audit/events", response_model=list[AuditEventResponse], dependencies=_OPERATOR)
def list_events(
    request: Request,
    actor_id: Optional[str] = Query(None, alias="actorId", max_length=64),
    action: Optional[AuditAction] = Query(None),
    entity_type: Optional[str] = Query(None, alias="entityType", max_length=64),
    entity_id: Optional[str] = Query(None, alias="entityId", max_length=64),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=MAX_QUERY_LIMIT),
) -> list[AuditEventResponse]:
    """Return audit events matching every given filter."""
    events = get_services(request).audit.list_events(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        since=since,
        until=until,
        limit=limit,
    )
    return [AuditEventResponse.from_event(e) for e in events]


@router.get("/audit/stats", response_model=AuditStatsResponse, dependencies=_OPERATOR)
def audit_stats(
    request: Request,
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
) -> AuditStatsResponse:
    by_action = get_services(request).audit.stats(since=since, until=until)
    return AuditStatsResponse(total=sum(by_action.values()), by_action=by_action)

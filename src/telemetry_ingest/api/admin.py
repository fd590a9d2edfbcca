from __future__ import annotations
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from telemetry_ingest.analytics.stats import StatsAggregator
from telemetry_ingest.api.principals import request_principal
from telemetry_ingest.api.state import get_reaper, get_stats, get_store
from telemetry_ingest.errors import PartialCleanupError
from telemetry_ingest.security.access import AUDIT_TABLE, EVENTS_TABLE, Operation, authorize
from telemetry_ingest.tasks.maintenance import RetentionReaper
from telemetry_ingest.telemetry_store import EventQuery, TelemetryStore, WorkflowQuery

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/stats")
def telemetry_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    principal=Depends(request_principal),
    stats: StatsAggregator = Depends(get_stats),
):
    return stats.get_stats(principal, start, end)


@router.get("/stats/events")
def event_stats(principal=Depends(request_principal), stats: StatsAggregator = Depends(get_stats)):
    return stats.event_stats(principal)


@router.get("/stats/workflows")
def workflow_stats(principal=Depends(request_principal), stats: StatsAggregator = Depends(get_stats)):
    return stats.workflow_stats(principal)


@router.get("/stats/daily")
def daily_activity(
    days: Optional[int] = Query(None, ge=1, le=730),
    principal=Depends(request_principal),
    stats: StatsAggregator = Depends(get_stats),
):
    return stats.daily_activity(principal, days)


@router.get("/events")
def list_events(
    request: Request,
    user_id: Optional[str] = None,
    event: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=10000),
    offset: int = Query(0, ge=0),
    principal=Depends(request_principal),
    store: TelemetryStore = Depends(get_store),
):
    q = EventQuery(user_id=user_id, event=event, start=start, end=end, limit=limit, offset=offset)
    rows = store.list_events(principal, q, ip_address=request.client.host if request.client else None)
    return [r.to_dict() for r in rows]


@router.get("/workflows")
def list_workflows(
    request: Request,
    user_id: Optional[str] = None,
    complexity: Optional[str] = None,
    workflow_hash: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=10000),
    offset: int = Query(0, ge=0),
    principal=Depends(request_principal),
    store: TelemetryStore = Depends(get_store),
):
    q = WorkflowQuery(user_id=user_id, complexity=complexity, workflow_hash=workflow_hash,
                      start=start, end=end, limit=limit, offset=offset)
    rows = store.list_workflows(principal, q, ip_address=request.client.host if request.client else None)
    return [r.to_dict() for r in rows]


@router.get("/audit")
def list_audit(
    operation: Optional[str] = None,
    table_name: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    principal=Depends(request_principal),
    store: TelemetryStore = Depends(get_store),
):
    return [r.to_dict() for r in store.list_audit_entries(principal, operation, table_name, limit)]


@router.post("/cleanup")
def cleanup(
    now: Optional[datetime] = None,
    principal=Depends(request_principal),
    reaper: RetentionReaper = Depends(get_reaper),
):
    # the reaper itself runs as the system role; only privileged callers may trigger it
    authorize(principal, Operation.DELETE, EVENTS_TABLE)
    authorize(principal, Operation.INSERT, AUDIT_TABLE)
    try:
        deleted = reaper.cleanup(now)
    except PartialCleanupError as e:
        return {"status": "partial", "deleted": e.rows_deleted, "tables": e.deleted, "error": str(e)}
    return {"status": "ok", "deleted": deleted}

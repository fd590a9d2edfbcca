from __future__ import annotations
from typing import Any, Dict, List
from fastapi import APIRouter, Body, Depends, Request
from pydantic import BaseModel
from telemetry_ingest.api.principals import request_principal
from telemetry_ingest.api.state import get_store
from telemetry_ingest.telemetry_store import TelemetryStore

router = APIRouter(prefix="/telemetry", tags=["telemetry"])


class EventIn(BaseModel):
    # shape only; field constraints are enforced by the store's validator
    user_id: Any = None
    event: Any = None
    properties: Any = None


class WorkflowIn(BaseModel):
    user_id: Any = None
    workflow_hash: Any = None
    node_count: Any = None
    node_types: Any = None
    has_trigger: Any = False
    has_webhook: Any = False
    complexity: Any = None
    sanitized_workflow: Any = None


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


@router.post("/events", status_code=201)
def ingest_event(
    request: Request,
    body: EventIn = Body(...),
    principal=Depends(request_principal),
    store: TelemetryStore = Depends(get_store),
):
    event_id = store.insert_event(principal, body.user_id, body.event, body.properties, ip_address=_client_ip(request))
    return {"id": event_id}


@router.post("/workflows", status_code=201)
def ingest_workflow(
    request: Request,
    body: WorkflowIn = Body(...),
    principal=Depends(request_principal),
    store: TelemetryStore = Depends(get_store),
):
    workflow_id = store.insert_workflow(
        principal,
        body.user_id,
        body.workflow_hash,
        body.node_count,
        body.node_types,
        body.has_trigger,
        body.has_webhook,
        body.complexity,
        body.sanitized_workflow,
        ip_address=_client_ip(request),
    )
    return {"id": workflow_id, "created": workflow_id is not None}

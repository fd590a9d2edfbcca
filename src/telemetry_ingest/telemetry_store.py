"""Ingestion store for telemetry events and sanitized workflow summaries.

Write path: validate -> authorize -> route to the monthly partition -> persist.
Anonymous callers get insert-only access; every privileged mutation commits
together with its audit entry. Transient storage failures are retried a bounded
number of times before surfacing as ``StorageError``.
"""
from __future__ import annotations
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterator, Optional
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from telemetry_ingest.config import get_settings
from telemetry_ingest.errors import AuditWriteFailure, StorageError, ValidationError
from telemetry_ingest.infrastructure import db
from telemetry_ingest.infrastructure.metrics import (
    EVENTS_INGESTED, WORKFLOWS_INGESTED, WORKFLOW_CONFLICTS, VALIDATION_FAILURES, STORAGE_RETRIES,
)
from telemetry_ingest.infrastructure.partitions import PartitionManager
from telemetry_ingest.models.tables import (
    AUDIT_TABLE, EVENTS_TABLE, WORKFLOWS_TABLE, TelemetryAuditLog, TelemetryEvent, TelemetryWorkflow,
)
from telemetry_ingest.security.access import Operation, Principal, authorize
from telemetry_ingest.security.audit import AuditLogger
from telemetry_ingest.utils.timeutil import as_naive_utc, utcnow
from telemetry_ingest.validation.telemetry import validate_event, validate_workflow

logger = logging.getLogger(__name__)


@dataclass
class EventQuery:
    user_id: Optional[str] = None
    event: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


@dataclass
class WorkflowQuery:
    user_id: Optional[str] = None
    complexity: Optional[str] = None
    workflow_hash: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


def _time_range(column, start: Optional[datetime], end: Optional[datetime]) -> list:
    conds = []
    if start is not None:
        conds.append(column >= as_naive_utc(start))
    if end is not None:
        conds.append(column <= as_naive_utc(end))
    return conds


def _event_conditions(q: EventQuery) -> list:
    conds = _time_range(TelemetryEvent.created_at, q.start, q.end)
    if q.user_id:
        conds.append(TelemetryEvent.user_id == q.user_id)
    if q.event:
        conds.append(TelemetryEvent.event == q.event)
    return conds


def _workflow_conditions(q: WorkflowQuery) -> list:
    conds = _time_range(TelemetryWorkflow.created_at, q.start, q.end)
    if q.user_id:
        conds.append(TelemetryWorkflow.user_id == q.user_id)
    if q.complexity:
        conds.append(TelemetryWorkflow.complexity == q.complexity)
    if q.workflow_hash:
        conds.append(TelemetryWorkflow.workflow_hash == q.workflow_hash.lower())
    return conds


class TelemetryStore:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        partitions: Optional[PartitionManager] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self._session_factory = session_factory
        self.clock = clock or utcnow
        self.partitions = partitions or PartitionManager(session_factory)
        self.audit = audit or AuditLogger(self.clock)

    @contextmanager
    def unit_of_work(self, principal: Principal) -> Iterator[Session]:
        """Session bound to ``principal``; commits on success, rolls back on any error."""
        session = (self._session_factory or db.SessionLocal)()
        session.info["principal"] = principal
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def _retrying(self, operation: str) -> Retrying:
        attempts = max(1, get_settings().storage_retry_attempts)
        return Retrying(
            retry=retry_if_exception_type(OperationalError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.05, max=1),
            before_sleep=lambda _state: STORAGE_RETRIES.labels(operation=operation).inc(),
            reraise=True,
        )

    def _mutate(self, principal: Principal, operation: Operation, table: str, fn: Callable[[], Any],
                ip_address: Optional[str] = None) -> Any:
        try:
            return self._retrying(f"{operation.value}:{table}")(fn)
        except AuditWriteFailure:
            raise
        except (StorageError, SQLAlchemyError) as exc:
            logger.error(json.dumps({"event": "storage_error", "operation": operation.value, "table": table,
                                     "type": exc.__class__.__name__, "detail": str(exc)}))
            if principal is Principal.PRIVILEGED:
                self._audit_failed_mutation(operation, table, exc, ip_address)
            if isinstance(exc, StorageError):
                raise
            raise StorageError(f"{operation.value} on {table} failed") from exc

    def _audit_failed_mutation(self, operation: Operation, table: str, exc: Exception, ip_address: Optional[str]):
        try:
            with self.unit_of_work(Principal.PRIVILEGED) as session:
                self.audit.record(session, operation.value, table, 0, Principal.PRIVILEGED.value,
                                  {"outcome": "error", "error": exc.__class__.__name__}, ip_address)
        except SQLAlchemyError as audit_exc:
            raise AuditWriteFailure(f"could not audit failed {operation.value} on {table}") from audit_exc

    def _read(self, principal: Principal, table: str, fn: Callable[[Session], list],
              ip_address: Optional[str] = None) -> list:
        try:
            with self.unit_of_work(principal) as session:
                rows = fn(session)
                if get_settings().audit_privileged_reads:
                    self.audit.record(session, Operation.SELECT.value, table, len(rows), principal.value,
                                      ip_address=ip_address)
                return rows
        except AuditWriteFailure:
            raise
        except SQLAlchemyError as exc:
            raise StorageError(f"SELECT on {table} failed") from exc

    def _limit(self, requested: int) -> int:
        return max(0, min(requested, get_settings().query_max_rows))

    # ---- ingestion surface ----

    def insert_event(self, principal, user_id: str, event: str, properties: dict,
                     ip_address: Optional[str] = None) -> str:
        try:
            payload = validate_event({"user_id": user_id, "event": event, "properties": properties})
        except ValidationError:
            VALIDATION_FAILURES.labels(kind="event").inc()
            raise
        p = authorize(principal, Operation.INSERT, EVENTS_TABLE)

        def write() -> str:
            now = self.clock()
            partition = self.partitions.ensure_partition(EVENTS_TABLE, now)
            event_id = str(uuid.uuid4())
            with self.unit_of_work(p) as session:
                session.execute(insert(TelemetryEvent).values(
                    id=event_id,
                    user_id=payload.user_id,
                    event=payload.event,
                    properties=payload.properties,
                    created_at=now,
                    partition_key=partition,
                ))
                if p is Principal.PRIVILEGED:
                    self.audit.record(session, Operation.INSERT.value, EVENTS_TABLE, 1, p.value, ip_address=ip_address)
            return event_id

        event_id = self._mutate(p, Operation.INSERT, EVENTS_TABLE, write, ip_address)
        EVENTS_INGESTED.labels(principal=p.value).inc()
        return event_id

    def insert_workflow(self, principal, user_id: str, workflow_hash: str, node_count: int, node_types: list,
                        has_trigger: bool, has_webhook: bool, complexity: str, sanitized_workflow: dict,
                        ip_address: Optional[str] = None) -> Optional[str]:
        """Persist a workflow summary; returns ``None`` when this user already submitted the fingerprint."""
        try:
            payload = validate_workflow({
                "user_id": user_id,
                "workflow_hash": workflow_hash,
                "node_count": node_count,
                "node_types": node_types,
                "has_trigger": has_trigger,
                "has_webhook": has_webhook,
                "complexity": complexity,
                "sanitized_workflow": sanitized_workflow,
            })
        except ValidationError:
            VALIDATION_FAILURES.labels(kind="workflow").inc()
            raise
        p = authorize(principal, Operation.INSERT, WORKFLOWS_TABLE)

        def write() -> Optional[str]:
            now = self.clock()
            partition = self.partitions.ensure_partition(WORKFLOWS_TABLE, now)
            workflow_id = str(uuid.uuid4())
            values = {"id": workflow_id, **payload.model_dump(), "created_at": now, "partition_key": partition}
            with self.unit_of_work(p) as session:
                created = db.insert_ignoring_conflicts(session, TelemetryWorkflow, values, ["workflow_hash", "user_id"])
                if created and p is Principal.PRIVILEGED:
                    self.audit.record(session, Operation.INSERT.value, WORKFLOWS_TABLE, 1, p.value, ip_address=ip_address)
            return workflow_id if created else None

        workflow_id = self._mutate(p, Operation.INSERT, WORKFLOWS_TABLE, write, ip_address)
        if workflow_id is None:
            WORKFLOW_CONFLICTS.inc()
            logger.debug(json.dumps({"event": "workflow_duplicate_ignored", "workflow_hash": payload.workflow_hash}))
        else:
            WORKFLOWS_INGESTED.labels(principal=p.value).inc()
        return workflow_id

    # ---- administrative surface ----

    def list_events(self, principal, query: Optional[EventQuery] = None,
                    ip_address: Optional[str] = None) -> list[TelemetryEvent]:
        p = authorize(principal, Operation.SELECT, EVENTS_TABLE)
        q = query or EventQuery()
        stmt = (select(TelemetryEvent).where(*_event_conditions(q))
                .order_by(TelemetryEvent.created_at.desc(), TelemetryEvent.id)
                .limit(self._limit(q.limit)).offset(q.offset))
        return self._read(p, EVENTS_TABLE, lambda s: list(s.scalars(stmt)), ip_address)

    def list_workflows(self, principal, query: Optional[WorkflowQuery] = None,
                       ip_address: Optional[str] = None) -> list[TelemetryWorkflow]:
        p = authorize(principal, Operation.SELECT, WORKFLOWS_TABLE)
        q = query or WorkflowQuery()
        stmt = (select(TelemetryWorkflow).where(*_workflow_conditions(q))
                .order_by(TelemetryWorkflow.created_at.desc(), TelemetryWorkflow.id)
                .limit(self._limit(q.limit)).offset(q.offset))
        return self._read(p, WORKFLOWS_TABLE, lambda s: list(s.scalars(stmt)), ip_address)

    def list_audit_entries(self, principal, operation: Optional[str] = None, table_name: Optional[str] = None,
                           limit: int = 100) -> list[TelemetryAuditLog]:
        p = authorize(principal, Operation.SELECT, AUDIT_TABLE)
        stmt = select(TelemetryAuditLog)
        if operation:
            stmt = stmt.where(TelemetryAuditLog.operation == operation)
        if table_name:
            stmt = stmt.where(TelemetryAuditLog.table_name == table_name)
        stmt = stmt.order_by(TelemetryAuditLog.created_at.desc()).limit(self._limit(limit))
        return self._read(p, AUDIT_TABLE, lambda s: list(s.scalars(stmt)))

    def delete_events(self, principal, query: Optional[EventQuery] = None,
                      ip_address: Optional[str] = None) -> int:
        """Delete matching events (limit/offset are ignored). Audited with the affected row count."""
        p = authorize(principal, Operation.DELETE, EVENTS_TABLE)
        conds = _event_conditions(query or EventQuery())
        return self._delete(p, TelemetryEvent, EVENTS_TABLE, conds, ip_address)

    def delete_workflows(self, principal, query: Optional[WorkflowQuery] = None,
                         ip_address: Optional[str] = None) -> int:
        p = authorize(principal, Operation.DELETE, WORKFLOWS_TABLE)
        conds = _workflow_conditions(query or WorkflowQuery())
        return self._delete(p, TelemetryWorkflow, WORKFLOWS_TABLE, conds, ip_address)

    def _delete(self, p: Principal, model, table: str, conds: list, ip_address: Optional[str]) -> int:
        def write() -> int:
            with self.unit_of_work(p) as session:
                res = session.execute(delete(model).where(*conds))
                count = res.rowcount or 0
                self.audit.record(session, Operation.DELETE.value, table, count, p.value, ip_address=ip_address)
            return count

        count = self._mutate(p, Operation.DELETE, table, write, ip_address)
        logger.info(json.dumps({"event": "telemetry_deleted", "table": table, "rows": count}))
        return count


__all__ = ["TelemetryStore", "EventQuery", "WorkflowQuery"]

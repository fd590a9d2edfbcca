"""Compliance audit trail for privileged activity on the telemetry stores.

Entries are written inside the caller's transaction so a privileged mutation
and its audit record commit together. A failed audit write aborts the
mutation: an unaudited privileged change is never allowed to land.
"""
from __future__ import annotations
import json
import logging
import uuid
from typing import Any, Callable, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from telemetry_ingest.errors import AuditWriteFailure
from telemetry_ingest.infrastructure.metrics import AUDIT_ENTRIES, AUDIT_FAILURES
from telemetry_ingest.models.tables import TelemetryAuditLog
from telemetry_ingest.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

SYSTEM_ROLE = "system"


class AuditLogger:
    def __init__(self, clock: Optional[Callable] = None):
        self.clock = clock or utcnow

    def record(
        self,
        session: Session,
        operation: str,
        table_name: str,
        record_count: Optional[int],
        user_role: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> TelemetryAuditLog:
        now = self.clock()
        entry = TelemetryAuditLog(
            id=str(uuid.uuid4()),
            operation=operation,
            table_name=table_name,
            record_count=record_count,
            user_role=user_role,
            ip_address=ip_address,
            details={"timestamp": now.isoformat(), "operation": operation, "table": table_name, **(metadata or {})},
            created_at=now,
        )
        try:
            session.add(entry)
            session.flush()
        except SQLAlchemyError as e:
            AUDIT_FAILURES.labels(table=table_name).inc()
            logger.error(json.dumps({"event": "audit_write_failed", "operation": operation, "table": table_name, "detail": str(e)}))
            raise AuditWriteFailure(f"audit write failed for {operation} on {table_name}") from e
        AUDIT_ENTRIES.labels(operation=operation, table=table_name).inc()
        return entry

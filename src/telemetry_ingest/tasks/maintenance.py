from __future__ import annotations
import json
import logging
from datetime import datetime
from typing import Callable, Optional
from celery import shared_task
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from telemetry_ingest.config import get_settings
from telemetry_ingest.errors import AuditWriteFailure, PartialCleanupError, StorageError
from telemetry_ingest.infrastructure.metrics import RETENTION_DELETED
from telemetry_ingest.infrastructure.partitions import PartitionManager
from telemetry_ingest.models.tables import EVENTS_TABLE, WORKFLOWS_TABLE, TelemetryEvent, TelemetryWorkflow
from telemetry_ingest.security.access import Operation, Principal
from telemetry_ingest.security.audit import SYSTEM_ROLE, AuditLogger
from telemetry_ingest.telemetry_store import TelemetryStore
from telemetry_ingest.utils.timeutil import as_naive_utc, utcnow, years_before

logger = logging.getLogger(__name__)

RETENTION_TARGETS = ((EVENTS_TABLE, TelemetryEvent), (WORKFLOWS_TABLE, TelemetryWorkflow))


class RetentionReaper:
    """Deletes telemetry older than the retention horizon, one audited transaction per table.

    A failure part-way keeps the deletions that already committed, audits the
    failing table and raises ``PartialCleanupError`` with the counts so far.
    """

    def __init__(self, store: Optional[TelemetryStore] = None, retention_years: Optional[int] = None):
        self.store = store or TelemetryStore()
        self.retention_years = retention_years if retention_years is not None else get_settings().retention_years

    def cutoff_for(self, now: datetime) -> datetime:
        return years_before(as_naive_utc(now), self.retention_years)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        now = as_naive_utc(now) if now is not None else self.store.clock()
        cutoff = self.cutoff_for(now)
        meta = {"cutoff_date": cutoff.isoformat()}
        audit: AuditLogger = self.store.audit
        deleted: dict[str, int] = {}
        for table, model in RETENTION_TARGETS:
            try:
                with self.store.unit_of_work(Principal.PRIVILEGED) as session:
                    res = session.execute(delete(model).where(model.created_at < cutoff))
                    count = res.rowcount or 0
                    audit.record(session, Operation.DELETE.value, table, count, SYSTEM_ROLE, meta)
            except (SQLAlchemyError, StorageError) as exc:
                total = sum(deleted.values())
                logger.error(json.dumps({"event": "retention_failed", "table": table, "deleted_so_far": total,
                                         "type": exc.__class__.__name__, "detail": str(exc)}))
                self._audit_failure(table, meta, exc)
                raise PartialCleanupError(f"retention cleanup failed on {table}", total, dict(deleted)) from exc
            deleted[table] = count
            RETENTION_DELETED.labels(table=table).inc(count)
        total = sum(deleted.values())
        try:
            retired = self.store.partitions.retire_partitions(cutoff)
        except SQLAlchemyError as exc:
            # row deletions above are already committed and audited
            logger.error(json.dumps({"event": "partition_retire_failed", "cutoff_date": cutoff.isoformat(),
                                     "deleted": deleted, "type": exc.__class__.__name__, "detail": str(exc)}))
            raise PartialCleanupError("retention cleanup could not retire expired partitions",
                                      total, dict(deleted)) from exc
        logger.info(json.dumps({"event": "retention_cleanup", "cutoff_date": cutoff.isoformat(),
                                "deleted": deleted, "total": total, "partitions_retired": len(retired)}))
        return total

    def _audit_failure(self, table: str, meta: dict, exc: Exception) -> None:
        try:
            with self.store.unit_of_work(Principal.PRIVILEGED) as session:
                self.store.audit.record(session, Operation.DELETE.value, table, 0, SYSTEM_ROLE,
                                        {**meta, "outcome": "error", "error": exc.__class__.__name__})
        except (SQLAlchemyError, AuditWriteFailure):
            logger.error(json.dumps({"event": "retention_failure_unaudited", "table": table}))


def cleanup_old_telemetry_data(now: Optional[datetime] = None, store: Optional[TelemetryStore] = None) -> int:
    """Remove telemetry older than the retention horizon; returns rows deleted across both stores."""
    return RetentionReaper(store).cleanup(now)


def ensure_upcoming_partitions(months: Optional[int] = None, now: Optional[datetime] = None,
                               partitions: Optional[PartitionManager] = None) -> list[str]:
    months = get_settings().partition_months_ahead if months is None else months
    return (partitions or PartitionManager()).ensure_months_ahead(months, now)


@shared_task(name="telemetry_ingest.cleanup_telemetry")
def cleanup_telemetry():
    deleted = cleanup_old_telemetry_data()
    return {"status": "ok", "deleted": deleted}


@shared_task(name="telemetry_ingest.ensure_telemetry_partitions")
def ensure_telemetry_partitions():
    names = ensure_upcoming_partitions()
    return {"status": "ok", "partitions": names}


__all__ = [
    "RetentionReaper", "cleanup_old_telemetry_data", "ensure_upcoming_partitions",
    "cleanup_telemetry", "ensure_telemetry_partitions",
]

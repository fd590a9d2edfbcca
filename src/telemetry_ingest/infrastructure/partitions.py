"""Monthly time-bucketed segments for the high-volume telemetry tables.

Each row is routed to a segment named ``<table>_<YYYY>_<MM>`` covering
``[start of month, start of next month)``. Segments are registered in the
``telemetry_partitions`` catalog; registration is idempotent and safe when
several first-writers of a month race each other.
"""
from __future__ import annotations
import json
import logging
import threading
from datetime import datetime
from typing import Callable, Optional
from sqlalchemy import delete, select
from telemetry_ingest.infrastructure import db
from telemetry_ingest.infrastructure.metrics import PARTITIONS_CREATED
from telemetry_ingest.models.tables import PARTITIONED_TABLES, TelemetryPartition
from telemetry_ingest.utils.timeutil import add_months, month_start, utcnow

logger = logging.getLogger(__name__)


def partition_name(table: str, ref: datetime) -> str:
    return f"{table}_{ref.year:04d}_{ref.month:02d}"


def partition_bounds(ref: datetime) -> tuple[datetime, datetime]:
    start = month_start(ref)
    return start, add_months(start, 1)


class PartitionManager:
    def __init__(self, session_factory: Optional[Callable] = None):
        self._session_factory = session_factory
        self._known: set[str] = set()
        self._lock = threading.Lock()

    def _sessions(self):
        return (self._session_factory or db.SessionLocal)()

    def ensure_partition(self, table: str, ref: datetime) -> str:
        if table not in PARTITIONED_TABLES:
            raise ValueError(f"{table} is not a partitioned table")
        name = partition_name(table, ref)
        if name in self._known:
            return name
        with self._lock:
            if name in self._known:
                return name
            start, end = partition_bounds(ref)
            values = {"name": name, "table_name": table, "range_start": start, "range_end": end, "created_at": utcnow()}
            with self._sessions() as session:
                created = db.insert_ignoring_conflicts(session, TelemetryPartition, values, ["name"])
                session.commit()
            if created:
                PARTITIONS_CREATED.labels(table=table).inc()
                logger.info(json.dumps({"event": "partition_created", "partition": name,
                                        "range_start": start.isoformat(), "range_end": end.isoformat()}))
            self._known.add(name)
        return name

    def ensure_months_ahead(self, months: int, now: Optional[datetime] = None) -> list[str]:
        """Register the current month and the next ``months`` months for every partitioned table."""
        now = now or utcnow()
        names = []
        for offset in range(months + 1):
            ref = add_months(now, offset)
            for table in PARTITIONED_TABLES:
                names.append(self.ensure_partition(table, ref))
        return names

    def list_partitions(self, table: Optional[str] = None) -> list[TelemetryPartition]:
        with self._sessions() as session:
            q = select(TelemetryPartition).order_by(TelemetryPartition.table_name, TelemetryPartition.range_start)
            if table:
                q = q.where(TelemetryPartition.table_name == table)
            return list(session.scalars(q))

    def retire_partitions(self, cutoff: datetime) -> list[str]:
        """Drop catalog entries whose whole range ends at or before ``cutoff``."""
        with self._sessions() as session:
            names = list(session.scalars(select(TelemetryPartition.name).where(TelemetryPartition.range_end <= cutoff)))
            if names:
                session.execute(delete(TelemetryPartition).where(TelemetryPartition.name.in_(names)))
                session.commit()
        with self._lock:
            self._known.difference_update(names)
        if names:
            logger.info(json.dumps({"event": "partitions_retired", "partitions": names, "cutoff": cutoff.isoformat()}))
        return names

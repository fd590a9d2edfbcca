from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, JSON, Boolean, Index, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from telemetry_ingest.infrastructure.db import Base
from telemetry_ingest.security.access import AUDIT_TABLE, EVENTS_TABLE, WORKFLOWS_TABLE
from telemetry_ingest.utils.timeutil import utcnow

PARTITIONED_TABLES = (EVENTS_TABLE, WORKFLOWS_TABLE)


class TelemetryEvent(Base):
    __tablename__ = EVENTS_TABLE
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    event: Mapped[str] = mapped_column(String(100), index=True)
    properties: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    partition_key: Mapped[str] = mapped_column(String(64), index=True)

    __table_args__ = (
        CheckConstraint("length(user_id) >= 16", name="telemetry_events_user_id_length"),
        CheckConstraint("length(event) >= 1 AND length(event) <= 100", name="telemetry_events_event_length"),
        Index("ix_telemetry_events_user_event", "user_id", "event"),
        Index("ix_telemetry_events_created_user", "created_at", "user_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event": self.event,
            "properties": self.properties,
            "created_at": self.created_at.isoformat(),
        }


class TelemetryWorkflow(Base):
    __tablename__ = WORKFLOWS_TABLE
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    workflow_hash: Mapped[str] = mapped_column(String(64), index=True)
    node_count: Mapped[int] = mapped_column(Integer, index=True)
    node_types: Mapped[list] = mapped_column(JSON)
    has_trigger: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    has_webhook: Mapped[bool] = mapped_column(Boolean, default=False)
    complexity: Mapped[str] = mapped_column(String(20), index=True)
    sanitized_workflow: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    partition_key: Mapped[str] = mapped_column(String(64), index=True)

    __table_args__ = (
        UniqueConstraint("workflow_hash", "user_id", name="telemetry_workflows_unique_hash_user"),
        CheckConstraint("length(user_id) >= 16", name="telemetry_workflows_user_id_length"),
        CheckConstraint("length(workflow_hash) = 64", name="telemetry_workflows_workflow_hash_length"),
        CheckConstraint("node_count > 0", name="telemetry_workflows_node_count_positive"),
        CheckConstraint("complexity IN ('simple', 'medium', 'complex')", name="telemetry_workflows_complexity_enum"),
        Index("ix_telemetry_workflows_user_created", "user_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "workflow_hash": self.workflow_hash,
            "node_count": self.node_count,
            "node_types": self.node_types,
            "has_trigger": self.has_trigger,
            "has_webhook": self.has_webhook,
            "complexity": self.complexity,
            "sanitized_workflow": self.sanitized_workflow,
            "created_at": self.created_at.isoformat(),
        }


class TelemetryAuditLog(Base):
    """Administrative operations on the telemetry stores (never mutated by this service)."""
    __tablename__ = AUDIT_TABLE
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    operation: Mapped[str] = mapped_column(String(50), index=True)
    table_name: Mapped[str] = mapped_column(String(50))
    record_count: Mapped[int | None] = mapped_column(Integer, default=None)
    user_role: Mapped[str | None] = mapped_column(String(50), default=None)
    ip_address: Mapped[str | None] = mapped_column(String(45), default=None)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict | None] = mapped_column("metadata", JSON, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation,
            "table_name": self.table_name,
            "record_count": self.record_count,
            "user_role": self.user_role,
            "ip_address": self.ip_address,
            "metadata": self.details,
            "created_at": self.created_at.isoformat(),
        }


class TelemetryPartition(Base):
    """Catalog of monthly segments for the partitioned telemetry tables."""
    __tablename__ = "telemetry_partitions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), unique=True)
    table_name: Mapped[str] = mapped_column(String(50), index=True)
    range_start: Mapped[datetime] = mapped_column(DateTime, index=True)
    range_end: Mapped[datetime] = mapped_column(DateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

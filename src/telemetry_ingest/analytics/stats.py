"""Read-only rollups over retained telemetry for privileged consumers."""
from __future__ import annotations
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional
from sqlalchemy import DateTime, bindparam, case, distinct, func, literal, select, union, union_all
from sqlalchemy.exc import SQLAlchemyError
from telemetry_ingest.config import get_settings
from telemetry_ingest.errors import StorageError
from telemetry_ingest.infrastructure import db
from telemetry_ingest.models.tables import EVENTS_TABLE, WORKFLOWS_TABLE, TelemetryEvent, TelemetryWorkflow
from telemetry_ingest.security.access import Operation, authorize
from telemetry_ingest.security.audit import AuditLogger
from telemetry_ingest.utils.timeutil import as_naive_utc, utcnow


def _as_date(value) -> date:
    # SQLite returns func.date() as 'YYYY-MM-DD', Postgres returns a date
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    if isinstance(value, datetime):
        return value.date()
    return value


def _as_datetime(value) -> Optional[datetime]:
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


def _age_in_days(session, column, now: datetime):
    """Dialect-specific SQL expression for ``now - column`` in fractional days."""
    ref = bindparam("stats_now", now, type_=DateTime)
    if session.get_bind().dialect.name == "sqlite":
        return func.julianday(ref) - func.julianday(column)
    return func.extract("epoch", ref - column) / 86400.0


class StatsAggregator:
    def __init__(self, session_factory: Optional[Callable] = None, clock: Optional[Callable[[], datetime]] = None,
                 audit: Optional[AuditLogger] = None):
        self._session_factory = session_factory
        self.clock = clock or utcnow
        self.audit = audit or AuditLogger(self.clock)

    def _session(self, principal):
        session = (self._session_factory or db.SessionLocal)()
        session.info["principal"] = principal
        return session

    def _authorize(self, principal):
        p = authorize(principal, Operation.SELECT, EVENTS_TABLE)
        authorize(p, Operation.SELECT, WORKFLOWS_TABLE)
        return p

    def _run(self, principal, rollup: str, fn):
        p = self._authorize(principal)
        try:
            with self._session(p) as session:
                result = fn(session)
                if get_settings().audit_privileged_reads:
                    count = len(result) if isinstance(result, list) else 1
                    for table in (EVENTS_TABLE, WORKFLOWS_TABLE):
                        self.audit.record(session, Operation.SELECT.value, table, count, p.value, {"rollup": rollup})
                    session.commit()
                return result
        except SQLAlchemyError as exc:
            raise StorageError("stats query failed") from exc

    def get_stats(self, principal, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict[str, int]:
        now = self.clock()
        end = as_naive_utc(end) if end is not None else now
        start = as_naive_utc(start) if start is not None else end - timedelta(days=get_settings().stats_window_days)
        today = datetime(now.year, now.month, now.day)
        tomorrow = today + timedelta(days=1)
        E, W = TelemetryEvent, TelemetryWorkflow

        def query(session) -> dict[str, int]:
            total_events = session.scalar(select(func.count(E.id)).where(E.created_at.between(start, end))) or 0
            total_workflows = session.scalar(select(func.count(W.id)).where(W.created_at.between(start, end))) or 0
            users = union(
                select(E.user_id.label("user_id")).where(E.created_at.between(start, end)),
                select(W.user_id.label("user_id")).where(W.created_at.between(start, end)),
            ).subquery()
            unique_users = session.scalar(select(func.count(distinct(users.c.user_id)))) or 0
            events_today = session.scalar(
                select(func.count(E.id)).where(E.created_at >= today, E.created_at < tomorrow)) or 0
            workflows_today = session.scalar(
                select(func.count(W.id)).where(W.created_at >= today, W.created_at < tomorrow)) or 0
            return {
                "total_events": int(total_events),
                "total_workflows": int(total_workflows),
                "unique_users": int(unique_users),
                "events_today": int(events_today),
                "workflows_today": int(workflows_today),
            }

        return self._run(principal, "stats", query)

    def event_stats(self, principal) -> list[dict[str, Any]]:
        """Per event type: volume, unique users, first/last seen, mean age in days."""
        now = self.clock()

        def query(session):
            total = func.count(TelemetryEvent.id)
            rows = session.execute(
                select(
                    TelemetryEvent.event,
                    total,
                    func.count(distinct(TelemetryEvent.user_id)),
                    func.min(TelemetryEvent.created_at),
                    func.max(TelemetryEvent.created_at),
                    func.avg(_age_in_days(session, TelemetryEvent.created_at, now)),
                ).group_by(TelemetryEvent.event).order_by(total.desc(), TelemetryEvent.event)
            ).all()
            out = []
            for name, count, users, first_seen, last_seen, avg_age in rows:
                out.append({
                    "event": name,
                    "total_events": int(count),
                    "unique_users": int(users),
                    "first_seen": _as_datetime(first_seen),
                    "last_seen": _as_datetime(last_seen),
                    "avg_days_old": float(avg_age or 0.0),
                })
            return out

        return self._run(principal, "event_stats", query)

    def workflow_stats(self, principal) -> list[dict[str, Any]]:
        W = TelemetryWorkflow

        def query(session):
            total = func.count(W.id)
            rows = session.execute(
                select(
                    W.complexity,
                    total,
                    func.count(distinct(W.user_id)),
                    func.avg(W.node_count),
                    func.min(W.node_count),
                    func.max(W.node_count),
                    func.sum(case((W.has_trigger.is_(True), 1), else_=0)),
                    func.sum(case((W.has_webhook.is_(True), 1), else_=0)),
                ).group_by(W.complexity).order_by(total.desc(), W.complexity)
            ).all()
            return [
                {
                    "complexity": complexity,
                    "total_workflows": int(count),
                    "unique_users": int(users),
                    "avg_nodes": float(avg_nodes) if avg_nodes is not None else None,
                    "min_nodes": min_nodes,
                    "max_nodes": max_nodes,
                    "with_triggers": int(triggers or 0),
                    "with_webhooks": int(webhooks or 0),
                }
                for complexity, count, users, avg_nodes, min_nodes, max_nodes, triggers, webhooks in rows
            ]

        return self._run(principal, "workflow_stats", query)

    def daily_activity(self, principal, days: Optional[int] = None) -> list[dict[str, Any]]:
        """Trailing daily series (newest first): events, workflows and distinct active users."""
        days = get_settings().daily_activity_days if days is None else days
        since = self.clock() - timedelta(days=days)

        def query(session):
            combined = union_all(
                select(TelemetryEvent.created_at.label("created_at"), TelemetryEvent.user_id.label("user_id"),
                       literal("events").label("kind")).where(TelemetryEvent.created_at >= since),
                select(TelemetryWorkflow.created_at.label("created_at"), TelemetryWorkflow.user_id.label("user_id"),
                       literal("workflows").label("kind")).where(TelemetryWorkflow.created_at >= since),
            ).subquery()
            day = func.date(combined.c.created_at)
            rows = session.execute(
                select(
                    day,
                    func.sum(case((combined.c.kind == "events", 1), else_=0)),
                    func.sum(case((combined.c.kind == "workflows", 1), else_=0)),
                    func.count(distinct(combined.c.user_id)),
                ).group_by(day).order_by(day.desc())
            ).all()
            return [
                {"date": _as_date(d), "events": int(ev or 0), "workflows": int(wf or 0), "active_users": int(users)}
                for d, ev, wf, users in rows
            ]

        return self._run(principal, "daily_activity", query)


__all__ = ["StatsAggregator"]

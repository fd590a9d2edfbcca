import threading
import warnings
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError, SADeprecationWarning

from telemetry_ingest.errors import AuditWriteFailure, PermissionDenied, StorageError, ValidationError
from telemetry_ingest.infrastructure import db
from telemetry_ingest.models.tables import TelemetryAuditLog, TelemetryEvent, TelemetryWorkflow
from telemetry_ingest.security.access import EVENTS_TABLE, WORKFLOWS_TABLE, Principal
from telemetry_ingest.security.audit import AuditLogger
from telemetry_ingest.telemetry_store import EventQuery, WorkflowQuery

OTHER_USER = "b" * 32


def _locked():
    return OperationalError("INSERT INTO telemetry_events", {}, Exception("database is locked"))


def test_anonymous_insert_then_select_denied(store, user_id, count_rows):
    event_id = store.insert_event(Principal.ANONYMOUS, user_id, "workflow_created", {"nodes": 3})
    assert len(event_id) == 36
    with pytest.raises(PermissionDenied):
        store.list_events(Principal.ANONYMOUS)
    assert count_rows(TelemetryEvent) == 1


def test_event_ids_are_unique_and_duplicates_are_kept(store, user_id, count_rows):
    ids = {store.insert_event("anon", user_id, "tool_usage", {"tool": "slack"}) for _ in range(5)}
    assert len(ids) == 5
    assert count_rows(TelemetryEvent) == 5


def test_created_at_is_assigned_by_the_store(store, clock, user_id):
    store.insert_event("anon", user_id, "session_started", {})
    [row] = store.list_events(Principal.PRIVILEGED)
    assert row.created_at == clock.now
    assert row.to_dict()["created_at"] == clock.now.isoformat()


def test_validation_runs_before_authorization(store):
    with pytest.raises(ValidationError):
        store.insert_event("unrecognized", "short", "e", {})


def test_unrecognized_principal_cannot_insert(store, user_id, count_rows):
    with pytest.raises(PermissionDenied):
        store.insert_event("authenticated", user_id, "e", {})
    assert count_rows(TelemetryEvent) == 0


def test_invalid_event_persists_nothing(store, user_id, count_rows):
    with pytest.raises(ValidationError):
        store.insert_event("anon", user_id, "e" * 101, {})
    with pytest.raises(ValidationError):
        store.insert_event("anon", user_id, "e", ["not", "an", "object"])
    assert count_rows(TelemetryEvent) == 0


def test_workflow_dedup_per_user(store, workflow_kwargs, count_rows):
    first = store.insert_workflow("anon", **workflow_kwargs())
    assert first is not None
    assert store.insert_workflow("anon", **workflow_kwargs(node_count=9)) is None
    # same fingerprint from another user is a distinct row
    assert store.insert_workflow("anon", **workflow_kwargs(user_id=OTHER_USER)) is not None
    assert count_rows(TelemetryWorkflow) == 2
    [kept] = store.list_workflows(Principal.PRIVILEGED, WorkflowQuery(user_id=workflow_kwargs()["user_id"]))
    assert kept.id == first
    assert kept.node_count == 3


def test_concurrent_identical_workflows_keep_one_row(store, workflow_kwargs, count_rows):
    barrier = threading.Barrier(6)
    results, errors = [], []

    def worker():
        barrier.wait()
        try:
            results.append(store.insert_workflow("anon", **workflow_kwargs()))
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert len([r for r in results if r is not None]) == 1
    assert results.count(None) == 5
    assert count_rows(TelemetryWorkflow) == 1


def test_anonymous_inserts_are_not_audited(store, user_id, workflow_kwargs, audit_rows):
    store.insert_event("anon", user_id, "session_started", {})
    store.insert_workflow("anon", **workflow_kwargs())
    assert audit_rows() == []


def test_privileged_inserts_are_audited(store, user_id, workflow_kwargs, audit_rows):
    store.insert_event(Principal.PRIVILEGED, user_id, "backfill", {}, ip_address="10.0.0.7")
    store.insert_workflow(Principal.PRIVILEGED, **workflow_kwargs())
    # the duplicate creates no row and therefore no audit entry
    store.insert_workflow(Principal.PRIVILEGED, **workflow_kwargs())
    rows = audit_rows()
    assert sorted((r["operation"], r["table_name"]) for r in rows) == [("INSERT", EVENTS_TABLE), ("INSERT", WORKFLOWS_TABLE)]
    assert all(r["user_role"] == "service_role" and r["record_count"] == 1 for r in rows)
    [event_entry] = [r for r in rows if r["table_name"] == EVENTS_TABLE]
    assert event_entry["ip_address"] == "10.0.0.7"
    assert event_entry["metadata"]["table"] == EVENTS_TABLE


def test_audit_failure_aborts_privileged_mutation(store, user_id, count_rows):
    class BrokenAudit:
        def record(self, *args, **kwargs):
            raise AuditWriteFailure("audit store unavailable")

    store.audit = BrokenAudit()
    with pytest.raises(StorageError):
        store.insert_event(Principal.PRIVILEGED, user_id, "backfill", {})
    assert count_rows(TelemetryEvent) == 0


def test_audit_logger_wraps_database_errors(engine, monkeypatch):
    session = db.SessionLocal()
    session.info["principal"] = Principal.PRIVILEGED

    def boom(*args, **kwargs):
        raise OperationalError("INSERT INTO telemetry_audit_log", {}, Exception("disk I/O error"))

    monkeypatch.setattr(session, "flush", boom)
    with pytest.raises(AuditWriteFailure):
        AuditLogger().record(session, "DELETE", EVENTS_TABLE, 3, "service_role")
    session.close()


def test_transient_failures_are_retried(store, user_id, monkeypatch, count_rows):
    real = store.partitions.ensure_partition
    calls = []

    def flaky(table, ref):
        calls.append(table)
        if len(calls) < 3:
            raise _locked()
        return real(table, ref)

    monkeypatch.setattr(store.partitions, "ensure_partition", flaky)
    assert store.insert_event("anon", user_id, "session_started", {})
    assert len(calls) == 3
    assert count_rows(TelemetryEvent) == 1


def test_persistent_failure_surfaces_storage_error(store, user_id, monkeypatch, audit_rows):
    def down(table, ref):
        raise _locked()

    monkeypatch.setattr(store.partitions, "ensure_partition", down)
    with pytest.raises(StorageError):
        store.insert_event("anon", user_id, "session_started", {})
    assert audit_rows() == []

    with pytest.raises(StorageError):
        store.insert_event(Principal.PRIVILEGED, user_id, "backfill", {})
    [entry] = audit_rows()
    assert entry["operation"] == "INSERT"
    assert entry["record_count"] == 0
    assert entry["metadata"]["outcome"] == "error"


def test_list_events_filters_and_orders(store, clock, user_id):
    start = clock.now
    store.insert_event("anon", user_id, "session_started", {})
    clock.advance(hours=1)
    store.insert_event("anon", user_id, "tool_usage", {"tool": "http"})
    clock.advance(hours=1)
    store.insert_event("anon", OTHER_USER, "tool_usage", {"tool": "slack"})

    rows = store.list_events(Principal.PRIVILEGED)
    assert [r.event for r in rows] == ["tool_usage", "tool_usage", "session_started"]
    assert rows[0].user_id == OTHER_USER

    assert len(store.list_events(Principal.PRIVILEGED, EventQuery(user_id=user_id))) == 2
    assert len(store.list_events(Principal.PRIVILEGED, EventQuery(event="tool_usage"))) == 2
    window = EventQuery(start=start + timedelta(minutes=30), end=start + timedelta(hours=1))
    assert [r.event for r in store.list_events(Principal.PRIVILEGED, window)] == ["tool_usage"]
    assert len(store.list_events(Principal.PRIVILEGED, EventQuery(limit=1, offset=1))) == 1


def test_list_limit_is_capped(store, user_id, monkeypatch):
    monkeypatch.setenv("QUERY_MAX_ROWS", "2")
    from telemetry_ingest.config import reset_settings
    reset_settings()
    for _ in range(4):
        store.insert_event("anon", user_id, "e", {})
    assert len(store.list_events(Principal.PRIVILEGED, EventQuery(limit=100))) == 2


def test_privileged_reads_audited_when_enabled(store, user_id, monkeypatch, audit_rows):
    store.insert_event("anon", user_id, "e", {})
    store.list_events(Principal.PRIVILEGED)
    assert audit_rows() == []

    monkeypatch.setenv("AUDIT_PRIVILEGED_READS", "true")
    from telemetry_ingest.config import reset_settings
    reset_settings()
    store.list_events(Principal.PRIVILEGED)
    [entry] = audit_rows()
    assert (entry["operation"], entry["table_name"], entry["record_count"]) == ("SELECT", EVENTS_TABLE, 1)


def test_privileged_delete_is_audited_with_row_count(store, user_id, workflow_kwargs, count_rows, audit_rows):
    for _ in range(3):
        store.insert_event("anon", user_id, "e", {})
    store.insert_event("anon", OTHER_USER, "e", {})
    store.insert_workflow("anon", **workflow_kwargs())

    assert store.delete_events(Principal.PRIVILEGED, EventQuery(user_id=user_id)) == 3
    assert store.delete_workflows(Principal.PRIVILEGED, WorkflowQuery(complexity="complex")) == 0
    assert count_rows(TelemetryEvent) == 1
    assert count_rows(TelemetryWorkflow) == 1
    rows = audit_rows()
    assert sorted((r["operation"], r["table_name"], r["record_count"]) for r in rows) == [
        ("DELETE", EVENTS_TABLE, 3),
        ("DELETE", WORKFLOWS_TABLE, 0),
    ]


def test_list_audit_entries_filters(store, user_id):
    store.insert_event(Principal.PRIVILEGED, user_id, "backfill", {})
    store.delete_events(Principal.PRIVILEGED)
    entries = store.list_audit_entries(Principal.PRIVILEGED, operation="DELETE")
    assert [e.operation for e in entries] == ["DELETE"]
    assert entries[0].to_dict()["metadata"]["operation"] == "DELETE"
    assert len(store.list_audit_entries(Principal.PRIVILEGED, table_name=EVENTS_TABLE)) == 2


def test_audit_entries_keep_caller_clock(store, clock, user_id, engine):
    clock.now = datetime(2026, 1, 2, 3, 4, 5)
    store.insert_event(Principal.PRIVILEGED, user_id, "backfill", {})
    [entry] = store.list_audit_entries(Principal.PRIVILEGED)
    assert entry.created_at == clock.now
    assert entry.details["timestamp"] == clock.now.isoformat()
    assert isinstance(entry, TelemetryAuditLog)


def test_workflow_hash_case_does_not_bypass_dedup(store, workflow_kwargs, count_rows):
    first = store.insert_workflow("anon", **workflow_kwargs(workflow_hash="ab" * 32))
    assert store.insert_workflow("anon", **workflow_kwargs(workflow_hash="AB" * 32)) is None
    assert count_rows(TelemetryWorkflow) == 1
    [row] = store.list_workflows(Principal.PRIVILEGED, WorkflowQuery(workflow_hash="Ab" * 32))
    assert (row.id, row.workflow_hash) == (first, "ab" * 32)


def test_audited_mutation_emits_no_deprecation_warnings(store, user_id):
    with warnings.catch_warnings():
        warnings.simplefilter("error", SADeprecationWarning)
        store.insert_event(Principal.PRIVILEGED, user_id, "backfill", {})
        assert store.delete_events(Principal.PRIVILEGED) == 1


def test_audit_log_reads_are_audited_when_enabled(store, user_id, monkeypatch, audit_rows):
    store.insert_event(Principal.PRIVILEGED, user_id, "backfill", {})
    monkeypatch.setenv("AUDIT_PRIVILEGED_READS", "true")
    from telemetry_ingest.config import reset_settings
    reset_settings()
    [entry] = store.list_audit_entries(Principal.PRIVILEGED)
    assert entry.operation == "INSERT"
    reads = [r for r in audit_rows() if r["operation"] == "SELECT"]
    assert [(r["table_name"], r["record_count"]) for r in reads] == [("telemetry_audit_log", 1)]

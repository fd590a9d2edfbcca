import threading
from datetime import datetime

import pytest

from telemetry_ingest.infrastructure.partitions import PartitionManager, partition_bounds, partition_name
from telemetry_ingest.models.tables import TelemetryPartition
from telemetry_ingest.security.access import AUDIT_TABLE, EVENTS_TABLE, WORKFLOWS_TABLE, Principal


def test_partition_name_format():
    assert partition_name(EVENTS_TABLE, datetime(2025, 3, 9, 23, 59)) == "telemetry_events_2025_03"
    assert partition_name(WORKFLOWS_TABLE, datetime(2026, 12, 1)) == "telemetry_workflows_2026_12"


def test_partition_bounds_roll_over_year():
    assert partition_bounds(datetime(2025, 12, 31, 23, 59, 59)) == (datetime(2025, 12, 1), datetime(2026, 1, 1))
    assert partition_bounds(datetime(2024, 2, 29, 8)) == (datetime(2024, 2, 1), datetime(2024, 3, 1))


def test_ensure_partition_is_idempotent(engine, count_rows):
    mgr = PartitionManager()
    ref = datetime(2026, 10, 18, 12)
    assert mgr.ensure_partition(EVENTS_TABLE, ref) == "telemetry_events_2026_10"
    assert mgr.ensure_partition(EVENTS_TABLE, ref) == "telemetry_events_2026_10"
    # a fresh manager has an empty cache and must hit the existing catalog row
    assert PartitionManager().ensure_partition(EVENTS_TABLE, datetime(2026, 10, 1)) == "telemetry_events_2026_10"
    assert count_rows(TelemetryPartition) == 1
    [p] = mgr.list_partitions(EVENTS_TABLE)
    assert (p.range_start, p.range_end) == (datetime(2026, 10, 1), datetime(2026, 11, 1))


def test_audit_table_is_not_partitioned(engine):
    with pytest.raises(ValueError):
        PartitionManager().ensure_partition(AUDIT_TABLE, datetime(2026, 1, 1))


def test_concurrent_first_writers_create_one_partition(engine, count_rows):
    managers = [PartitionManager() for _ in range(4)]
    barrier = threading.Barrier(8)
    results, errors = [], []

    def worker(mgr):
        barrier.wait()
        try:
            results.append(mgr.ensure_partition(WORKFLOWS_TABLE, datetime(2027, 1, 15)))
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(managers[i % 4],)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert set(results) == {"telemetry_workflows_2027_01"}
    assert count_rows(TelemetryPartition) == 1


def test_ensure_months_ahead(engine):
    mgr = PartitionManager()
    names = mgr.ensure_months_ahead(1, now=datetime(2026, 12, 20))
    assert sorted(names) == [
        "telemetry_events_2026_12",
        "telemetry_events_2027_01",
        "telemetry_workflows_2026_12",
        "telemetry_workflows_2027_01",
    ]
    assert len(mgr.list_partitions()) == 4


def test_retire_partitions_only_drops_fully_expired(engine):
    mgr = PartitionManager()
    for month in (5, 6, 7):
        mgr.ensure_partition(EVENTS_TABLE, datetime(2024, month, 10))
    retired = mgr.retire_partitions(datetime(2024, 7, 1))
    assert sorted(retired) == ["telemetry_events_2024_05", "telemetry_events_2024_06"]
    assert [p.name for p in mgr.list_partitions()] == ["telemetry_events_2024_07"]
    # retired names are forgotten, so a late writer re-registers the segment
    mgr.ensure_partition(EVENTS_TABLE, datetime(2024, 6, 3))
    assert len(mgr.list_partitions(EVENTS_TABLE)) == 2


def test_rows_are_tagged_with_their_partition(store, clock, user_id, engine):
    store.insert_event(Principal.ANONYMOUS, user_id, "session_started", {})
    clock.advance(days=30)
    store.insert_event(Principal.ANONYMOUS, user_id, "session_started", {})
    rows = store.list_events(Principal.PRIVILEGED)
    assert {r.partition_key for r in rows} == {"telemetry_events_2026_10", "telemetry_events_2026_11"}
    names = {p.name for p in store.partitions.list_partitions()}
    assert names == {"telemetry_events_2026_10", "telemetry_events_2026_11"}

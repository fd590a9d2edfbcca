from prometheus_client import CollectorRegistry, Counter

# Dedicated registry so /metrics only exposes this service's series
registry = CollectorRegistry()

EVENTS_INGESTED = Counter('telemetry_events_ingested_total', 'Telemetry events persisted', ['principal'], registry=registry)
WORKFLOWS_INGESTED = Counter('telemetry_workflows_ingested_total', 'Workflow telemetry rows persisted', ['principal'], registry=registry)
WORKFLOW_CONFLICTS = Counter('telemetry_workflow_conflicts_ignored_total', 'Duplicate (workflow_hash, user_id) submissions ignored', registry=registry)
VALIDATION_FAILURES = Counter('telemetry_validation_failures_total', 'Payloads rejected by validation', ['kind'], registry=registry)
PERMISSION_DENIALS = Counter('telemetry_permission_denials_total', 'Operations refused by the access policy', ['principal', 'operation', 'table'], registry=registry)
AUDIT_ENTRIES = Counter('telemetry_audit_entries_total', 'Audit log entries written', ['operation', 'table'], registry=registry)
AUDIT_FAILURES = Counter('telemetry_audit_failures_total', 'Audit log writes that failed', ['table'], registry=registry)
RETENTION_DELETED = Counter('telemetry_retention_deleted_total', 'Rows removed by retention cleanup', ['table'], registry=registry)
STORAGE_RETRIES = Counter('telemetry_storage_retries_total', 'Transient storage failures retried', ['operation'], registry=registry)
PARTITIONS_CREATED = Counter('telemetry_partitions_created_total', 'Monthly partitions registered', ['table'], registry=registry)

"""Error taxonomy for the ingestion and governance engine.

ValidationError and PermissionDenied are surfaced to callers as-is.
StorageError (and its subclasses) wrap failures of the durable store and are
safe to retry with backoff. A workflow submission that collides with an
existing (workflow_hash, user_id) pair is not an error: ``insert_workflow``
returns ``None`` instead.
"""
from __future__ import annotations
from typing import Any


class TelemetryError(Exception):
    pass


class ValidationError(TelemetryError):
    def __init__(self, errors: list[dict[str, Any]]):
        self.errors = errors
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors) or "invalid payload"
        super().__init__(summary)


class PermissionDenied(TelemetryError):
    def __init__(self, principal: Any, operation: str | None = None, table: str | None = None):
        self.principal = principal
        self.operation = operation
        self.table = table
        target = f"{operation} on {table}" if operation and table else "requested operation"
        super().__init__(f"principal {principal!r} is not permitted to perform {target}")


class StorageError(TelemetryError):
    pass


class AuditWriteFailure(StorageError):
    pass


class PartialCleanupError(StorageError):
    def __init__(self, message: str, rows_deleted: int, deleted: dict[str, int]):
        self.rows_deleted = rows_deleted
        self.deleted = deleted
        super().__init__(message)

"""Principal-based access policy enforced at the session boundary.

Two principals exist. ``anon`` may only INSERT into the event and workflow
stores; ``service_role`` may do anything. The policy is checked explicitly by
the store and again by ``GuardedSession`` listeners on every statement and
flush, so no code path can hand telemetry rows back to an anonymous caller.
"""
from __future__ import annotations
import json
import logging
from enum import Enum
from sqlalchemy import event
from sqlalchemy.orm import Session
from sqlalchemy.sql import Delete, Insert, Select, Update
from sqlalchemy.sql.elements import TextClause
from sqlalchemy.sql.util import find_tables
from telemetry_ingest.errors import PermissionDenied
from telemetry_ingest.infrastructure.metrics import PERMISSION_DENIALS

logger = logging.getLogger(__name__)

EVENTS_TABLE = "telemetry_events"
WORKFLOWS_TABLE = "telemetry_workflows"
AUDIT_TABLE = "telemetry_audit_log"
GOVERNED_TABLES = frozenset({EVENTS_TABLE, WORKFLOWS_TABLE, AUDIT_TABLE})
ANON_INSERT_TABLES = frozenset({EVENTS_TABLE, WORKFLOWS_TABLE})


class Principal(str, Enum):
    ANONYMOUS = "anon"
    PRIVILEGED = "service_role"


class Operation(str, Enum):
    INSERT = "INSERT"
    SELECT = "SELECT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def resolve_principal(value) -> Principal:
    """Map a principal or role label onto a known principal; unknown values fail closed."""
    if isinstance(value, Principal):
        return value
    try:
        return Principal(value)
    except ValueError:
        _deny(value, None, None)


def _deny(principal, operation, table):
    label = principal.value if isinstance(principal, Principal) else str(principal)
    op = operation.value if isinstance(operation, Operation) else operation
    PERMISSION_DENIALS.labels(principal=label, operation=op or "unknown", table=table or "unknown").inc()
    logger.warning(json.dumps({"event": "permission_denied", "principal": label, "operation": op, "table": table}))
    raise PermissionDenied(label, op, table)


def is_allowed(principal: Principal, operation: Operation, table: str) -> bool:
    if principal is Principal.PRIVILEGED:
        return True
    if principal is Principal.ANONYMOUS:
        return operation is Operation.INSERT and table in ANON_INSERT_TABLES
    return False


def authorize(principal, operation: Operation, table: str) -> Principal:
    p = resolve_principal(principal)
    if not is_allowed(p, operation, table):
        _deny(p, operation, table)
    return p


class GuardedSession(Session):
    """Session that refuses statements the bound principal may not run.

    The principal lives in ``session.info["principal"]``. Sessions without a
    principal may still use non-governed tables (the partition catalog).
    """

    @property
    def principal(self) -> Principal | None:
        return self.info.get("principal")


def _statement_operation(statement) -> Operation | None:
    if isinstance(statement, Select):
        return Operation.SELECT
    if isinstance(statement, Insert):
        return Operation.INSERT
    if isinstance(statement, Update):
        return Operation.UPDATE
    if isinstance(statement, Delete):
        return Operation.DELETE
    return None


def _governed_tables(statement) -> set[str]:
    names = {t.name for t in find_tables(statement, include_crud=True, include_joins=True, include_aliases=True)
             if hasattr(t, "name")}
    return names & GOVERNED_TABLES


def _check(session: Session, operation: Operation, tables) -> None:
    principal = session.info.get("principal")
    for table in sorted(tables):
        if principal is None:
            _deny("none", operation, table)
        if not is_allowed(principal, operation, table):
            _deny(principal, operation, table)


@event.listens_for(GuardedSession, "do_orm_execute")
def _guard_execute(orm_execute_state):
    statement = orm_execute_state.statement
    session = orm_execute_state.session
    if isinstance(statement, TextClause):
        # raw SQL cannot be inspected; only the privileged principal may issue it
        if session.info.get("principal") is not Principal.PRIVILEGED:
            _deny(session.info.get("principal") or "none", Operation.SELECT, "raw_sql")
        return
    operation = _statement_operation(statement)
    if operation is None:
        return
    tables = _governed_tables(statement)
    tables |= {m.local_table.name for m in orm_execute_state.all_mappers} & GOVERNED_TABLES
    # an INSERT .. FROM SELECT also reads its source tables
    if operation is Operation.INSERT and getattr(statement, "select", None) is not None:
        _check(session, Operation.SELECT, _governed_tables(statement.select))
        tables = {statement.table.name} & GOVERNED_TABLES
    _check(session, operation, tables)


@event.listens_for(GuardedSession, "before_flush")
def _guard_flush(session, flush_context, instances):
    for operation, objs in ((Operation.INSERT, session.new), (Operation.UPDATE, session.dirty), (Operation.DELETE, session.deleted)):
        tables = {getattr(o, "__tablename__", None) for o in objs}
        _check(session, operation, tables & GOVERNED_TABLES)


__all__ = [
    "Principal", "Operation", "GuardedSession", "authorize", "is_allowed", "resolve_principal",
    "EVENTS_TABLE", "WORKFLOWS_TABLE", "AUDIT_TABLE", "GOVERNED_TABLES",
]

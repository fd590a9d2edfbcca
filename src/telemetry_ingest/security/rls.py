from __future__ import annotations
import json
import logging
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from telemetry_ingest.infrastructure import db
from telemetry_ingest.config import get_settings
from telemetry_ingest.security.access import ANON_INSERT_TABLES, AUDIT_TABLE, Principal

logger = logging.getLogger(__name__)


def _policies() -> list[tuple[str, str, str]]:
    """(table, policy name, CREATE POLICY statement) for the insert-only anon / full service_role split."""
    anon, service = Principal.ANONYMOUS.value, Principal.PRIVILEGED.value
    out = []
    for tbl in sorted(ANON_INSERT_TABLES):
        out.append((tbl, f"anon_insert_{tbl}",
                    f'CREATE POLICY "anon_insert_{tbl}" ON {tbl} FOR INSERT TO {anon} WITH CHECK (true)'))
    for tbl in sorted(ANON_INSERT_TABLES | {AUDIT_TABLE}):
        out.append((tbl, f"service_role_all_{tbl}",
                    f'CREATE POLICY "service_role_all_{tbl}" ON {tbl} FOR ALL TO {service} USING (true) WITH CHECK (true)'))
    return out


def apply_rls_policies():
    """Mirror the access policy as PostgreSQL row-level security.

    The application-level guard is authoritative; RLS keeps direct database
    clients (anon key holders talking to the database API) to the same rules.
    Policies are dropped and recreated so the call is idempotent.
    """
    settings = get_settings()
    if not settings.enable_rls:
        return {"status": "skipped", "reason": "disabled"}
    if db.engine.dialect.name != 'postgresql':
        return {"status": "skipped", "reason": "not_postgres"}
    applied: list[str] = []
    with db.engine.begin() as conn:
        for tbl in sorted(ANON_INSERT_TABLES | {AUDIT_TABLE}):
            conn.execute(text(f"ALTER TABLE {tbl} ENABLE ROW LEVEL SECURITY"))
        for tbl, name, policy_sql in _policies():
            try:
                conn.execute(text(f'DROP POLICY IF EXISTS "{name}" ON {tbl}'))
                conn.execute(text(policy_sql))
                applied.append(name)
            except SQLAlchemyError as e:
                logger.warning(json.dumps({"event": "rls_policy_failed", "policy": name, "detail": str(e)}))
                raise
    return {"status": "ok", "applied": applied}

"""postgres-only JSONB indexes on telemetry payloads

Revision ID: 0002_jsonb_property_indexes
Revises: 0001_initial
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = '0002_jsonb_property_indexes'
down_revision = '0001_initial'
branch_labels = None
depends_on = None

INDEXES = [
    ("idx_telemetry_events_properties_gin",
     "CREATE INDEX IF NOT EXISTS idx_telemetry_events_properties_gin ON telemetry_events USING GIN ((properties::jsonb))"),
    ("idx_telemetry_events_tool_name",
     "CREATE INDEX IF NOT EXISTS idx_telemetry_events_tool_name ON telemetry_events ((properties::jsonb->>'tool_name'))"),
    ("idx_telemetry_events_error_type",
     "CREATE INDEX IF NOT EXISTS idx_telemetry_events_error_type ON telemetry_events ((properties::jsonb->>'error_type'))"),
    ("idx_telemetry_workflows_sanitized_gin",
     "CREATE INDEX IF NOT EXISTS idx_telemetry_workflows_sanitized_gin ON telemetry_workflows USING GIN ((sanitized_workflow::jsonb))"),
]


def upgrade():
    conn = op.get_bind()
    if conn.dialect.name != 'postgresql':
        return
    for _, ddl in INDEXES:
        conn.execute(sa.text(ddl))


def downgrade():
    conn = op.get_bind()
    if conn.dialect.name != 'postgresql':
        return
    for name, _ in INDEXES:
        conn.execute(sa.text(f'DROP INDEX IF EXISTS {name}'))

"""telemetry stores, audit log and partition catalog

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'telemetry_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('event', sa.String(100), nullable=False, index=True),
        sa.Column('properties', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
        sa.Column('partition_key', sa.String(64), nullable=False, index=True),
        sa.CheckConstraint('length(user_id) >= 16', name='telemetry_events_user_id_length'),
        sa.CheckConstraint('length(event) >= 1 AND length(event) <= 100', name='telemetry_events_event_length'),
    )
    op.create_index('ix_telemetry_events_user_event', 'telemetry_events', ['user_id', 'event'])
    op.create_index('ix_telemetry_events_created_user', 'telemetry_events', ['created_at', 'user_id'])

    op.create_table(
        'telemetry_workflows',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('workflow_hash', sa.String(64), nullable=False, index=True),
        sa.Column('node_count', sa.Integer, nullable=False, index=True),
        sa.Column('node_types', sa.JSON, nullable=False),
        sa.Column('has_trigger', sa.Boolean, nullable=False, server_default=sa.false(), index=True),
        sa.Column('has_webhook', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('complexity', sa.String(20), nullable=False, index=True),
        sa.Column('sanitized_workflow', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
        sa.Column('partition_key', sa.String(64), nullable=False, index=True),
        sa.UniqueConstraint('workflow_hash', 'user_id', name='telemetry_workflows_unique_hash_user'),
        sa.CheckConstraint('length(user_id) >= 16', name='telemetry_workflows_user_id_length'),
        sa.CheckConstraint('length(workflow_hash) = 64', name='telemetry_workflows_workflow_hash_length'),
        sa.CheckConstraint('node_count > 0', name='telemetry_workflows_node_count_positive'),
        sa.CheckConstraint("complexity IN ('simple', 'medium', 'complex')", name='telemetry_workflows_complexity_enum'),
    )
    op.create_index('ix_telemetry_workflows_user_created', 'telemetry_workflows', ['user_id', 'created_at'])

    op.create_table(
        'telemetry_audit_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('operation', sa.String(50), nullable=False, index=True),
        sa.Column('table_name', sa.String(50), nullable=False),
        sa.Column('record_count', sa.Integer, nullable=True),
        sa.Column('user_role', sa.String(50), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('metadata', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
    )

    op.create_table(
        'telemetry_partitions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(64), nullable=False, unique=True),
        sa.Column('table_name', sa.String(50), nullable=False, index=True),
        sa.Column('range_start', sa.DateTime, nullable=False, index=True),
        sa.Column('range_end', sa.DateTime, nullable=False, index=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )


def downgrade():
    op.drop_table('telemetry_partitions')
    op.drop_table('telemetry_audit_log')
    op.drop_index('ix_telemetry_workflows_user_created', table_name='telemetry_workflows')
    op.drop_table('telemetry_workflows')
    op.drop_index('ix_telemetry_events_created_user', table_name='telemetry_events')
    op.drop_index('ix_telemetry_events_user_event', table_name='telemetry_events')
    op.drop_table('telemetry_events')

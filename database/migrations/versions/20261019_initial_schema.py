"""Initial schema - workflows, webhook registrations, executions, node executions,
scheduled events, event store

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the hookflow tables"""

    op.create_table(
        'workflows',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('graph_definition', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_workflows_id'), 'workflows', ['id'], unique=False)
    op.create_index(op.f('ix_workflows_tenant_id'), 'workflows', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_workflows_is_active'), 'workflows', ['is_active'], unique=False)

    op.create_table(
        'webhook_registrations',
        sa.Column('id', sa.String(length=512), nullable=False),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('workflow_id', sa.String(length=255), nullable=False),
        sa.Column('provider_type', sa.String(length=50), nullable=False),
        sa.Column('node_id', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('last_triggered_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflows.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'provider_type', 'workflow_id', name='uq_webhook_registration')
    )
    op.create_index(op.f('ix_webhook_registrations_tenant_id'), 'webhook_registrations', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_webhook_registrations_workflow_id'), 'webhook_registrations', ['workflow_id'], unique=False)

    op.create_table(
        'executions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('workflow_id', sa.String(length=255), nullable=False),
        sa.Column('workflow_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('started_from', sa.String(length=255), nullable=True),
        sa.Column('trigger_source', sa.String(length=50), nullable=False),
        sa.Column('trigger_key', sa.String(length=512), nullable=True),
        sa.Column('trigger_data', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflows.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('trigger_key')
    )
    op.create_index(op.f('ix_executions_id'), 'executions', ['id'], unique=False)
    op.create_index(op.f('ix_executions_workflow_id'), 'executions', ['workflow_id'], unique=False)
    op.create_index(op.f('ix_executions_tenant_id'), 'executions', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_executions_status'), 'executions', ['status'], unique=False)

    op.create_table(
        'node_executions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('execution_id', sa.String(length=36), nullable=False),
        sa.Column('node_id', sa.String(length=255), nullable=False),
        sa.Column('node_type', sa.String(length=50), nullable=False),
        sa.Column('job_id', sa.String(length=255), nullable=True),
        sa.Column('queue_name', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('hop', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('parent_job_id', sa.String(length=255), nullable=True),
        sa.Column('input', sa.JSON(), nullable=True),
        sa.Column('output', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('execution_time', sa.Float(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['execution_id'], ['executions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('job_id')
    )
    op.create_index(op.f('ix_node_executions_id'), 'node_executions', ['id'], unique=False)
    op.create_index(op.f('ix_node_executions_execution_id'), 'node_executions', ['execution_id'], unique=False)
    op.create_index(op.f('ix_node_executions_node_id'), 'node_executions', ['node_id'], unique=False)
    op.create_index(op.f('ix_node_executions_status'), 'node_executions', ['status'], unique=False)
    op.create_index(op.f('ix_node_executions_parent_job_id'), 'node_executions', ['parent_job_id'], unique=False)

    op.create_table(
        'scheduled_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('workflow_id', sa.String(length=255), nullable=False),
        sa.Column('node_id', sa.String(length=255), nullable=False),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('schedule', sa.JSON(), nullable=False),
        sa.Column('last_run', sa.DateTime(), nullable=True),
        sa.Column('next_run', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['workflow_id'], ['workflows.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_scheduled_events_id'), 'scheduled_events', ['id'], unique=False)
    op.create_index(op.f('ix_scheduled_events_workflow_id'), 'scheduled_events', ['workflow_id'], unique=False)
    op.create_index(op.f('ix_scheduled_events_tenant_id'), 'scheduled_events', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_scheduled_events_next_run'), 'scheduled_events', ['next_run'], unique=False)
    op.create_index(op.f('ix_scheduled_events_status'), 'scheduled_events', ['status'], unique=False)

    op.create_table(
        'event_store',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('queue_name', sa.String(length=100), nullable=False),
        sa.Column('workflow_id', sa.String(length=255), nullable=False),
        sa.Column('tenant_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='waiting'),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('sequence_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_event_store_workflow_id'), 'event_store', ['workflow_id'], unique=False)
    op.create_index(op.f('ix_event_store_tenant_id'), 'event_store', ['tenant_id'], unique=False)


def downgrade() -> None:
    """Drop all hookflow tables"""
    op.drop_table('event_store')
    op.drop_table('scheduled_events')
    op.drop_table('node_executions')
    op.drop_table('executions')
    op.drop_table('webhook_registrations')
    op.drop_table('workflows')

"""File discovery tables

Revision ID: 001_file_discovery_initial
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_file_discovery_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Configurations table
    op.create_table(
        'file_check_configurations',
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('protocol', sa.String(length=32), nullable=False),
        sa.Column('protocol_settings', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('path_pattern', sa.String(length=500), nullable=False),
        sa.Column('name_pattern', sa.String(length=255), nullable=False),
        sa.Column('file_extension', sa.String(length=20), nullable=True),
        sa.Column('cron_expression', sa.String(length=120), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False),
        sa.Column('notification_targets', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('next_scheduled_run', sa.DateTime(), nullable=True),
        sa.Column('last_executed_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('tenant_id', 'id')
    )
    op.create_index(
        'ix_file_check_configurations_active',
        'file_check_configurations',
        ['is_active', 'next_scheduled_run'],
    )

    # Executions table
    op.create_table(
        'check_executions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('configuration_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('trigger', sa.String(length=16), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('attempt_started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('files_found', sa.Integer(), nullable=False),
        sa.Column('files_claimed', sa.Integer(), nullable=False),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('error_category', sa.String(length=32), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('resolved_path', sa.Text(), nullable=True),
        sa.Column('resolved_name', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['tenant_id', 'configuration_id'],
            ['file_check_configurations.tenant_id', 'file_check_configurations.id'],
        ),
        sa.CheckConstraint('files_claimed <= files_found', name='ck_check_executions_claimed_le_found'),
        sa.CheckConstraint('retry_count >= 0', name='ck_check_executions_retry_count')
    )
    op.create_index(
        'ix_check_executions_tenant_config_created',
        'check_executions',
        ['tenant_id', 'configuration_id', 'created_at'],
    )
    op.create_index('ix_check_executions_status', 'check_executions', ['status'])

    # Discovery claims table
    op.create_table(
        'discovered_files',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('configuration_id', sa.String(length=64), nullable=False),
        sa.Column('execution_id', sa.String(length=36), nullable=False),
        sa.Column('file_reference', sa.String(length=1024), nullable=False),
        sa.Column('file_name', sa.String(length=512), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        sa.Column('last_modified', sa.DateTime(), nullable=True),
        sa.Column('discovered_at', sa.DateTime(), nullable=False),
        sa.Column('discovery_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('notified_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(
            ['tenant_id', 'configuration_id'],
            ['file_check_configurations.tenant_id', 'file_check_configurations.id'],
        ),
        sa.ForeignKeyConstraint(['execution_id'], ['check_executions.id'], ondelete='CASCADE'),
        sa.UniqueConstraint(
            'tenant_id',
            'configuration_id',
            'file_reference',
            'discovery_date',
            name='uq_discovered_files_claim_key',
        )
    )
    op.create_index('ix_discovered_files_execution_id', 'discovered_files', ['execution_id'])


def downgrade() -> None:
    op.drop_index('ix_discovered_files_execution_id', table_name='discovered_files')
    op.drop_table('discovered_files')

    op.drop_index('ix_check_executions_status', table_name='check_executions')
    op.drop_index('ix_check_executions_tenant_config_created', table_name='check_executions')
    op.drop_table('check_executions')

    op.drop_index('ix_file_check_configurations_active', table_name='file_check_configurations')
    op.drop_table('file_check_configurations')

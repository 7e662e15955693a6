"""Create cloud_actions, cloud_action_logs and platform_credentials tables

Revision ID: 001_add_cloud_actions
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_add_cloud_actions'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the action store and credential tables."""
    op.create_table(
        'cloud_actions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('app_id', sa.String(length=128), nullable=False),
        sa.Column('environment_name', sa.String(length=64), nullable=False),
        sa.Column('credential_id', sa.String(length=36), nullable=True),
        sa.Column('operation_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='scheduled'),
        sa.Column('current_step', sa.String(length=64), nullable=True),
        sa.Column('step_data', sa.JSON(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_heartbeat', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=256), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_cloud_actions_tenant_id', 'cloud_actions', ['tenant_id'], unique=False)
    op.create_index('ix_cloud_actions_status', 'cloud_actions', ['status'], unique=False)
    op.create_index('ix_cloud_actions_scheduled_for', 'cloud_actions', ['scheduled_for'], unique=False)
    op.create_index('ix_cloud_actions_created_at', 'cloud_actions', ['created_at'], unique=False)
    # Dispatch selection: status + heartbeat for stale scans
    op.create_index('ix_cloud_actions_status_heartbeat', 'cloud_actions', ['status', 'last_heartbeat'], unique=False)

    op.create_table(
        'cloud_action_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('action_id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('level', sa.String(length=8), nullable=False, server_default='info'),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_cloud_action_logs_action_id', 'cloud_action_logs', ['action_id'], unique=False)
    op.create_index('ix_cloud_action_logs_tenant_id', 'cloud_action_logs', ['tenant_id'], unique=False)
    op.create_index('ix_cloud_action_logs_created_at', 'cloud_action_logs', ['created_at'], unique=False)

    op.create_table(
        'platform_credentials',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=36), nullable=False),
        sa.Column('username', sa.String(length=256), nullable=False),
        sa.Column('api_key', sa.Text(), nullable=True),
        sa.Column('pat', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_platform_credentials_tenant_id', 'platform_credentials', ['tenant_id'], unique=False)


def downgrade() -> None:
    """Drop the action store and credential tables."""
    op.drop_index('ix_platform_credentials_tenant_id', table_name='platform_credentials')
    op.drop_table('platform_credentials')
    op.drop_index('ix_cloud_action_logs_created_at', table_name='cloud_action_logs')
    op.drop_index('ix_cloud_action_logs_tenant_id', table_name='cloud_action_logs')
    op.drop_index('ix_cloud_action_logs_action_id', table_name='cloud_action_logs')
    op.drop_table('cloud_action_logs')
    op.drop_index('ix_cloud_actions_status_heartbeat', table_name='cloud_actions')
    op.drop_index('ix_cloud_actions_created_at', table_name='cloud_actions')
    op.drop_index('ix_cloud_actions_scheduled_for', table_name='cloud_actions')
    op.drop_index('ix_cloud_actions_status', table_name='cloud_actions')
    op.drop_index('ix_cloud_actions_tenant_id', table_name='cloud_actions')
    op.drop_table('cloud_actions')

"""initial_connector_schema

Revision ID: a1c4e7f2b9d3
Revises:
Create Date: 2026-10-16 09:00:00.000000

Connector sync schema:
- connectors: one row per configured provider integration
- google_credentials: Fernet-encrypted OAuth tokens
- google_drive_folders / google_drive_files: the Drive mirror
- google_drive_webhooks: at most one change channel per connector
- google_drive_sync_tokens / google_drive_configs: per-connector state
- jobs: launched sync workflows
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c4e7f2b9d3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the connector sync tables."""

    # === Create connectors table ===
    op.create_table(
        'connectors',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('type', sa.String(32), nullable=False),  # ConnectorProvider enum
        sa.Column('connection_id', sa.String(36), nullable=False),
        sa.Column('workspace_id', sa.String(64), nullable=False),
        sa.Column('data_source_name', sa.String(255), nullable=False),
        sa.Column('paused_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_success_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_connectors_workspace', 'connectors', ['workspace_id', 'data_source_name'])

    # === Create google_credentials table ===
    op.create_table(
        'google_credentials',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('access_token_encrypted', sa.Text(), nullable=True),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    # === Create google_drive_folders table ===
    op.create_table(
        'google_drive_folders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('connector_id', sa.String(36), sa.ForeignKey('connectors.id', ondelete='CASCADE'), nullable=False),
        sa.Column('folder_id', sa.String(128), nullable=False),
        sa.Column('sync_state', sa.String(20), nullable=False, server_default='SELECTED'),  # FolderSyncState enum
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('connector_id', 'folder_id', name='uq_google_drive_folders_connector_folder'),
    )

    # === Create google_drive_files table ===
    op.create_table(
        'google_drive_files',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('connector_id', sa.String(36), sa.ForeignKey('connectors.id', ondelete='CASCADE'), nullable=False),
        sa.Column('drive_file_id', sa.String(128), nullable=False),
        sa.Column('parent_id', sa.String(128), nullable=True),
        sa.Column('name', sa.String(1024), nullable=False, server_default=''),
        sa.Column('mime_type', sa.String(255), nullable=False),
        sa.Column('document_id', sa.String(255), nullable=True),
        sa.Column('remote_modified_at', sa.DateTime(), nullable=True),
        sa.Column('last_upserted_at', sa.DateTime(), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('connector_id', 'drive_file_id', name='uq_google_drive_files_connector_file'),
    )
    op.create_index(
        'ix_google_drive_files_connector_parent', 'google_drive_files', ['connector_id', 'parent_id']
    )

    # === Create google_drive_webhooks table ===
    op.create_table(
        'google_drive_webhooks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('connector_id', sa.String(36), sa.ForeignKey('connectors.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('webhook_id', sa.String(64), nullable=False, unique=True),
        sa.Column('resource_id', sa.String(255), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('renew_at', sa.DateTime(), nullable=False),
        sa.Column('renewed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    # === Create google_drive_sync_tokens table ===
    op.create_table(
        'google_drive_sync_tokens',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('connector_id', sa.String(36), sa.ForeignKey('connectors.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('sync_token', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    # === Create google_drive_configs table ===
    op.create_table(
        'google_drive_configs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('connector_id', sa.String(36), sa.ForeignKey('connectors.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('pdf_enabled', sa.Boolean(), nullable=False, server_default='0'),
    )

    # === Create jobs table ===
    op.create_table(
        'jobs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('type', sa.String(40), nullable=False),  # JobType enum
        sa.Column('status', sa.String(20), nullable=False, server_default='QUEUED'),  # JobStatus enum
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('connector_id', sa.String(36), sa.ForeignKey('connectors.id', ondelete='CASCADE'), nullable=True),
        sa.Column('payload_json', sa.Text(), nullable=True),
        sa.Column('result_json', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_jobs_status_type_priority', 'jobs', ['status', 'type', 'priority'])
    op.create_index('ix_jobs_connector_id', 'jobs', ['connector_id'])


def downgrade() -> None:
    """Drop the connector sync tables."""
    op.drop_index('ix_jobs_connector_id', table_name='jobs')
    op.drop_index('ix_jobs_status_type_priority', table_name='jobs')
    op.drop_table('jobs')
    op.drop_table('google_drive_configs')
    op.drop_table('google_drive_sync_tokens')
    op.drop_table('google_drive_webhooks')
    op.drop_index('ix_google_drive_files_connector_parent', table_name='google_drive_files')
    op.drop_table('google_drive_files')
    op.drop_table('google_drive_folders')
    op.drop_table('google_credentials')
    op.drop_index('ix_connectors_workspace', table_name='connectors')
    op.drop_table('connectors')

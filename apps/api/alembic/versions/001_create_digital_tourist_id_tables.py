"""Create digital tourist id, access log, lifecycle event and outbox tables.

Revision ID: 001
Revises:
Create Date: 2024-01-01
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'digital_tourist_ids',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('blockchain_id', sa.String(length=255), nullable=False),
        sa.Column('tourist_id', sa.String(length=255), nullable=False),
        sa.Column('tourist_name', sa.String(length=255), nullable=False),
        sa.Column('tourist_wallet', sa.String(length=255), nullable=False),
        sa.Column('personal_data_hash', sa.String(length=64), nullable=False),
        sa.Column('encryption_key_ref', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('issuer_id', sa.String(length=255), nullable=False),
        sa.Column('issuer_role', sa.String(length=100), nullable=False),
        sa.Column('validity_days', sa.Integer(), nullable=False),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('checkout_at', sa.DateTime(), nullable=True),
        sa.Column('last_accessed_at', sa.DateTime(), nullable=True),
        sa.Column('emergency_override', sa.Boolean(), nullable=False),
        sa.Column('access_count', sa.Integer(), nullable=False),
        sa.Column('consent_configured', sa.Boolean(), nullable=False),
        sa.Column('transaction_hash', sa.String(length=255), nullable=True),
        sa.Column('replaces_id', sa.String(length=255), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_digital_tourist_ids_id', 'digital_tourist_ids', ['id'])
    op.create_index('ix_digital_tourist_ids_blockchain_id', 'digital_tourist_ids', ['blockchain_id'], unique=True)
    op.create_index('ix_digital_tourist_ids_tourist_id', 'digital_tourist_ids', ['tourist_id'])
    op.create_index('ix_digital_tourist_ids_tourist_wallet', 'digital_tourist_ids', ['tourist_wallet'])
    op.create_index('ix_digital_tourist_ids_status', 'digital_tourist_ids', ['status'])
    op.create_index('ix_digital_tourist_ids_replaces_id', 'digital_tourist_ids', ['replaces_id'])
    op.create_index('ix_digital_tourist_ids_status_expires', 'digital_tourist_ids', ['status', 'expires_at'])

    # At most one ACTIVE credential per subject
    op.create_index(
        'uq_digital_tourist_ids_active_subject',
        'digital_tourist_ids',
        ['tourist_id'],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
        sqlite_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        'access_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('credential_id', sa.Integer(), nullable=False),
        sa.Column('blockchain_id', sa.String(length=255), nullable=False),
        sa.Column('accessor_id', sa.String(length=255), nullable=False),
        sa.Column('accessor_role', sa.String(length=100), nullable=False),
        sa.Column('accessor_wallet', sa.String(length=255), nullable=True),
        sa.Column('access_reason', sa.Text(), nullable=False),
        sa.Column('emergency_access', sa.Boolean(), nullable=False),
        sa.Column('transaction_hash', sa.String(length=255), nullable=False),
        sa.Column('data_accessed', sa.JSON(), nullable=False),
        sa.Column('access_metadata', sa.JSON(), nullable=True),
        sa.Column('accessed_at', sa.DateTime(), nullable=False),
        sa.Column('entry_hash', sa.String(length=64), nullable=False),
        sa.Column('previous_entry_hash', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['credential_id'], ['digital_tourist_ids.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('entry_hash')
    )
    op.create_index('ix_access_logs_id', 'access_logs', ['id'])
    op.create_index('ix_access_logs_credential_id', 'access_logs', ['credential_id'])
    op.create_index('ix_access_logs_blockchain_id', 'access_logs', ['blockchain_id'])
    op.create_index('ix_access_logs_accessor_id', 'access_logs', ['accessor_id'])
    op.create_index('ix_access_logs_emergency_access', 'access_logs', ['emergency_access'])
    op.create_index('ix_access_logs_transaction_hash', 'access_logs', ['transaction_hash'], unique=True)
    op.create_index('ix_access_logs_accessed_at', 'access_logs', ['accessed_at'])
    op.create_index('ix_access_logs_credential_accessed', 'access_logs', ['credential_id', 'accessed_at'])

    op.create_table(
        'lifecycle_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('blockchain_id', sa.String(length=255), nullable=True),
        sa.Column('tourist_id', sa.String(length=255), nullable=True),
        sa.Column('transaction_hash', sa.String(length=255), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_lifecycle_events_id', 'lifecycle_events', ['id'])
    op.create_index('ix_lifecycle_events_event_type', 'lifecycle_events', ['event_type'])
    op.create_index('ix_lifecycle_events_blockchain_id', 'lifecycle_events', ['blockchain_id'])
    op.create_index('ix_lifecycle_events_transaction_hash', 'lifecycle_events', ['transaction_hash'])
    op.create_index('ix_lifecycle_events_timestamp', 'lifecycle_events', ['timestamp'])

    op.create_table(
        'pending_local_writes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('operation', sa.String(length=50), nullable=False),
        sa.Column('blockchain_id', sa.String(length=255), nullable=True),
        sa.Column('tourist_id', sa.String(length=255), nullable=True),
        sa.Column('transaction_hash', sa.String(length=255), nullable=True),
        sa.Column('payload_json', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('applied_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_pending_local_writes_id', 'pending_local_writes', ['id'])
    op.create_index('ix_pending_local_writes_blockchain_id', 'pending_local_writes', ['blockchain_id'])
    op.create_index('ix_pending_local_writes_tourist_id', 'pending_local_writes', ['tourist_id'])
    op.create_index('ix_pending_local_writes_status', 'pending_local_writes', ['status'])


def downgrade() -> None:
    op.drop_table('pending_local_writes')
    op.drop_table('lifecycle_events')
    op.drop_table('access_logs')
    op.drop_index('uq_digital_tourist_ids_active_subject', table_name='digital_tourist_ids')
    op.drop_table('digital_tourist_ids')

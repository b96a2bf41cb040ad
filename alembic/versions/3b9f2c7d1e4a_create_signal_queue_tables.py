"""create_signal_queue_tables

Revision ID: 3b9f2c7d1e4a
Revises:
Create Date: 2026-10-18 09:12:44.318204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3b9f2c7d1e4a'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UNRESOLVED_STATUSES_SQL = "status IN ('Pending', 'Processing')"


def upgrade() -> None:
    """Create signal queue, processing history and embedding outbox."""

    # Helper for JSON type
    JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB, "postgresql")
    ID_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

    def timestamps():
        return [
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        ]

    op.create_table('signal_entries',
        sa.Column('id', ID_TYPE, autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=256), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('event_data', JSON_TYPE, nullable=True),
        sa.Column('priority', sa.String(length=20), nullable=False),
        sa.Column('window_type', sa.String(length=20), nullable=False),
        sa.Column('scheduled_window_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('target_entity_type', sa.String(length=100), nullable=True),
        sa.Column('target_entity_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.String(length=20), server_default='Pending', nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('leased_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lease_holder', sa.String(length=100), nullable=True),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_error', sa.String(length=500), nullable=True),
        sa.Column('processing_tier', sa.String(length=30), nullable=True),
        sa.Column('skip_reason', sa.String(length=500), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        *timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_signal_entries_priority_status_created', 'signal_entries', ['priority', 'status', 'created_at'])
    op.create_index('idx_signal_entries_window_status_start', 'signal_entries', ['window_type', 'status', 'scheduled_window_start'])
    op.create_index('idx_signal_entries_user_status_created', 'signal_entries', ['user_id', 'status', 'created_at'])
    op.create_index('idx_signal_entries_status_leased_until', 'signal_entries', ['status', 'leased_until'])
    op.create_index('idx_signal_entries_status_expires', 'signal_entries', ['status', 'expires_at'])
    op.create_index(
        'ux_signal_entries_unresolved_target',
        'signal_entries',
        ['user_id', 'event_type', 'target_entity_type', 'target_entity_id'],
        unique=True,
        postgresql_where=sa.text(UNRESOLVED_STATUSES_SQL),
        sqlite_where=sa.text(UNRESOLVED_STATUSES_SQL),
    )

    op.create_table('signal_processing_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=256), nullable=False),
        sa.Column('window_type', sa.String(length=20), nullable=False),
        sa.Column('batch_id', sa.Uuid(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('signals_received', sa.Integer(), server_default='0', nullable=False),
        sa.Column('signals_processed', sa.Integer(), server_default='0', nullable=False),
        sa.Column('signals_skipped', sa.Integer(), server_default='0', nullable=False),
        sa.Column('signal_ids', JSON_TYPE, nullable=True),
        sa.Column('final_tier', sa.String(length=30), server_default='Skipped', nullable=False),
        sa.Column('tier0_rules_triggered', sa.Integer(), server_default='0', nullable=False),
        sa.Column('tier1_combined_score', sa.Numeric(precision=5, scale=4), nullable=True),
        sa.Column('tier2_executed', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('recommendations_generated', sa.Integer(), server_default='0', nullable=False),
        sa.Column('recommendation_ids', JSON_TYPE, nullable=True),
        sa.Column('error_message', sa.String(length=1000), nullable=True),
        sa.Column('state_delta_summary', JSON_TYPE, nullable=True),
        *timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ux_signal_processing_history_batch', 'signal_processing_history', ['batch_id'], unique=True)
    op.create_index('idx_signal_processing_history_user_started', 'signal_processing_history', ['user_id', 'started_at'])
    op.create_index('idx_signal_processing_history_window_started', 'signal_processing_history', ['window_type', 'started_at'])

    op.create_table('outbox_entries',
        sa.Column('id', ID_TYPE, autoincrement=True, nullable=False),
        sa.Column('entity_type', sa.String(length=100), nullable=False),
        sa.Column('entity_id', sa.Uuid(), nullable=False),
        sa.Column('operation', sa.String(length=20), nullable=False),
        sa.Column('user_id', sa.String(length=256), nullable=True),
        sa.Column('status', sa.String(length=20), server_default='Pending', nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('leased_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lease_holder', sa.String(length=100), nullable=True),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_error', sa.String(length=2000), nullable=True),
        *timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_outbox_entries_status_created', 'outbox_entries', ['status', 'created_at'])
    op.create_index('idx_outbox_entries_status_leased_until', 'outbox_entries', ['status', 'leased_until'])
    op.create_index('idx_outbox_entries_entity', 'outbox_entries', ['entity_type', 'entity_id'])


def downgrade() -> None:
    op.drop_table('outbox_entries')
    op.drop_index('idx_signal_processing_history_window_started', table_name='signal_processing_history')
    op.drop_index('idx_signal_processing_history_user_started', table_name='signal_processing_history')
    op.drop_index('ux_signal_processing_history_batch', table_name='signal_processing_history')
    op.drop_table('signal_processing_history')
    op.drop_index('ux_signal_entries_unresolved_target', table_name='signal_entries')
    op.drop_table('signal_entries')

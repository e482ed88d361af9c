"""Storage Events Finality - initial schema

Revision ID: 001_storage_events
Revises:
Create Date: 2026-10-18

Implements:
- users: Accounts with rolling unknown-report counters
- contacts: Farmer nodes and their reputation
- storage_events: Exchange reports awaiting finality
- cron_jobs: Distributed job locks (lease + checkpoint payload)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '001_storage_events'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================================
    # USERS
    # =========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('unknown_reports_started', sa.DateTime(timezone=True), nullable=True),
        sa.Column('unknown_reports_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_reports_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('unknown_reports_bytes >= 0', name='users_unknown_bytes_non_negative'),
        sa.CheckConstraint(
            'unknown_reports_bytes <= total_reports_bytes',
            name='users_unknown_bytes_within_total',
        ),
    )

    # =========================================================================
    # CONTACTS - reputation subjects
    # =========================================================================
    op.create_table(
        'contacts',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('reputation', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_points_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_seen', sa.DateTime(timezone=True), nullable=True),
    )

    # =========================================================================
    # STORAGE_EVENTS - mutated exactly once (processed), never deleted here
    # =========================================================================
    op.create_table(
        'storage_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('user', sa.String(255), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('farmer', sa.String(64), sa.ForeignKey('contacts.id'), nullable=True),
        sa.Column('client', sa.String(64), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('client_report', postgresql.JSONB, nullable=True),
        sa.Column('farmer_report', postgresql.JSONB, nullable=True),
        sa.Column('storage', sa.BigInteger(), nullable=True),
        sa.Column('download_bandwidth', sa.BigInteger(), nullable=True),
        sa.CheckConstraint(
            'storage IS NULL OR download_bandwidth IS NULL',
            name='storage_events_single_byte_count',
        ),
    )

    # Window query: unprocessed events with a user, ascending by timestamp
    op.create_index(
        'idx_storage_events_unprocessed',
        'storage_events',
        ['timestamp'],
        postgresql_where=sa.text('processed = false AND "user" IS NOT NULL'),
    )

    # =========================================================================
    # CRON_JOBS - lock rows, raw_data carries {"lastTimestamp": <epoch ms>}
    # =========================================================================
    op.create_table(
        'cron_jobs',
        sa.Column('name', sa.String(255), primary_key=True),
        sa.Column('locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_data', postgresql.JSONB, nullable=False, server_default='{}'),
    )


def downgrade() -> None:
    op.drop_table('cron_jobs')
    op.drop_index('idx_storage_events_unprocessed', table_name='storage_events')
    op.drop_table('storage_events')
    op.drop_table('contacts')
    op.drop_table('users')

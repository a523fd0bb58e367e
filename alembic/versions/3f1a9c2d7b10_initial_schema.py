"""initial_schema

Revision ID: 3f1a9c2d7b10
Revises:
Create Date: 2026-10-17 10:12:31.402215

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2d7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Tables owned by the media-server sync process
    op.create_table('users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('server_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_server_id'), 'users', ['server_id'], unique=False)

    op.create_table('activities',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('server_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('short_overview', sa.Text(), nullable=True),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('date', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_activities_server_id'), 'activities', ['server_id'], unique=False)
    op.create_index(op.f('ix_activities_user_id'), 'activities', ['user_id'], unique=False)
    op.create_index(op.f('ix_activities_date'), 'activities', ['date'], unique=False)
    op.create_index('idx_activities_server_user_date', 'activities', ['server_id', 'user_id', 'date'], unique=False)

    op.create_table('sessions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('server_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('device_id', sa.String(), nullable=True),
        sa.Column('device_name', sa.String(), nullable=True),
        sa.Column('client_name', sa.String(), nullable=True),
        sa.Column('remote_end_point', sa.String(), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=True),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('last_activity_date', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sessions_server_id'), 'sessions', ['server_id'], unique=False)
    op.create_index(op.f('ix_sessions_user_id'), 'sessions', ['user_id'], unique=False)
    op.create_index('idx_sessions_server_user_start', 'sessions', ['server_id', 'user_id', 'start_time'], unique=False)

    # Create activity_locations table
    op.create_table('activity_locations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('activity_id', sa.String(), nullable=False),
        sa.Column('ip_address', sa.String(), nullable=False),
        sa.Column('country_code', sa.String(), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('region', sa.String(), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('is_private_ip', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['activity_id'], ['activities.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_activity_locations_activity_id'), 'activity_locations', ['activity_id'], unique=True)
    op.create_index(op.f('ix_activity_locations_ip_address'), 'activity_locations', ['ip_address'], unique=False)

    # Create user_fingerprints table
    op.create_table('user_fingerprints',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('server_id', sa.Integer(), nullable=False),
        sa.Column('known_countries', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('known_cities', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('known_device_ids', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('known_clients', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('location_patterns', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('device_patterns', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('hour_histogram', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('avg_sessions_per_day', sa.Float(), nullable=False),
        sa.Column('total_sessions', sa.Integer(), nullable=False),
        sa.Column('last_calculated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'server_id', name='uq_user_fingerprints_user_server')
    )
    op.create_index(op.f('ix_user_fingerprints_user_id'), 'user_fingerprints', ['user_id'], unique=False)
    op.create_index(op.f('ix_user_fingerprints_server_id'), 'user_fingerprints', ['server_id'], unique=False)

    # Create anomaly_events table
    op.create_table('anomaly_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('server_id', sa.Integer(), nullable=False),
        sa.Column('activity_id', sa.String(), nullable=True),
        sa.Column('anomaly_type', sa.String(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('signal_key', sa.String(), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(), nullable=True),
        sa.Column('resolution_note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['activity_id'], ['activities.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('activity_id', 'anomaly_type', name='uq_anomaly_events_activity_type')
    )
    op.create_index(op.f('ix_anomaly_events_user_id'), 'anomaly_events', ['user_id'], unique=False)
    op.create_index(op.f('ix_anomaly_events_server_id'), 'anomaly_events', ['server_id'], unique=False)
    op.create_index(op.f('ix_anomaly_events_activity_id'), 'anomaly_events', ['activity_id'], unique=False)
    op.create_index(op.f('ix_anomaly_events_anomaly_type'), 'anomaly_events', ['anomaly_type'], unique=False)
    op.create_index(op.f('ix_anomaly_events_resolved'), 'anomaly_events', ['resolved'], unique=False)
    op.create_index(op.f('ix_anomaly_events_created_at'), 'anomaly_events', ['created_at'], unique=False)
    op.create_index('idx_anomaly_events_signal', 'anomaly_events',
                    ['server_id', 'user_id', 'anomaly_type', 'signal_key'], unique=False)

    # Create background_tasks table
    op.create_table('background_tasks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('server_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('params', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('activities_processed', sa.Integer(), nullable=True),
        sa.Column('anomalies_detected', sa.Integer(), nullable=True),
        sa.Column('fingerprints_updated', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_background_tasks_kind_server_status', 'background_tasks',
                    ['kind', 'server_id', 'status'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('background_tasks')
    op.drop_table('anomaly_events')
    op.drop_table('user_fingerprints')
    op.drop_table('activity_locations')
    op.drop_table('sessions')
    op.drop_table('activities')
    op.drop_table('users')

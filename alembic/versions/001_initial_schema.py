"""Initial channelsync schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Creates:
1. Internal store: hotels, room_types, rate_plans, rooms, guests,
   reservations, reservation_charges, daily_rates, room_inventory
2. Channels: channel_connections, channel_rate_mappings
3. Sync state: external_identity_mappings, sync_checkpoints, api_tokens
4. Observability: audit_records, rate_limit_samples, inbound_reservation_events
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # ===========================================
    # 1. INTERNAL STORE
    # ===========================================
    op.create_table(
        'hotels',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('code', sa.String(50), nullable=True),
        sa.Column('timezone', sa.String(50), server_default='UTC'),
        *_timestamps(),
    )

    op.create_table(
        'room_types',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(36), sa.ForeignKey('hotels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('code', sa.String(50), nullable=True),
        sa.Column('capacity', sa.Integer, server_default='2'),
        sa.Column('base_price', sa.Numeric(10, 2), server_default='0'),
        *_timestamps(),
    )
    op.create_index('ix_room_types_hotel', 'room_types', ['hotel_id'])

    op.create_table(
        'rate_plans',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(36), sa.ForeignKey('hotels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('code', sa.String(50), nullable=True),
        sa.Column('is_default', sa.Boolean, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_rate_plans_hotel', 'rate_plans', ['hotel_id'])

    op.create_table(
        'rooms',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(36), sa.ForeignKey('hotels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('room_type_id', sa.String(36), sa.ForeignKey('room_types.id', ondelete='CASCADE'), nullable=False),
        sa.Column('number', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), server_default='Available'),
        *_timestamps(),
        sa.UniqueConstraint('hotel_id', 'number', name='uq_rooms_hotel_number'),
    )
    op.create_index('ix_rooms_hotel_type_status', 'rooms', ['hotel_id', 'room_type_id', 'status'])

    op.create_table(
        'guests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(36), sa.ForeignKey('hotels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('nationality', sa.String(100), nullable=True),
        sa.Column('id_number', sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_guests_hotel_email', 'guests', ['hotel_id', 'email'])

    op.create_table(
        'reservations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(36), sa.ForeignKey('hotels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('guest_id', sa.String(36), sa.ForeignKey('guests.id', ondelete='SET NULL'), nullable=True),
        sa.Column('room_type_id', sa.String(36), sa.ForeignKey('room_types.id', ondelete='SET NULL'), nullable=True),
        sa.Column('rate_plan_id', sa.String(36), sa.ForeignKey('rate_plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('room_id', sa.String(36), sa.ForeignKey('rooms.id', ondelete='SET NULL'), nullable=True),
        sa.Column('check_in', sa.Date, nullable=False),
        sa.Column('check_out', sa.Date, nullable=False),
        sa.Column('adults', sa.Integer, server_default='1'),
        sa.Column('children', sa.Integer, server_default='0'),
        sa.Column('total_amount', sa.Numeric(10, 2), server_default='0'),
        sa.Column('currency', sa.String(3), server_default='USD'),
        sa.Column('status', sa.String(20), server_default='Confirmed'),
        sa.Column('channel', sa.String(100), nullable=True),
        sa.Column('booking_reference', sa.String(100), nullable=True),
        sa.Column('confirmation_number', sa.String(100), nullable=True),
        sa.Column('api_source_id', sa.String(100), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('special_requests', sa.Text, nullable=True),
        sa.Column('cancelled_at', sa.DateTime, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('channel', 'api_source_id', name='uq_reservations_channel_source'),
    )
    op.create_index('ix_reservations_hotel_dates', 'reservations', ['hotel_id', 'check_in', 'check_out'])

    op.create_table(
        'reservation_charges',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('reservation_id', sa.String(36), sa.ForeignKey('reservations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('description', sa.String(255), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('charge_type', sa.String(50), server_default='Room'),
        sa.Column('currency', sa.String(3), server_default='USD'),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        'daily_rates',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(36), sa.ForeignKey('hotels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('room_type_id', sa.String(36), sa.ForeignKey('room_types.id', ondelete='CASCADE'), nullable=False),
        sa.Column('rate_plan_id', sa.String(36), sa.ForeignKey('rate_plans.id', ondelete='CASCADE'), nullable=False),
        sa.Column('date', sa.Date, nullable=False),
        sa.Column('rate', sa.Numeric(10, 2), nullable=False),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('hotel_id', 'room_type_id', 'rate_plan_id', 'date', name='uq_daily_rates_key'),
    )

    op.create_table(
        'room_inventory',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(36), sa.ForeignKey('hotels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('room_type_id', sa.String(36), sa.ForeignKey('room_types.id', ondelete='CASCADE'), nullable=False),
        sa.Column('date', sa.Date, nullable=False),
        sa.Column('allotment', sa.Integer, server_default='0'),
        sa.Column('stop_sell', sa.Boolean, server_default=sa.false()),
        sa.Column('min_stay', sa.Integer, nullable=True),
        sa.Column('max_stay', sa.Integer, nullable=True),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('hotel_id', 'room_type_id', 'date', name='uq_room_inventory_key'),
    )

    # ===========================================
    # 2. CHANNELS
    # ===========================================
    op.create_table(
        'channel_connections',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(36), sa.ForeignKey('hotels.id', ondelete='CASCADE'), nullable=False),
        sa.Column('channel_name', sa.String(100), nullable=False),
        sa.Column('channel_type', sa.String(50), server_default='ota'),
        sa.Column('connection_status', sa.String(20), server_default='pending'),
        sa.Column('receive_reservations', sa.Boolean, server_default=sa.true()),
        sa.Column('channel_settings', sa.JSON, nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'channel_rate_mappings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('channel_id', sa.String(36), sa.ForeignKey('channel_connections.id', ondelete='CASCADE'), nullable=False),
        sa.Column('channel_room_code', sa.String(100), nullable=True),
        sa.Column('channel_rate_plan_code', sa.String(100), nullable=True),
        sa.Column('room_type_id', sa.String(36), sa.ForeignKey('room_types.id', ondelete='CASCADE'), nullable=True),
        sa.Column('rate_plan_id', sa.String(36), sa.ForeignKey('rate_plans.id', ondelete='CASCADE'), nullable=True),
        sa.Column('is_active', sa.Boolean, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_channel_rate_mappings_room', 'channel_rate_mappings', ['channel_id', 'channel_room_code'])
    op.create_index('ix_channel_rate_mappings_rate', 'channel_rate_mappings', ['channel_id', 'channel_rate_plan_code'])

    # ===========================================
    # 3. SYNC STATE
    # ===========================================
    op.create_table(
        'external_identity_mappings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='beds24'),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('external_id', sa.String(100), nullable=False),
        sa.Column('internal_id', sa.String(36), nullable=False),
        sa.Column('metadata', sa.JSON, nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_identity_lookup', 'external_identity_mappings', ['provider', 'entity_type', 'external_id'])
    op.create_index('ix_identity_reverse', 'external_identity_mappings', ['provider', 'entity_type', 'internal_id'])

    op.create_table(
        'sync_checkpoints',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='beds24'),
        sa.Column('hotel_id', sa.String(36), nullable=False),
        sa.Column('bootstrap_completed', sa.Boolean, server_default=sa.false()),
        sa.Column('bootstrap_completed_at', sa.DateTime, nullable=True),
        sa.Column('sync_enabled', sa.Boolean, server_default=sa.false()),
        sa.Column('last_bookings_modified_from', sa.DateTime, nullable=True),
        sa.Column('last_calendar_start', sa.Date, nullable=True),
        sa.Column('last_calendar_end', sa.Date, nullable=True),
        sa.Column('last_bookings_synced_at', sa.DateTime, nullable=True),
        sa.Column('last_calendar_synced_at', sa.DateTime, nullable=True),
        sa.Column('settings', sa.JSON, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('provider', 'hotel_id', name='uq_sync_checkpoint_provider_hotel'),
    )

    op.create_table(
        'api_tokens',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='beds24'),
        sa.Column('token_type', sa.String(10), nullable=False),
        sa.Column('access_token', sa.String(2000), nullable=False),
        sa.Column('scopes', sa.JSON, nullable=True),
        sa.Column('expires_at', sa.DateTime, nullable=False),
        sa.Column('last_used_at', sa.DateTime, nullable=True),
        sa.Column('properties_access', sa.JSON, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('provider', 'token_type', name='uq_api_tokens_provider_type'),
    )

    # ===========================================
    # 4. OBSERVABILITY
    # ===========================================
    op.create_table(
        'audit_records',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='beds24'),
        sa.Column('operation', sa.String(100), nullable=False),
        sa.Column('hotel_id', sa.String(36), nullable=True),
        sa.Column('entity_type', sa.String(50), nullable=True),
        sa.Column('external_id', sa.String(100), nullable=True),
        sa.Column('action', sa.String(50), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='success'),
        sa.Column('cost', sa.Integer, nullable=True),
        sa.Column('limit_remaining', sa.Integer, nullable=True),
        sa.Column('limit_resets_in', sa.Integer, nullable=True),
        sa.Column('duration_ms', sa.Integer, nullable=True),
        sa.Column('records_processed', sa.Integer, nullable=True),
        sa.Column('request_payload', sa.JSON, nullable=True),
        sa.Column('response_payload', sa.JSON, nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('trace_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_status_created', 'audit_records', ['status', 'created_at'])
    op.create_index('ix_audit_hotel_entity', 'audit_records', ['hotel_id', 'entity_type'])
    op.create_index('ix_audit_trace', 'audit_records', ['trace_id'])

    op.create_table(
        'rate_limit_samples',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='beds24'),
        sa.Column('endpoint', sa.String(200), nullable=True),
        sa.Column('cost', sa.Integer, server_default='1'),
        sa.Column('five_min_remaining', sa.Integer, nullable=True),
        sa.Column('five_min_resets_in', sa.Integer, nullable=True),
        sa.Column('daily_remaining', sa.Integer, nullable=True),
        sa.Column('response_headers', sa.JSON, nullable=True),
        sa.Column('recorded_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_rate_limit_samples_recorded', 'rate_limit_samples', ['recorded_at'])

    op.create_table(
        'inbound_reservation_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('channel_id', sa.String(36), nullable=False),
        sa.Column('channel_reservation_id', sa.String(100), nullable=False),
        sa.Column('hotel_id', sa.String(36), nullable=True),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('guest_data', sa.JSON, nullable=True),
        sa.Column('booking_data', sa.JSON, nullable=True),
        sa.Column('raw_data', sa.JSON, nullable=True),
        sa.Column('processing_status', sa.String(20), server_default='pending'),
        sa.Column('reservation_id', sa.String(36), nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('processed_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_inbound_events_channel_res', 'inbound_reservation_events', ['channel_id', 'channel_reservation_id'])
    op.create_index('ix_inbound_events_status', 'inbound_reservation_events', ['processing_status'])


def downgrade() -> None:
    for table in (
        'inbound_reservation_events',
        'rate_limit_samples',
        'audit_records',
        'api_tokens',
        'sync_checkpoints',
        'external_identity_mappings',
        'channel_rate_mappings',
        'channel_connections',
        'room_inventory',
        'daily_rates',
        'reservation_charges',
        'reservations',
        'guests',
        'rooms',
        'rate_plans',
        'room_types',
        'hotels',
    ):
        op.drop_table(table)

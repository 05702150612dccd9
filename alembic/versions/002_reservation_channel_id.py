"""Key webhook reservations on the channel connection id

Revision ID: 002_reservation_channel_id
Revises: 001_initial_schema
Create Date: 2026-10-19

Adds reservations.channel_id and replaces UNIQUE(channel, api_source_id)
with UNIQUE(channel_id, api_source_id). The display name is not stable
(connections get renamed) and not unique (several hotels each have a
"Booking.com" connection), so it cannot identify a replayed webhook.

Existing webhook bookings are backfilled by matching hotel + display name.
Rows that match no connection keep channel_id NULL.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.sql import text

# revision identifiers, used by Alembic.
revision = '002_reservation_channel_id'
down_revision = '001_initial_schema'
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table('reservations') as batch:
        batch.add_column(sa.Column('channel_id', sa.String(36), nullable=True))

    bind = op.get_bind()
    bind.execute(text("""
        UPDATE reservations
        SET channel_id = (
            SELECT cc.id FROM channel_connections cc
            WHERE cc.hotel_id = reservations.hotel_id
              AND cc.channel_name = reservations.channel
            ORDER BY cc.created_at
            LIMIT 1
        )
        WHERE api_source_id IS NOT NULL
    """))

    with op.batch_alter_table('reservations') as batch:
        batch.drop_constraint('uq_reservations_channel_source', type_='unique')
        batch.create_unique_constraint(
            'uq_reservations_channel_id_source', ['channel_id', 'api_source_id']
        )


def downgrade() -> None:
    with op.batch_alter_table('reservations') as batch:
        batch.drop_constraint('uq_reservations_channel_id_source', type_='unique')
        batch.create_unique_constraint(
            'uq_reservations_channel_source', ['channel', 'api_source_id']
        )
        batch.drop_column('channel_id')

"""
Channel Integration Models

Models backing the channel-manager sync engine:
- ChannelConnection: an OTA/channel allowed to push reservations
- ChannelRateMapping: channel room/rate codes -> internal room type/rate plan
- ExternalIdentityMapping: (provider, entity_type, external_id) -> internal_id
- SyncCheckpoint: per-hotel delta sync cursors
- ApiToken: cached access tokens per token type
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, ForeignKey, DateTime, Date, Boolean, JSON, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base
import enum

DEFAULT_PROVIDER = "beds24"


class ConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    PENDING = "pending"


class TokenType(str, enum.Enum):
    READ = "read"
    WRITE = "write"


class EntityType(str, enum.Enum):
    PROPERTY = "property"
    ROOM_TYPE = "room_type"
    RESERVATION = "reservation"
    GUEST = "guest"
    BOOKINGS = "bookings"
    CALENDAR = "calendar"
    SYSTEM = "system"


class ChannelConnection(Base):
    """
    A sales channel (OTA) connected to one hotel.
    Only active connections with receive_reservations may push bookings.
    """
    __tablename__ = "channel_connections"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(36), ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False)

    channel_name = Column(String(100), nullable=False)  # "Booking.com", "Expedia", ...
    channel_type = Column(String(50), default="ota")
    connection_status = Column(String(20), default=ConnectionStatus.PENDING.value)
    receive_reservations = Column(Boolean, default=True)

    # Read through ChannelSettings
    channel_settings = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    rate_mappings = relationship("ChannelRateMapping", back_populates="channel", cascade="all, delete-orphan")

    @property
    def can_receive_reservations(self) -> bool:
        return self.connection_status == ConnectionStatus.ACTIVE.value and bool(self.receive_reservations)

    def __repr__(self):
        return f"<ChannelConnection {self.channel_name} hotel={self.hotel_id}>"


class ChannelRateMapping(Base):
    """Maps a channel's room/rate codes to internal ids"""
    __tablename__ = "channel_rate_mappings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_id = Column(String(36), ForeignKey("channel_connections.id", ondelete="CASCADE"), nullable=False)

    channel_room_code = Column(String(100), nullable=True)
    channel_rate_plan_code = Column(String(100), nullable=True)

    room_type_id = Column(String(36), ForeignKey("room_types.id", ondelete="CASCADE"), nullable=True)
    rate_plan_id = Column(String(36), ForeignKey("rate_plans.id", ondelete="CASCADE"), nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    channel = relationship("ChannelConnection", back_populates="rate_mappings")

    __table_args__ = (
        Index("ix_channel_rate_mappings_room", "channel_id", "channel_room_code"),
        Index("ix_channel_rate_mappings_rate", "channel_id", "channel_rate_plan_code"),
    )


class ExternalIdentityMapping(Base):
    """
    Durable association between an external entity and an internal row.

    Logically unique on (provider, entity_type, external_id). internal_id
    points at different tables depending on entity_type, so there is no FK;
    orphans and duplicates are cleaned up by the integrity repair pass.
    """
    __tablename__ = "external_identity_mappings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), default=DEFAULT_PROVIDER, nullable=False)
    entity_type = Column(String(50), nullable=False)
    external_id = Column(String(100), nullable=False)
    internal_id = Column(String(36), nullable=False)

    # "metadata" is reserved on declarative classes
    mapping_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_identity_lookup", "provider", "entity_type", "external_id"),
        Index("ix_identity_reverse", "provider", "entity_type", "internal_id"),
    )

    def __repr__(self):
        return f"<ExternalIdentityMapping {self.entity_type}:{self.external_id} -> {self.internal_id}>"


class SyncCheckpoint(Base):
    """
    Per (provider, hotel) delta sync state.

    last_bookings_modified_from / last_calendar_* only move forward during
    normal sync; the recovery engine is the only writer allowed to rewind.
    The *_synced_at columns record when a run last completed and drive the
    interval throttle.
    """
    __tablename__ = "sync_checkpoints"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), default=DEFAULT_PROVIDER, nullable=False)

    # No FK: checkpoints for deleted hotels are removed by the repair pass
    hotel_id = Column(String(36), nullable=False)

    bootstrap_completed = Column(Boolean, default=False)
    bootstrap_completed_at = Column(DateTime, nullable=True)
    sync_enabled = Column(Boolean, default=False)

    last_bookings_modified_from = Column(DateTime, nullable=True)
    last_calendar_start = Column(Date, nullable=True)
    last_calendar_end = Column(Date, nullable=True)

    last_bookings_synced_at = Column(DateTime, nullable=True)
    last_calendar_synced_at = Column(DateTime, nullable=True)

    # Read/written through SyncSettings
    settings = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "hotel_id", name="uq_sync_checkpoint_provider_hotel"),
    )

    def __repr__(self):
        return f"<SyncCheckpoint {self.provider} hotel={self.hotel_id} enabled={self.sync_enabled}>"


class ApiToken(Base):
    """Cached access token for one token type"""
    __tablename__ = "api_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), default=DEFAULT_PROVIDER, nullable=False)
    token_type = Column(String(10), nullable=False)

    access_token = Column(String(2000), nullable=False)
    scopes = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    last_used_at = Column(DateTime, nullable=True)

    # Property ids this token can see, from the token details endpoint
    properties_access = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "token_type", name="uq_api_tokens_provider_type"),
    )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at <= now

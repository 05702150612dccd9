# Models package
from .property import Hotel, RoomType, RatePlan, Room, RoomStatus
from .guest import Guest
from .reservation import Reservation, ReservationCharge, ReservationStatus
from .inventory import DailyRate, RoomInventory
from .channel_integration import (
    ChannelConnection,
    ChannelRateMapping,
    ExternalIdentityMapping,
    SyncCheckpoint,
    ApiToken,
    ConnectionStatus,
    TokenType,
    EntityType,
    DEFAULT_PROVIDER
)
from .audit import AuditRecord, AuditStatus, RateLimitSample
from .webhook_event import InboundReservationEvent, EventProcessingStatus

__all__ = [
    "Hotel", "RoomType", "RatePlan", "Room", "RoomStatus",
    "Guest",
    "Reservation", "ReservationCharge", "ReservationStatus",
    "DailyRate", "RoomInventory",
    "ChannelConnection", "ChannelRateMapping", "ExternalIdentityMapping", "SyncCheckpoint",
    "ApiToken", "ConnectionStatus", "TokenType", "EntityType", "DEFAULT_PROVIDER",
    "AuditRecord", "AuditStatus", "RateLimitSample",
    "InboundReservationEvent", "EventProcessingStatus",
]

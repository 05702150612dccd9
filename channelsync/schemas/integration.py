"""
Sync Command Schemas

Request bodies for the sync command surface. Each operation family is a
tagged union discriminated on `action`, so an unknown action is rejected
at validation time and every variant maps to exactly one handler.
"""

from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter

from .settings import RecoveryOptions

TokenTypeLiteral = Literal["read", "write"]
SyncTypeLiteral = Literal["bookings", "calendar", "all"]


class CommandModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ==================
# Token Manager
# ==================

class RefreshTokenCommand(CommandModel):
    action: Literal["refresh_token"]
    token_type: TokenTypeLiteral = Field(default="read", alias="tokenType")


class TokenDiagnosticsCommand(CommandModel):
    action: Literal["diagnostics"]
    token_type: Optional[TokenTypeLiteral] = Field(default=None, alias="tokenType")


TokenAction = Annotated[
    Union[RefreshTokenCommand, TokenDiagnosticsCommand],
    Field(discriminator="action"),
]


# ==================
# Scheduler
# ==================

class RunScheduledCommand(CommandModel):
    action: Literal["run_scheduled"]


class ManualTriggerCommand(CommandModel):
    action: Literal["manual_trigger"]
    sync_type: SyncTypeLiteral = Field(default="all", alias="syncType")
    hotel_id: Optional[str] = Field(default=None, alias="hotelId")


class HealthCheckCommand(CommandModel):
    action: Literal["health_check"]


SchedulerAction = Annotated[
    Union[RunScheduledCommand, ManualTriggerCommand, HealthCheckCommand],
    Field(discriminator="action"),
]


# ==================
# Delta Sync
# ==================

class DeltaSyncCommand(CommandModel):
    sync_type: SyncTypeLiteral = Field(default="all", alias="syncType")
    hotel_id: Optional[str] = Field(default=None, alias="hotelId")
    force_sync: bool = Field(default=False, alias="forceSync")
    trace_id: Optional[str] = Field(default=None, alias="traceId")


# ==================
# Recovery
# ==================

class AutoRecoveryCommand(CommandModel):
    action: Literal["auto_recovery"]
    hotel_id: Optional[str] = None


class ManualRecoveryCommand(CommandModel):
    action: Literal["manual_recovery"]
    hotel_id: Optional[str] = None
    entity_type: Optional[str] = None
    recovery_options: RecoveryOptions = Field(default_factory=RecoveryOptions)


class ResetSyncStateCommand(CommandModel):
    action: Literal["reset_sync_state"]
    hotel_id: Optional[str] = None


class RepairDataIntegrityCommand(CommandModel):
    action: Literal["repair_data_integrity"]
    hotel_id: Optional[str] = None


RecoveryAction = Annotated[
    Union[AutoRecoveryCommand, ManualRecoveryCommand, ResetSyncStateCommand, RepairDataIntegrityCommand],
    Field(discriminator="action"),
]

TOKEN_ACTION = TypeAdapter(TokenAction)
SCHEDULER_ACTION = TypeAdapter(SchedulerAction)
RECOVERY_ACTION = TypeAdapter(RecoveryAction)


# ==================
# Webhook Reservations
# ==================

class WebhookGuest(CommandModel):
    """Guest block; channels send either camelCase or snake_case"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    first_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("firstName", "first_name"))
    last_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("lastName", "last_name"))
    email: Optional[str] = None
    phone: Optional[str] = None
    nationality: Optional[str] = None
    id_number: Optional[str] = Field(default=None, validation_alias=AliasChoices("idNumber", "id_number"))


class WebhookCharge(CommandModel):
    description: str = "Room charge"
    amount: float = 0
    type: str = "Room"
    currency: str = "USD"


class WebhookBooking(CommandModel):
    """Booking block. Every field is optional so update can send a subset."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    room_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("roomType", "room_type"))
    rate_plan: Optional[str] = Field(default=None, validation_alias=AliasChoices("ratePlan", "rate_plan"))
    check_in: Optional[date] = Field(default=None, validation_alias=AliasChoices("checkIn", "check_in"))
    check_out: Optional[date] = Field(default=None, validation_alias=AliasChoices("checkOut", "check_out"))
    adults: Optional[int] = None
    children: Optional[int] = None
    total_amount: Optional[float] = Field(default=None, validation_alias=AliasChoices("totalAmount", "total_amount"))
    currency: Optional[str] = None
    reference: Optional[str] = None
    confirmation_number: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("confirmationNumber", "confirmation_number")
    )
    status: Optional[str] = None
    notes: Optional[str] = None
    special_requests: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("specialRequests", "special_requests")
    )
    charges: Optional[List[WebhookCharge]] = None


class WebhookData(CommandModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    guest: Optional[WebhookGuest] = None
    booking: Optional[WebhookBooking] = None
    reason: Optional[str] = None


class WebhookReservationCommand(CommandModel):
    channel_id: str = Field(..., alias="channelId")
    reservation_id: str = Field(..., alias="reservationId")
    action: Literal["create", "update", "cancel"]
    data: WebhookData = Field(default_factory=WebhookData)


# ==================
# Read models
# ==================

class SyncCheckpointResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    hotel_id: str
    bootstrap_completed: bool
    sync_enabled: bool
    last_bookings_modified_from: Optional[datetime] = None
    last_calendar_start: Optional[date] = None
    last_calendar_end: Optional[date] = None
    last_bookings_synced_at: Optional[datetime] = None
    last_calendar_synced_at: Optional[datetime] = None
    settings: Optional[Dict[str, Any]] = None


class AuditRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    operation: str
    hotel_id: Optional[str] = None
    entity_type: Optional[str] = None
    external_id: Optional[str] = None
    status: str
    cost: Optional[int] = None
    limit_remaining: Optional[int] = None
    duration_ms: Optional[int] = None
    records_processed: Optional[int] = None
    error_message: Optional[str] = None
    trace_id: Optional[str] = None
    created_at: datetime


class IdentityMappingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    entity_type: str
    external_id: str
    internal_id: str
    mapping_metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class InboundEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel_id: str
    channel_reservation_id: str
    hotel_id: Optional[str] = None
    action: str
    processing_status: str
    reservation_id: Optional[str] = None
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

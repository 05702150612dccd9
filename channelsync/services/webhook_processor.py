"""
Webhook Reservation Processor

Handles reservations pushed by connected channels (OTAs):
1. Validate the channel is active and allowed to push reservations
2. Persist the raw event (pending)
3. Apply create / update / cancel
4. Mark the event processed, or error with the message

Every delivery appends its own InboundReservationEvent row; history is
never overwritten. Creates are idempotent on (channel, reservation id), so
a redelivered or retried create returns the existing reservation.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.channel_integration import ChannelConnection, ChannelRateMapping
from ..models.guest import Guest
from ..models.property import RatePlan, Room, RoomStatus, RoomType
from ..models.reservation import Reservation, ReservationCharge, ReservationStatus
from ..models.webhook_event import InboundReservationEvent, EventProcessingStatus
from ..schemas.integration import WebhookBooking, WebhookGuest, WebhookReservationCommand
from ..schemas.settings import ChannelSettings
from ..utils.db_helpers import acquire_row_lock
from ..utils.dates import utcnow
from ..utils.errors import MappingError, ValidationError
from ..utils.logging_config import set_trace_context
from .audit_service import AuditLogger

logger = logging.getLogger(__name__)

WEBHOOK_STATUS_MAP = {
    "confirmed": ReservationStatus.CONFIRMED.value,
    "pending": ReservationStatus.TENTATIVE.value,
    "cancelled": ReservationStatus.CANCELLED.value,
    "no_show": ReservationStatus.NO_SHOW.value,
    "checked_in": ReservationStatus.IN_HOUSE.value,
    "checked_out": ReservationStatus.CHECKED_OUT.value,
}


def map_webhook_status(status: Optional[str]) -> str:
    """Channel reservation status -> internal status, defaulting to Confirmed"""
    if not status:
        return ReservationStatus.CONFIRMED.value
    return WEBHOOK_STATUS_MAP.get(status.strip().lower(), ReservationStatus.CONFIRMED.value)


@dataclass
class WebhookProcessResult:
    """Result of processing one webhook delivery"""
    success: bool
    action: str  # create, update, cancel
    reservation_id: Optional[str] = None
    event_id: Optional[str] = None
    error: Optional[str] = None
    already_processed: bool = False
    warnings: List[str] = field(default_factory=list)


class WebhookReservationProcessor:

    def __init__(self, db: Session, request_id: Optional[str] = None):
        self.db = db
        self.request_id = request_id or "no-request-id"
        self.audit = AuditLogger(db)

    def process(self, command: WebhookReservationCommand) -> WebhookProcessResult:
        set_trace_context(self.request_id)
        channel = self.db.query(ChannelConnection).filter(
            ChannelConnection.id == command.channel_id
        ).first()

        event = InboundReservationEvent(
            channel_id=command.channel_id,
            channel_reservation_id=command.reservation_id,
            hotel_id=channel.hotel_id if channel else None,
            action=command.action,
            guest_data=command.data.guest.model_dump(mode="json", exclude_none=True) if command.data.guest else None,
            booking_data=command.data.booking.model_dump(mode="json", exclude_none=True) if command.data.booking else None,
            raw_data=command.model_dump(mode="json", by_alias=True),
            processing_status=EventProcessingStatus.PENDING.value,
        )
        self.db.add(event)
        self.db.commit()
        event_id = event.id

        result = WebhookProcessResult(success=False, action=command.action, event_id=event_id)
        try:
            if channel is None:
                raise ValidationError(f"Unknown channel {command.channel_id}")
            if not channel.can_receive_reservations:
                raise ValidationError(
                    f"Channel {channel.channel_name} is not active or not allowed to push reservations"
                )

            if command.action == "create":
                reservation = self._handle_create(channel, command, result)
            elif command.action == "update":
                reservation = self._handle_update(channel, command)
            else:
                reservation = self._handle_cancel(channel, command)

            event = self.db.query(InboundReservationEvent).filter(InboundReservationEvent.id == event_id).one()
            event.processing_status = EventProcessingStatus.PROCESSED.value
            event.reservation_id = reservation.id
            event.processed_at = utcnow()
            self.db.commit()

            result.success = True
            result.reservation_id = reservation.id
        except Exception as e:
            # Any failure leaves an error event behind; the delivery is safe to retry
            self.db.rollback()
            event = self.db.query(InboundReservationEvent).filter(InboundReservationEvent.id == event_id).one()
            event.processing_status = EventProcessingStatus.ERROR.value
            event.error_message = str(e)[:2000]
            event.processed_at = utcnow()
            self.db.commit()
            result.error = str(e)
            logger.error(f"[{self.request_id}] Webhook {command.action} {command.reservation_id} failed: {e}")

        self.audit.log(
            "reservation_webhook",
            status="success" if result.success else "error",
            hotel_id=channel.hotel_id if channel else None,
            entity_type="reservation",
            external_id=command.reservation_id,
            action=command.action,
            request_payload=event.raw_data,
            response_payload={"reservation_id": result.reservation_id, "already_processed": result.already_processed},
            error_message=result.error,
            trace_id=self.request_id,
        )
        return result

    # ==================
    # Handlers
    # ==================

    def _handle_create(
        self,
        channel: ChannelConnection,
        command: WebhookReservationCommand,
        result: WebhookProcessResult,
    ) -> Reservation:
        existing = self._find_reservation(channel, command.reservation_id)
        if existing:
            logger.info(
                f"[{self.request_id}] Duplicate create for {channel.channel_name} "
                f"reservation {command.reservation_id}, returning {existing.id}"
            )
            result.already_processed = True
            return existing

        guest_data = command.data.guest
        booking = command.data.booking
        if guest_data is None or booking is None:
            raise ValidationError("Reservation data must include guest and booking")
        if not booking.check_in or not booking.check_out:
            raise ValidationError("Booking must include checkIn and checkOut")
        if booking.check_out <= booking.check_in:
            raise ValidationError("checkOut must be after checkIn")

        hotel_id = channel.hotel_id
        guest = self._find_or_create_guest(hotel_id, guest_data)
        room_type_id = self._resolve_room_type(channel, booking.room_type, result)
        rate_plan_id = self._resolve_rate_plan(channel, booking.rate_plan, result)
        status = map_webhook_status(booking.status)

        reservation = Reservation(
            hotel_id=hotel_id,
            guest_id=guest.id,
            room_type_id=room_type_id,
            rate_plan_id=rate_plan_id,
            check_in=booking.check_in,
            check_out=booking.check_out,
            adults=booking.adults or 1,
            children=booking.children or 0,
            total_amount=Decimal(str(booking.total_amount or 0)),
            currency=booking.currency or "USD",
            status=status,
            channel=channel.channel_name,
            channel_id=channel.id,
            booking_reference=booking.reference,
            confirmation_number=booking.confirmation_number,
            api_source_id=command.reservation_id,
            notes=booking.notes,
            special_requests=booking.special_requests,
        )
        if status == ReservationStatus.CANCELLED.value:
            reservation.cancelled_at = utcnow()
        self.db.add(reservation)
        self.db.flush()

        if status != ReservationStatus.CANCELLED.value:
            self._assign_room(reservation)

        for charge in booking.charges or []:
            self.db.add(ReservationCharge(
                reservation_id=reservation.id,
                description=charge.description,
                amount=Decimal(str(charge.amount)),
                charge_type=charge.type,
                currency=charge.currency,
            ))

        self.db.flush()
        self._maybe_send_confirmation(channel, reservation, guest)
        logger.info(
            f"[{self.request_id}] Created reservation {reservation.id} from "
            f"{channel.channel_name} {command.reservation_id}"
        )
        return reservation

    def _handle_update(self, channel: ChannelConnection, command: WebhookReservationCommand) -> Reservation:
        reservation = self._find_reservation(channel, command.reservation_id)
        if reservation is None:
            raise ValidationError(f"Reservation {command.reservation_id} not found for update")

        booking = command.data.booking
        if booking is not None:
            self._apply_booking_fields(channel, reservation, booking)

        guest_data = command.data.guest
        if guest_data is not None and reservation.guest_id:
            guest = self.db.query(Guest).filter(Guest.id == reservation.guest_id).first()
            if guest:
                for name in guest_data.model_fields_set:
                    value = getattr(guest_data, name)
                    if value is not None:
                        setattr(guest, name, value)

        reservation.updated_at = utcnow()
        self.db.flush()
        logger.info(f"[{self.request_id}] Updated reservation {reservation.id} from {channel.channel_name}")
        return reservation

    def _apply_booking_fields(self, channel: ChannelConnection, reservation: Reservation, booking: WebhookBooking):
        """Only fields present in the payload are applied"""
        present = booking.model_fields_set

        simple = {
            "check_in": "check_in",
            "check_out": "check_out",
            "adults": "adults",
            "children": "children",
            "currency": "currency",
            "reference": "booking_reference",
            "confirmation_number": "confirmation_number",
            "notes": "notes",
            "special_requests": "special_requests",
        }
        for source, target in simple.items():
            if source in present and getattr(booking, source) is not None:
                setattr(reservation, target, getattr(booking, source))

        if "total_amount" in present and booking.total_amount is not None:
            reservation.total_amount = Decimal(str(booking.total_amount))

        if reservation.check_out <= reservation.check_in:
            raise ValidationError("checkOut must be after checkIn")

        if "room_type" in present and booking.room_type:
            new_type = self._resolve_room_type(channel, booking.room_type, None)
            if new_type != reservation.room_type_id:
                self._release_room(reservation)
                reservation.room_type_id = new_type
                if reservation.status != ReservationStatus.CANCELLED.value:
                    self._assign_room(reservation)

        if "rate_plan" in present and booking.rate_plan:
            reservation.rate_plan_id = self._resolve_rate_plan(channel, booking.rate_plan, None)

        if "status" in present and booking.status:
            new_status = map_webhook_status(booking.status)
            if new_status == ReservationStatus.CANCELLED.value and reservation.status != new_status:
                reservation.cancelled_at = utcnow()
                self._release_room(reservation)
            reservation.status = new_status

    def _handle_cancel(self, channel: ChannelConnection, command: WebhookReservationCommand) -> Reservation:
        reservation = self._find_reservation(channel, command.reservation_id)
        if reservation is None:
            raise ValidationError(f"Reservation {command.reservation_id} not found for cancel")

        if reservation.status == ReservationStatus.CANCELLED.value:
            logger.info(f"[{self.request_id}] Reservation {reservation.id} already cancelled")
            return reservation

        reason = command.data.reason or "No reason provided"
        note = f"Cancelled via {channel.channel_name}: {reason}"
        reservation.status = ReservationStatus.CANCELLED.value
        reservation.cancelled_at = utcnow()
        reservation.notes = f"{reservation.notes}\n{note}" if reservation.notes else note
        self._release_room(reservation)
        self.db.flush()
        logger.info(f"[{self.request_id}] Cancelled reservation {reservation.id} via {channel.channel_name}")
        return reservation

    # ==================
    # Helpers
    # ==================

    def _find_reservation(self, channel: ChannelConnection, reservation_id: str) -> Optional[Reservation]:
        """Keyed on the connection id; the display name may change or repeat across hotels"""
        return self.db.query(Reservation).filter(
            Reservation.channel_id == channel.id,
            Reservation.api_source_id == reservation_id,
        ).first()

    def _find_or_create_guest(self, hotel_id: str, data: WebhookGuest) -> Guest:
        """Guests are matched by email within the hotel"""
        if data.email:
            guest = self.db.query(Guest).filter(
                Guest.hotel_id == hotel_id,
                Guest.email == data.email,
            ).first()
            if guest:
                return guest

        guest = Guest(
            hotel_id=hotel_id,
            first_name=data.first_name or "Unknown",
            last_name=data.last_name or "Guest",
            email=data.email,
            phone=data.phone,
            nationality=data.nationality,
            id_number=data.id_number,
        )
        self.db.add(guest)
        self.db.flush()
        return guest

    def _resolve_room_type(self, channel: ChannelConnection, code: Optional[str], result: Optional[WebhookProcessResult]) -> str:
        if code:
            mapping = self.db.query(ChannelRateMapping).filter(
                ChannelRateMapping.channel_id == channel.id,
                ChannelRateMapping.channel_room_code == code,
                ChannelRateMapping.is_active.is_(True),
                ChannelRateMapping.room_type_id.isnot(None),
            ).first()
            if mapping:
                return mapping.room_type_id

            room_type = self.db.query(RoomType).filter(
                RoomType.hotel_id == channel.hotel_id,
                RoomType.code == code,
            ).first()
            if room_type:
                return room_type.id

        fallback = self.db.query(RoomType).filter(
            RoomType.hotel_id == channel.hotel_id
        ).order_by(RoomType.created_at, RoomType.id).first()
        if fallback is None:
            raise MappingError(f"Hotel {channel.hotel_id} has no room types configured")

        message = (
            f"Room type code {code!r} from {channel.channel_name} is not mapped; "
            f"falling back to first room type {fallback.id}"
        )
        logger.warning(f"[{self.request_id}] {message}")
        if result is not None:
            result.warnings.append(message)
        return fallback.id

    def _resolve_rate_plan(self, channel: ChannelConnection, code: Optional[str], result: Optional[WebhookProcessResult]) -> Optional[str]:
        if code:
            mapping = self.db.query(ChannelRateMapping).filter(
                ChannelRateMapping.channel_id == channel.id,
                ChannelRateMapping.channel_rate_plan_code == code,
                ChannelRateMapping.is_active.is_(True),
                ChannelRateMapping.rate_plan_id.isnot(None),
            ).first()
            if mapping:
                return mapping.rate_plan_id

            plan = self.db.query(RatePlan).filter(
                RatePlan.hotel_id == channel.hotel_id,
                RatePlan.code == code,
            ).first()
            if plan:
                return plan.id

        fallback = self.db.query(RatePlan).filter(
            RatePlan.hotel_id == channel.hotel_id
        ).order_by(RatePlan.created_at, RatePlan.id).first()
        if fallback is None:
            logger.warning(f"[{self.request_id}] Hotel {channel.hotel_id} has no rate plans; reservation has none")
            return None

        message = (
            f"Rate plan code {code!r} from {channel.channel_name} is not mapped; "
            f"falling back to first rate plan {fallback.id}"
        )
        logger.warning(f"[{self.request_id}] {message}")
        if result is not None:
            result.warnings.append(message)
        return fallback.id

    def _assign_room(self, reservation: Reservation) -> Optional[Room]:
        """Take the first available room of the reservation's type, if any"""
        if not reservation.room_type_id:
            return None
        room = acquire_row_lock(
            self.db,
            Room,
            (Room.hotel_id == reservation.hotel_id)
            & (Room.room_type_id == reservation.room_type_id)
            & (Room.status == RoomStatus.AVAILABLE.value),
            skip_locked=True,
        )
        if room is None:
            logger.info(f"[{self.request_id}] No available room for reservation {reservation.id}")
            return None
        room.status = RoomStatus.RESERVED.value
        reservation.room_id = room.id
        return room

    def _release_room(self, reservation: Reservation):
        if not reservation.room_id:
            return
        room = self.db.query(Room).filter(Room.id == reservation.room_id).first()
        if room and room.status != RoomStatus.OUT_OF_ORDER.value:
            room.status = RoomStatus.AVAILABLE.value
        reservation.room_id = None

    def _maybe_send_confirmation(self, channel: ChannelConnection, reservation: Reservation, guest: Guest):
        channel_settings = ChannelSettings.from_blob(channel.channel_settings)
        if not channel_settings.send_confirmation:
            return
        # No outbound mail transport yet; the request is recorded for the PMS to pick up
        self.audit.log(
            "reservation_confirmation",
            hotel_id=reservation.hotel_id,
            entity_type="reservation",
            external_id=reservation.api_source_id,
            action="confirm",
            request_payload={"reservation_id": reservation.id, "email": guest.email},
            commit=False,
        )
        logger.info(f"[{self.request_id}] Confirmation requested for reservation {reservation.id}")

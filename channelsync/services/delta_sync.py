"""
Delta Sync Engine

Checkpointed incremental pull from Beds24 into the internal store.

Per (hotel, entity type) a run ends in one of:
- success:  every record applied, checkpoint advanced
- partial:  some records failed and were counted, checkpoint still advanced
            to the newest successfully applied record
- skipped:  synced within its interval, sync disabled, or rate limited earlier
- aborted:  transport/auth/rate-limit failure, checkpoint untouched

Bookings are incremental on the `modified` timestamp. The calendar is a
full rolling-window resync every time, because restrictions can change
retroactively; this costs one large calendar call per property per run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.channel_integration import SyncCheckpoint, EntityType, DEFAULT_PROVIDER
from ..models.guest import Guest
from ..models.inventory import DailyRate, RoomInventory
from ..models.property import RatePlan
from ..models.reservation import Reservation, ReservationStatus
from ..schemas.settings import SyncSettings
from ..utils.db_helpers import advance_if_greater
from ..utils.dates import parse_date, parse_datetime, utcnow
from ..utils.errors import (
    ApiError,
    AuthError,
    MappingError,
    RateLimitError,
    SyncError,
    TransportError,
    ValidationError,
)
from ..utils.logging_config import get_logger, set_trace_context
from .audit_service import AuditLogger, OperationTimer
from .beds24_client import Beds24Client
from .identity_map import IdentityMap

logger = get_logger(__name__)

SYNC_BOOKINGS = "bookings"
SYNC_CALENDAR = "calendar"
SYNC_ALL = "all"

# External booking status -> internal booking status. Anything else is "confirmed".
BOOKING_STATUS_MAP = {
    "confirmed": "confirmed",
    "new": "confirmed",
    "request": "requested",
    "cancelled": "cancelled",
    "black": "blocked",
    "inquiry": "inquiry",
}
DEFAULT_BOOKING_STATUS = "confirmed"

RESERVATION_STATUS_FOR = {
    "confirmed": ReservationStatus.CONFIRMED.value,
    "requested": ReservationStatus.REQUESTED.value,
    "cancelled": ReservationStatus.CANCELLED.value,
    "blocked": ReservationStatus.BLOCKED.value,
    "inquiry": ReservationStatus.INQUIRY.value,
}


def map_booking_status(external_status) -> str:
    """Total mapping from an external booking status to an internal one"""
    if external_status is None:
        return DEFAULT_BOOKING_STATUS
    return BOOKING_STATUS_MAP.get(str(external_status).strip().lower(), DEFAULT_BOOKING_STATUS)


def _decimal(value, default: str = "0") -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal(default)
    except (InvalidOperation, ValueError):
        return Decimal(default)


def ensure_default_rate_plan(db: Session, hotel_id: str) -> RatePlan:
    """Calendar rates are always written against the hotel's default plan"""
    plan = db.query(RatePlan).filter(
        RatePlan.hotel_id == hotel_id,
        RatePlan.is_default.is_(True),
    ).first()
    if plan:
        return plan
    plan = RatePlan(hotel_id=hotel_id, name="Standard Rate", code="STD", is_default=True)
    db.add(plan)
    db.flush()
    return plan


@dataclass
class EntitySyncResult:
    entity_type: str
    hotel_id: str
    status: str  # success, partial, skipped, aborted
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_records: int = 0
    message: Optional[str] = None
    error_code: Optional[str] = None
    checkpoint_before: Optional[str] = None
    checkpoint_after: Optional[str] = None


@dataclass
class DeltaSyncResult:
    success: bool
    trace_id: str
    bookings: Dict[str, int] = field(default_factory=lambda: {"processed": 0, "succeeded": 0, "failed": 0})
    calendar: Dict[str, int] = field(default_factory=lambda: {"processed": 0, "succeeded": 0, "failed": 0})
    hotels_synced: List[str] = field(default_factory=list)
    hotels_skipped: List[str] = field(default_factory=list)
    results: List[EntitySyncResult] = field(default_factory=list)
    message: str = ""

    def add(self, result: EntitySyncResult):
        self.results.append(result)
        bucket = self.bookings if result.entity_type == SYNC_BOOKINGS else self.calendar
        bucket["processed"] += result.processed
        bucket["succeeded"] += result.succeeded
        bucket["failed"] += result.failed


class DeltaSyncEngine:
    """
    Runs bookings and/or calendar delta sync for every eligible hotel.

    client_factory(trace_id) must return a Beds24Client; one client (and so
    one credit tracker) is shared by all hotels of an invocation.
    """

    def __init__(
        self,
        db: Session,
        client_factory: Optional[Callable[[str], Beds24Client]] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.audit = AuditLogger(db)
        self.identity = IdentityMap(db)
        self.client_factory = client_factory or (lambda trace_id: Beds24Client(db, trace_id=trace_id))
        self.now_fn = now_fn

    # ==================
    # Entry point
    # ==================

    def run(
        self,
        sync_type: str = SYNC_ALL,
        hotel_id: Optional[str] = None,
        force_sync: bool = False,
        trace_id: Optional[str] = None,
    ) -> DeltaSyncResult:
        if sync_type not in (SYNC_BOOKINGS, SYNC_CALENDAR, SYNC_ALL):
            raise ValidationError(f"Unknown sync type: {sync_type}")

        trace_id = set_trace_context(trace_id, hotel_id)
        result = DeltaSyncResult(success=True, trace_id=trace_id)

        query = self.db.query(SyncCheckpoint).filter(SyncCheckpoint.provider == DEFAULT_PROVIDER)
        if hotel_id:
            query = query.filter(SyncCheckpoint.hotel_id == hotel_id)
        checkpoints = query.all()

        if not checkpoints:
            result.message = "No hotels to sync"
            return result

        rate_limited = False
        client = self.client_factory(trace_id)
        try:
            for checkpoint in checkpoints:
                cp_hotel = checkpoint.hotel_id
                sync_settings = SyncSettings.from_blob(checkpoint.settings)

                if not checkpoint.bootstrap_completed or not checkpoint.sync_enabled:
                    result.hotels_skipped.append(cp_hotel)
                    continue
                if not sync_settings.property_id:
                    logger.warning(f"Hotel {cp_hotel} has no property_id in sync settings, skipping")
                    result.hotels_skipped.append(cp_hotel)
                    continue

                client.hotel_id = cp_hotel
                wanted = [SYNC_BOOKINGS, SYNC_CALENDAR] if sync_type == SYNC_ALL else [sync_type]
                for entity in wanted:
                    if rate_limited:
                        result.add(EntitySyncResult(
                            entity, cp_hotel, "skipped", message="Rate limited earlier in this run"
                        ))
                        continue

                    if entity == SYNC_BOOKINGS:
                        entity_result = self.sync_bookings(checkpoint, sync_settings, client, force_sync, trace_id)
                    else:
                        entity_result = self.sync_calendar(checkpoint, sync_settings, client, force_sync, trace_id)
                    result.add(entity_result)

                    if entity_result.status == "aborted":
                        result.success = False
                        if entity_result.error_code == RateLimitError.code:
                            rate_limited = True

                result.hotels_synced.append(cp_hotel)
        finally:
            client.close()

        result.message = (
            f"Synced {len(result.hotels_synced)} hotels, skipped {len(result.hotels_skipped)}; "
            f"bookings {result.bookings['succeeded']}/{result.bookings['processed']}, "
            f"calendar {result.calendar['succeeded']}/{result.calendar['processed']}"
        )
        logger.info(result.message)
        return result

    def _throttled(self, last_synced_at: Optional[datetime], interval: timedelta, force_sync: bool) -> bool:
        if force_sync or last_synced_at is None:
            return False
        grace = timedelta(seconds=settings.sync_throttle_grace_seconds)
        return self.now_fn() - last_synced_at < interval - grace

    def _abort(self, entity: str, hotel_id: str, error: SyncError, before, trace_id: str, duration_ms: int) -> EntitySyncResult:
        message = f"{error.code}: {error}"
        self.audit.error(
            f"delta_sync_{entity}", message,
            hotel_id=hotel_id, entity_type=entity, action="sync",
            duration_ms=duration_ms, trace_id=trace_id,
        )
        return EntitySyncResult(
            entity, hotel_id, "aborted", message=message, error_code=error.code,
            checkpoint_before=before, checkpoint_after=before,
        )

    # ==================
    # Bookings
    # ==================

    def sync_bookings(
        self,
        checkpoint: SyncCheckpoint,
        sync_settings: SyncSettings,
        client: Beds24Client,
        force_sync: bool = False,
        trace_id: Optional[str] = None,
    ) -> EntitySyncResult:
        hotel_id = checkpoint.hotel_id
        checkpoint_id = checkpoint.id
        interval = timedelta(minutes=settings.bookings_sync_interval_minutes)

        if self._throttled(checkpoint.last_bookings_synced_at, interval, force_sync):
            return EntitySyncResult(SYNC_BOOKINGS, hotel_id, "skipped", message="Synced recently")

        now = self.now_fn()
        before = checkpoint.last_bookings_modified_from
        modified_from = before or now - timedelta(days=settings.bookings_default_lookback_days)
        before_str = before.isoformat() if before else None

        timer = OperationTimer()
        with timer:
            try:
                bookings = client.get_bookings(sync_settings.property_id, modified_from)
            except (RateLimitError, TransportError, AuthError, ApiError) as e:
                return self._abort(SYNC_BOOKINGS, hotel_id, e, before_str, trace_id, timer.elapsed_ms())

            result = EntitySyncResult(SYNC_BOOKINGS, hotel_id, "success", checkpoint_before=before_str)
            watermark: Optional[datetime] = None

            for booking in bookings:
                result.processed += 1
                external_id = str(booking.get("id", "?"))
                try:
                    self.apply_booking(hotel_id, booking)
                    self.db.commit()
                except (SyncError, SQLAlchemyError, KeyError, TypeError, ValueError) as e:
                    self.db.rollback()
                    result.failed += 1
                    self.audit.error(
                        "delta_sync_booking_record", f"Failed to apply booking {external_id}: {e}",
                        hotel_id=hotel_id, entity_type=EntityType.RESERVATION.value,
                        external_id=external_id, action="upsert", trace_id=trace_id,
                    )
                    continue

                result.succeeded += 1
                modified = parse_datetime(booking.get("modified") or booking.get("modifiedTime"))
                if modified and (watermark is None or modified > watermark):
                    watermark = modified

        self.db.query(SyncCheckpoint).filter(SyncCheckpoint.id == checkpoint_id).update(
            {"last_bookings_synced_at": now}, synchronize_session=False
        )
        if watermark is not None:
            advance_if_greater(
                self.db, SyncCheckpoint, SyncCheckpoint.id == checkpoint_id,
                "last_bookings_modified_from", watermark,
            )
        self.db.commit()

        after = self.db.query(SyncCheckpoint.last_bookings_modified_from).filter(
            SyncCheckpoint.id == checkpoint_id
        ).scalar()
        result.checkpoint_after = after.isoformat() if after else None
        if result.failed:
            result.status = "partial"
            result.message = f"{result.failed} of {result.processed} bookings failed"

        self.audit.log(
            "delta_sync_bookings",
            status="partial" if result.failed else "success",
            hotel_id=hotel_id, entity_type=SYNC_BOOKINGS, action="sync",
            duration_ms=timer.duration_ms, records_processed=result.succeeded,
            request_payload={"modifiedFrom": modified_from.isoformat(), "forceSync": force_sync},
            response_payload={"checkpoint_before": before_str, "checkpoint_after": result.checkpoint_after},
            trace_id=trace_id,
        )
        logger.sync_finished(SYNC_BOOKINGS, hotel_id, result.succeeded, result.failed, timer.duration_ms)
        return result

    def apply_booking(self, hotel_id: str, booking: Dict) -> Reservation:
        """Create or update one reservation from an external booking record"""
        if booking.get("id") in (None, ""):
            raise ValidationError("Booking record has no id")
        external_id = str(booking["id"])
        internal_status = map_booking_status(booking.get("status"))
        reservation_status = RESERVATION_STATUS_FOR[internal_status]
        metadata = {
            "original_status": booking.get("status"),
            "modified_time": booking.get("modified"),
            "last_synced": utcnow().isoformat(),
        }

        reservation_id = self.identity.resolve(EntityType.RESERVATION.value, external_id)
        if reservation_id:
            reservation = self.db.query(Reservation).filter(Reservation.id == reservation_id).first()
            if reservation is None:
                raise MappingError(
                    f"Booking {external_id} maps to missing reservation {reservation_id}"
                )
            self._update_reservation(reservation, booking, reservation_status)
            self.identity.upsert(EntityType.RESERVATION.value, external_id, reservation.id, metadata)
            return reservation

        check_in = parse_date(booking.get("arrival"))
        check_out = parse_date(booking.get("departure"))
        if not check_in or not check_out:
            raise ValidationError(f"Booking {external_id} is missing arrival/departure")
        if check_out < check_in:
            raise ValidationError(f"Booking {external_id} departs before it arrives")

        room_type_id = None
        if booking.get("roomId") is not None:
            room_type_id = self.identity.resolve(EntityType.ROOM_TYPE.value, str(booking["roomId"]))

        reservation = Reservation(
            hotel_id=hotel_id,
            guest_id=self._resolve_guest(hotel_id, booking),
            room_type_id=room_type_id,
            check_in=check_in,
            check_out=check_out,
            adults=int(booking.get("numAdult") or 1),
            children=int(booking.get("numChild") or 0),
            status=reservation_status,
            channel="Beds24",
            booking_reference=external_id,
            total_amount=_decimal(booking.get("price")),
            currency=booking.get("currency") or "USD",
            special_requests=booking.get("comments"),
            notes=booking.get("notes"),
        )
        if reservation_status == ReservationStatus.CANCELLED.value:
            reservation.cancelled_at = parse_datetime(booking.get("cancelTime")) or utcnow()
        self.db.add(reservation)
        self.db.flush()

        metadata["created_via"] = "delta_sync"
        self.identity.upsert(EntityType.RESERVATION.value, external_id, reservation.id, metadata)
        logger.info(f"Created reservation {reservation.id} from booking {external_id}")
        return reservation

    def _update_reservation(self, reservation: Reservation, booking: Dict, new_status: str):
        cancelled_now = (
            new_status == ReservationStatus.CANCELLED.value
            and reservation.status != ReservationStatus.CANCELLED.value
        )
        reservation.status = new_status
        if cancelled_now:
            reservation.cancelled_at = parse_datetime(booking.get("cancelTime")) or utcnow()

        check_in = parse_date(booking.get("arrival"))
        check_out = parse_date(booking.get("departure"))
        if check_in:
            reservation.check_in = check_in
        if check_out:
            reservation.check_out = check_out
        if booking.get("numAdult") is not None:
            reservation.adults = int(booking["numAdult"])
        if booking.get("numChild") is not None:
            reservation.children = int(booking["numChild"])
        if booking.get("price") is not None:
            reservation.total_amount = _decimal(booking["price"])
        if booking.get("comments") is not None:
            reservation.special_requests = booking["comments"]
        reservation.updated_at = utcnow()

    def _resolve_guest(self, hotel_id: str, booking: Dict) -> Optional[str]:
        guests = booking.get("guests") or []
        primary = guests[0] if guests else None
        if primary is None:
            # Beds24 also puts the lead guest on the booking itself
            if not any(booking.get(k) for k in ("firstName", "lastName", "email")):
                return None
            primary = booking

        external_id = (
            str(primary["id"]) if primary is not booking and primary.get("id") is not None
            else f"{booking['id']}_guest_0"
        )
        guest_id = self.identity.resolve(EntityType.GUEST.value, external_id)
        if guest_id:
            return guest_id

        guest = Guest(
            hotel_id=hotel_id,
            first_name=primary.get("firstName") or "Unknown",
            last_name=primary.get("lastName") or "Guest",
            email=primary.get("email") or None,
            phone=primary.get("phone") or primary.get("mobile") or None,
            nationality=primary.get("country") or None,
        )
        self.db.add(guest)
        self.db.flush()
        self.identity.upsert(EntityType.GUEST.value, external_id, guest.id)
        return guest.id

    # ==================
    # Calendar
    # ==================

    def sync_calendar(
        self,
        checkpoint: SyncCheckpoint,
        sync_settings: SyncSettings,
        client: Beds24Client,
        force_sync: bool = False,
        trace_id: Optional[str] = None,
    ) -> EntitySyncResult:
        hotel_id = checkpoint.hotel_id
        checkpoint_id = checkpoint.id
        interval = timedelta(hours=settings.calendar_sync_interval_hours)

        if self._throttled(checkpoint.last_calendar_synced_at, interval, force_sync):
            return EntitySyncResult(SYNC_CALENDAR, hotel_id, "skipped", message="Synced recently")

        now = self.now_fn()
        start = now.date()
        end = start + timedelta(days=settings.calendar_window_days)
        before = checkpoint.last_calendar_start
        before_str = before.isoformat() if before else None

        timer = OperationTimer()
        with timer:
            try:
                days = client.get_rooms_calendar(sync_settings.property_id, start, end)
            except (RateLimitError, TransportError, AuthError, ApiError) as e:
                return self._abort(SYNC_CALENDAR, hotel_id, e, before_str, trace_id, timer.elapsed_ms())

            result = EntitySyncResult(SYNC_CALENDAR, hotel_id, "success", checkpoint_before=before_str)

            by_room: Dict[str, List[Dict]] = {}
            for day in days:
                if day.get("roomId") is None or not day.get("date"):
                    continue
                by_room.setdefault(str(day["roomId"]), []).append(day)

            rate_plan_id = ensure_default_rate_plan(self.db, hotel_id).id
            self.db.commit()

            for room_id, room_days in by_room.items():
                room_type_id = self.identity.resolve(EntityType.ROOM_TYPE.value, room_id)
                if not room_type_id:
                    result.skipped_records += len(room_days)
                    logger.debug(f"Calendar room {room_id} has no room type mapping, skipping")
                    continue
                self._apply_room_days(hotel_id, room_type_id, rate_plan_id, room_days, start, end, result, trace_id)

        self.db.query(SyncCheckpoint).filter(SyncCheckpoint.id == checkpoint_id).update(
            {"last_calendar_synced_at": now}, synchronize_session=False
        )
        advance_if_greater(
            self.db, SyncCheckpoint, SyncCheckpoint.id == checkpoint_id,
            "last_calendar_start", start, extra_values={"last_calendar_end": end},
        )
        self.db.commit()
        result.checkpoint_after = start.isoformat()

        if result.failed:
            result.status = "partial"
            result.message = f"{result.failed} of {result.processed} calendar days failed"

        self.audit.log(
            "delta_sync_calendar",
            status="partial" if result.failed else "success",
            hotel_id=hotel_id, entity_type=SYNC_CALENDAR, action="sync",
            duration_ms=timer.duration_ms, records_processed=result.succeeded,
            request_payload={"startDate": start.isoformat(), "endDate": end.isoformat()},
            response_payload={"skipped_unmapped_days": result.skipped_records},
            trace_id=trace_id,
        )
        logger.sync_finished(SYNC_CALENDAR, hotel_id, result.succeeded, result.failed, timer.duration_ms)
        return result

    def _apply_room_days(self, hotel_id, room_type_id, rate_plan_id, room_days, start, end, result, trace_id):
        rates = {
            r.date: r for r in self.db.query(DailyRate).filter(
                DailyRate.hotel_id == hotel_id,
                DailyRate.room_type_id == room_type_id,
                DailyRate.rate_plan_id == rate_plan_id,
                DailyRate.date >= start,
                DailyRate.date <= end,
            )
        }
        inventory = {
            i.date: i for i in self.db.query(RoomInventory).filter(
                RoomInventory.hotel_id == hotel_id,
                RoomInventory.room_type_id == room_type_id,
                RoomInventory.date >= start,
                RoomInventory.date <= end,
            )
        }

        applied = 0
        for day in room_days:
            result.processed += 1
            try:
                values = self._calendar_values(day)
            except (ValidationError, KeyError, TypeError, ValueError) as e:
                result.failed += 1
                self.audit.error(
                    "delta_sync_calendar_day", f"Invalid calendar day {day.get('date')}: {e}",
                    hotel_id=hotel_id, entity_type=EntityType.ROOM_TYPE.value,
                    external_id=str(day.get("roomId")), action="upsert", trace_id=trace_id,
                    commit=False,
                )
                continue

            day_date = values["date"]
            if values["rate"] is not None:
                rate = rates.get(day_date)
                if rate is None:
                    rate = DailyRate(
                        hotel_id=hotel_id, room_type_id=room_type_id,
                        rate_plan_id=rate_plan_id, date=day_date,
                    )
                    self.db.add(rate)
                    rates[day_date] = rate
                rate.rate = values["rate"]

            inv = inventory.get(day_date)
            if inv is None:
                inv = RoomInventory(hotel_id=hotel_id, room_type_id=room_type_id, date=day_date)
                self.db.add(inv)
                inventory[day_date] = inv
            inv.allotment = values["allotment"]
            inv.stop_sell = values["stop_sell"]
            if values["min_stay"] is not None:
                inv.min_stay = values["min_stay"]
            if values["max_stay"] is not None:
                inv.max_stay = values["max_stay"]
            applied += 1

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            result.failed += applied
            self.audit.error(
                "delta_sync_calendar_room", f"Failed to store {applied} calendar days: {e}",
                hotel_id=hotel_id, entity_type=EntityType.ROOM_TYPE.value,
                external_id=str(room_days[0].get("roomId")), action="upsert", trace_id=trace_id,
            )
            return
        result.succeeded += applied

    @staticmethod
    def _calendar_values(day: Dict) -> Dict:
        """Validate one calendar day before anything touches the session"""
        day_date = parse_date(day["date"])
        if day_date is None:
            raise ValidationError(f"Bad calendar date {day['date']!r}")
        price = day.get("price1")
        return {
            "date": day_date,
            "rate": _decimal(price) if price not in (None, "") else None,
            "allotment": int(day.get("numAvail") or 0),
            "stop_sell": bool(day.get("stopSell") or False),
            "min_stay": int(day["minStay"]) if day.get("minStay") is not None else None,
            "max_stay": int(day["maxStay"]) if day.get("maxStay") is not None else None,
        }

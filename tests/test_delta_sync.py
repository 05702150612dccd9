"""
Tests for the Delta Sync Engine

Tests cover:
- Booking status mapping is total
- New booking creates one reservation + one mapping and advances the checkpoint
- The same booking later cancelled updates in place, checkpoint moves further
- Checkpoint never regresses on older records
- Transport failure aborts with the checkpoint untouched
- Per-record failures are counted, batch still advances to the newest success
- Calendar days for unmapped rooms are skipped
- Interval throttle and rate-limit abort
"""

import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal

import httpx

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from conftest import beds24_response, make_client_factory


NOW = datetime(2025, 2, 21, 12, 0)


def bookings_handler(*batches, calls=None):
    """Answer successive /bookings calls with successive batches"""
    remaining = list(batches)

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        assert request.url.path.endswith("/bookings")
        batch = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return beds24_response({"success": True, "data": batch, "pages": {"nextPageExists": False}})
    return handler


def make_engine(db, handler, token_manager):
    from channelsync.services.delta_sync import DeltaSyncEngine

    return DeltaSyncEngine(
        db,
        client_factory=make_client_factory(db, handler, token_manager),
        now_fn=lambda: NOW,
    )


def stored_cursor(db, hotel_id):
    from channelsync.models import SyncCheckpoint

    return db.query(SyncCheckpoint.last_bookings_modified_from).filter(
        SyncCheckpoint.hotel_id == hotel_id
    ).scalar()


class TestBookingStatusMapping:
    """map_booking_status must be total"""

    @pytest.mark.parametrize("external,internal", [
        ("confirmed", "confirmed"),
        ("new", "confirmed"),
        ("request", "requested"),
        ("cancelled", "cancelled"),
        ("black", "blocked"),
        ("inquiry", "inquiry"),
        ("CANCELLED", "cancelled"),
        (" New ", "confirmed"),
    ])
    def test_documented_statuses(self, external, internal):
        from channelsync.services.delta_sync import map_booking_status

        assert map_booking_status(external) == internal

    @pytest.mark.parametrize("external", ["", None, "something_else", 7])
    def test_unmapped_statuses_default_to_confirmed(self, external):
        from channelsync.services.delta_sync import map_booking_status

        assert map_booking_status(external) == "confirmed"

    def test_every_internal_status_has_a_reservation_status(self):
        """No mapped status can fail the reservation write"""
        from channelsync.services.delta_sync import BOOKING_STATUS_MAP, RESERVATION_STATUS_FOR

        assert set(BOOKING_STATUS_MAP.values()) <= set(RESERVATION_STATUS_FOR)


class TestBookingsDeltaSync:
    """Bookings sync against a mocked Beds24 API"""

    B100_NEW = {
        "id": "B100",
        "status": "new",
        "arrival": "2025-03-01",
        "departure": "2025-03-04",
        "numAdult": 2,
        "price": "450.00",
        "modified": "2025-02-20T10:00:00Z",
    }
    B100_CANCELLED = dict(B100_NEW, status="cancelled", modified="2025-02-22T09:30:00Z")

    def test_new_booking_creates_reservation_and_advances_checkpoint(self, db, checkpoint, token_manager):
        """B100 'new' with no prior mapping -> one Confirmed reservation, one mapping"""
        from channelsync.models import ExternalIdentityMapping, Reservation

        calls = []
        engine = make_engine(db, bookings_handler([self.B100_NEW], calls=calls), token_manager)

        result = engine.run("bookings")

        assert result.success is True
        assert result.bookings == {"processed": 1, "succeeded": 1, "failed": 0}
        assert db.query(Reservation).count() == 1
        assert db.query(ExternalIdentityMapping).count() == 1

        reservation = db.query(Reservation).one()
        assert reservation.status == "Confirmed"
        assert reservation.check_in == date(2025, 3, 1)
        assert reservation.check_out == date(2025, 3, 4)
        assert reservation.total_amount == Decimal("450.00")
        assert reservation.booking_reference == "B100"

        assert stored_cursor(db, checkpoint.hotel_id) == datetime(2025, 2, 20, 10, 0)
        entity = result.results[0]
        assert entity.checkpoint_before is None
        assert entity.checkpoint_after == "2025-02-20T10:00:00"

        # First run looks back the default 7 days
        assert calls[0].url.params["modifiedFrom"] == "2025-02-14T12:00:00Z"
        assert calls[0].url.params["propertyId"] == "P1"

    def test_cancelled_booking_updates_same_reservation(self, db, checkpoint, token_manager):
        """B100 reappearing as cancelled updates in place and moves the checkpoint on"""
        from channelsync.models import ExternalIdentityMapping, Reservation

        engine = make_engine(
            db, bookings_handler([self.B100_NEW], [self.B100_CANCELLED]), token_manager
        )
        engine.run("bookings")
        reservation_id = db.query(Reservation.id).scalar()

        result = engine.run("bookings", force_sync=True)

        assert result.success is True
        assert db.query(Reservation).count() == 1
        assert db.query(ExternalIdentityMapping).count() == 1

        reservation = db.query(Reservation).one()
        assert reservation.id == reservation_id
        assert reservation.status == "Cancelled"
        assert reservation.cancelled_at is not None

        entity = result.results[0]
        assert entity.checkpoint_before == "2025-02-20T10:00:00"
        assert entity.checkpoint_after == "2025-02-22T09:30:00"
        assert stored_cursor(db, checkpoint.hotel_id) == datetime(2025, 2, 22, 9, 30)

    def test_checkpoint_never_regresses(self, db, checkpoint, token_manager):
        """A batch of older records leaves a newer cursor alone"""
        checkpoint.last_bookings_modified_from = datetime(2025, 2, 22, 9, 30)
        db.commit()
        older = dict(self.B100_NEW, id="B050", modified="2025-02-10T08:00:00Z")
        engine = make_engine(db, bookings_handler([older]), token_manager)

        result = engine.run("bookings")

        entity = result.results[0]
        assert entity.status == "success"
        assert entity.checkpoint_after == entity.checkpoint_before == "2025-02-22T09:30:00"
        assert stored_cursor(db, checkpoint.hotel_id) == datetime(2025, 2, 22, 9, 30)

    def test_empty_batch_keeps_checkpoint(self, db, checkpoint, token_manager):
        checkpoint.last_bookings_modified_from = datetime(2025, 2, 1)
        db.commit()
        engine = make_engine(db, bookings_handler([]), token_manager)

        result = engine.run("bookings")

        assert result.results[0].status == "success"
        assert stored_cursor(db, checkpoint.hotel_id) == datetime(2025, 2, 1)

    def test_transport_failure_aborts_without_touching_checkpoint(self, db, checkpoint, token_manager):
        """Connect errors abort the batch; cursor and synced_at stay as they were"""
        from channelsync.models import AuditRecord, SyncCheckpoint

        checkpoint.last_bookings_modified_from = datetime(2025, 2, 1)
        db.commit()

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        engine = make_engine(db, handler, token_manager)
        result = engine.run("bookings")

        assert result.success is False
        entity = result.results[0]
        assert entity.status == "aborted"
        assert entity.error_code == "transport_error"
        assert entity.checkpoint_after == entity.checkpoint_before

        stored = db.query(SyncCheckpoint).one()
        assert stored.last_bookings_modified_from == datetime(2025, 2, 1)
        assert stored.last_bookings_synced_at is None

        abort = db.query(AuditRecord).filter(AuditRecord.operation == "delta_sync_bookings").one()
        assert abort.status == "error"
        assert abort.entity_type == "bookings"

    def test_bad_record_is_counted_and_batch_advances(self, db, checkpoint, token_manager):
        """A failing record does not stop the batch; watermark covers successes only"""
        from channelsync.models import AuditRecord, Reservation

        good = dict(self.B100_NEW, id="B1", modified="2025-02-20T10:00:00Z")
        bad = {"id": "B2", "status": "new", "modified": "2025-02-21T11:00:00Z"}
        engine = make_engine(db, bookings_handler([good, bad]), token_manager)

        result = engine.run("bookings")

        entity = result.results[0]
        assert entity.status == "partial"
        assert (entity.processed, entity.succeeded, entity.failed) == (2, 1, 1)
        assert result.success is True
        assert db.query(Reservation).count() == 1
        assert stored_cursor(db, checkpoint.hotel_id) == datetime(2025, 2, 20, 10, 0)

        failure = db.query(AuditRecord).filter(AuditRecord.operation == "delta_sync_booking_record").one()
        assert failure.external_id == "B2"
        assert failure.status == "error"

    def test_guest_is_mapped_and_reused(self, db, checkpoint, token_manager):
        """Lead guest gets its own mapping keyed {booking}_guest_0 and is not duplicated"""
        from channelsync.models import ExternalIdentityMapping, Guest

        booking = dict(self.B100_NEW, firstName="Ana", lastName="Lopez", email="ana@example.com")
        later = dict(booking, modified="2025-02-22T09:30:00Z")
        engine = make_engine(db, bookings_handler([booking], [later]), token_manager)

        engine.run("bookings")
        engine.run("bookings", force_sync=True)

        assert db.query(Guest).count() == 1
        mapping = db.query(ExternalIdentityMapping).filter(
            ExternalIdentityMapping.entity_type == "guest"
        ).one()
        assert mapping.external_id == "B100_guest_0"

    def test_room_id_resolves_room_type(self, db, checkpoint, room_type, token_manager):
        from channelsync.models import Reservation
        from channelsync.services.identity_map import IdentityMap

        IdentityMap(db).upsert("room_type", "R1", room_type.id)
        db.commit()
        engine = make_engine(db, bookings_handler([dict(self.B100_NEW, roomId="R1")]), token_manager)

        engine.run("bookings")

        assert db.query(Reservation).one().room_type_id == room_type.id

    def test_recent_sync_is_throttled(self, db, checkpoint, token_manager):
        """Inside the interval nothing is fetched unless forced"""
        checkpoint.last_bookings_synced_at = NOW - timedelta(minutes=10)
        db.commit()
        calls = []
        engine = make_engine(db, bookings_handler([self.B100_NEW], calls=calls), token_manager)

        result = engine.run("bookings")

        assert result.results[0].status == "skipped"
        assert calls == []

        engine.run("bookings", force_sync=True)
        assert len(calls) == 1

    def test_sync_just_under_interval_still_runs(self, db, checkpoint, token_manager):
        """A previous tick that landed a fraction of a second late does not suppress this one"""
        checkpoint.last_bookings_synced_at = NOW - timedelta(minutes=60) + timedelta(milliseconds=300)
        db.commit()
        calls = []
        engine = make_engine(db, bookings_handler([self.B100_NEW], calls=calls), token_manager)

        result = engine.run("bookings")

        assert result.results[0].status == "success"
        assert len(calls) == 1

    def test_rate_limit_aborts_and_skips_rest_of_run(self, db, checkpoint, token_manager):
        """A 429 aborts bookings and the calendar of the same run is not attempted"""
        calls = []

        def handler(request):
            calls.append(request)
            return beds24_response({"error": "Too many requests"}, status_code=429, remaining=0)

        engine = make_engine(db, handler, token_manager)
        result = engine.run("all")

        assert result.success is False
        bookings, calendar = result.results
        assert bookings.status == "aborted"
        assert bookings.error_code == "rate_limited"
        assert calendar.status == "skipped"
        assert len(calls) == 1

    def test_hotels_not_ready_are_skipped(self, db, checkpoint, token_manager):
        """Disabled, not-bootstrapped or property-less hotels are never synced"""
        from channelsync.models import Hotel, SyncCheckpoint

        other = Hotel(name="No Property")
        db.add(other)
        db.commit()
        db.add(SyncCheckpoint(hotel_id=other.id, bootstrap_completed=True, sync_enabled=True, settings={}))
        checkpoint.sync_enabled = False
        db.commit()

        calls = []
        engine = make_engine(db, bookings_handler([self.B100_NEW], calls=calls), token_manager)
        result = engine.run("bookings")

        assert sorted(result.hotels_skipped) == sorted([checkpoint.hotel_id, other.id])
        assert result.hotels_synced == []
        assert calls == []

    def test_unknown_sync_type_is_rejected(self, db, token_manager):
        from channelsync.utils.errors import ValidationError

        engine = make_engine(db, bookings_handler([]), token_manager)
        with pytest.raises(ValidationError):
            engine.run("rates")


class TestCalendarDeltaSync:
    """Calendar sync over the rolling window"""

    def test_mapped_rooms_are_written_and_unmapped_skipped(self, db, checkpoint, room_type, token_manager):
        from channelsync.models import DailyRate, RatePlan, RoomInventory, SyncCheckpoint
        from channelsync.services.identity_map import IdentityMap

        IdentityMap(db).upsert("room_type", "R1", room_type.id)
        db.commit()
        calls = []

        def handler(request):
            calls.append(request)
            assert request.url.path.endswith("/inventory/rooms/calendar")
            return beds24_response({"success": True, "data": [
                {"roomId": "R1", "calendar": [
                    {"from": "2025-02-21", "to": "2025-02-22", "price1": 150, "numAvail": 3, "minStay": 2},
                ]},
                {"roomId": "R9", "calendar": [{"from": "2025-02-21", "to": "2025-02-21", "numAvail": 1}]},
            ]})

        engine = make_engine(db, handler, token_manager)
        result = engine.run("calendar")

        entity = result.results[0]
        assert entity.status == "success"
        assert (entity.processed, entity.succeeded, entity.failed) == (2, 2, 0)
        assert entity.skipped_records == 1

        rates = db.query(DailyRate).order_by(DailyRate.date).all()
        assert [r.date for r in rates] == [date(2025, 2, 21), date(2025, 2, 22)]
        assert all(r.rate == Decimal("150") for r in rates)
        assert rates[0].rate_plan_id == db.query(RatePlan).filter(RatePlan.is_default.is_(True)).one().id

        inventory = db.query(RoomInventory).order_by(RoomInventory.date).all()
        assert [(i.allotment, i.min_stay) for i in inventory] == [(3, 2), (3, 2)]

        stored = db.query(SyncCheckpoint).one()
        assert stored.last_calendar_start == date(2025, 2, 21)
        assert stored.last_calendar_end == date(2025, 2, 21) + timedelta(days=365)
        assert calls[0].url.params["startDate"] == "2025-02-21"
        assert calls[0].url.params["endDate"] == "2026-02-21"

    def test_repeat_sync_overwrites_in_place(self, db, checkpoint, room_type, token_manager):
        from channelsync.models import DailyRate, RoomInventory
        from channelsync.services.identity_map import IdentityMap

        IdentityMap(db).upsert("room_type", "R1", room_type.id)
        db.commit()
        prices = [150, 175]

        def handler(request):
            return beds24_response({"success": True, "data": [
                {"roomId": "R1", "calendar": [{"date": "2025-02-21", "price1": prices.pop(0), "numAvail": 2}]},
            ]})

        engine = make_engine(db, handler, token_manager)
        engine.run("calendar")
        engine.run("calendar", force_sync=True)

        assert db.query(DailyRate).count() == 1
        assert db.query(DailyRate).one().rate == Decimal("175")
        assert db.query(RoomInventory).count() == 1

"""
Tests for Webhook Reservation Processing

Tests cover:
- Create builds guest, reservation, charges and assigns a room
- Replayed create is idempotent (same channelId + reservationId)
- Update applies only the fields present
- Cancel releases the room and records the reason
- Unmapped room codes fall back to the first room type with a warning
- Failures leave an error event and never raise
"""

import logging
from datetime import date
from decimal import Decimal

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))


def command(channel_id, action="create", reservation_id="BK-1", **data):
    from channelsync.schemas.integration import WebhookReservationCommand

    return WebhookReservationCommand.model_validate({
        "channelId": channel_id,
        "reservationId": reservation_id,
        "action": action,
        "data": data,
    })


GUEST = {"firstName": "Ana", "lastName": "Lopez", "email": "ana@example.com", "phone": "+34 600 000"}
BOOKING = {
    "roomType": "DLX",
    "checkIn": "2025-03-01",
    "checkOut": "2025-03-04",
    "adults": 2,
    "totalAmount": 450,
    "currency": "EUR",
    "status": "confirmed",
    "charges": [{"description": "Room", "amount": 450, "currency": "EUR"}],
}


@pytest.fixture
def room(db, hotel, room_type):
    from channelsync.models import Room

    room = Room(hotel_id=hotel.id, room_type_id=room_type.id, number="101")
    db.add(room)
    db.commit()
    return room


@pytest.fixture
def processor(db):
    from channelsync.services.webhook_processor import WebhookReservationProcessor

    return WebhookReservationProcessor(db, request_id="req-1")


class TestWebhookCreate:
    """create action"""

    def test_create_builds_reservation(self, db, processor, channel, room_type, room):
        from channelsync.models import Guest, InboundReservationEvent, Reservation, ReservationCharge, Room

        result = processor.process(command(channel.id, guest=GUEST, booking=BOOKING))

        assert result.success is True
        assert result.already_processed is False
        assert result.warnings == []

        reservation = db.query(Reservation).one()
        assert reservation.id == result.reservation_id
        assert reservation.status == "Confirmed"
        assert reservation.channel == "Booking.com"
        assert reservation.api_source_id == "BK-1"
        assert reservation.room_type_id == room_type.id
        assert reservation.check_in == date(2025, 3, 1)
        assert reservation.total_amount == Decimal("450")
        assert reservation.currency == "EUR"
        assert reservation.room_id == room.id
        assert db.query(Room).one().status == "Reserved"

        guest = db.query(Guest).one()
        assert (guest.first_name, guest.email) == ("Ana", "ana@example.com")
        assert db.query(ReservationCharge).one().amount == Decimal("450")

        event = db.query(InboundReservationEvent).one()
        assert event.processing_status == "processed"
        assert event.reservation_id == reservation.id
        assert event.processed_at is not None

    def test_replayed_create_is_idempotent(self, db, processor, channel, room_type):
        """The same create delivered twice yields one reservation and two event rows"""
        from channelsync.models import InboundReservationEvent, Reservation

        first = processor.process(command(channel.id, guest=GUEST, booking=BOOKING))
        second = processor.process(command(channel.id, guest=GUEST, booking=BOOKING))

        assert second.success is True
        assert second.already_processed is True
        assert second.reservation_id == first.reservation_id
        assert db.query(Reservation).count() == 1

        events = db.query(InboundReservationEvent).all()
        assert len(events) == 2
        assert {e.processing_status for e in events} == {"processed"}

    def test_replay_after_channel_rename_is_idempotent(self, db, processor, channel, room_type):
        """Duplicates are detected by connection id, not by the channel's display name"""
        from channelsync.models import Reservation

        first = processor.process(command(channel.id, guest=GUEST, booking=BOOKING))
        channel.channel_name = "Booking.com (EU)"
        db.commit()

        replay = processor.process(command(channel.id, guest=GUEST, booking=BOOKING))

        assert replay.success is True
        assert replay.already_processed is True
        assert replay.reservation_id == first.reservation_id
        assert db.query(Reservation).count() == 1
        assert db.query(Reservation).one().channel_id == channel.id

    def test_same_reservation_id_on_two_hotels_with_same_channel_name(self, db, processor, channel, room_type):
        """Each hotel's connection keeps its own reservation ids"""
        from channelsync.models import ChannelConnection, Hotel, Reservation, RoomType

        other_hotel = Hotel(name="Second Hotel")
        db.add(other_hotel)
        db.commit()
        other_channel = ChannelConnection(
            hotel_id=other_hotel.id, channel_name="Booking.com",
            connection_status="active", receive_reservations=True,
        )
        db.add_all([other_channel, RoomType(hotel_id=other_hotel.id, name="Deluxe", code="DLX")])
        db.commit()

        first = processor.process(command(channel.id, reservation_id="R1", guest=GUEST, booking=BOOKING))
        second = processor.process(command(other_channel.id, reservation_id="R1", guest=GUEST, booking=BOOKING))

        assert first.success is True
        assert second.success is True
        assert second.already_processed is False
        assert second.reservation_id != first.reservation_id
        assert db.query(Reservation).count() == 2
        assert {r.hotel_id for r in db.query(Reservation)} == {channel.hotel_id, other_hotel.id}

    def test_existing_guest_is_reused_by_email(self, db, processor, channel, room_type):
        from channelsync.models import Guest

        processor.process(command(channel.id, guest=GUEST, booking=BOOKING))
        processor.process(command(channel.id, reservation_id="BK-2", guest=GUEST, booking=BOOKING))

        assert db.query(Guest).count() == 1

    def test_unmapped_room_code_falls_back_with_warning(self, db, processor, channel, room_type, caplog):
        """Unknown room codes still book, but the fallback is logged and reported"""
        from channelsync.models import Reservation

        booking = dict(BOOKING, roomType="PENTHOUSE")
        with caplog.at_level(logging.WARNING, logger="channelsync.services.webhook_processor"):
            result = processor.process(command(channel.id, guest=GUEST, booking=booking))

        assert result.success is True
        assert db.query(Reservation).one().room_type_id == room_type.id
        assert any("PENTHOUSE" in w for w in result.warnings)
        assert any("PENTHOUSE" in r.getMessage() and r.levelno == logging.WARNING for r in caplog.records)

    def test_channel_rate_mapping_wins_over_code(self, db, processor, channel, hotel, room_type):
        from channelsync.models import ChannelRateMapping, RatePlan, Reservation, RoomType

        suite = RoomType(hotel_id=hotel.id, name="Suite", code="STE")
        plan = RatePlan(hotel_id=hotel.id, name="Flexible", code="FLEX")
        db.add_all([suite, plan])
        db.commit()
        db.add_all([
            ChannelRateMapping(channel_id=channel.id, channel_room_code="BDC-ROOM-9", room_type_id=suite.id),
            ChannelRateMapping(channel_id=channel.id, channel_rate_plan_code="BDC-NR", rate_plan_id=plan.id),
        ])
        db.commit()

        booking = dict(BOOKING, roomType="BDC-ROOM-9", ratePlan="BDC-NR")
        result = processor.process(command(channel.id, guest=GUEST, booking=booking))

        reservation = db.query(Reservation).one()
        assert result.warnings == []
        assert reservation.room_type_id == suite.id
        assert reservation.rate_plan_id == plan.id

    def test_confirmation_hook_is_audited(self, db, processor, channel, room_type):
        from channelsync.models import AuditRecord

        channel.channel_settings = {"send_confirmation": True}
        db.commit()

        processor.process(command(channel.id, guest=GUEST, booking=BOOKING))

        confirmation = db.query(AuditRecord).filter(AuditRecord.operation == "reservation_confirmation").one()
        assert confirmation.request_payload["email"] == "[REDACTED]"

    def test_checkout_before_checkin_is_rejected(self, db, processor, channel, room_type):
        from channelsync.models import InboundReservationEvent, Reservation

        booking = dict(BOOKING, checkIn="2025-03-04", checkOut="2025-03-01")
        result = processor.process(command(channel.id, guest=GUEST, booking=booking))

        assert result.success is False
        assert db.query(Reservation).count() == 0
        assert db.query(InboundReservationEvent).one().processing_status == "error"


class TestWebhookUpdateCancel:
    """update and cancel actions"""

    def test_update_applies_only_present_fields(self, db, processor, channel, room_type):
        from channelsync.models import Reservation

        processor.process(command(channel.id, guest=GUEST, booking=BOOKING))

        result = processor.process(command(
            channel.id, action="update",
            booking={"adults": 3, "checkOut": "2025-03-05"},
            guest={"phone": "+34 611 111"},
        ))

        assert result.success is True
        reservation = db.query(Reservation).one()
        assert reservation.adults == 3
        assert reservation.check_out == date(2025, 3, 5)
        assert reservation.check_in == date(2025, 3, 1)
        assert reservation.total_amount == Decimal("450")
        assert reservation.guest.phone == "+34 611 111"
        assert reservation.guest.first_name == "Ana"

    def test_cancel_releases_room(self, db, processor, channel, room_type, room):
        from channelsync.models import Reservation, Room

        processor.process(command(channel.id, guest=GUEST, booking=BOOKING))

        result = processor.process(command(channel.id, action="cancel", reason="Guest request"))

        assert result.success is True
        reservation = db.query(Reservation).one()
        assert reservation.status == "Cancelled"
        assert reservation.cancelled_at is not None
        assert reservation.room_id is None
        assert "Guest request" in reservation.notes
        assert db.query(Room).one().status == "Available"

    def test_cancel_twice_is_harmless(self, db, processor, channel, room_type):
        processor.process(command(channel.id, guest=GUEST, booking=BOOKING))
        processor.process(command(channel.id, action="cancel"))

        result = processor.process(command(channel.id, action="cancel"))

        assert result.success is True

    def test_update_of_unknown_reservation_is_error_event(self, db, processor, channel):
        from channelsync.models import InboundReservationEvent

        result = processor.process(command(channel.id, action="update", reservation_id="NOPE", booking={"adults": 1}))

        assert result.success is False
        assert "not found" in result.error
        event = db.query(InboundReservationEvent).one()
        assert event.processing_status == "error"
        assert "not found" in event.error_message


class TestWebhookRejections:
    """Channels that may not push reservations"""

    def test_inactive_channel(self, db, processor, channel, room_type):
        from channelsync.models import AuditRecord, InboundReservationEvent, Reservation

        channel.connection_status = "inactive"
        db.commit()

        result = processor.process(command(channel.id, guest=GUEST, booking=BOOKING))

        assert result.success is False
        assert db.query(Reservation).count() == 0
        event = db.query(InboundReservationEvent).one()
        assert event.processing_status == "error"
        assert event.hotel_id == channel.hotel_id

        audit = db.query(AuditRecord).filter(AuditRecord.operation == "reservation_webhook").one()
        assert audit.status == "error"

    def test_unknown_channel(self, db, processor):
        from channelsync.models import InboundReservationEvent

        result = processor.process(command("no-such-channel", guest=GUEST, booking=BOOKING))

        assert result.success is False
        assert "Unknown channel" in result.error
        assert db.query(InboundReservationEvent).one().hotel_id is None

    def test_hotel_without_room_types(self, db, processor, channel):
        result = processor.process(command(channel.id, guest=GUEST, booking=BOOKING))

        assert result.success is False
        assert "no room types" in result.error


class TestWebhookStatusMapping:

    @pytest.mark.parametrize("status,expected", [
        ("confirmed", "Confirmed"),
        ("pending", "Tentative"),
        ("cancelled", "Cancelled"),
        ("no_show", "No Show"),
        ("checked_in", "In House"),
        ("checked_out", "Checked Out"),
        ("whatever", "Confirmed"),
        (None, "Confirmed"),
    ])
    def test_map_webhook_status(self, status, expected):
        from channelsync.services.webhook_processor import map_webhook_status

        assert map_webhook_status(status) == expected

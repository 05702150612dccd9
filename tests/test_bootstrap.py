"""
Tests for Bootstrap

Tests cover:
- First bootstrap maps the property and room types and arms the checkpoint
- A completed bootstrap is not repeated unless forced
- Forced bootstrap updates room types in place and keeps cursors
- Failures are audited and leave no checkpoint behind
"""

from datetime import datetime
from decimal import Decimal

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from conftest import beds24_response, make_client_factory


PROPERTY = {
    "id": 77,
    "name": "Harbour View",
    "roomTypes": [
        {"id": 11, "name": "Deluxe", "maxPeople": 3, "minPrice": "99.50", "qty": 4},
        {"id": 12, "name": "Suite"},
    ],
}


def property_handler(prop=PROPERTY, status_code=200, calls=None):
    def handler(request):
        if calls is not None:
            calls.append(request)
        if status_code != 200:
            return beds24_response({"success": False, "error": "boom"}, status_code=status_code)
        return beds24_response({"success": True, "data": [prop] if prop else []})
    return handler


def make_service(db, token_manager, handler):
    from channelsync.services.bootstrap import BootstrapService

    return BootstrapService(db, client_factory=make_client_factory(db, handler, token_manager))


class TestBootstrap:
    """BootstrapService.bootstrap()"""

    def test_first_bootstrap(self, db, hotel, token_manager):
        from channelsync.models import AuditRecord, RatePlan, RoomType, SyncCheckpoint
        from channelsync.services.identity_map import IdentityMap

        calls = []
        service = make_service(db, token_manager, property_handler(calls=calls))

        result = service.bootstrap(hotel.id, property_id="77")

        assert result.success is True
        assert result.room_types_imported == 2
        assert calls[0].url.params["id"] == "77"
        assert calls[0].url.params["includeAllRooms"] == "true"

        checkpoint = db.query(SyncCheckpoint).one()
        assert checkpoint.bootstrap_completed is True
        assert checkpoint.sync_enabled is True
        assert checkpoint.settings["property_id"] == "77"
        assert checkpoint.last_bookings_modified_from is None

        identity = IdentityMap(db)
        assert identity.resolve("property", "77") == hotel.id
        deluxe = db.query(RoomType).filter(RoomType.id == identity.resolve("room_type", "11")).one()
        assert deluxe.name == "Deluxe"
        assert deluxe.capacity == 3
        assert deluxe.base_price == Decimal("99.50")
        assert identity.resolve("room_type", "12") is not None

        assert db.query(RatePlan).filter(RatePlan.is_default.is_(True)).count() == 1

        audit = db.query(AuditRecord).filter(AuditRecord.operation == "bootstrap").one()
        assert audit.status == "success"
        assert audit.action == "bootstrap"
        assert audit.records_processed == 2

    def test_already_bootstrapped_is_rejected(self, db, hotel, checkpoint, token_manager):
        calls = []
        service = make_service(db, token_manager, property_handler(calls=calls))

        result = service.bootstrap(hotel.id)

        assert result.success is False
        assert "already bootstrapped" in result.message
        assert calls == []

    def test_force_updates_in_place_and_keeps_cursors(self, db, hotel, checkpoint, token_manager):
        """Room types are matched through the identity map, not duplicated"""
        from channelsync.models import AuditRecord, RoomType, SyncCheckpoint

        checkpoint.last_bookings_modified_from = datetime(2025, 2, 20)
        db.commit()
        service = make_service(db, token_manager, property_handler())
        service.bootstrap(hotel.id, property_id="77", force=True)

        renamed = dict(PROPERTY, roomTypes=[{"id": 11, "name": "Deluxe Sea View"}, {"id": 12, "name": "Suite"}])
        result = make_service(db, token_manager, property_handler(prop=renamed)).bootstrap(hotel.id, force=True)

        assert result.success is True
        assert result.room_types_imported == 0
        assert result.room_types_updated == 2
        assert db.query(RoomType).count() == 2
        assert db.query(RoomType).filter(RoomType.name == "Deluxe Sea View").count() == 1

        stored = db.query(SyncCheckpoint).one()
        assert stored.settings["property_id"] == "77"
        assert stored.last_bookings_modified_from == datetime(2025, 2, 20)

        actions = {a.action for a in db.query(AuditRecord).filter(AuditRecord.operation == "bootstrap")}
        assert actions == {"force_bootstrap"}

    def test_missing_property_id(self, db, hotel, token_manager):
        from channelsync.models import AuditRecord

        result = make_service(db, token_manager, property_handler()).bootstrap(hotel.id)

        assert result.success is False
        assert "property_id" in result.message
        assert db.query(AuditRecord).one().status == "error"

    def test_unknown_hotel(self, db, token_manager):
        result = make_service(db, token_manager, property_handler()).bootstrap("no-such-hotel", property_id="77")

        assert result.success is False
        assert "does not exist" in result.message

    @pytest.mark.parametrize("handler_kwargs,fragment", [
        ({"status_code": 500}, "Property fetch failed"),
        ({"prop": None}, "not found"),
    ])
    def test_fetch_failure_creates_nothing(self, db, hotel, token_manager, handler_kwargs, fragment):
        from channelsync.models import ExternalIdentityMapping, SyncCheckpoint

        service = make_service(db, token_manager, property_handler(**handler_kwargs))

        result = service.bootstrap(hotel.id, property_id="77")

        assert result.success is False
        assert fragment in result.message
        assert db.query(SyncCheckpoint).count() == 0
        assert db.query(ExternalIdentityMapping).count() == 0

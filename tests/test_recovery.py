"""
Tests for the Recovery Engine

Tests cover:
- auto_recovery refreshes the read token exactly once per run
- Rate-limit storms disable sync for the hotel instead of retriggering
- Sub-threshold and out-of-window errors are ignored
- manual_recovery steps (reset tokens, clear errors, resync from date)
- reset_sync_state returns hotels to pre-bootstrap
- repair_data_integrity removes orphans and keeps the newest duplicate
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from conftest import mock_http


NOW = datetime(2025, 2, 21, 12, 0)
TOKEN_FAILURE = "GET /bookings: HTTP 401 Authorization failed: invalid or expired token"
RATE_FAILURE = "Rate limit exhausted locally, refusing GET /bookings (resets in 120s)"


def seed_errors(db, hotel_id, entity_type, message, count=3, age=timedelta(hours=1)):
    from channelsync.models import AuditRecord

    for _ in range(count):
        db.add(AuditRecord(
            operation="delta_sync_bookings", status="error", hotel_id=hotel_id,
            entity_type=entity_type, error_message=message, created_at=NOW - age,
        ))
    db.commit()


@pytest.fixture
def tokens():
    from channelsync.services.token_manager import TokenResult

    manager = MagicMock()
    manager.refresh.return_value = TokenResult("new-token", NOW + timedelta(hours=24), "read")
    manager.purge_tokens.return_value = 2
    return manager


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.manual_trigger.return_value = MagicMock(success=True, message="resynced")
    return scheduler


@pytest.fixture
def engine(db, tokens, scheduler):
    from channelsync.services.recovery import RecoveryEngine

    return RecoveryEngine(db, token_manager=tokens, scheduler=scheduler, now_fn=lambda: NOW)


class TestAutoRecovery:
    """auto_recovery()"""

    def test_token_errors_trigger_exactly_one_refresh(self, db, engine, tokens, scheduler, checkpoint):
        """Two systemic auth groups still refresh the read token only once"""
        from channelsync.models import AuditRecord

        seed_errors(db, checkpoint.hotel_id, "bookings", TOKEN_FAILURE)
        seed_errors(db, checkpoint.hotel_id, "calendar", TOKEN_FAILURE)

        result = engine.auto_recovery()

        tokens.refresh.assert_called_once_with("read")
        refreshes = [a for a in result.actions if a.action == "refresh_token"]
        assert len(refreshes) == 1
        assert refreshes[0].success is True
        assert result.counts == {"errors_analyzed": 6, "systemic_groups": 2}
        assert result.success is True

        retriggered = sorted(call.args[0] for call in scheduler.manual_trigger.call_args_list)
        assert retriggered == ["bookings", "calendar"]

        audit = db.query(AuditRecord).filter(AuditRecord.operation == "auto_recovery").one()
        assert audit.status == "success"

    def test_below_threshold_does_nothing(self, db, engine, tokens, scheduler, checkpoint):
        seed_errors(db, checkpoint.hotel_id, "bookings", TOKEN_FAILURE, count=2)

        result = engine.auto_recovery()

        assert result.actions == []
        tokens.refresh.assert_not_called()
        scheduler.manual_trigger.assert_not_called()

    def test_errors_outside_window_are_ignored(self, db, engine, tokens, checkpoint):
        seed_errors(db, checkpoint.hotel_id, "bookings", TOKEN_FAILURE, age=timedelta(hours=30))

        result = engine.auto_recovery()

        assert result.counts["errors_analyzed"] == 0
        tokens.refresh.assert_not_called()

    def test_rate_limit_storm_disables_sync(self, db, engine, tokens, scheduler, checkpoint):
        """The hotel is switched off and not retriggered"""
        from channelsync.models import SyncCheckpoint

        seed_errors(db, checkpoint.hotel_id, "bookings", RATE_FAILURE)

        result = engine.auto_recovery()

        assert [a.action for a in result.actions] == ["disable_sync"]
        tokens.refresh.assert_not_called()
        scheduler.manual_trigger.assert_not_called()

        stored = db.query(SyncCheckpoint).one()
        assert stored.sync_enabled is False
        assert stored.settings["auto_disabled_due_to_rate_limit"] is True
        assert stored.settings["auto_disabled_reason"] == RATE_FAILURE
        assert stored.settings["property_id"] == "P1"

    def test_failed_refresh_is_reported_not_raised(self, db, engine, tokens, checkpoint):
        from channelsync.models import AuditRecord
        from channelsync.utils.errors import AuthError

        tokens.refresh.side_effect = AuthError("No refresh token configured for read token")
        seed_errors(db, checkpoint.hotel_id, "token", TOKEN_FAILURE)

        result = engine.auto_recovery()

        assert result.success is False
        assert result.actions[0].action == "refresh_token"
        assert result.actions[0].success is False
        audit = db.query(AuditRecord).filter(AuditRecord.operation == "auto_recovery").one()
        assert audit.status == "partial"

    def test_failed_retrigger_is_reported(self, db, engine, scheduler, checkpoint):
        scheduler.manual_trigger.return_value = MagicMock(success=False, message="transport_error: boom")
        seed_errors(db, checkpoint.hotel_id, "calendar", "Timeout calling GET /inventory/rooms/calendar")

        result = engine.auto_recovery()

        retrigger = [a for a in result.actions if a.action == "retrigger_sync"]
        assert len(retrigger) == 1
        assert retrigger[0].success is False
        assert "boom" in retrigger[0].message


class TestManualRecovery:
    """manual_recovery()"""

    def test_reset_tokens(self, engine, tokens, monkeypatch):
        from channelsync.config import settings
        from channelsync.schemas.settings import RecoveryOptions

        monkeypatch.setattr(settings, "beds24_write_refresh_token", "")

        result = engine.manual_recovery(options=RecoveryOptions(reset_tokens=True))

        assert result.success is True
        tokens.purge_tokens.assert_called_once()
        tokens.refresh.assert_called_once_with("read")

    def test_reset_tokens_refreshes_write_when_configured(self, engine, tokens, monkeypatch):
        from channelsync.config import settings
        from channelsync.schemas.settings import RecoveryOptions

        monkeypatch.setattr(settings, "beds24_write_refresh_token", "write-credential")

        engine.manual_recovery(options=RecoveryOptions(reset_tokens=True))

        assert [c.args[0] for c in tokens.refresh.call_args_list] == ["read", "write"]

    def test_clear_errors_scoped_to_hotel(self, db, engine, checkpoint):
        from channelsync.models import AuditRecord
        from channelsync.schemas.settings import RecoveryOptions

        seed_errors(db, checkpoint.hotel_id, "bookings", "x")
        seed_errors(db, "other-hotel", "bookings", "x", count=2)

        result = engine.manual_recovery(
            hotel_id=checkpoint.hotel_id, options=RecoveryOptions(clear_errors=True)
        )

        assert result.counts["errors_cleared"] == 3
        assert db.query(AuditRecord).filter(
            AuditRecord.status == "error", AuditRecord.hotel_id == "other-hotel"
        ).count() == 2

    def test_resync_from_date_rewinds_and_triggers(self, db, engine, scheduler, checkpoint):
        """The only path allowed to move a cursor backwards"""
        from channelsync.models import SyncCheckpoint
        from channelsync.schemas.settings import RecoveryOptions

        checkpoint.last_bookings_modified_from = datetime(2025, 2, 20)
        checkpoint.last_bookings_synced_at = NOW - timedelta(minutes=5)
        db.commit()

        result = engine.manual_recovery(
            hotel_id=checkpoint.hotel_id,
            entity_type="bookings",
            options=RecoveryOptions(resync_from_date=datetime(2025, 2, 1)),
        )

        assert result.success is True
        stored = db.query(SyncCheckpoint).one()
        assert stored.last_bookings_modified_from == datetime(2025, 2, 1)
        assert stored.last_bookings_synced_at is None
        assert stored.settings["resync_requested_at"].startswith("2025-02-21T12:00")

        args, kwargs = scheduler.manual_trigger.call_args
        assert args[0] == "bookings"
        assert kwargs["hotel_id"] == checkpoint.hotel_id

    def test_force_bootstrap_requires_hotel(self, engine):
        from channelsync.schemas.settings import RecoveryOptions

        result = engine.manual_recovery(options=RecoveryOptions(force_bootstrap=True))

        assert result.success is False
        assert result.actions[0].message == "force_bootstrap requires hotel_id"

    def test_no_options(self, db, engine):
        from channelsync.models import AuditRecord

        result = engine.manual_recovery()

        assert result.success is True
        assert result.message == "No recovery options selected"
        assert db.query(AuditRecord).filter(AuditRecord.operation == "manual_recovery").count() == 1


class TestResetSyncState:

    def test_reset_returns_to_pre_bootstrap(self, db, engine, checkpoint):
        from datetime import date
        from channelsync.models import SyncCheckpoint

        checkpoint.last_bookings_modified_from = datetime(2025, 2, 20)
        checkpoint.last_calendar_start = date(2025, 2, 20)
        db.commit()

        result = engine.reset_sync_state(hotel_id=checkpoint.hotel_id)

        assert result.counts == {"checkpoints_reset": 1}
        stored = db.query(SyncCheckpoint).one()
        assert stored.bootstrap_completed is False
        assert stored.sync_enabled is False
        assert stored.last_bookings_modified_from is None
        assert stored.last_calendar_start is None
        assert stored.settings["property_id"] == "P1"
        assert stored.settings["disabled_at"].startswith("2025-02-21")

    def test_reset_without_hotel_resets_all(self, db, engine, checkpoint):
        from channelsync.models import Hotel, SyncCheckpoint

        other = Hotel(name="Second")
        db.add(other)
        db.commit()
        db.add(SyncCheckpoint(hotel_id=other.id, bootstrap_completed=True, sync_enabled=True))
        db.commit()

        result = engine.reset_sync_state()

        assert result.counts["checkpoints_reset"] == 2
        assert db.query(SyncCheckpoint).filter(SyncCheckpoint.sync_enabled.is_(True)).count() == 0


class TestRepairDataIntegrity:
    """repair_data_integrity()"""

    @pytest.fixture
    def repair_engine(self, db):
        from channelsync.services.recovery import RecoveryEngine
        from channelsync.services.token_manager import TokenManager

        tokens = TokenManager(db, http_client=mock_http(lambda r: None))
        return RecoveryEngine(db, token_manager=tokens, scheduler=MagicMock(), now_fn=lambda: NOW)

    def test_duplicate_mappings_keep_most_recent(self, db, repair_engine, room_type):
        """Two R5 room_type rows created at different times -> only the newer survives"""
        from channelsync.models import ExternalIdentityMapping

        db.add_all([
            ExternalIdentityMapping(entity_type="room_type", external_id="R5", internal_id=room_type.id,
                                    created_at=datetime(2025, 1, 1)),
            ExternalIdentityMapping(entity_type="room_type", external_id="R5", internal_id=room_type.id,
                                    created_at=datetime(2025, 2, 1)),
        ])
        db.commit()

        result = repair_engine.repair_data_integrity()

        assert result.counts["duplicate_mappings"] == 1
        remaining = db.query(ExternalIdentityMapping).filter(
            ExternalIdentityMapping.external_id == "R5"
        ).all()
        assert len(remaining) == 1
        assert remaining[0].created_at == datetime(2025, 2, 1)

    def test_orphans_and_expired_tokens_are_removed(self, db, repair_engine, checkpoint, room_type):
        from channelsync.models import ApiToken, AuditRecord, ExternalIdentityMapping, SyncCheckpoint

        db.add_all([
            ExternalIdentityMapping(entity_type="reservation", external_id="B9", internal_id="missing-row"),
            ExternalIdentityMapping(entity_type="room_type", external_id="R1", internal_id=room_type.id),
            SyncCheckpoint(hotel_id="deleted-hotel"),
            ApiToken(token_type="read", access_token="old", expires_at=NOW - timedelta(hours=1)),
        ])
        db.commit()

        result = repair_engine.repair_data_integrity()

        assert result.counts == {
            "orphaned_mappings": 1,
            "duplicate_mappings": 0,
            "orphaned_checkpoints": 1,
            "expired_tokens": 1,
        }
        assert [m.external_id for m in db.query(ExternalIdentityMapping).all()] == ["R1"]
        assert [c.hotel_id for c in db.query(SyncCheckpoint).all()] == [checkpoint.hotel_id]
        assert db.query(ApiToken).count() == 0

        audit = db.query(AuditRecord).filter(AuditRecord.operation == "repair_data_integrity").one()
        assert audit.records_processed == 3

    def test_clean_store_reports_nothing(self, repair_engine, checkpoint):
        result = repair_engine.repair_data_integrity()

        assert result.success is True
        assert sum(result.counts.values()) == 0

"""
Recovery Engine

Self-healing for the sync subsystem, driven entirely by the audit trail:
- auto_recovery: pattern-matches recent error records and refreshes
  tokens, disables rate-limited hotels, or re-runs sync
- manual_recovery: operator-selected remediation steps
- reset_sync_state: puts hotels back into the pre-bootstrap state
- repair_data_integrity: removes orphaned/duplicate mappings, orphaned
  checkpoints and expired tokens
"""

import logging
import re
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..models.channel_integration import (
    ExternalIdentityMapping,
    SyncCheckpoint,
    EntityType,
    TokenType,
    DEFAULT_PROVIDER,
)
from ..models.guest import Guest
from ..models.property import Hotel, RoomType
from ..models.reservation import Reservation
from ..schemas.settings import RecoveryOptions, SyncSettings
from ..utils.dates import utcnow
from ..utils.errors import DataIntegrityError
from ..utils.logging_config import set_trace_context
from .audit_service import AuditLogger, OperationTimer
from .beds24_client import Beds24Client
from .bootstrap import BootstrapService
from .delta_sync import SYNC_ALL, SYNC_BOOKINGS, SYNC_CALENDAR
from .scheduler import SyncScheduler
from .token_manager import TokenManager

logger = logging.getLogger(__name__)

TOKEN_ERROR_PATTERN = re.compile(r"token|auth|401", re.IGNORECASE)
RATE_LIMIT_ERROR_PATTERN = re.compile(r"rate|limit|429", re.IGNORECASE)

# Which table an identity mapping's internal_id points at
MAPPED_MODELS = {
    EntityType.PROPERTY.value: Hotel,
    EntityType.ROOM_TYPE.value: RoomType,
    EntityType.RESERVATION.value: Reservation,
    EntityType.GUEST.value: Guest,
}


@dataclass
class RecoveryAction:
    """One remediation step and its outcome"""
    action: str
    target: str
    success: bool
    message: str


@dataclass
class RecoveryResult:
    success: bool
    operation: str
    message: str = ""
    actions: List[RecoveryAction] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    trace_id: Optional[str] = None

    def record(self, action: str, target: str, success: bool, message: str) -> RecoveryAction:
        entry = RecoveryAction(action, target, success, message)
        self.actions.append(entry)
        if not success:
            self.success = False
        return entry

    def to_dict(self) -> Dict:
        return asdict(self)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class RecoveryEngine:

    def __init__(
        self,
        db: Session,
        client_factory: Optional[Callable[[str], Beds24Client]] = None,
        token_manager: Optional[TokenManager] = None,
        scheduler: Optional[SyncScheduler] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.audit = AuditLogger(db)
        self.client_factory = client_factory
        self._owns_tokens = token_manager is None
        self._token_manager = token_manager
        self.scheduler = scheduler or SyncScheduler(
            db, client_factory=client_factory, token_manager=token_manager, now_fn=now_fn
        )
        self.now_fn = now_fn

    @property
    def tokens(self) -> TokenManager:
        if self._token_manager is None:
            self._token_manager = TokenManager(self.db)
        return self._token_manager

    def close(self):
        if self._owns_tokens and self._token_manager is not None:
            self._token_manager.close()

    def _checkpoints(self, hotel_id: Optional[str] = None) -> List[SyncCheckpoint]:
        query = self.db.query(SyncCheckpoint).filter(SyncCheckpoint.provider == DEFAULT_PROVIDER)
        if hotel_id:
            query = query.filter(SyncCheckpoint.hotel_id == hotel_id)
        return query.all()

    # ==================
    # Automatic recovery
    # ==================

    def auto_recovery(self, hotel_id: Optional[str] = None, trace_id: Optional[str] = None) -> RecoveryResult:
        """
        Look for systemic failures in the trailing window and remediate.

        A (hotel, entity_type) group is systemic once it has at least
        SYSTEMIC_ERROR_THRESHOLD errors. The read token is refreshed at most
        once per run no matter how many groups point at auth failures.
        """
        trace_id = set_trace_context(trace_id, hotel_id)
        result = RecoveryResult(success=True, operation="auto_recovery", trace_id=trace_id)

        errors = self.audit.recent_errors(
            hours=settings.recovery_window_hours, hotel_id=hotel_id, now=self.now_fn()
        )
        groups: Dict[Tuple[Optional[str], Optional[str]], List[str]] = defaultdict(list)
        for record in errors:
            groups[(record.hotel_id, record.entity_type)].append(record.error_message or "")

        systemic = {
            key: messages for key, messages in groups.items()
            if len(messages) >= settings.systemic_error_threshold
        }
        result.counts = {"errors_analyzed": len(errors), "systemic_groups": len(systemic)}

        token_refreshed = False
        disabled_hotels = set()
        for (group_hotel, entity_type), messages in systemic.items():
            target = f"{group_hotel or 'global'}/{entity_type or 'unknown'}"
            logger.warning(f"Systemic issue on {target}: {len(messages)} errors")

            if not token_refreshed and any(TOKEN_ERROR_PATTERN.search(m) for m in messages):
                token_refreshed = True
                self._attempt(result, "refresh_token", target, self._refresh_read_token)

            if group_hotel and any(RATE_LIMIT_ERROR_PATTERN.search(m) for m in messages):
                reason = next(m for m in messages if RATE_LIMIT_ERROR_PATTERN.search(m))
                if self._attempt(result, "disable_sync", target, lambda: self._disable_sync(group_hotel, reason)):
                    disabled_hotels.add(group_hotel)

            if (
                group_hotel
                and entity_type in (SYNC_BOOKINGS, SYNC_CALENDAR)
                and group_hotel not in disabled_hotels
            ):
                self._attempt(
                    result, "retrigger_sync", target,
                    lambda: self._retrigger(entity_type, group_hotel, trace_id),
                )

        result.message = (
            f"Analyzed {len(errors)} errors, {len(systemic)} systemic groups, "
            f"{len(result.actions)} actions"
        )
        self.audit.log(
            "auto_recovery",
            status="success" if result.success else "partial",
            hotel_id=hotel_id, entity_type=EntityType.SYSTEM.value, action="auto_recovery",
            records_processed=len(result.actions),
            response_payload={"actions": [asdict(a) for a in result.actions]},
            trace_id=trace_id,
        )
        logger.info(result.message)
        return result

    def _attempt(self, result: RecoveryResult, action: str, target: str, fn: Callable[[], str]) -> bool:
        """Run one remediation step; a failure is recorded, never raised"""
        try:
            message = fn()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Recovery action {action} on {target} failed: {e}")
            result.record(action, target, False, str(e))
            return False
        result.record(action, target, True, message)
        return True

    def _refresh_read_token(self) -> str:
        refreshed = self.tokens.refresh(TokenType.READ.value)
        return f"Read token refreshed, expires {refreshed.expires_at.isoformat()}"

    def _disable_sync(self, hotel_id: str, reason: str) -> str:
        checkpoint = self.db.query(SyncCheckpoint).filter(
            SyncCheckpoint.provider == DEFAULT_PROVIDER,
            SyncCheckpoint.hotel_id == hotel_id,
        ).first()
        if checkpoint is None:
            return f"No checkpoint for hotel {hotel_id}"

        sync_settings = SyncSettings.from_blob(checkpoint.settings)
        sync_settings.auto_disabled_due_to_rate_limit = True
        sync_settings.auto_disabled_reason = reason[:500]
        sync_settings.disabled_at = self.now_fn()
        checkpoint.settings = sync_settings.to_blob()
        checkpoint.sync_enabled = False
        self.db.commit()
        return f"Sync disabled for hotel {hotel_id} due to rate limiting"

    def _retrigger(self, entity_type: str, hotel_id: str, trace_id: str) -> str:
        outcome = self.scheduler.manual_trigger(entity_type, hotel_id=hotel_id, trace_id=trace_id)
        if not outcome.success:
            raise RuntimeError(outcome.message or f"{entity_type} resync failed")
        return outcome.message

    # ==================
    # Manual recovery
    # ==================

    def manual_recovery(
        self,
        hotel_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        options: Optional[RecoveryOptions] = None,
        trace_id: Optional[str] = None,
    ) -> RecoveryResult:
        """
        Apply the selected steps in a fixed order: reset_tokens,
        clear_errors, force_bootstrap, resync_from_date.
        """
        options = options or RecoveryOptions()
        trace_id = set_trace_context(trace_id, hotel_id)
        result = RecoveryResult(success=True, operation="manual_recovery", trace_id=trace_id)
        target = hotel_id or "all"

        if options.reset_tokens:
            self._attempt(result, "reset_tokens", "tokens", self._reset_tokens)

        if options.clear_errors:
            def clear() -> str:
                deleted = self.audit.delete_errors(hotel_id=hotel_id, entity_type=entity_type)
                result.counts["errors_cleared"] = deleted
                return f"Cleared {deleted} error records"
            self._attempt(result, "clear_errors", target, clear)

        if options.force_bootstrap:
            if not hotel_id:
                result.record("force_bootstrap", target, False, "force_bootstrap requires hotel_id")
            else:
                self._attempt(
                    result, "force_bootstrap", target,
                    lambda: self._force_bootstrap(hotel_id, options.property_id, trace_id),
                )

        if options.resync_from_date:
            self._attempt(
                result, "resync_from_date", target,
                lambda: self._resync_from(hotel_id, entity_type, _naive_utc(options.resync_from_date), trace_id),
            )

        if not result.actions:
            result.message = "No recovery options selected"
        else:
            done = sum(1 for a in result.actions if a.success)
            result.message = f"{done} of {len(result.actions)} recovery steps succeeded"

        self.audit.log(
            "manual_recovery",
            status="success" if result.success else "partial",
            hotel_id=hotel_id, entity_type=entity_type or EntityType.SYSTEM.value, action="manual_recovery",
            request_payload=options.model_dump(mode="json"),
            response_payload={"actions": [asdict(a) for a in result.actions]},
            trace_id=trace_id,
        )
        return result

    def _reset_tokens(self) -> str:
        purged = self.tokens.purge_tokens()
        self.tokens.refresh(TokenType.READ.value)
        refreshed = ["read"]
        if settings.beds24_write_refresh_token:
            self.tokens.refresh(TokenType.WRITE.value)
            refreshed.append("write")
        return f"Purged {purged} tokens, refreshed {', '.join(refreshed)}"

    def _force_bootstrap(self, hotel_id: str, property_id: Optional[str], trace_id: str) -> str:
        outcome = BootstrapService(self.db, client_factory=self.client_factory).bootstrap(
            hotel_id, property_id=property_id, force=True, trace_id=trace_id,
        )
        if not outcome.success:
            raise RuntimeError(outcome.message)
        return outcome.message

    def _resync_from(self, hotel_id: Optional[str], entity_type: Optional[str], since: datetime, trace_id: str) -> str:
        # Rewinding is the one place a cursor may move backwards
        now = self.now_fn()
        checkpoints = self._checkpoints(hotel_id)
        for checkpoint in checkpoints:
            if entity_type in (None, SYNC_BOOKINGS):
                checkpoint.last_bookings_modified_from = since
                checkpoint.last_bookings_synced_at = None
            if entity_type in (None, SYNC_CALENDAR):
                checkpoint.last_calendar_synced_at = None
            sync_settings = SyncSettings.from_blob(checkpoint.settings)
            sync_settings.resync_requested_at = now
            checkpoint.settings = sync_settings.to_blob()
        self.db.commit()

        sync_type = entity_type if entity_type in (SYNC_BOOKINGS, SYNC_CALENDAR) else SYNC_ALL
        outcome = self.scheduler.manual_trigger(sync_type, hotel_id=hotel_id, trace_id=trace_id)
        if not outcome.success:
            raise RuntimeError(f"Rewound {len(checkpoints)} checkpoints but sync failed: {outcome.message}")
        return f"Rewound {len(checkpoints)} checkpoints to {since.isoformat()}; {outcome.message}"

    # ==================
    # Reset
    # ==================

    def reset_sync_state(self, hotel_id: Optional[str] = None, trace_id: Optional[str] = None) -> RecoveryResult:
        """
        Return hotels to the pre-bootstrap state. Sync stays off until a new
        bootstrap runs; property_id is kept so that bootstrap can find it.
        """
        trace_id = set_trace_context(trace_id, hotel_id)
        now = self.now_fn()
        checkpoints = self._checkpoints(hotel_id)
        for checkpoint in checkpoints:
            checkpoint.bootstrap_completed = False
            checkpoint.bootstrap_completed_at = None
            checkpoint.sync_enabled = False
            checkpoint.last_bookings_modified_from = None
            checkpoint.last_bookings_synced_at = None
            checkpoint.last_calendar_start = None
            checkpoint.last_calendar_end = None
            checkpoint.last_calendar_synced_at = None
            sync_settings = SyncSettings.from_blob(checkpoint.settings)
            sync_settings.disabled_at = now
            sync_settings.auto_disabled_due_to_rate_limit = False
            sync_settings.auto_disabled_reason = None
            checkpoint.settings = sync_settings.to_blob()
        self.db.commit()

        result = RecoveryResult(
            success=True,
            operation="reset_sync_state",
            message=f"Reset sync state for {len(checkpoints)} hotels",
            counts={"checkpoints_reset": len(checkpoints)},
            trace_id=trace_id,
        )
        self.audit.success(
            "reset_sync_state",
            hotel_id=hotel_id, entity_type=EntityType.SYSTEM.value, action="reset",
            records_processed=len(checkpoints), trace_id=trace_id,
        )
        logger.info(result.message)
        return result

    # ==================
    # Integrity repair
    # ==================

    def repair_data_integrity(self, hotel_id: Optional[str] = None, trace_id: Optional[str] = None) -> RecoveryResult:
        trace_id = set_trace_context(trace_id, hotel_id)
        findings: List[DataIntegrityError] = []
        timer = OperationTimer()
        with timer:
            counts = {
                "orphaned_mappings": self._remove_orphaned_mappings(findings),
                "duplicate_mappings": self._remove_duplicate_mappings(findings),
                "orphaned_checkpoints": self._remove_orphaned_checkpoints(hotel_id, findings),
                "expired_tokens": self.tokens.remove_expired(self.now_fn()),
            }

        for finding in findings:
            logger.warning(f"{finding.code}: {finding}")

        result = RecoveryResult(
            success=True,
            operation="repair_data_integrity",
            message=", ".join(f"{v} {k.replace('_', ' ')}" for k, v in counts.items()) + " removed",
            counts=counts,
            trace_id=trace_id,
        )
        self.audit.success(
            "repair_data_integrity",
            hotel_id=hotel_id, entity_type=EntityType.SYSTEM.value, action="repair",
            duration_ms=timer.duration_ms, records_processed=sum(counts.values()),
            response_payload={"counts": counts, "findings": [f.details for f in findings]},
            trace_id=trace_id,
        )
        logger.info(f"Integrity repair: {result.message}")
        return result

    def _remove_orphaned_mappings(self, findings: List[DataIntegrityError]) -> int:
        removed = 0
        for entity_type, model in MAPPED_MODELS.items():
            mappings = self.db.query(ExternalIdentityMapping).filter(
                ExternalIdentityMapping.provider == DEFAULT_PROVIDER,
                ExternalIdentityMapping.entity_type == entity_type,
            ).all()
            if not mappings:
                continue

            internal_ids = {m.internal_id for m in mappings}
            existing = {
                row_id for (row_id,) in self.db.query(model.id).filter(model.id.in_(internal_ids))
            }
            for mapping in mappings:
                if mapping.internal_id in existing:
                    continue
                findings.append(DataIntegrityError(
                    f"{entity_type} mapping {mapping.external_id} points at missing row {mapping.internal_id}",
                    details={"kind": "orphaned_mapping", "entity_type": entity_type,
                             "external_id": mapping.external_id, "internal_id": mapping.internal_id},
                ))
                self.db.delete(mapping)
                removed += 1
        self.db.commit()
        return removed

    def _remove_duplicate_mappings(self, findings: List[DataIntegrityError]) -> int:
        """Keep only the most recently created row per (provider, entity_type, external_id)"""
        groups = self.db.query(
            ExternalIdentityMapping.provider,
            ExternalIdentityMapping.entity_type,
            ExternalIdentityMapping.external_id,
        ).group_by(
            ExternalIdentityMapping.provider,
            ExternalIdentityMapping.entity_type,
            ExternalIdentityMapping.external_id,
        ).having(func.count(ExternalIdentityMapping.id) > 1).all()

        removed = 0
        for provider, entity_type, external_id in groups:
            rows = self.db.query(ExternalIdentityMapping).filter(
                ExternalIdentityMapping.provider == provider,
                ExternalIdentityMapping.entity_type == entity_type,
                ExternalIdentityMapping.external_id == external_id,
            ).order_by(
                ExternalIdentityMapping.created_at.desc(),
                ExternalIdentityMapping.id.desc(),
            ).all()
            findings.append(DataIntegrityError(
                f"{len(rows)} {entity_type} mappings share external id {external_id}",
                details={"kind": "duplicate_mapping", "entity_type": entity_type,
                         "external_id": external_id, "kept": rows[0].id},
            ))
            for stale in rows[1:]:
                self.db.delete(stale)
                removed += 1
        self.db.commit()
        return removed

    def _remove_orphaned_checkpoints(self, hotel_id: Optional[str], findings: List[DataIntegrityError]) -> int:
        removed = 0
        for checkpoint in self._checkpoints(hotel_id):
            exists = self.db.query(Hotel.id).filter(Hotel.id == checkpoint.hotel_id).first()
            if exists:
                continue
            findings.append(DataIntegrityError(
                f"Checkpoint {checkpoint.id} belongs to missing hotel {checkpoint.hotel_id}",
                details={"kind": "orphaned_checkpoint", "hotel_id": checkpoint.hotel_id},
            ))
            self.db.delete(checkpoint)
            removed += 1
        self.db.commit()
        return removed

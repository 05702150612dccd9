"""
Sync Command Handlers

One function per command variant. Each family (token, scheduler, recovery)
has a handler table keyed by the variant's model class, so adding an
action means adding a model to the union and a row to the table.

Handlers return plain dicts ready for JSON. Sync errors that escape a
service are turned into {"success": False, ...} here; anything else is
left to the HTTP layer.
"""

import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from ..config import settings
from ..schemas.integration import (
    AutoRecoveryCommand,
    DeltaSyncCommand,
    HealthCheckCommand,
    ManualRecoveryCommand,
    ManualTriggerCommand,
    RefreshTokenCommand,
    RepairDataIntegrityCommand,
    ResetSyncStateCommand,
    RunScheduledCommand,
    TokenDiagnosticsCommand,
    WebhookReservationCommand,
)
from ..utils.errors import SyncError
from .beds24_client import Beds24Client, CreditTracker
from .delta_sync import DeltaSyncEngine
from .recovery import RecoveryEngine
from .scheduler import SyncScheduler
from .token_manager import TokenManager
from .webhook_processor import WebhookReservationProcessor

logger = logging.getLogger(__name__)


class SyncServices:
    """
    Wires the sync components for one request.

    All components share one httpx.Client; pass one in (tests use an
    httpx.MockTransport) or let the container own it.
    """

    def __init__(self, db: Session, http_client: Optional[httpx.Client] = None, request_id: Optional[str] = None):
        self.db = db
        self.request_id = request_id
        self._owns_http = http_client is None
        self.http = http_client or httpx.Client(
            base_url=settings.beds24_base_url,
            timeout=settings.beds24_timeout_seconds,
        )
        self._tokens: Optional[TokenManager] = None

    @property
    def tokens(self) -> TokenManager:
        if self._tokens is None:
            self._tokens = TokenManager(self.db, http_client=self.http)
        return self._tokens

    def client_factory(self, trace_id: Optional[str]) -> Beds24Client:
        """New client, and so a fresh credit tracker, per invocation"""
        return Beds24Client(
            self.db,
            token_manager=self.tokens,
            tracker=CreditTracker.from_store(self.db),
            trace_id=trace_id,
            http_client=self.http,
        )

    def scheduler(self) -> SyncScheduler:
        return SyncScheduler(self.db, client_factory=self.client_factory, token_manager=self.tokens)

    def delta_engine(self) -> DeltaSyncEngine:
        return DeltaSyncEngine(self.db, client_factory=self.client_factory)

    def recovery(self) -> RecoveryEngine:
        return RecoveryEngine(
            self.db,
            client_factory=self.client_factory,
            token_manager=self.tokens,
            scheduler=self.scheduler(),
        )

    def close(self):
        if self._owns_http:
            self.http.close()


def _guarded(name: str, fn: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    try:
        return fn()
    except SyncError as e:
        logger.warning(f"{name} failed: {e.code}: {e}")
        return {"success": False, "error": str(e), "error_code": e.code}


# ==================
# Token Manager
# ==================

def handle_refresh_token(services: SyncServices, command: RefreshTokenCommand) -> Dict[str, Any]:
    def run():
        token = services.tokens.refresh(command.token_type)
        return {
            "success": True,
            "token_type": token.token_type,
            "expires_at": token.expires_at.isoformat(),
        }
    return _guarded("refresh_token", run)


def handle_token_diagnostics(services: SyncServices, command: TokenDiagnosticsCommand) -> Dict[str, Any]:
    tokens = services.tokens.diagnostics()
    if command.token_type:
        tokens = [t for t in tokens if t["type"] == command.token_type]
    return {"success": True, "tokens": tokens}


TOKEN_HANDLERS = {
    RefreshTokenCommand: handle_refresh_token,
    TokenDiagnosticsCommand: handle_token_diagnostics,
}


def dispatch_token_action(services: SyncServices, command) -> Dict[str, Any]:
    return TOKEN_HANDLERS[type(command)](services, command)


# ==================
# Scheduler
# ==================

def handle_run_scheduled(services: SyncServices, command: RunScheduledCommand) -> Dict[str, Any]:
    return _guarded("run_scheduled", lambda: asdict(services.scheduler().run_scheduled()))


def handle_manual_trigger(services: SyncServices, command: ManualTriggerCommand) -> Dict[str, Any]:
    return _guarded(
        "manual_trigger",
        lambda: asdict(services.scheduler().manual_trigger(command.sync_type, hotel_id=command.hotel_id)),
    )


def handle_health_check(services: SyncServices, command: HealthCheckCommand) -> Dict[str, Any]:
    report = services.scheduler().health_check()
    return {"success": report.overall_status == "healthy", **asdict(report)}


SCHEDULER_HANDLERS = {
    RunScheduledCommand: handle_run_scheduled,
    ManualTriggerCommand: handle_manual_trigger,
    HealthCheckCommand: handle_health_check,
}


def dispatch_scheduler_action(services: SyncServices, command) -> Dict[str, Any]:
    return SCHEDULER_HANDLERS[type(command)](services, command)


# ==================
# Delta Sync
# ==================

def handle_delta_sync(services: SyncServices, command: DeltaSyncCommand) -> Dict[str, Any]:
    return _guarded(
        "delta_sync",
        lambda: asdict(services.delta_engine().run(
            command.sync_type,
            hotel_id=command.hotel_id,
            force_sync=command.force_sync,
            trace_id=command.trace_id,
        )),
    )


# ==================
# Recovery
# ==================

def handle_auto_recovery(services: SyncServices, command: AutoRecoveryCommand) -> Dict[str, Any]:
    return _guarded("auto_recovery", lambda: services.recovery().auto_recovery(hotel_id=command.hotel_id).to_dict())


def handle_manual_recovery(services: SyncServices, command: ManualRecoveryCommand) -> Dict[str, Any]:
    return _guarded(
        "manual_recovery",
        lambda: services.recovery().manual_recovery(
            hotel_id=command.hotel_id,
            entity_type=command.entity_type,
            options=command.recovery_options,
        ).to_dict(),
    )


def handle_reset_sync_state(services: SyncServices, command: ResetSyncStateCommand) -> Dict[str, Any]:
    return services.recovery().reset_sync_state(hotel_id=command.hotel_id).to_dict()


def handle_repair_data_integrity(services: SyncServices, command: RepairDataIntegrityCommand) -> Dict[str, Any]:
    return services.recovery().repair_data_integrity(hotel_id=command.hotel_id).to_dict()


RECOVERY_HANDLERS = {
    AutoRecoveryCommand: handle_auto_recovery,
    ManualRecoveryCommand: handle_manual_recovery,
    ResetSyncStateCommand: handle_reset_sync_state,
    RepairDataIntegrityCommand: handle_repair_data_integrity,
}


def dispatch_recovery_action(services: SyncServices, command) -> Dict[str, Any]:
    return RECOVERY_HANDLERS[type(command)](services, command)


# ==================
# Webhook
# ==================

def handle_reservation_webhook(services: SyncServices, command: WebhookReservationCommand) -> Dict[str, Any]:
    processor = WebhookReservationProcessor(services.db, request_id=services.request_id)
    return asdict(processor.process(command))

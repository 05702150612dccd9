"""
Sync API Router

Command surface for the channel sync engine:
- Token, scheduler and recovery commands (tagged unions on `action`)
- Delta sync trigger
- Inbound reservation webhooks
- Read-only views of checkpoints, audit records, identity mappings and
  inbound events for external collaborators
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import TypeAdapter, ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.audit import AuditRecord
from ..models.channel_integration import SyncCheckpoint, DEFAULT_PROVIDER
from ..models.webhook_event import InboundReservationEvent
from ..schemas.integration import (
    AuditRecordResponse,
    DeltaSyncCommand,
    IdentityMappingResponse,
    InboundEventResponse,
    RECOVERY_ACTION,
    SCHEDULER_ACTION,
    SyncCheckpointResponse,
    TOKEN_ACTION,
    WebhookReservationCommand,
)
from ..services.commands import (
    SyncServices,
    dispatch_recovery_action,
    dispatch_scheduler_action,
    dispatch_token_action,
    handle_delta_sync,
    handle_reservation_webhook,
)
from ..services.identity_map import IdentityMap
from ..services.scheduler import get_scheduler_status

router = APIRouter(prefix="/api/sync", tags=["Channel Sync"])


def get_request_id(request: Request) -> str:
    """Get request_id from request state or generate one"""
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())[:8]


def get_services(request: Request, db: Session = Depends(get_db)):
    services = SyncServices(db, request_id=get_request_id(request))
    try:
        yield services
    finally:
        services.close()


def _parse(adapter: TypeAdapter, payload: dict):
    """Validate a tagged-union body; an unknown action is a 422 like any other bad body"""
    try:
        return adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise RequestValidationError(e.errors(include_url=False))


# ==================
# Commands
# ==================

@router.post("/tokens")
def token_command(
    payload: dict = Body(...),
    services: SyncServices = Depends(get_services),
):
    """refresh_token | diagnostics"""
    return dispatch_token_action(services, _parse(TOKEN_ACTION, payload))


@router.post("/scheduler")
def scheduler_command(
    payload: dict = Body(...),
    services: SyncServices = Depends(get_services),
):
    """run_scheduled | manual_trigger | health_check"""
    return dispatch_scheduler_action(services, _parse(SCHEDULER_ACTION, payload))


@router.get("/scheduler/status")
def scheduler_status():
    """In-process APScheduler state (only running when SCHEDULER_ENABLED)"""
    return get_scheduler_status()


@router.post("/delta")
def delta_sync(
    command: DeltaSyncCommand,
    services: SyncServices = Depends(get_services),
):
    return handle_delta_sync(services, command)


@router.post("/recovery")
def recovery_command(
    payload: dict = Body(...),
    services: SyncServices = Depends(get_services),
):
    """auto_recovery | manual_recovery | reset_sync_state | repair_data_integrity"""
    return dispatch_recovery_action(services, _parse(RECOVERY_ACTION, payload))


@router.post("/webhooks/reservations")
def reservation_webhook(
    command: WebhookReservationCommand,
    services: SyncServices = Depends(get_services),
):
    """
    Inbound reservation from a channel.

    Failures answer 400 so the channel redelivers; creates are idempotent
    on (channel, reservation id), so redelivery is safe.
    """
    result = handle_reservation_webhook(services, command)
    if not result["success"]:
        return JSONResponse(status_code=400, content=result)
    return result


# ==================
# Read-only views
# ==================

@router.get("/checkpoints", response_model=List[SyncCheckpointResponse])
def list_checkpoints(
    hotel_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    query = db.query(SyncCheckpoint).filter(SyncCheckpoint.provider == DEFAULT_PROVIDER)
    if hotel_id:
        query = query.filter(SyncCheckpoint.hotel_id == hotel_id)
    return query.order_by(SyncCheckpoint.hotel_id).all()


@router.get("/audit", response_model=List[AuditRecordResponse])
def list_audit_records(
    hotel_id: Optional[str] = None,
    status: Optional[str] = None,
    operation: Optional[str] = None,
    entity_type: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    query = db.query(AuditRecord)
    if hotel_id:
        query = query.filter(AuditRecord.hotel_id == hotel_id)
    if status:
        query = query.filter(AuditRecord.status == status)
    if operation:
        query = query.filter(AuditRecord.operation == operation)
    if entity_type:
        query = query.filter(AuditRecord.entity_type == entity_type)
    return query.order_by(AuditRecord.created_at.desc()).limit(limit).all()


@router.get("/mappings/{entity_type}", response_model=List[IdentityMappingResponse])
def list_mappings(
    entity_type: str,
    internal_id: Optional[List[str]] = Query(None),
    db: Session = Depends(get_db),
):
    return IdentityMap(db).get_mappings(entity_type, internal_ids=internal_id)


@router.get("/mappings/{entity_type}/{internal_id}/external")
def external_id_for(entity_type: str, internal_id: str, db: Session = Depends(get_db)):
    external_id = IdentityMap(db).reverse_lookup(entity_type, internal_id)
    if external_id is None:
        raise HTTPException(status_code=404, detail=f"No {entity_type} mapping for {internal_id}")
    return {"entity_type": entity_type, "internal_id": internal_id, "external_id": external_id}


@router.get("/webhooks/events", response_model=List[InboundEventResponse])
def list_inbound_events(
    processing_status: Optional[str] = None,
    channel_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    query = db.query(InboundReservationEvent)
    if processing_status:
        query = query.filter(InboundReservationEvent.processing_status == processing_status)
    if channel_id:
        query = query.filter(InboundReservationEvent.channel_id == channel_id)
    return query.order_by(InboundReservationEvent.created_at.desc()).limit(limit).all()

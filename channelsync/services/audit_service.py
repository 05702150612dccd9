"""
Audit Logging Service

Every sync component writes through AuditLogger. Payloads are redacted
before they reach the database, and a failed audit write is logged but
never propagated: losing an audit row must not fail the sync itself.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.audit import AuditRecord, AuditStatus
from ..models.channel_integration import DEFAULT_PROVIDER
from ..utils.dates import utcnow
from ..utils.logging_config import get_trace_id
from ..utils.redaction import redact

logger = logging.getLogger(__name__)


class OperationTimer:
    """
    Context manager that measures elapsed milliseconds.

    Example:
        with OperationTimer() as timer:
            do_work()
        audit.log("op", duration_ms=timer.duration_ms)
    """

    def __init__(self):
        self._start = None
        self.duration_ms = 0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.duration_ms = self.elapsed_ms()
        return False

    def elapsed_ms(self) -> int:
        if self._start is None:
            return 0
        return int((time.perf_counter() - self._start) * 1000)


class AuditLogger:
    """Append-only writer for AuditRecord rows"""

    def __init__(self, db: Session, provider: str = DEFAULT_PROVIDER):
        self.db = db
        self.provider = provider

    def log(
        self,
        operation: str,
        *,
        status: str = AuditStatus.SUCCESS.value,
        hotel_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        external_id: Optional[str] = None,
        action: Optional[str] = None,
        cost: Optional[int] = None,
        limit_remaining: Optional[int] = None,
        limit_resets_in: Optional[int] = None,
        duration_ms: Optional[int] = None,
        records_processed: Optional[int] = None,
        request_payload: Any = None,
        response_payload: Any = None,
        error_message: Optional[str] = None,
        trace_id: Optional[str] = None,
        commit: bool = True,
    ) -> Optional[AuditRecord]:
        """
        Record one operation.

        Returns the persisted record, or None if the write failed.
        """
        status = status.value if isinstance(status, AuditStatus) else status
        try:
            record = AuditRecord(
                provider=self.provider,
                operation=operation,
                hotel_id=hotel_id,
                entity_type=entity_type,
                external_id=external_id,
                action=action,
                status=status,
                cost=cost,
                limit_remaining=limit_remaining,
                limit_resets_in=limit_resets_in,
                duration_ms=duration_ms,
                records_processed=records_processed,
                request_payload=redact(request_payload) if request_payload is not None else None,
                response_payload=redact(response_payload) if response_payload is not None else None,
                error_message=error_message[:2000] if error_message else None,
                trace_id=trace_id or get_trace_id() or None,
                created_at=utcnow(),
            )
            self.db.add(record)
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to write audit record for {operation}: {e}")
            if commit:
                self.db.rollback()
            return None

        if status == AuditStatus.ERROR.value:
            logger.warning(
                f"{operation} failed (hotel={hotel_id}, entity={entity_type}): {error_message}"
            )
        return record

    def success(self, operation: str, **kwargs) -> Optional[AuditRecord]:
        return self.log(operation, status=AuditStatus.SUCCESS.value, **kwargs)

    def error(self, operation: str, error_message: str, **kwargs) -> Optional[AuditRecord]:
        return self.log(operation, status=AuditStatus.ERROR.value, error_message=error_message, **kwargs)

    # ==================
    # Queries used by scheduler/recovery
    # ==================

    def recent_errors(
        self,
        hours: int = 24,
        hotel_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[AuditRecord]:
        since = (now or utcnow()) - timedelta(hours=hours)
        query = self.db.query(AuditRecord).filter(
            AuditRecord.provider == self.provider,
            AuditRecord.status == AuditStatus.ERROR.value,
            AuditRecord.created_at >= since,
        )
        if hotel_id:
            query = query.filter(AuditRecord.hotel_id == hotel_id)
        return query.order_by(AuditRecord.created_at.desc()).all()

    def count_recent_errors(self, hours: int = 24, now: Optional[datetime] = None) -> int:
        since = (now or utcnow()) - timedelta(hours=hours)
        return self.db.query(AuditRecord).filter(
            AuditRecord.provider == self.provider,
            AuditRecord.status == AuditStatus.ERROR.value,
            AuditRecord.created_at >= since,
        ).count()

    def delete_errors(self, hotel_id: Optional[str] = None, entity_type: Optional[str] = None) -> int:
        """Delete error records, scoped by hotel and entity type when given"""
        query = self.db.query(AuditRecord).filter(
            AuditRecord.provider == self.provider,
            AuditRecord.status == AuditStatus.ERROR.value,
        )
        if hotel_id:
            query = query.filter(AuditRecord.hotel_id == hotel_id)
        if entity_type:
            query = query.filter(AuditRecord.entity_type == entity_type)
        deleted = query.delete(synchronize_session=False)
        self.db.commit()
        return deleted

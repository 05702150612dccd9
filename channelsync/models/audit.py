"""
Audit Models

- AuditRecord: append-only trail of every sync operation (redacted payloads)
- RateLimitSample: credit headers from every external API response
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Integer, JSON, Index
from ..database import Base
from .channel_integration import DEFAULT_PROVIDER
import enum


class AuditStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"
    PARTIAL = "partial"


class AuditRecord(Base):
    __tablename__ = "audit_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), default=DEFAULT_PROVIDER, nullable=False)
    operation = Column(String(100), nullable=False)  # "delta_sync_bookings", "api_call", ...
    hotel_id = Column(String(36), nullable=True)
    entity_type = Column(String(50), nullable=True)
    external_id = Column(String(100), nullable=True)
    action = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=AuditStatus.SUCCESS.value)

    # Credit accounting from response headers
    cost = Column(Integer, nullable=True)
    limit_remaining = Column(Integer, nullable=True)
    limit_resets_in = Column(Integer, nullable=True)

    duration_ms = Column(Integer, nullable=True)
    records_processed = Column(Integer, nullable=True)

    # Always redacted before insert
    request_payload = Column(JSON, nullable=True)
    response_payload = Column(JSON, nullable=True)

    error_message = Column(Text, nullable=True)
    trace_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_status_created", "status", "created_at"),
        Index("ix_audit_hotel_entity", "hotel_id", "entity_type"),
        Index("ix_audit_trace", "trace_id"),
    )

    def __repr__(self):
        return f"<AuditRecord {self.operation} {self.status}>"


class RateLimitSample(Base):
    __tablename__ = "rate_limit_samples"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), default=DEFAULT_PROVIDER, nullable=False)
    endpoint = Column(String(200), nullable=True)

    cost = Column(Integer, default=1)
    five_min_remaining = Column(Integer, nullable=True)
    five_min_resets_in = Column(Integer, nullable=True)
    daily_remaining = Column(Integer, nullable=True)
    response_headers = Column(JSON, nullable=True)

    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_rate_limit_samples_recorded", "recorded_at"),
    )

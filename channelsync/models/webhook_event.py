"""
Inbound reservation events pushed by channels.

Rows are append-only: every create/update/cancel delivery gets its own row,
so the history of a reservation can be replayed from here.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, JSON, Index
from ..database import Base
import enum


class EventProcessingStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    ERROR = "error"


class InboundReservationEvent(Base):
    __tablename__ = "inbound_reservation_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_id = Column(String(36), nullable=False)
    channel_reservation_id = Column(String(100), nullable=False)
    hotel_id = Column(String(36), nullable=True)
    action = Column(String(20), nullable=False)  # create, update, cancel

    guest_data = Column(JSON, nullable=True)
    booking_data = Column(JSON, nullable=True)
    raw_data = Column(JSON, nullable=True)

    processing_status = Column(String(20), default=EventProcessingStatus.PENDING.value)
    reservation_id = Column(String(36), nullable=True)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_inbound_events_channel_res", "channel_id", "channel_reservation_id"),
        Index("ix_inbound_events_status", "processing_status"),
    )

    def __repr__(self):
        return f"<InboundReservationEvent {self.action} {self.channel_reservation_id} {self.processing_status}>"

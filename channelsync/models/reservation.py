"""
Reservation Models

- Reservation: internal booking, created by delta sync or webhooks
- ReservationCharge: line items supplied by a channel
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, Numeric, ForeignKey, DateTime, Date, Integer, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class ReservationStatus(str, enum.Enum):
    CONFIRMED = "Confirmed"
    TENTATIVE = "Tentative"
    REQUESTED = "Requested"
    INQUIRY = "Inquiry"
    BLOCKED = "Blocked"
    CANCELLED = "Cancelled"
    NO_SHOW = "No Show"
    IN_HOUSE = "In House"
    CHECKED_OUT = "Checked Out"


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(36), ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False)
    guest_id = Column(String(36), ForeignKey("guests.id", ondelete="SET NULL"), nullable=True)
    room_type_id = Column(String(36), ForeignKey("room_types.id", ondelete="SET NULL"), nullable=True)
    rate_plan_id = Column(String(36), ForeignKey("rate_plans.id", ondelete="SET NULL"), nullable=True)
    room_id = Column(String(36), ForeignKey("rooms.id", ondelete="SET NULL"), nullable=True)

    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    adults = Column(Integer, default=1)
    children = Column(Integer, default=0)
    total_amount = Column(Numeric(10, 2), default=0)
    currency = Column(String(3), default="USD")
    status = Column(String(20), default=ReservationStatus.CONFIRMED.value)

    # Where the booking came from
    channel = Column(String(100), nullable=True)  # display name at booking time
    channel_id = Column(String(36), nullable=True)  # ChannelConnection.id for webhook bookings
    booking_reference = Column(String(100), nullable=True)
    confirmation_number = Column(String(100), nullable=True)

    # Channel-side reservation id for webhook bookings (not an identity mapping)
    api_source_id = Column(String(100), nullable=True)

    notes = Column(Text, nullable=True)
    special_requests = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    guest = relationship("Guest")
    room = relationship("Room")
    charges = relationship("ReservationCharge", back_populates="reservation", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_reservations_hotel_dates", "hotel_id", "check_in", "check_out"),
        UniqueConstraint("channel_id", "api_source_id", name="uq_reservations_channel_id_source"),
    )

    def __repr__(self):
        return f"<Reservation {self.id} {self.status}>"


class ReservationCharge(Base):
    __tablename__ = "reservation_charges"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reservation_id = Column(String(36), ForeignKey("reservations.id", ondelete="CASCADE"), nullable=False)
    description = Column(String(255), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    charge_type = Column(String(50), default="Room")
    currency = Column(String(3), default="USD")

    created_at = Column(DateTime, default=datetime.utcnow)

    reservation = relationship("Reservation", back_populates="charges")

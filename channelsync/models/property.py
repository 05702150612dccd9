"""
Property Models

Internal inventory structure the sync engine writes into:
- Hotel: one PMS property (maps to one external property)
- RoomType: sellable room category
- RatePlan: pricing plan, one per hotel flagged as default
- Room: physical room, auto-assigned by webhook reservations
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Numeric, ForeignKey, DateTime, Integer, Boolean, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class RoomStatus(str, enum.Enum):
    AVAILABLE = "Available"
    RESERVED = "Reserved"
    OCCUPIED = "Occupied"
    OUT_OF_ORDER = "Out of Order"


class Hotel(Base):
    __tablename__ = "hotels"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(200), nullable=False)
    code = Column(String(50), nullable=True)
    timezone = Column(String(50), default="UTC")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    room_types = relationship("RoomType", back_populates="hotel", cascade="all, delete-orphan")
    rate_plans = relationship("RatePlan", back_populates="hotel", cascade="all, delete-orphan")
    rooms = relationship("Room", back_populates="hotel", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Hotel {self.name}>"


class RoomType(Base):
    __tablename__ = "room_types"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(36), ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(200), nullable=False)
    code = Column(String(50), nullable=True)
    capacity = Column(Integer, default=2)
    base_price = Column(Numeric(10, 2), default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    hotel = relationship("Hotel", back_populates="room_types")

    __table_args__ = (
        Index("ix_room_types_hotel", "hotel_id"),
    )

    def __repr__(self):
        return f"<RoomType {self.code or self.name}>"


class RatePlan(Base):
    __tablename__ = "rate_plans"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(36), ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(200), nullable=False)
    code = Column(String(50), nullable=True)
    is_default = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    hotel = relationship("Hotel", back_populates="rate_plans")

    __table_args__ = (
        Index("ix_rate_plans_hotel", "hotel_id"),
    )


class Room(Base):
    __tablename__ = "rooms"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(36), ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False)
    room_type_id = Column(String(36), ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False)
    number = Column(String(20), nullable=False)
    status = Column(String(20), default=RoomStatus.AVAILABLE.value)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    hotel = relationship("Hotel", back_populates="rooms")
    room_type = relationship("RoomType")

    __table_args__ = (
        Index("ix_rooms_hotel_type_status", "hotel_id", "room_type_id", "status"),
        UniqueConstraint("hotel_id", "number", name="uq_rooms_hotel_number"),
    )

    def __repr__(self):
        return f"<Room {self.number} {self.status}>"

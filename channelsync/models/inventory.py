"""
Calendar Models

Per-day rates and inventory pulled from the external calendar.
Both are keyed so repeated calendar syncs overwrite in place.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Numeric, ForeignKey, DateTime, Date, Integer, Boolean, UniqueConstraint
from ..database import Base


class DailyRate(Base):
    __tablename__ = "daily_rates"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(36), ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False)
    room_type_id = Column(String(36), ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False)
    rate_plan_id = Column(String(36), ForeignKey("rate_plans.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)
    rate = Column(Numeric(10, 2), nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("hotel_id", "room_type_id", "rate_plan_id", "date", name="uq_daily_rates_key"),
    )


class RoomInventory(Base):
    __tablename__ = "room_inventory"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(36), ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False)
    room_type_id = Column(String(36), ForeignKey("room_types.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)
    allotment = Column(Integer, default=0)
    stop_sell = Column(Boolean, default=False)
    min_stay = Column(Integer, nullable=True)
    max_stay = Column(Integer, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("hotel_id", "room_type_id", "date", name="uq_room_inventory_key"),
    )

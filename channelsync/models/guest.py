import uuid
from datetime import datetime
from sqlalchemy import Column, String, ForeignKey, DateTime, Index
from ..database import Base


class Guest(Base):
    __tablename__ = "guests"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    hotel_id = Column(String(36), ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False)
    first_name = Column(String(100), nullable=False, default="Unknown")
    last_name = Column(String(100), nullable=False, default="Guest")
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    nationality = Column(String(100), nullable=True)
    id_number = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_guests_hotel_email", "hotel_id", "email"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self):
        return f"<Guest {self.full_name}>"

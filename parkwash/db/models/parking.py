"""
Parking and Slot Models
"""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Boolean, Text
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import relationship

from parkwash.db.database import Base


class Parking(Base):
    """Parking lot. Free slots are counted from Slot.available, never stored."""

    __tablename__ = "parkings"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    price_per_hour = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))

    created_at = Column(DateTime, default=datetime.utcnow)

    slots = relationship("Slot", back_populates="parking")


class Slot(Base):
    __tablename__ = "slots"

    id = Column(Integer, primary_key=True, index=True)
    parking_id = Column(Integer, ForeignKey("parkings.id"), nullable=False, index=True)
    slot_code = Column(String(20), nullable=False)
    type = Column(String(20), nullable=True)  # car / bike

    # Flipped only by the parking booking transitions
    _available = Column("available", Boolean, default=True, nullable=False)

    parking = relationship("Parking", back_populates="slots")

    @hybrid_property
    def available(self) -> bool:
        return self._available

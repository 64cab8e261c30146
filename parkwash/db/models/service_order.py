"""
Service catalog and Service Order Models
"""
import enum
import re
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, Text
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import relationship

from parkwash.db.database import Base

_DURATION_RE = re.compile(r"(\d+)\s*min")


class Service(Base):
    """Wash / maintenance service offered by a service center"""

    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    duration = Column(String(30), nullable=True)  # free text: "30 min", "120 min"

    def duration_minutes(self, default: int) -> int:
        """Minutes parsed from ``duration``; ``default`` when it does not parse"""
        match = _DURATION_RE.search(self.duration or "")
        return int(match.group(1)) if match else default


class ServiceOrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ServiceOrder(Base):
    """Booked service appointment. Status changes only via BookingStateMachine."""

    __tablename__ = "service_orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False, index=True)

    _status = Column(
        "status", SQLEnum(ServiceOrderStatus), default=ServiceOrderStatus.PENDING,
        nullable=False, index=True
    )
    price = Column(Numeric(10, 2), nullable=False)  # charged amount, frozen at booking time

    booking_time = Column(DateTime, nullable=False)
    notes = Column(Text, nullable=True)

    scheduled_in_progress_at = Column(DateTime, nullable=True, index=True)
    scheduled_completed_at = Column(DateTime, nullable=True, index=True)

    slip_number = Column(String(32), unique=True, nullable=True)
    invoice_number = Column(String(32), unique=True, nullable=True)
    invoice_generated_at = Column(DateTime, nullable=True)

    confirmed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", foreign_keys=[user_id])
    service = relationship("Service")

    __mapper_args__ = {"version_id_col": version}

    @hybrid_property
    def status(self) -> ServiceOrderStatus:
        return self._status

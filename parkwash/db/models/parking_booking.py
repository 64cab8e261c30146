"""
Parking Booking Model
"""
import enum
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey, Boolean
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import relationship

from parkwash.db.database import Base


class ParkingBookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"                     # paid, slot reserved, not yet checked in
    ACTIVE = "active"                           # car is parked
    CHECKOUT_REQUESTED = "checkout_requested"   # extra charges computed
    CHECKOUT_PAID = "checkout_paid"             # nothing left to pay, waiting for staff
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


# Statuses in which the booking holds its slot
LIVE_PARKING_STATUSES = (
    ParkingBookingStatus.CONFIRMED,
    ParkingBookingStatus.ACTIVE,
    ParkingBookingStatus.CHECKOUT_REQUESTED,
    ParkingBookingStatus.CHECKOUT_PAID,
)


class ParkingBooking(Base):
    """Slot reservation. Status and slot side effects change only via BookingStateMachine."""

    __tablename__ = "parking_bookings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    parking_id = Column(Integer, ForeignKey("parkings.id"), nullable=False, index=True)
    slot_id = Column(Integer, ForeignKey("slots.id"), nullable=False, index=True)

    _status = Column(
        "status", SQLEnum(ParkingBookingStatus), default=ParkingBookingStatus.PENDING,
        nullable=False, index=True
    )

    hours = Column(Integer, nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    extra_minutes = Column(Integer, default=0, nullable=False)
    extra_charges = Column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)

    end_time = Column(DateTime, nullable=True)          # scheduled
    actual_end_time = Column(DateTime, nullable=True)   # real checkout / expiry time

    checkout_requested = Column(Boolean, default=False, nullable=False)
    checkout_approved = Column(Boolean, default=False, nullable=False)
    ticket_number = Column(String(32), unique=True, nullable=True)
    handled_by = Column(Integer, ForeignKey("users.id"), nullable=True)  # staff who approved/rejected

    # Optimistic concurrency: a stale writer gets StaleDataError on flush
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", foreign_keys=[user_id])
    parking = relationship("Parking")
    slot = relationship("Slot")

    __mapper_args__ = {"version_id_col": version}

    @hybrid_property
    def status(self) -> ParkingBookingStatus:
        return self._status

    @property
    def grand_total(self) -> Decimal:
        return (self.total_price or Decimal("0")) + (self.extra_charges or Decimal("0"))

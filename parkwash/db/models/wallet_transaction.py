"""
Wallet Transaction Model - customer-visible ledger events
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Enum as SQLEnum
from sqlalchemy.orm import relationship

from parkwash.db.database import Base


class TransactionType(str, enum.Enum):
    TOPUP = "topup"
    PAYMENT = "payment"
    REFUND = "refund"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"      # topup created, waiting for the customer's code
    VERIFIED = "verified"    # code matched, waiting for staff approval
    COMPLETED = "completed"  # balance moved
    FAILED = "failed"        # rejected by staff, balance untouched


# Direction of the balance change for a completed transaction
CREDIT_TYPES = (TransactionType.TOPUP, TransactionType.REFUND)
DEBIT_TYPES = (TransactionType.PAYMENT,)


class WalletTransaction(Base):
    """One topup, payment or refund. ``amount`` is always a positive magnitude."""

    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    # TXN... for topups, "<kind>:<entity>:<id>" for payments and refunds
    reference = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    type = Column(SQLEnum(TransactionType), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLEnum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False, index=True)

    payment_method = Column(String(20), nullable=True)  # bkash / nagad / rocket / wallet
    mobile_number = Column(String(20), nullable=True)
    verification_code = Column(String(16), nullable=True)

    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    description = Column(String(500), nullable=True)
    balance_after = Column(Numeric(12, 2), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    verified_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)

    user = relationship("User", foreign_keys=[user_id])

    @property
    def signed_amount(self):
        return self.amount if self.type in CREDIT_TYPES else -self.amount

"""
User Model - Customers and Staff
"""
import enum
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean, Numeric
from sqlalchemy.ext.hybrid import hybrid_property

from parkwash.db.database import Base


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"


class User(Base):
    """Account holder with a prepaid wallet"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.CUSTOMER, nullable=False)
    is_blocked = Column(Boolean, default=False)

    # Written only by WalletLedger.apply_delta
    _wallet_balance = Column("wallet_balance", Numeric(12, 2), default=Decimal("0.00"), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @hybrid_property
    def wallet_balance(self) -> Decimal:
        """Read-only; use WalletLedger to move money"""
        return self._wallet_balance

    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.STAFF, UserRole.ADMIN)

"""
Wallet Ledger Model - Append-only balance movements
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, UniqueConstraint

from parkwash.db.database import Base


class WalletLedgerEntry(Base):
    """One applied delta. The unique reference makes a replay impossible to double-apply."""

    __tablename__ = "wallet_ledger"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reference = Column(String(64), nullable=False)

    amount = Column(Numeric(12, 2), nullable=False)  # Positive for credit, negative for debit
    balance_after = Column(Numeric(12, 2), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("reference", name="uq_wallet_ledger_reference"),
    )

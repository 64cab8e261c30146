"""
Database Models
"""
from parkwash.db.models.user import User
from parkwash.db.models.wallet_transaction import WalletTransaction
from parkwash.db.models.wallet_ledger import WalletLedgerEntry
from parkwash.db.models.parking import Parking, Slot
from parkwash.db.models.parking_booking import ParkingBooking
from parkwash.db.models.service_order import Service, ServiceOrder
from parkwash.db.models.outbox_message import OutboxMessage

__all__ = [
    "User",
    "WalletTransaction",
    "WalletLedgerEntry",
    "Parking",
    "Slot",
    "ParkingBooking",
    "Service",
    "ServiceOrder",
    "OutboxMessage",
]

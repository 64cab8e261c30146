"""
Human-readable document numbers minted on specific transitions
"""
from datetime import datetime


def ticket_number(booking_id: int, at: datetime) -> str:
    """Parking exit ticket, e.g. PKT250410-00042"""
    return f"PKT{at:%y%m%d}-{booking_id:05d}"


def slip_number(order_id: int, at: datetime) -> str:
    """Service booking slip, e.g. SLP-20250410-00042"""
    return f"SLP-{at:%Y%m%d}-{order_id:05d}"


def invoice_number(order_id: int, at: datetime) -> str:
    """Service invoice, e.g. INV-20250410-00042"""
    return f"INV-{at:%Y%m%d}-{order_id:05d}"

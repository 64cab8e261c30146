"""
State Definitions and legal transitions for parking bookings and service orders
"""
from parkwash.db.models.parking_booking import ParkingBookingStatus
from parkwash.db.models.service_order import ServiceOrderStatus


PARKING_TRANSITIONS = {
    # Creation pays and reserves in one step
    ParkingBookingStatus.PENDING: [ParkingBookingStatus.CONFIRMED, ParkingBookingStatus.CANCELLED],

    # Check-in, pre-check-in cancellation, or expiry by the scheduler
    ParkingBookingStatus.CONFIRMED: [
        ParkingBookingStatus.ACTIVE,
        ParkingBookingStatus.CANCELLED,
        ParkingBookingStatus.COMPLETED,
    ],

    ParkingBookingStatus.ACTIVE: [ParkingBookingStatus.CHECKOUT_REQUESTED],

    # Staff may approve or reject before or after the extra charge is paid
    ParkingBookingStatus.CHECKOUT_REQUESTED: [
        ParkingBookingStatus.CHECKOUT_PAID,
        ParkingBookingStatus.COMPLETED,
        ParkingBookingStatus.REJECTED,
    ],
    ParkingBookingStatus.CHECKOUT_PAID: [ParkingBookingStatus.COMPLETED, ParkingBookingStatus.REJECTED],

    # Terminal
    ParkingBookingStatus.COMPLETED: [],
    ParkingBookingStatus.CANCELLED: [],
    ParkingBookingStatus.REJECTED: [],
}

SERVICE_ORDER_TRANSITIONS = {
    ServiceOrderStatus.PENDING: [ServiceOrderStatus.CONFIRMED, ServiceOrderStatus.CANCELLED],
    ServiceOrderStatus.CONFIRMED: [ServiceOrderStatus.IN_PROGRESS, ServiceOrderStatus.CANCELLED],
    ServiceOrderStatus.IN_PROGRESS: [ServiceOrderStatus.COMPLETED, ServiceOrderStatus.CANCELLED],

    # Terminal
    ServiceOrderStatus.COMPLETED: [],
    ServiceOrderStatus.CANCELLED: [],
}


def terminal_states(transitions: dict) -> frozenset:
    return frozenset(state for state, targets in transitions.items() if not targets)

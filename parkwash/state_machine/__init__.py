from parkwash.state_machine.engine import BookingKind, BookingStateMachine, KIND_SPECS
from parkwash.state_machine.states import PARKING_TRANSITIONS, SERVICE_ORDER_TRANSITIONS

__all__ = [
    "BookingKind",
    "BookingStateMachine",
    "KIND_SPECS",
    "PARKING_TRANSITIONS",
    "SERVICE_ORDER_TRANSITIONS",
]

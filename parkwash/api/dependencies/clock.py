"""
Clock dependency; tests override it with a fake clock.
"""
from parkwash.core.clock import Clock, system_clock


def get_clock() -> Clock:
    return system_clock

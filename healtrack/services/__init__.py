"""
Services layer for the HealTrack scheduling core.
"""

from .appointment_loader import AppointmentRangeLoader
from .appointments import AppointmentsService, AppointmentsServiceError
from .session_lifecycle import InvalidTransitionError, SessionLifecycle
from .session_store import FileSessionStateStore, InMemorySessionStateStore, SessionStateStore
from .slots import SlotGenerator, generate_slots
from .therapy import TherapyService

__all__ = [
    "AppointmentRangeLoader",
    "AppointmentsService",
    "AppointmentsServiceError",
    "FileSessionStateStore",
    "InMemorySessionStateStore",
    "InvalidTransitionError",
    "SessionLifecycle",
    "SessionStateStore",
    "SlotGenerator",
    "TherapyService",
    "generate_slots",
]

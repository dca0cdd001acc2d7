"""
Data models for the HealTrack scheduling core.
"""

from .appointment import Appointment, AppointmentStatus, DayBucket, RangeResponse
from .auth import AuthContext
from .results import LoadOutcome, LoadResult, PaymentTarget, TransitionResult
from .session import ImageRef, SessionPhase, SessionState, TherapySubmission
from .slot import Slot

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AuthContext",
    "DayBucket",
    "ImageRef",
    "LoadOutcome",
    "LoadResult",
    "PaymentTarget",
    "RangeResponse",
    "SessionPhase",
    "SessionState",
    "Slot",
    "TherapySubmission",
    "TransitionResult",
]

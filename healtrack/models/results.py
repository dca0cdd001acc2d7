"""
Result models returned to calling screens.
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

from healtrack.models.session import SessionPhase


class PaymentTarget(BaseModel):
    """Where to navigate for payment reconciliation after a session ends."""

    plan_id: str
    patient_id: str


class TransitionResult(BaseModel):
    """
    Result of a session lifecycle action.
    """

    success: bool = Field(description="Whether the transition happened")
    phase: SessionPhase = Field(description="Phase after the action")
    message: str = Field(default="", description="Human-readable result message")
    error_code: Optional[str] = Field(default=None, description="Error code if failed")
    retryable: bool = Field(default=False, description="Whether the user may simply retry")
    payment: Optional[PaymentTarget] = Field(
        default=None, description="Payment reconciliation target after a completed session"
    )


class LoadOutcome(str, Enum):
    """What a window load did."""

    LOADED = "loaded"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"
    FAILED = "failed"


class LoadResult(BaseModel):
    """
    Result of an appointment window load.
    """

    outcome: LoadOutcome
    direction: Optional[Literal["past", "future"]] = Field(default=None)
    added: int = Field(default=0, ge=0, description="Number of day buckets added")
    message: Optional[str] = Field(default=None)

    @property
    def success(self) -> bool:
        return self.outcome is not LoadOutcome.FAILED

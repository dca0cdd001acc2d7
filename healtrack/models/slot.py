"""
Slot data model.
"""

from datetime import datetime, time
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class Slot(BaseModel):
    """
    A candidate bookable time interval of fixed duration within working hours.

    Slots are advisory: the backend remains the authority on whether the
    interval can actually be booked.
    """

    start: time = Field(description="Start time of the slot (clinic local)")
    end: time = Field(description="End time of the slot (clinic local)")
    duration_minutes: int = Field(gt=0, description="Slot length in minutes")
    status: Literal["free"] = Field(default="free", description="Slot status")

    @model_validator(mode="after")
    def check_duration(self) -> "Slot":
        """End must be exactly duration_minutes after start."""
        anchor = datetime(2000, 1, 1)
        span = datetime.combine(anchor, self.end) - datetime.combine(anchor, self.start)
        if span.total_seconds() != self.duration_minutes * 60:
            raise ValueError(
                f"slot {self.start}-{self.end} does not span {self.duration_minutes} minutes"
            )
        return self

    @property
    def label(self) -> str:
        """Get human-readable time range."""
        return f"{self.start.strftime('%H:%M')} - {self.end.strftime('%H:%M')}"

    model_config = {"frozen": True}

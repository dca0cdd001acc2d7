"""
Appointment-related data models.
"""

import datetime as dt
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from healtrack.config import APPOINTMENT_STATUS_LABELS


class AppointmentStatus(str, Enum):
    """Server-owned appointment status."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class Appointment(BaseModel):
    """
    A therapy appointment as returned by the backend.

    Field aliases follow the backend's wire keys. Instances are frozen:
    the server owns ``status`` and changes reach the client by re-fetching.
    """

    id: str = Field(alias="_id", description="Unique appointment identifier")
    plan_id: str = Field(description="Therapy plan this appointment belongs to")
    patient_id: str = Field(description="Patient identifier")
    therapy_type: str = Field(alias="therepy_type", description="Kind of therapy")
    date: dt.date = Field(alias="therepy_date", description="Calendar date of the appointment")
    start_time: dt.time = Field(alias="therepy_start_time", description="Start time (clinic local)")
    end_time: Optional[dt.time] = Field(
        default=None, alias="therepy_end_time", description="End time (clinic local)"
    )
    status: AppointmentStatus = Field(default=AppointmentStatus.SCHEDULED)
    therapy_link: Optional[str] = Field(default=None, alias="therepy_link")
    patient_name: Optional[str] = Field(default=None)
    doctor_name: Optional[str] = Field(default=None)

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, v):
        """Accept full ISO timestamps by keeping the date part."""
        if isinstance(v, str) and "T" in v:
            return v.split("T", 1)[0]
        return v

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_clock_time(cls, v):
        """Accept 12-hour clock strings such as '02:30 PM'."""
        if isinstance(v, str):
            text = v.strip().upper()
            if text.endswith(("AM", "PM")):
                return dt.datetime.strptime(text.replace(" ", ""), "%I:%M%p").time()
            return text or None
        return v

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        """Unknown or missing statuses are treated as scheduled."""
        if v is None:
            return AppointmentStatus.SCHEDULED
        if isinstance(v, AppointmentStatus):
            return v
        value = str(v).strip().lower()
        if value not in APPOINTMENT_STATUS_LABELS:
            return AppointmentStatus.SCHEDULED
        return value

    @property
    def is_video(self) -> bool:
        """Check if this is a video therapy session."""
        return "video" in self.therapy_type.lower()

    @property
    def status_label(self) -> str:
        return APPOINTMENT_STATUS_LABELS[self.status.value]

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class DayBucket(BaseModel):
    """
    The appointments of one calendar date within the sliding window.

    An empty bucket means the day was loaded and holds no appointments.
    """

    date: dt.date
    appointments: List[Appointment] = Field(default_factory=list)

    @field_validator("appointments")
    @classmethod
    def order_by_start(cls, v: List[Appointment]) -> List[Appointment]:
        return sorted(v, key=lambda a: a.start_time)

    @property
    def is_empty(self) -> bool:
        return not self.appointments

    def label(self, today: dt.date) -> str:
        """Get a relative day heading ('Today', 'Tomorrow', 'Yesterday' or full date)."""
        if self.date == today:
            return "Today"
        if self.date == today + dt.timedelta(days=1):
            return "Tomorrow"
        if self.date == today - dt.timedelta(days=1):
            return "Yesterday"
        return f"{self.date.strftime('%A, %b')} {self.date.day}"


class RangeResponse(BaseModel):
    """Appointments grouped by calendar date for a requested range."""

    appointments_by_date: Dict[dt.date, List[Appointment]] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        """True when the backend returned no days at all."""
        return not self.appointments_by_date

"""
Slot Generator - Produces bookable time slots for a day.

Pure and synchronous: screens call it on every render to list the
candidate intervals a doctor can offer for a given session duration.
"""

from datetime import date, datetime, time, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo

from healtrack.config import get_settings
from healtrack.models.slot import Slot


class SlotGenerator:
    """
    Generates free slots inside fixed working hours.

    Short sessions (under an hour) are laid end to end. Sessions of an hour
    or more advance the cursor by ``long_step_minutes`` only, so their
    candidate slots overlap; the backend decides real availability.
    """

    def __init__(
        self,
        working_hours_start: Optional[time] = None,
        working_hours_end: Optional[time] = None,
        long_step_minutes: Optional[int] = None,
        clinic_tz: Optional[ZoneInfo] = None,
    ):
        settings = get_settings()
        self.working_hours_start = working_hours_start or time(settings.working_hours_start)
        if working_hours_end is None:
            # 24 means end of day
            working_hours_end = (
                time.max if settings.working_hours_end >= 24 else time(settings.working_hours_end)
            )
        self.working_hours_end = working_hours_end
        self.long_step_minutes = long_step_minutes or settings.long_slot_step_minutes
        self._clinic_tz = clinic_tz

    def step_minutes(self, duration_minutes: int) -> int:
        """Get the cursor step for a slot duration."""
        return duration_minutes if duration_minutes < 60 else self.long_step_minutes

    def generate(self, day: date, duration_minutes: int, now: datetime) -> List[Slot]:
        """
        Generate the ordered free slots of a day.

        Args:
            day: Calendar date to generate slots for
            duration_minutes: Length of each slot
            now: Current instant; aware values are converted to clinic time,
                naive values are taken as clinic local time

        Returns:
            Slots ordered by start time (possibly empty)
        """
        if duration_minutes <= 0:
            return []

        local_now = self._to_clinic_local(now)
        opening = datetime.combine(day, self.working_hours_start)
        closing = datetime.combine(day, self.working_hours_end)
        duration = timedelta(minutes=duration_minutes)
        step = timedelta(minutes=self.step_minutes(duration_minutes))
        is_today = local_now.date() == day

        slots: List[Slot] = []
        cursor = opening
        while cursor < closing:
            slot_end = cursor + duration
            if slot_end > closing:
                break
            # Only slots that end in the future
            if not is_today or slot_end > local_now:
                slots.append(
                    Slot(start=cursor.time(), end=slot_end.time(), duration_minutes=duration_minutes)
                )
            cursor = cursor + step

        return slots

    def _to_clinic_local(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            return now
        clinic_tz = self._clinic_tz or get_settings().clinic_tz
        return now.astimezone(clinic_tz).replace(tzinfo=None)


def generate_slots(day: date, duration_minutes: int, now: datetime) -> List[Slot]:
    """Generate slots with the configured working hours."""
    return SlotGenerator().generate(day, duration_minutes, now)

"""
Appointment Range Loader - Sliding window of day buckets.

Keeps a contiguous, ascending run of days with their appointments and
extends it a full range at a time towards the past or the future as the
user scrolls.
"""

from datetime import date, datetime, timedelta
from typing import Callable, List, Literal, Optional, Tuple

import httpx
from loguru import logger

from healtrack.config import get_settings
from healtrack.models.appointment import DayBucket, RangeResponse
from healtrack.models.results import LoadOutcome, LoadResult
from healtrack.services.appointments import AppointmentsService, AppointmentsServiceError

Direction = Literal["past", "future"]

FETCH_ERRORS = (httpx.HTTPError, AppointmentsServiceError)


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=days)


def date_range(start: date, end: date) -> List[date]:
    """All calendar days from start to end, inclusive."""
    return [add_days(start, offset) for offset in range((end - start).days + 1)]


def build_buckets(start: date, end: date, response: RangeResponse) -> List[DayBucket]:
    """
    Build one bucket per day of the range.

    Days missing from the response become empty buckets; days outside the
    range are ignored.
    """
    by_date = response.appointments_by_date
    return [DayBucket(date=day, appointments=by_date.get(day, [])) for day in date_range(start, end)]


def is_contiguous(window: List[DayBucket]) -> bool:
    """Check that bucket dates ascend one day at a time."""
    return all(
        later.date == add_days(earlier.date, 1) for earlier, later in zip(window, window[1:])
    )


class AppointmentRangeLoader:
    """
    Bidirectional, date-bucketed appointment loader.

    Every load requests a full contiguous date range, so the window never
    has gaps. ``load_more`` calls are dropped while another load is running.
    """

    def __init__(
        self,
        service: AppointmentsService,
        today: Optional[Callable[[], date]] = None,
        window_days: Optional[int] = None,
        initial_past_days: Optional[int] = None,
    ):
        settings = get_settings()
        self._service = service
        self._today = today or self._clinic_today
        self.window_days = window_days or settings.appointment_window_days
        self.initial_past_days = (
            settings.initial_past_days if initial_past_days is None else initial_past_days
        )

        self._window: List[DayBucket] = []
        self.has_more_past = True
        self.has_more_future = True
        self.today_index: Optional[int] = None
        self.loading = False
        self.loading_more = False
        self._generation = 0

    @staticmethod
    def _clinic_today() -> date:
        return datetime.now(get_settings().clinic_tz).date()

    @property
    def window(self) -> List[DayBucket]:
        """The loaded day buckets, ascending by date."""
        return list(self._window)

    @property
    def first_date(self) -> Optional[date]:
        return self._window[0].date if self._window else None

    @property
    def last_date(self) -> Optional[date]:
        return self._window[-1].date if self._window else None

    def initial_range(self, today: date) -> Tuple[date, date]:
        """Get the default window: a few days back through N - 2 days ahead."""
        return (
            add_days(today, -self.initial_past_days),
            add_days(today, self.window_days - 2),
        )

    def next_range(self, direction: Direction) -> Tuple[date, date]:
        """Get the N-day range adjoining the window in ``direction``."""
        if not self._window:
            raise ValueError("window is empty")
        if direction == "past":
            end = add_days(self.first_date, -1)
            return add_days(end, -(self.window_days - 1)), end
        start = add_days(self.last_date, 1)
        return start, add_days(start, self.window_days - 1)

    async def load_initial(self) -> LoadResult:
        """
        Load the default window around today.

        The current window is replaced only when the fetch succeeds.
        """
        if self.loading:
            return LoadResult(outcome=LoadOutcome.SKIPPED, message="Initial load already running")

        today = self._today()
        start, end = self.initial_range(today)

        self.loading = True
        try:
            response = await self._service.get_range(start, end)
        except FETCH_ERRORS as e:
            logger.error(f"Initial appointment load failed: {e}")
            return LoadResult(outcome=LoadOutcome.FAILED, message=str(e))
        finally:
            self.loading = False

        self._window = build_buckets(start, end, response)
        self._generation += 1
        self.has_more_past = True
        self.has_more_future = True
        self.today_index = next(
            (index for index, bucket in enumerate(self._window) if bucket.date == today), None
        )

        logger.info(f"Loaded appointment window {start} to {end} ({len(self._window)} days)")
        return LoadResult(outcome=LoadOutcome.LOADED, added=len(self._window))

    async def load_more(self, direction: Direction) -> LoadResult:
        """
        Extend the window by one range towards the past or the future.

        Returns:
            LoadResult: ``skipped`` if a load is running, nothing is loaded
            yet or the direction is exhausted; ``exhausted`` if the backend
            returned no days inside the range; ``failed`` on a fetch error
            (window unchanged); otherwise ``loaded``.
        """
        if direction not in ("past", "future"):
            raise ValueError(f"unknown direction: {direction!r}")

        has_more = self.has_more_past if direction == "past" else self.has_more_future
        if self.loading or self.loading_more or not self._window or not has_more:
            return LoadResult(outcome=LoadOutcome.SKIPPED, direction=direction)

        start, end = self.next_range(direction)
        generation = self._generation

        self.loading_more = True
        try:
            response = await self._service.get_range(start, end)
        except FETCH_ERRORS as e:
            logger.error(f"Loading more {direction} appointments failed: {e}")
            return LoadResult(outcome=LoadOutcome.FAILED, direction=direction, message=str(e))
        finally:
            self.loading_more = False

        if self.loading or generation != self._generation:
            # A refresh is replacing the window this range was computed from
            return LoadResult(outcome=LoadOutcome.SKIPPED, direction=direction)

        if not any(start <= day <= end for day in response.appointments_by_date):
            if direction == "past":
                self.has_more_past = False
            else:
                self.has_more_future = False
            logger.info(f"No {direction} appointments returned for {start} to {end}; {direction} exhausted")
            return LoadResult(outcome=LoadOutcome.EXHAUSTED, direction=direction)

        buckets = build_buckets(start, end, response)
        if direction == "past":
            self._window = buckets + self._window
            if self.today_index is not None:
                self.today_index += len(buckets)
        else:
            self._window = self._window + buckets

        logger.debug(f"Extended window {direction} by {len(buckets)} days")
        return LoadResult(outcome=LoadOutcome.LOADED, direction=direction, added=len(buckets))

    async def refresh(self) -> LoadResult:
        """Discard the window and load it again (pull-to-refresh, screen focus)."""
        return await self.load_initial()

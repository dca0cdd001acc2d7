"""
Appointments Service - Client for appointment range queries.
"""

from datetime import date

import httpx
from loguru import logger
from pydantic import ValidationError

from healtrack.models.appointment import RangeResponse
from healtrack.services.base import BaseApiClient


class AppointmentsServiceError(Exception):
    """Raised when a range response cannot be understood."""


class AppointmentsService(BaseApiClient):
    """
    Async client for the doctor's appointment calendar.
    """

    async def get_range(self, start_date: date, end_date: date) -> RangeResponse:
        """
        Fetch appointments grouped by day for an inclusive date range.

        Args:
            start_date: First day of the range
            end_date: Last day of the range

        Returns:
            Appointments keyed by calendar date. Days the backend has no
            data for are absent from the mapping.

        Raises:
            ValueError: If end_date precedes start_date
            httpx.HTTPError: On transport or HTTP status failures
            AppointmentsServiceError: On a malformed response body
        """
        if end_date < start_date:
            raise ValueError(f"range end {end_date} precedes start {start_date}")

        client = await self._get_client()
        params = {
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
        }

        try:
            response = await client.get("/appointments/range", params=params)
            response.raise_for_status()
            result = RangeResponse.model_validate(response.json())

            total = sum(len(items) for items in result.appointments_by_date.values())
            logger.info(
                f"Fetched {total} appointments over {len(result.appointments_by_date)} days "
                f"({start_date} to {end_date})"
            )
            return result

        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error fetching appointments: {e}")
            raise
        except httpx.RequestError as e:
            logger.error(f"Request error fetching appointments: {e}")
            raise
        except (ValidationError, ValueError) as e:
            logger.error(f"Malformed appointments response: {e}")
            raise AppointmentsServiceError(str(e)) from e

"""
Therapy Service - Client for the therapy session endpoints.

Submits pre-session and post-session remarks and images when a doctor
starts or ends a therapy session.
"""

import httpx
from loguru import logger

from healtrack.models.session import TherapySubmission
from healtrack.services.base import BaseApiClient


class TherapyService(BaseApiClient):
    """
    Async client for starting and ending therapy sessions.

    Both operations report success as a boolean; failures are logged and
    never raised, so the session lifecycle can stay in its current phase.
    """

    async def start(self, appointment_id: str, submission: TherapySubmission) -> bool:
        """
        Tell the backend a therapy session has started.

        Args:
            appointment_id: The appointment being started
            submission: Pre-session remarks and images

        Returns:
            True if the backend accepted the start
        """
        return await self._submit("start", appointment_id, submission.to_payload("presession"))

    async def end(self, appointment_id: str, submission: TherapySubmission) -> bool:
        """
        Tell the backend a therapy session has ended.

        Args:
            appointment_id: The appointment being ended
            submission: Post-session remarks and images

        Returns:
            True if the backend accepted the end
        """
        return await self._submit("end", appointment_id, submission.to_payload("postsession"))

    async def _submit(self, action: str, appointment_id: str, payload: dict) -> bool:
        client = await self._get_client()

        try:
            response = await client.post(f"/therapy/{action}/{appointment_id}", json=payload)
            response.raise_for_status()
            logger.info(f"Therapy session {action} accepted for appointment {appointment_id}")
            return True

        except httpx.HTTPStatusError as e:
            logger.error(
                f"HTTP error on therapy {action} for {appointment_id}: "
                f"{e.response.status_code}"
            )
            return False
        except httpx.RequestError as e:
            logger.error(f"Request error on therapy {action} for {appointment_id}: {e}")
            return False

"""
Session State Store - Durable per-appointment session snapshots.

Only the SessionLifecycle for an appointment reads or writes its record.
"""

import asyncio
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote

from loguru import logger
from pydantic import ValidationError

from healtrack.config import get_settings
from healtrack.models.session import SessionState


class SessionStateStore(ABC):
    """Key/value persistence of SessionState keyed by appointment id."""

    @abstractmethod
    async def load(self, appointment_id: str) -> Optional[SessionState]:
        """Return the stored state, or None if there is none."""

    @abstractmethod
    async def save(self, appointment_id: str, state: SessionState) -> None:
        """Write the full snapshot, replacing any previous one."""

    @abstractmethod
    async def delete(self, appointment_id: str) -> None:
        """Remove the record. Deleting a missing record is not an error."""


class InMemorySessionStateStore(SessionStateStore):
    """
    In-process store.

    Keeps serialized snapshots so that loads return fresh objects, the way a
    durable store would.
    """

    def __init__(self):
        self._records: Dict[str, str] = {}

    # Public accessor for testing
    @property
    def records(self) -> Dict[str, str]:
        return self._records

    async def load(self, appointment_id: str) -> Optional[SessionState]:
        raw = self._records.get(appointment_id)
        if raw is None:
            return None
        return SessionState.model_validate_json(raw)

    async def save(self, appointment_id: str, state: SessionState) -> None:
        self._records[appointment_id] = state.model_dump_json()

    async def delete(self, appointment_id: str) -> None:
        self._records.pop(appointment_id, None)


class FileSessionStateStore(SessionStateStore):
    """
    JSON-file store, one file per appointment, surviving process restarts.

    Writes go to a temporary file first and are moved into place, so a crash
    mid-write leaves the previous snapshot intact.
    """

    def __init__(self, directory: Optional[os.PathLike] = None):
        self.directory = Path(directory or get_settings().session_state_dir)
        self._lock = asyncio.Lock()

    def path_for(self, appointment_id: str) -> Path:
        # Percent-encoding keeps distinct ids on distinct files
        safe_id = quote(appointment_id, safe="")
        return self.directory / f"{safe_id}.json"

    async def load(self, appointment_id: str) -> Optional[SessionState]:
        path = self.path_for(appointment_id)
        async with self._lock:
            if not path.exists():
                return None
            raw = path.read_text(encoding="utf-8")

        try:
            return SessionState.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable session state for {appointment_id}: {e}")
            return None

    async def save(self, appointment_id: str, state: SessionState) -> None:
        path = self.path_for(appointment_id)
        payload = state.model_dump_json(indent=2)

        async with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

        logger.debug(f"Saved session state for appointment {appointment_id}")

    async def delete(self, appointment_id: str) -> None:
        async with self._lock:
            self.path_for(appointment_id).unlink(missing_ok=True)
        logger.debug(f"Deleted session state for appointment {appointment_id}")

"""
Therapy session data models.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class SessionPhase(str, Enum):
    """Phases of a therapy session lifecycle."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionPhase.COMPLETED, SessionPhase.EXPIRED, SessionPhase.CANCELLED)


class ImageRef(BaseModel):
    """Reference to an image picked for a session (picking happens elsewhere)."""

    uri: str = Field(min_length=1, description="Location of the image")
    file_name: Optional[str] = Field(default=None, description="Original file name")
    mime_type: Optional[str] = Field(default=None, description="Image MIME type")

    model_config = {"frozen": True}


class TherapySubmission(BaseModel):
    """Remarks and images submitted when a session starts or ends."""

    remarks: str = Field(default="")
    images: List[ImageRef] = Field(default_factory=list)

    @field_validator("remarks", mode="before")
    @classmethod
    def normalize_remarks(cls, v: Optional[str]) -> str:
        """Strip surrounding whitespace; None becomes an empty string."""
        if v is None:
            return ""
        return v.strip()

    def to_payload(self, prefix: str) -> Dict[str, Any]:
        """Build the request body using the backend's ``presession``/``postsession`` keys."""
        return {
            f"{prefix}_remarks": self.remarks,
            f"{prefix}_images": [image.model_dump(mode="json") for image in self.images],
        }


class SessionState(BaseModel):
    """
    Persisted snapshot of one appointment's therapy session.

    Created on the first successful start, rewritten on every change while
    the session runs, and deleted once it completes, is cancelled or expires.
    """

    is_started: bool = Field(default=False, description="Whether the backend accepted the start")
    start_time: Optional[datetime] = Field(default=None, description="Wall-clock start instant")
    elapsed_seconds: int = Field(default=0, ge=0, description="Seconds since start_time")
    pre_remarks: str = Field(default="", description="Remarks entered before the session")
    post_remarks: str = Field(default="", description="Remarks entered after the session")
    is_completed: bool = Field(default=False)
    pre_images: List[ImageRef] = Field(default_factory=list)
    post_images: List[ImageRef] = Field(default_factory=list)

    @property
    def is_resumable(self) -> bool:
        """Check if a stored snapshot describes a running session."""
        return self.is_started and self.start_time is not None and not self.is_completed

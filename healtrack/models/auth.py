"""
Authenticated doctor context passed to backend clients.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator


class AuthContext(BaseModel):
    """
    The signed-in doctor's credentials.

    Handed explicitly to each service constructor; nothing in the core reads
    credentials from ambient state.
    """

    access_token: str = Field(min_length=1, description="Bearer token for the backend")
    doctor_id: Optional[str] = Field(default=None, description="Signed-in doctor identifier")

    @field_validator("access_token", mode="before")
    @classmethod
    def strip_token(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip()
        return v

    @property
    def headers(self) -> Dict[str, str]:
        """Get request headers carrying the bearer token."""
        return {"Authorization": f"Bearer {self.access_token}"}

    model_config = {"frozen": True}

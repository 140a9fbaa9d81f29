"""User entity model."""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from shopcore.utils.masking import mask_sensitive_data


class User(BaseModel):
    """User entity model."""

    model_config = ConfigDict(extra="ignore")

    id: UUID
    email: str
    password_hash: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    role: str = "customer"
    status: str = "approved"
    email_verified: bool = False
    login_count: int = 0
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert user to dictionary with the password hash masked."""
        return mask_sensitive_data(self.model_dump(mode="json"))

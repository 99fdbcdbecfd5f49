"""User account model (owned by the account service)."""

from datetime import datetime, timezone
from typing import Literal
from pydantic import BaseModel, Field


class User(BaseModel):
    id: str = Field(..., description="User ID")
    name: str | None = Field(None, description="Display name")
    email: str | None = Field(None, description="Contact email")
    role: Literal["user", "admin"] = Field(default="user")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

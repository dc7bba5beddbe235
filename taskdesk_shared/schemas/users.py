"""Identity and profile schemas."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


# ---------------------------------------------------------------------------
# Identity provider objects (read-only here)
# ---------------------------------------------------------------------------

class AuthUser(BaseModel):
    """A user as reported by the identity provider."""
    id: str = Field(min_length=1)
    email: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_provider(cls, raw: dict) -> "AuthUser":
        metadata = raw.get("user_metadata") or {}
        return cls(id=raw["id"], email=raw.get("email"), name=metadata.get("name"))


class AuthSession(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    user: AuthUser


# ---------------------------------------------------------------------------
# Local profile record (users table)
# ---------------------------------------------------------------------------

class Profile(BaseModel):
    """Application user record, linked 1:1 to the provider user by supabase_uid."""
    id: str = Field(min_length=1)
    supabase_uid: str = Field(min_length=1)
    email: Optional[str] = None
    name: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "extra": "ignore"}

    @property
    def external_uid(self) -> str:
        return self.supabase_uid


class ProfileCreate(BaseModel):
    # Generated client-side so the row is addressable even when the insert
    # response is filtered by policy
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    supabase_uid: str = Field(min_length=1)
    email: Optional[str] = None
    name: str = ""

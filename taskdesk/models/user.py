"""Local user profile, linked 1:1 to the identity provider's user."""

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import StringIdMixin, _utcnow


class UserProfile(StringIdMixin, SQLModel, table=True):
    __tablename__ = "users"

    supabase_uid: str = Field(unique=True, index=True, nullable=False)
    email: Optional[str] = Field(default=None, index=True)
    name: Optional[str] = None
    created_at: datetime = Field(
        default_factory=_utcnow,
        nullable=False,
        sa_type=sa.DateTime(timezone=True),
    )

"""Organization model."""

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import StringIdMixin, TimestampMixin


class Organization(StringIdMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "organizations"
    __table_args__ = (sa.UniqueConstraint("owner_id", "name", name="uq_organizations_owner_name"),)

    name: str = Field(nullable=False, index=True, max_length=100)
    owner_id: str = Field(foreign_key="users.id", nullable=False, index=True)

"""Organization membership (join table, policy-scoped in the hosted store)."""

from sqlmodel import Field, SQLModel


class OrganizationUser(SQLModel, table=True):
    __tablename__ = "organization_user"

    organization_id: str = Field(foreign_key="organizations.id", primary_key=True)
    user_id: str = Field(foreign_key="users.id", primary_key=True, index=True)
    role: str = Field(nullable=False, default="member")  # owner | member
